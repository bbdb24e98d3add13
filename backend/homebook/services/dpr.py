from typing import Any

from homebook.services.common import format_ddmmyyyy, month_label
from homebook.services.pdf import Column, ReportPDF, Row, generated_on_note

DPR_COLUMNS = [
    Column("#", 10, "C"),
    Column("Date", 26, "C"),
    Column("Category", 36),
    Column("Details", 88),
    Column("Time", 26, "C"),
]


def split_extra_entries(entries: Any) -> tuple[list[str], list[str]]:
    """``[{detail, time}]`` to the parallel arrays stored on the row; blank pairs are dropped."""
    details: list[str] = []
    times: list[str] = []
    if not isinstance(entries, list):
        return details, times
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        detail = str(entry.get("detail") or "").strip()
        time = str(entry.get("time") or "").strip()
        if detail or time:
            details.append(detail)
            times.append(time)
    return details, times


def text_array(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(v or "").strip() for v in value]


def pdf_rows(entries: list[dict[str, Any]]) -> list[Row]:
    rows: list[Row] = []
    for index, entry in enumerate(entries, start=1):
        rows.append(
            Row(
                [
                    index,
                    format_ddmmyyyy(entry.get("work_date")),
                    entry.get("category_name") or "",
                    entry.get("details") or "",
                    entry.get("work_time") or "",
                ]
            )
        )
        extra_times = entry.get("extra_times") or []
        for position, detail in enumerate(entry.get("extra_details") or []):
            time = extra_times[position] if position < len(extra_times) else ""
            rows.append(Row(["", "", "", f"- {detail}", time], shaded=True))
    return rows


def render_month_pdf(month: str, entries: list[dict[str, Any]]) -> bytes:
    pdf = ReportPDF(footer_note=generated_on_note())
    pdf.title_block("Daily Progress Report (DPR)", f"Month: {month_label(month)}")
    pdf.table(DPR_COLUMNS, pdf_rows(entries), empty_message="No DPR entries found for this month.")
    return pdf.to_bytes()
