import json
from decimal import Decimal
from typing import Any

from fastapi import HTTPException

from homebook.services.common import (
    clean_str,
    format_money,
    format_short_date,
    month_label,
    month_range,
    parse_date_field,
    parse_decimal,
)
from homebook.services.pdf import Column, ReportPDF, Row, generated_on_note

INVALID_MONTH = "Invalid month format. Use YYYY-MM"


def sitekharch_month_range(month: str):
    return month_range(month, INVALID_MONTH)


def parse_amount(value: Any, field_name: str) -> Decimal:
    try:
        return parse_decimal(value, field_name)
    except HTTPException:
        raise HTTPException(status_code=400, detail=f"{field_name} is required and must be number")


def parse_optional_amount(value: Any) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return parse_decimal(value, "extra_amount")
    except HTTPException:
        return None


def parse_extra_items(value: Any) -> list[dict[str, Any]]:
    """Accept a list or its JSON text; anything unreadable becomes ``[]``."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if not isinstance(value, list):
        return []
    items = []
    for item in value:
        if not isinstance(item, dict):
            continue
        amount = parse_optional_amount(item.get("amount"))
        items.append({"amount": float(amount) if amount is not None else 0, "details": clean_str(item.get("details"))})
    return items


def parse_kharch_body(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "kharch_date": parse_date_field(data.get("kharch_date"), "kharch_date"),
        "amount": parse_amount(data.get("amount"), "amount"),
        "details": clean_str(data.get("details")),
        "extra_amount": parse_optional_amount(data.get("extra_amount")),
        "extra_details": clean_str(data.get("extra_details")),
        "extra_items": parse_extra_items(data.get("extra_items")),
    }


def parse_received_body(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "payment_date": parse_date_field(data.get("payment_date"), "payment_date"),
        "amount_received": parse_amount(data.get("amount_received"), "amount_received"),
        "details": clean_str(data.get("details")),
        "payment_mode": clean_str(data.get("payment_mode")) or "cash",
    }


def normalize_kharch_row(row: dict[str, Any]) -> dict[str, Any]:
    extras = row.get("extra_items")
    if isinstance(extras, str):
        try:
            extras = json.loads(extras)
        except ValueError:
            extras = []
    if not isinstance(extras, list):
        extras = []
    return {**row, "extra_items": extras}


def row_total(row: dict[str, Any]) -> Decimal:
    total = Decimal(str(row.get("amount") or 0)) + Decimal(str(row.get("extra_amount") or 0))
    for item in row.get("extra_items") or []:
        if isinstance(item, dict):
            total += Decimal(str(item.get("amount") or 0))
    return total


def build_summary(month: str, kharch_rows: list[dict[str, Any]], received_rows: list[dict[str, Any]]) -> dict[str, Any]:
    kharch = []
    total_kharch = Decimal("0")
    for raw in kharch_rows:
        row = normalize_kharch_row(raw)
        total = row_total(row)
        total_kharch += total
        kharch.append({**row, "row_total": total})
    total_received = sum((Decimal(str(r.get("amount_received") or 0)) for r in received_rows), Decimal("0"))
    return {
        "month": month,
        "totalKharch": total_kharch,
        "totalReceived": total_received,
        "balance": total_received - total_kharch,
        "kharch": kharch,
        "received": list(received_rows),
    }


def _extra_lines(row: dict[str, Any]) -> str:
    lines = []
    if row.get("extra_amount"):
        extra = f"- Rs.{format_money(row['extra_amount'])}"
        if row.get("extra_details"):
            extra += f" ({row['extra_details']})"
        lines.append(extra)
    for item in row.get("extra_items") or []:
        line = f"- Rs.{format_money(item.get('amount'))}"
        if item.get("details"):
            line += f" ({item['details']})"
        lines.append(line)
    return "\n".join(lines)


def render_summary_pdf(summary: dict[str, Any]) -> bytes:
    pdf = ReportPDF(footer_note=generated_on_note())
    pdf.title_block("Site Kharch Report", f"Month: {month_label(summary['month'])}")

    pdf.section("Kharch Details")
    pdf.table(
        [
            Column("#", 10, "C"),
            Column("Date", 26),
            Column("Details", 60),
            Column("Amount", 26, "R"),
            Column("Extra", 40),
            Column("Total", 24, "R"),
        ],
        [
            Row(
                [
                    i,
                    format_short_date(r.get("kharch_date")),
                    r.get("details") or "",
                    format_money(r.get("amount")),
                    _extra_lines(r),
                    format_money(r["row_total"]),
                ]
            )
            for i, r in enumerate(summary["kharch"], start=1)
        ],
        empty_message="No kharch entries for this month.",
    )

    pdf.section("Received Amounts")
    pdf.table(
        [
            Column("#", 10, "C"),
            Column("Date", 30),
            Column("Details", 80),
            Column("Mode", 30),
            Column("Amount (Rs.)", 36, "R"),
        ],
        [
            Row(
                [
                    i,
                    format_short_date(r.get("payment_date")),
                    r.get("details") or "",
                    r.get("payment_mode") or "",
                    format_money(r.get("amount_received")),
                ]
            )
            for i, r in enumerate(summary["received"], start=1)
        ],
        empty_message="No received amounts for this month.",
    )

    pdf.section("Summary")
    pdf.table(
        [Column("Total Kharch", 62, "C"), Column("Total Received", 62, "C"), Column("Balance", 62, "C")],
        [
            Row(
                [
                    f"Rs.{format_money(summary['totalKharch'])}",
                    f"Rs.{format_money(summary['totalReceived'])}",
                    f"Rs.{format_money(summary['balance'])}",
                ],
                bold=True,
            )
        ],
    )
    return pdf.to_bytes()
