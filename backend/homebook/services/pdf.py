"""Tabular PDF reports rendered with fpdf2.

Every report in the app is a title block followed by one or more bordered
tables. Rows can wrap onto several lines, so each row is measured first and
moved to a fresh page (with the header repeated) when it would not fit.
"""

from dataclasses import dataclass, field
from typing import Any

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from homebook.services.common import now_local

LINE_HEIGHT = 6
HEADER_FILL = (230, 230, 230)
SUBROW_FILL = (248, 248, 248)


def safe_pdf_text(value: Any) -> str:
    text = "" if value is None else str(value)
    text = text.replace("\r", " ").replace("₹", "Rs.").replace("•", "-")
    try:
        text.encode("latin-1")
        return text
    except UnicodeEncodeError:
        return text.encode("latin-1", "replace").decode("latin-1")


@dataclass(frozen=True)
class Column:
    label: str
    width: float
    align: str = "L"


@dataclass
class Row:
    cells: list[Any]
    bold: bool = False
    shaded: bool = False
    aligns: list[str] | None = field(default=None)


class ReportPDF(FPDF):
    def __init__(self, orientation: str = "P", footer_note: str | None = None) -> None:
        super().__init__(orientation=orientation, unit="mm", format="A4")
        self.footer_note = footer_note
        self.set_auto_page_break(auto=True, margin=15)
        self.set_margins(12, 12, 12)
        self.add_page()

    def footer(self) -> None:
        self.set_y(-12)
        self.set_font("Helvetica", "I", 8)
        if self.footer_note:
            self.cell(0, 5, safe_pdf_text(self.footer_note), align="L")
            self.set_x(self.l_margin)
        self.cell(0, 5, f"Page {self.page_no()}", align="R")

    def title_block(self, title: str, *lines: str) -> None:
        self.set_font("Helvetica", "B", 16)
        self.cell(0, 9, safe_pdf_text(title), align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.set_font("Helvetica", size=10)
        for line in lines:
            self.cell(0, 6, safe_pdf_text(line), align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.ln(3)

    def section(self, heading: str) -> None:
        if self.will_page_break(LINE_HEIGHT * 3):
            self.add_page()
        self.ln(2)
        self.set_font("Helvetica", "B", 12)
        self.cell(0, 8, safe_pdf_text(heading), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def _row_height(self, widths: list[float], texts: list[str]) -> float:
        line_count = 1
        for width, text in zip(widths, texts):
            lines = self.multi_cell(width, LINE_HEIGHT, text, dry_run=True, output="LINES")
            line_count = max(line_count, len(lines))
        return line_count * LINE_HEIGHT + 1

    def _draw_row(self, widths: list[float], texts: list[str], aligns: list[str], fill: tuple[int, int, int] | None) -> None:
        height = self._row_height(widths, texts)
        x = self.l_margin
        y = self.get_y()
        for width, text, align in zip(widths, texts, aligns):
            if fill is not None:
                self.set_fill_color(*fill)
                self.rect(x, y, width, height, style="DF")
            else:
                self.rect(x, y, width, height)
            self.set_xy(x, y + 0.5)
            self.multi_cell(width, LINE_HEIGHT, text, align=align)
            x += width
        self.set_xy(self.l_margin, y + height)

    def _draw_header(self, columns: list[Column]) -> None:
        self.set_font("Helvetica", "B", 9)
        self._draw_row(
            [c.width for c in columns],
            [safe_pdf_text(c.label) for c in columns],
            ["C"] * len(columns),
            HEADER_FILL,
        )

    def table(self, columns: list[Column], rows: list[Row], empty_message: str | None = None) -> None:
        widths = [c.width for c in columns]
        self._draw_header(columns)
        if not rows and empty_message:
            self.set_font("Helvetica", "I", 9)
            self._draw_row([sum(widths)], [safe_pdf_text(empty_message)], ["C"], None)
            return

        for row in rows:
            texts = [safe_pdf_text(v) for v in row.cells]
            aligns = row.aligns or [c.align for c in columns]
            self.set_font("Helvetica", "B" if row.bold else "", 9)
            if self.will_page_break(self._row_height(widths, texts)):
                self.add_page()
                self._draw_header(columns)
                self.set_font("Helvetica", "B" if row.bold else "", 9)
            self._draw_row(widths, texts, aligns, SUBROW_FILL if row.shaded else None)

    def to_bytes(self) -> bytes:
        content = self.output()
        if isinstance(content, bytearray):
            return bytes(content)
        if isinstance(content, str):
            return content.encode("latin-1")
        return content


def generated_on_note() -> str:
    return "Generated on: " + now_local().strftime("%d %b %Y, %I:%M %p")
