"""Utilities for rendering tabular exports as PDFs."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from io import BytesIO
from typing import Any

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import landscape, letter
from reportlab.pdfgen import canvas

MAX_COLUMNS = 8
_CELL_CHARS = 28


def _cell(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    if len(text) > limit:
        return text[: max(limit - 1, 1)] + "…"
    return text


def render_table_pdf(
    title: str,
    sections: Mapping[str, tuple[Sequence[str], Sequence[Mapping[str, Any]]]],
    details: Mapping[str, Any] | None = None,
) -> bytes:
    """Render one titled, paginated table per section and return the PDF bytes.

    ``sections`` maps a section name to ``(columns, records)``. Only the first
    :data:`MAX_COLUMNS` columns fit on a page; wider datasets are truncated.
    """

    buffer = BytesIO()
    pdf_canvas = canvas.Canvas(buffer, pagesize=landscape(letter))
    width, height = landscape(letter)

    margin = 40
    header_height = 80
    primary_color = HexColor("#0F172A")
    accent_color = HexColor("#6366F1")
    muted_text = HexColor("#64748B")
    light_panel = HexColor("#F8FAFC")
    table_header_color = HexColor("#EEF2FF")
    border_color = HexColor("#E2E8F0")

    subtitle = "  ·  ".join(
        f"{key.replace('_', ' ').title()}: {value}"
        for key, value in (details or {}).items()
        if value not in (None, "")
    )

    def draw_brand_header() -> float:
        pdf_canvas.setFillColor(primary_color)
        pdf_canvas.rect(0, height - header_height, width, header_height, fill=1, stroke=0)

        pdf_canvas.setFont("Helvetica-Bold", 18)
        pdf_canvas.setFillColor(HexColor("#FFFFFF"))
        pdf_canvas.drawString(margin, height - 42, _cell(title, 80))
        pdf_canvas.setFont("Helvetica", 9)
        pdf_canvas.setFillColor(HexColor("#CBD5F5"))
        pdf_canvas.drawString(margin, height - 62, _cell(subtitle, 160))

        pdf_canvas.setFillColor(primary_color)
        return height - header_height - 28

    def draw_section_title(top: float, name: str, count: int) -> float:
        pdf_canvas.setFont("Helvetica-Bold", 12)
        pdf_canvas.setFillColor(accent_color)
        pdf_canvas.drawString(margin, top, name.replace("_", " ").title())
        pdf_canvas.setFont("Helvetica", 9)
        pdf_canvas.setFillColor(muted_text)
        pdf_canvas.drawRightString(width - margin, top, f"{count} records")
        return top - 20

    def draw_table_header(top: float, columns: Sequence[str], positions: list[float]) -> float:
        row_header_height = 22
        pdf_canvas.setFillColor(table_header_color)
        pdf_canvas.roundRect(
            margin,
            top - row_header_height,
            width - 2 * margin,
            row_header_height,
            6,
            fill=1,
            stroke=0,
        )
        pdf_canvas.setFillColor(primary_color)
        pdf_canvas.setFont("Helvetica-Bold", 9)
        for column, x in zip(columns, positions):
            pdf_canvas.drawString(x, top - 14, _cell(column, _CELL_CHARS))
        pdf_canvas.setFont("Helvetica", 9)
        return top - row_header_height - 14

    y_position = draw_brand_header()
    row_height = 18

    for name, (all_columns, records) in sections.items():
        columns = list(all_columns)[:MAX_COLUMNS] or ["(no columns)"]
        step = (width - 2 * margin - 20) / len(columns)
        positions = [margin + 10 + step * idx for idx in range(len(columns))]
        char_limit = max(int(step / 5), 4)

        if y_position < 120:
            pdf_canvas.showPage()
            y_position = draw_brand_header()
        y_position = draw_section_title(y_position, name, len(records))
        y_position = draw_table_header(y_position, columns, positions)

        if not records:
            pdf_canvas.setFillColor(muted_text)
            pdf_canvas.drawString(margin + 10, y_position - 4, "No records")
            y_position -= row_height

        for idx, record in enumerate(records):
            if y_position < 60:
                pdf_canvas.showPage()
                y_position = draw_brand_header()
                y_position = draw_table_header(y_position, columns, positions)

            if idx % 2 == 0:
                pdf_canvas.setFillColor(light_panel)
                pdf_canvas.roundRect(
                    margin,
                    y_position - row_height + 8,
                    width - 2 * margin,
                    row_height - 2,
                    4,
                    fill=1,
                    stroke=0,
                )

            pdf_canvas.setFillColor(primary_color)
            pdf_canvas.setFont("Helvetica", 9)
            for column, x in zip(columns, positions):
                pdf_canvas.drawString(x, y_position - 4, _cell(record.get(column), char_limit))
            y_position -= row_height

        pdf_canvas.setStrokeColor(border_color)
        pdf_canvas.line(margin, y_position, width - margin, y_position)
        y_position -= 30

    pdf_canvas.save()
    buffer.seek(0)
    return buffer.read()


__all__ = ["MAX_COLUMNS", "render_table_pdf"]
