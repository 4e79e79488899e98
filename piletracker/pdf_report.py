"""PDF pile report."""
from __future__ import annotations

import logging
from io import BytesIO
from typing import Mapping

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .metrics import status_counts, status_percentages
from .normalizers import normalize_text
from .status import STATUS_LABELS, STATUSES
from .workbook import pile_export_frame

LOGGER = logging.getLogger(__name__)

PDF_COLUMNS = [
    "Pile ID",
    "Block",
    "Status",
    "Design Embedment (ft)",
    "Actual Embedment (ft)",
    "Duration",
    "Drive Time Rating",
    "Machine",
    "Start Date",
    "Start Time",
    "Gain per 30s",
]
HEADER_COLOR = colors.HexColor("#243A47")


def _cell(value: object) -> str:
    if isinstance(value, float):
        return "" if pd.isna(value) else f"{value:.2f}"
    return normalize_text(value)


def make_piles_pdf_bytes(
    prepared: pd.DataFrame,
    *,
    project: Mapping[str, object] | None = None,
    active_filters: Mapping[str, str] | None = None,
    generated_at: pd.Timestamp | None = None,
) -> bytes:
    """Landscape report: header block, status totals, active filters and the pile table.

    Raises ``ValueError`` when there are no piles to report.
    """

    if prepared.empty:
        raise ValueError("No piles match the current filters.")

    project = project or {}
    generated = (generated_at or pd.Timestamp.now()).strftime("%Y-%m-%d %H:%M")
    LOGGER.info("Building pile PDF (rows=%d)", len(prepared))

    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
        leftMargin=0.4 * inch,
        rightMargin=0.4 * inch,
        title="Pile Report",
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "ReportTitle",
        parent=styles["Heading1"],
        fontSize=18,
        textColor=HEADER_COLOR,
        spaceAfter=12,
        alignment=TA_CENTER,
    )
    heading_style = ParagraphStyle("Section", parent=styles["Heading2"], fontSize=12, spaceAfter=6)

    story = [Paragraph("Pile Report", title_style)]
    project_name = normalize_text(project.get("project_name"))
    location = normalize_text(project.get("project_location"))
    if project_name:
        story.append(Paragraph(f"Project: {project_name}", styles["Normal"]))
    if location:
        story.append(Paragraph(f"Location: {location}", styles["Normal"]))
    story.append(Paragraph(f"Generated: {generated}", styles["Normal"]))
    story.append(Spacer(1, 12))

    counts = status_counts(prepared, column="display_status")
    percentages = status_percentages(counts)
    totals = [["Status", "Piles", "Percent"]]
    for status in STATUSES:
        totals.append([STATUS_LABELS[status], str(counts[status]), f"{percentages[status]:.1f}%"])
    totals.append(["Total", str(counts["total"]), ""])
    totals_table = Table(totals, colWidths=[1.6 * inch, 1.0 * inch, 1.0 * inch])
    totals_table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ]
        )
    )
    story.append(Paragraph("Summary", heading_style))
    story.append(totals_table)

    if active_filters:
        story.append(Spacer(1, 8))
        story.append(Paragraph("Active filters", heading_style))
        for key, value in active_filters.items():
            story.append(Paragraph(f"{key}: {value}", styles["Normal"]))

    story.append(Spacer(1, 12))
    story.append(Paragraph("Piles", heading_style))
    frame = pile_export_frame(prepared)[PDF_COLUMNS]
    rows = [PDF_COLUMNS] + [[_cell(value) for value in record] for record in frame.itertuples(index=False)]
    pile_table = Table(rows, repeatRows=1)
    pile_table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTSIZE", (0, 0), (-1, -1), 7),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F2F4F5")]),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ]
        )
    )
    story.append(pile_table)

    doc.build(story)
    buffer.seek(0)
    return buffer.getvalue()
