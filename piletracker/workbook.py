"""Excel workbook export helpers."""
from __future__ import annotations

import logging
import re
from io import BytesIO
from typing import Mapping, Sequence

import pandas as pd

from .column_mapping import PILE_FIELD_LABELS
from .importer import ImportReport
from .metrics import MachineSummary, machines_frame, status_counts, status_percentages
from .normalizers import format_time_12h, normalize_text
from .status import STATUS_LABELS, STATUSES

LOGGER = logging.getLogger(__name__)

PILE_EXPORT_COLUMNS = [
    "Pile ID",
    "Block",
    "Zone",
    "Status",
    "Design Embedment (ft)",
    "Actual Embedment (ft)",
    "Duration",
    "Drive Time (min)",
    "Drive Time Rating",
    "Machine",
    "Start Date",
    "Start Time",
    "Stop Time",
    "Start Z",
    "End Z",
    "Gain per 30s",
    "Low Gain",
    "Notes",
]


def _sanitize_sheet_name(value: str) -> str:
    """Return a value safe for use as an Excel sheet name."""

    sanitized = re.sub(r"[\[\]\:\*\?\/\\]", "_", str(value))
    return sanitized[:31]


def _safe_file_stem(value: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9_-]+", "_", normalize_text(value)).strip("_")
    return stem or "project"


def export_filename(project_name: str, kind: str = "piles", extension: str = "xlsx", now: pd.Timestamp | None = None) -> str:
    stamp = (now or pd.Timestamp.now()).strftime("%Y%m%d_%H%M%S")
    return f"{_safe_file_stem(project_name)}_{kind}_{stamp}.{extension}"


def _text(value: object) -> str:
    return normalize_text(value)


def _number(value: object) -> float | None:
    number = pd.to_numeric(pd.Series([value]), errors="coerce").iloc[0]
    return None if pd.isna(number) else float(number)


def pile_export_frame(prepared: pd.DataFrame) -> pd.DataFrame:
    """Readable pile table built from a ``metrics.prepare_piles`` frame."""

    if prepared.empty:
        return pd.DataFrame(columns=PILE_EXPORT_COLUMNS)
    rows = []
    for record in prepared.to_dict("records"):
        minutes = record.get("drive_minutes")
        timed = bool(record.get("drive_time_rating"))
        rows.append(
            {
                "Pile ID": _text(record.get("pile_id")) or _text(record.get("pile_number")),
                "Block": _text(record.get("block")),
                "Zone": _text(record.get("zone")),
                "Status": STATUS_LABELS.get(record.get("display_status"), _text(record.get("display_status"))),
                "Design Embedment (ft)": _number(record.get("design_embedment")),
                "Actual Embedment (ft)": _number(record.get("embedment")),
                "Duration": _text(record.get("duration")),
                "Drive Time (min)": round(float(minutes), 2) if timed else None,
                "Drive Time Rating": _text(record.get("drive_time_rating")),
                "Machine": _text(record.get("machine")),
                "Start Date": _text(record.get("start_day")),
                "Start Time": format_time_12h(record.get("start_time")),
                "Stop Time": format_time_12h(record.get("stop_time")),
                "Start Z": _number(record.get("start_z")),
                "End Z": _number(record.get("end_z")),
                "Gain per 30s": _number(record.get("gain_per_30_seconds")),
                "Low Gain": "Yes" if bool(record.get("is_low_gain")) else "",
                "Notes": _text(record.get("notes")),
            }
        )
    return pd.DataFrame(rows, columns=PILE_EXPORT_COLUMNS)


def _status_summary_frame(prepared: pd.DataFrame) -> pd.DataFrame:
    counts = status_counts(prepared, column="display_status")
    percentages = status_percentages(counts)
    rows = [
        {
            "Status": STATUS_LABELS[status],
            "Piles": counts[status],
            "Percent": round(percentages[status], 1),
        }
        for status in STATUSES
    ]
    rows.append({"Status": "Total", "Piles": counts["total"], "Percent": 100.0 if counts["total"] else 0.0})
    return pd.DataFrame(rows)


def make_piles_workbook_bytes(
    prepared: pd.DataFrame,
    *,
    project: Mapping[str, object] | None = None,
    active_filters: Mapping[str, str] | None = None,
) -> bytes:
    """Pile list export with a status summary and the selection context."""

    LOGGER.info("Building pile workbook (rows=%d)", len(prepared))
    project = project or {}
    context = pd.DataFrame(
        [
            {
                "Project": _text(project.get("project_name")) or "(unnamed)",
                "Location": _text(project.get("project_location")),
                "Generated": pd.Timestamp.now().strftime("%Y-%m-%d %H:%M"),
                "Filters": "; ".join(f"{key}: {value}" for key, value in (active_filters or {}).items()) or "(none)",
            }
        ]
    )

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        pile_export_frame(prepared).to_excel(writer, sheet_name="Piles", index=False)
        _status_summary_frame(prepared).to_excel(writer, sheet_name="Summary", index=False)
        context.to_excel(writer, sheet_name="SelectionContext", index=False)
    buffer.seek(0)
    return buffer.getvalue()


def make_production_workbook_bytes(
    summaries: Sequence[MachineSummary],
    daily: pd.DataFrame,
    blocks: pd.DataFrame | None = None,
    *,
    machine_for_sheet: str | None = None,
    machine_daily: pd.DataFrame | None = None,
) -> bytes:
    """Machines, daily trend and block rollups; optionally one machine's daily detail."""

    LOGGER.info("Building production workbook (machines=%d)", len(summaries))
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        machines_frame(summaries).to_excel(writer, sheet_name="Machines", index=False)
        daily.to_excel(writer, sheet_name="DailyProduction", index=False)
        if blocks is not None:
            blocks.to_excel(writer, sheet_name="Blocks", index=False)
        if machine_for_sheet and machine_daily is not None:
            machine_daily.to_excel(
                writer,
                sheet_name=_sanitize_sheet_name(f"Daily_{machine_for_sheet}"),
                index=False,
            )
    buffer.seek(0)
    return buffer.getvalue()


def make_import_report_workbook_bytes(report: ImportReport) -> bytes:
    """Review table, error summary and the column mapping used for an upload."""

    summary = pd.DataFrame(
        [{"Reason": reason, "Rows": count} for reason, count in report.error_summary().items()],
        columns=["Reason", "Rows"],
    )
    mapping = pd.DataFrame(report.mapping.to_records(PILE_FIELD_LABELS))
    totals = pd.DataFrame(
        [
            {
                "File": report.filename,
                "Rows": report.total_count,
                "Valid": report.valid_count,
                "Invalid": report.invalid_count,
                "Duplicates": report.duplicate_count,
                "Enriched from lookup": report.enriched_count,
            }
        ]
    )
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        totals.to_excel(writer, sheet_name="Totals", index=False)
        report.to_frame().to_excel(writer, sheet_name="Review", index=False)
        summary.to_excel(writer, sheet_name="Errors", index=False)
        mapping.to_excel(writer, sheet_name="Mapping", index=False)
    buffer.seek(0)
    return buffer.getvalue()
