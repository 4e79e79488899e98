"""Preliminary production: machine-keyed field log rows uploaded before survey data."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import pandas as pd

from .column_mapping import ColumnMapping, infer_column_mapping
from .database import PileDatabase, insert_in_batches
from .normalizers import (
    format_date,
    format_duration,
    normalize_text,
    parse_duration_seconds,
    parse_time,
    seconds_between,
    strip_float_suffix,
    to_number,
)
from .spreadsheet import read_tabular_file

LOGGER = logging.getLogger(__name__)

PRELIMINARY_TABLE = "preliminary_production"

PRELIMINARY_FIELD_PATTERNS: dict[str, tuple[str, ...]] = {
    "machine": ("machine", "equipment", "rig", "machine id", "equipment id", "machine number"),
    "pile_id": ("pile id", "pile tag", "tag", "id"),
    "pile_number": ("pile number", "pile no"),
    "block": ("block", "pile block"),
    "start_date": ("start date", "date", "installation date"),
    "start_time": ("start time", "begin time"),
    "stop_time": ("stop time", "end time", "finish time"),
    "duration": ("duration", "drive time", "total time", "time"),
    "embedment": ("embedment", "actual embedment", "final embedment"),
    "design_embedment": ("design embedment", "target embedment"),
    "pile_type": ("pile type", "type"),
    "notes": ("notes", "comments", "remarks"),
}
PRELIMINARY_FIELD_LABELS: dict[str, str] = {
    "machine": "Machine (required)",
    "pile_id": "Pile ID",
    "pile_number": "Pile Number",
    "block": "Block",
    "start_date": "Start Date",
    "start_time": "Start Time",
    "stop_time": "Stop Time",
    "duration": "Duration",
    "embedment": "Embedment",
    "design_embedment": "Design Embedment",
    "pile_type": "Pile Type",
    "notes": "Notes",
}


def read_preliminary_file(content: bytes, filename: str) -> tuple[pd.DataFrame, ColumnMapping]:
    frame = read_tabular_file(content, filename, patterns=PRELIMINARY_FIELD_PATTERNS)
    mapping = infer_column_mapping(list(frame.columns), PRELIMINARY_FIELD_PATTERNS)
    return frame, mapping


def _lenient(parser, value: Any) -> Any:
    try:
        return parser(value)
    except ValueError:
        return None


def build_preliminary_records(
    frame: pd.DataFrame,
    mapping: ColumnMapping,
    project_id: str,
) -> tuple[list[dict[str, Any]], list[int]]:
    """Return (records, skipped_row_numbers). Rows without a machine are skipped.

    Unparseable optional values are stored as empty rather than rejecting the row.
    """

    if mapping.header_for("machine") is None:
        raise ValueError("Map the Machine column before uploading preliminary production.")

    columns = mapping.mapped()
    records: list[dict[str, Any]] = []
    skipped: list[int] = []
    for position, (row_number, row) in enumerate(frame.iterrows(), start=1):
        raw = {name: row.get(header) for name, header in columns.items()}
        machine = strip_float_suffix(raw.get("machine"))
        if not machine:
            skipped.append(int(row_number))
            continue
        start_time = _lenient(parse_time, raw.get("start_time"))
        stop_time = _lenient(parse_time, raw.get("stop_time"))
        seconds = _lenient(parse_duration_seconds, raw.get("duration"))
        if seconds is None:
            seconds = seconds_between(start_time, stop_time)
        pile_id = strip_float_suffix(raw.get("pile_id")) or f"PRELIM-{position}"
        records.append(
            {
                "project_id": project_id,
                "machine": machine,
                "pile_id": pile_id,
                "pile_number": strip_float_suffix(raw.get("pile_number")) or pile_id,
                "block": strip_float_suffix(raw.get("block")) or None,
                "start_date": format_date(raw.get("start_date")) or None,
                "start_time": start_time,
                "stop_time": stop_time,
                "duration_seconds": seconds,
                "duration": format_duration(seconds) or None,
                "embedment": _lenient(to_number, raw.get("embedment")),
                "design_embedment": _lenient(to_number, raw.get("design_embedment")),
                "pile_type": normalize_text(raw.get("pile_type")) or None,
                "notes": normalize_text(raw.get("notes")) or None,
            }
        )
    return records, skipped


@dataclass
class PreliminaryUploadResult:
    inserted: int = 0
    failed_rows: int = 0
    skipped_rows: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def message(self) -> str:
        text = f"Uploaded {self.inserted} preliminary records."
        if self.skipped_rows:
            text += f" Skipped {len(self.skipped_rows)} rows without a machine."
        if self.failed_rows:
            text += f" {self.failed_rows} rows failed to save."
        return text


def upload_preliminary(
    db: PileDatabase,
    records: Sequence[dict[str, Any]],
    batch_size: int = 100,
    *,
    skipped_rows: Sequence[int] = (),
) -> PreliminaryUploadResult:
    """Insert in batches; a failed batch is counted and the remaining batches continue."""

    inserted, failures = insert_in_batches(db, PRELIMINARY_TABLE, records, batch_size, stop_on_error=False)
    size = max(1, int(batch_size))
    failed_rows = 0
    for index, _ in failures:
        failed_rows += len(records[index * size : (index + 1) * size])
    result = PreliminaryUploadResult(
        inserted=inserted,
        failed_rows=failed_rows,
        skipped_rows=list(skipped_rows),
        errors=[f"Batch {index + 1}: {message}" for index, message in failures],
    )
    LOGGER.info(
        "Preliminary upload: inserted=%d failed_rows=%d skipped=%d",
        inserted,
        failed_rows,
        len(result.skipped_rows),
    )
    return result


def delete_preliminary_record(db: PileDatabase, record_id: str) -> int:
    return db.table(PRELIMINARY_TABLE).eq("id", record_id).delete()


def clear_preliminary(db: PileDatabase, project_id: str) -> int:
    deleted = db.table(PRELIMINARY_TABLE).eq("project_id", project_id).delete()
    LOGGER.info("Cleared %d preliminary records for project %s", deleted, project_id)
    return deleted
