"""Pile plot reference data: upload, storage and tag lookup."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import pandas as pd

from .column_mapping import ColumnMapping, infer_column_mapping
from .database import PileDatabase, insert_in_batches
from .normalizers import canonical_key, normalize_pile_tag, normalize_text, strip_float_suffix, to_number
from .spreadsheet import read_tabular_file

LOGGER = logging.getLogger(__name__)

LOOKUP_TABLE = "pile_lookup_data"

LOOKUP_FIELD_PATTERNS: dict[str, tuple[str, ...]] = {
    "pile_tag": ("tag", "pile tag", "pile id", "pile", "name", "pile name"),
    "block": ("block", "pile block"),
    "pile_type": ("type", "pile type"),
    "design_embedment": ("embedment", "design embedment", "embed", "design depth"),
    "northing": ("northing", "north", "y"),
    "easting": ("easting", "east", "x"),
    "pile_size": ("size", "pile size"),
}
LOOKUP_FIELD_LABELS: dict[str, str] = {
    "pile_tag": "Tag",
    "block": "Block",
    "pile_type": "Type",
    "design_embedment": "Embedment",
    "northing": "Northing",
    "easting": "Easting",
    "pile_size": "Pile Size",
}


def pick_pile_plot_sheet(sheet_names: Sequence[str]) -> str:
    """Prefer a sheet named like 'Pile Plot'; fall back to the first sheet."""

    for name in sheet_names:
        if "pileplot" in canonical_key(name):
            return name
    return sheet_names[0]


def read_lookup_file(content: bytes, filename: str) -> tuple[pd.DataFrame, ColumnMapping]:
    frame = read_tabular_file(
        content,
        filename,
        patterns=LOOKUP_FIELD_PATTERNS,
        sheet_picker=pick_pile_plot_sheet,
    )
    mapping = infer_column_mapping(list(frame.columns), LOOKUP_FIELD_PATTERNS)
    return frame, mapping


def _lenient_number(value: Any) -> float | None:
    try:
        return to_number(value)
    except ValueError:
        return None


def build_lookup_records(
    frame: pd.DataFrame,
    mapping: ColumnMapping,
    project_id: str,
) -> tuple[list[dict[str, Any]], int]:
    """Return (records, skipped_count). Rows without a tag are skipped."""

    if mapping.header_for("pile_tag") is None:
        raise ValueError("Map the Tag column before uploading pile plot data.")

    def cell(row: pd.Series, field_name: str) -> Any:
        header = mapping.header_for(field_name)
        return row.get(header) if header is not None else None

    records: list[dict[str, Any]] = []
    skipped = 0
    for _, row in frame.iterrows():
        tag = strip_float_suffix(cell(row, "pile_tag"))
        if not tag:
            skipped += 1
            continue
        records.append(
            {
                "project_id": project_id,
                "pile_tag": tag,
                "normalized_tag": normalize_pile_tag(tag),
                "block": strip_float_suffix(cell(row, "block")) or None,
                "pile_type": normalize_text(cell(row, "pile_type")) or None,
                "design_embedment": _lenient_number(cell(row, "design_embedment")),
                "northing": _lenient_number(cell(row, "northing")),
                "easting": _lenient_number(cell(row, "easting")),
                "pile_size": normalize_text(cell(row, "pile_size")) or None,
            }
        )
    return records, skipped


@dataclass
class LookupUploadResult:
    deleted: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def replace_lookup_data(
    db: PileDatabase,
    project_id: str,
    records: Sequence[dict[str, Any]],
    batch_size: int = 100,
    *,
    skipped: int = 0,
) -> LookupUploadResult:
    """Replace the project's lookup rows with ``records``."""

    result = LookupUploadResult(skipped=skipped)
    result.deleted = db.table(LOOKUP_TABLE).eq("project_id", project_id).delete()
    inserted, failures = insert_in_batches(db, LOOKUP_TABLE, records, batch_size, stop_on_error=False)
    result.inserted = inserted
    result.errors = [f"Batch {index + 1}: {message}" for index, message in failures]
    LOGGER.info(
        "Pile lookup replaced for project %s: deleted=%d inserted=%d skipped=%d failed_batches=%d",
        project_id,
        result.deleted,
        inserted,
        skipped,
        len(failures),
    )
    return result


class LookupIndex:
    """Normalized-tag -> reference values for a single project."""

    def __init__(self, frame: pd.DataFrame | None = None):
        self._entries: dict[str, dict[str, Any]] = {}
        if frame is not None and not frame.empty:
            for record in frame.to_dict("records"):
                key = normalize_text(record.get("normalized_tag")) or normalize_pile_tag(record.get("pile_tag"))
                if key and key not in self._entries:
                    self._entries[key] = record

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tag: object) -> bool:
        return normalize_pile_tag(tag) in self._entries

    def get(self, tag: object) -> dict[str, Any] | None:
        key = normalize_pile_tag(tag)
        return self._entries.get(key) if key else None


def load_lookup_index(db: PileDatabase, project_id: str) -> LookupIndex:
    frame = (
        db.table(LOOKUP_TABLE)
        .select(["pile_tag", "normalized_tag", "block", "pile_type", "design_embedment", "pile_size"])
        .eq("project_id", project_id)
        .order("row_seq")
        .fetch()
    )
    LOGGER.debug("Loaded %d lookup rows for project %s", len(frame), project_id)
    return LookupIndex(frame)


def count_lookup_rows(db: PileDatabase, project_id: str) -> int:
    return db.table(LOOKUP_TABLE).eq("project_id", project_id).count()


def describe_lookup_upload(db: PileDatabase, project_id: str, ready: int, skipped: int) -> str:
    """Preview line shown before a project's lookup rows are replaced."""

    existing = count_lookup_rows(db, project_id)
    return (
        f"{ready} lookup rows ready, {skipped} rows without a tag will be skipped; "
        f"{existing} existing rows will be replaced."
    )
