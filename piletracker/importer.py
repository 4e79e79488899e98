"""CSV/XLSX pile import: row validation, normalization, enrichment and duplicate flags.

A bad row is recorded in the report with its reasons and skipped; it never
aborts the upload. Duplicates (same
pile number with an embedment within ``DUPLICATE_EMBEDMENT_EPSILON`` of a row
already in the project or earlier in the same file) are flagged but still
uploaded unless the caller asks to skip them.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import pandas as pd

from .column_mapping import PILE_FIELD_LABELS, PILE_FIELD_PATTERNS, ColumnMapping, infer_column_mapping
from .config import AppConfig
from .database import PileDatabase, insert_in_batches
from .lookup import LookupIndex, load_lookup_index
from .normalizers import (
    format_duration,
    normalize_pile_tag,
    normalize_text,
    parse_date,
    parse_duration_seconds,
    parse_time,
    seconds_between,
    strip_float_suffix,
    to_number,
)
from .spreadsheet import read_tabular_file

LOGGER = logging.getLogger(__name__)

PILES_TABLE = "piles"
DUPLICATE_EMBEDMENT_EPSILON = 0.001

REASON_MISSING_IDENTIFIER = "Missing identifier"
REASON_INVALID_NUMBER = "Invalid number"
REASON_INVALID_DATE = "Invalid date"
REASON_INVALID_TIME = "Invalid time"
REASON_INVALID_DURATION = "Invalid duration"

_IDENTIFIER_FIELDS = ("pile_id", "pile_number", "block", "zone", "machine")
_TEXT_FIELDS = ("pile_location", "pile_type", "pile_size", "pile_color", "inspector_name", "notes")
_NUMERIC_FIELDS = ("start_z", "end_z", "embedment", "design_embedment", "gain_per_30_seconds")
_LOOKUP_FILL_FIELDS = ("design_embedment", "pile_type", "pile_size", "block")


@dataclass(frozen=True)
class RowIssue:
    field: str
    reason: str
    detail: str = ""

    def describe(self) -> str:
        label = PILE_FIELD_LABELS.get(self.field, self.field)
        return f"{self.reason} ({label}): {self.detail}" if self.detail else f"{self.reason} ({label})"


@dataclass
class ImportRow:
    row_number: int
    record: dict[str, Any]
    errors: list[RowIssue] = field(default_factory=list)
    is_duplicate: bool = False
    duplicate_source: str = ""
    enriched_fields: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def review_status(self) -> str:
        if not self.is_valid:
            return "Invalid"
        return "Duplicate" if self.is_duplicate else "Valid"


@dataclass
class ImportReport:
    """Outcome of validating an upload, before anything is written."""

    project_id: str
    mapping: ColumnMapping
    rows: list[ImportRow] = field(default_factory=list)
    filename: str = ""

    @property
    def total_count(self) -> int:
        return len(self.rows)

    @property
    def valid_rows(self) -> list[ImportRow]:
        return [row for row in self.rows if row.is_valid]

    @property
    def invalid_rows(self) -> list[ImportRow]:
        return [row for row in self.rows if not row.is_valid]

    @property
    def duplicate_rows(self) -> list[ImportRow]:
        return [row for row in self.rows if row.is_valid and row.is_duplicate]

    @property
    def valid_count(self) -> int:
        return len(self.valid_rows)

    @property
    def invalid_count(self) -> int:
        return len(self.invalid_rows)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicate_rows)

    @property
    def enriched_count(self) -> int:
        return sum(1 for row in self.rows if row.is_valid and row.enriched_fields)

    def error_summary(self) -> dict[str, int]:
        """Reason -> number of invalid rows carrying it (a row counts once per reason)."""

        counter: Counter[str] = Counter()
        for row in self.invalid_rows:
            for reason in {issue.reason for issue in row.errors}:
                counter[reason] += 1
        return dict(counter.most_common())

    def records_to_insert(self, skip_duplicates: bool = False) -> list[dict[str, Any]]:
        return [
            dict(row.record)
            for row in self.valid_rows
            if not (skip_duplicates and row.is_duplicate)
        ]

    def summary_text(self) -> str:
        parts = [
            f"{self.valid_count} valid",
            f"{self.invalid_count} invalid",
            f"{self.duplicate_count} duplicate",
        ]
        text = f"{self.total_count} rows: " + ", ".join(parts)
        summary = self.error_summary()
        if summary:
            text += ". Errors: " + "; ".join(f"{reason} x{count}" for reason, count in summary.items())
        return text

    def to_frame(self) -> pd.DataFrame:
        """Review table shown to the operator before committing."""

        records = []
        for row in self.rows:
            record = row.record
            records.append(
                {
                    "Row": row.row_number,
                    "Status": row.review_status,
                    "Pile Number": record.get("pile_number") or "",
                    "Pile ID": record.get("pile_id") or "",
                    "Block": record.get("block") or "",
                    "Machine": record.get("machine") or "",
                    "Start Date": record.get("start_date") or "",
                    "Embedment": record.get("embedment"),
                    "Design Embedment": record.get("design_embedment"),
                    "Duration": record.get("duration") or "",
                    "Gain per 30s": record.get("gain_per_30_seconds"),
                    "Errors": "; ".join(issue.describe() for issue in row.errors),
                    "Duplicate Of": row.duplicate_source,
                    "From Lookup": ", ".join(row.enriched_fields),
                }
            )
        return pd.DataFrame(
            records,
            columns=[
                "Row", "Status", "Pile Number", "Pile ID", "Block", "Machine", "Start Date",
                "Embedment", "Design Embedment", "Duration", "Gain per 30s", "Errors",
                "Duplicate Of", "From Lookup",
            ],
        )


def compute_embedment(start_z: float | None, end_z: float | None) -> float | None:
    if start_z is None or end_z is None:
        return None
    return round(start_z - end_z, 4)


def compute_gain_per_30_seconds(embedment: float | None, duration_seconds: int | None) -> float | None:
    """Inches of embedment gained per 30 seconds of driving."""

    if embedment is None or not duration_seconds or duration_seconds <= 0:
        return None
    return round((embedment * 12.0) / (duration_seconds / 30.0), 2)


class DuplicateTracker:
    """Pile-number -> embedments seen so far (existing rows, then earlier file rows)."""

    def __init__(self, existing: pd.DataFrame | None = None):
        self._seen: dict[str, list[tuple[float | None, str]]] = {}
        if existing is not None and not existing.empty:
            for record in existing.to_dict("records"):
                key = normalize_pile_tag(record.get("pile_number"))
                if key:
                    self._seen.setdefault(key, []).append((_opt_float(record.get("embedment")), "existing pile"))

    def check_and_add(self, pile_number: str, embedment: float | None, source: str) -> str:
        """Return the matching source label ('' when new) and remember this row."""

        key = normalize_pile_tag(pile_number)
        match = ""
        for seen_embedment, seen_source in self._seen.get(key, []):
            if _embedments_match(seen_embedment, embedment):
                match = seen_source
                break
        self._seen.setdefault(key, []).append((embedment, source))
        return match


def _opt_float(value: Any) -> float | None:
    try:
        return to_number(value)
    except ValueError:
        return None


def _embedments_match(left: float | None, right: float | None) -> bool:
    if left is None or right is None:
        return left is None and right is None
    return abs(left - right) < DUPLICATE_EMBEDMENT_EPSILON


def normalize_pile_record(
    raw: Mapping[str, Any],
    project_id: str,
    issues: list[RowIssue],
) -> dict[str, Any]:
    record: dict[str, Any] = {"project_id": project_id}

    for name in _IDENTIFIER_FIELDS:
        record[name] = strip_float_suffix(raw.get(name)) or None
    for name in _TEXT_FIELDS:
        record[name] = normalize_text(raw.get(name)) or None

    for name in _NUMERIC_FIELDS:
        try:
            record[name] = to_number(raw.get(name))
        except ValueError:
            record[name] = None
            issues.append(RowIssue(name, REASON_INVALID_NUMBER, normalize_text(raw.get(name))))

    try:
        start_date = parse_date(raw.get("start_date"))
    except ValueError:
        start_date = None
        issues.append(RowIssue("start_date", REASON_INVALID_DATE, normalize_text(raw.get("start_date"))))
    record["start_date"] = start_date.isoformat() if start_date else None
    record["installation_date"] = record["start_date"]

    for name in ("start_time", "stop_time"):
        try:
            record[name] = parse_time(raw.get(name))
        except ValueError:
            record[name] = None
            issues.append(RowIssue(name, REASON_INVALID_TIME, normalize_text(raw.get(name))))

    try:
        seconds = parse_duration_seconds(raw.get("duration"))
    except ValueError:
        seconds = None
        issues.append(RowIssue("duration", REASON_INVALID_DURATION, normalize_text(raw.get("duration"))))
    if seconds is None:
        seconds = seconds_between(record["start_time"], record["stop_time"])
    record["duration_seconds"] = seconds
    record["duration"] = format_duration(seconds) or None

    computed = compute_embedment(record["start_z"], record["end_z"])
    if computed is not None:
        record["embedment"] = computed
    if record["gain_per_30_seconds"] is None:
        record["gain_per_30_seconds"] = compute_gain_per_30_seconds(record["embedment"], seconds)
    return record


def _enrich_from_lookup(record: dict[str, Any], lookup: LookupIndex | None) -> tuple[str, ...]:
    if lookup is None or not len(lookup):
        return ()
    entry = lookup.get(record.get("pile_id")) or lookup.get(record.get("pile_number"))
    if entry is None:
        return ()
    filled: list[str] = []
    for name in _LOOKUP_FILL_FIELDS:
        if record.get(name) not in (None, ""):
            continue
        value = entry.get(name)
        if name == "design_embedment":
            value = _opt_float(value)
        else:
            value = normalize_text(value) or None
        if value is not None:
            record[name] = value
            filled.append(name)
    return tuple(filled)


def build_import_report(
    frame: pd.DataFrame,
    mapping: ColumnMapping,
    *,
    project_id: str,
    lookup: LookupIndex | None = None,
    existing: pd.DataFrame | None = None,
    filename: str = "",
) -> ImportReport:
    """Validate and normalize every row of ``frame`` under ``mapping``."""

    report = ImportReport(project_id=project_id, mapping=mapping, filename=filename)
    tracker = DuplicateTracker(existing)
    generated_counter = 0
    columns = mapping.mapped()

    for row_number, row in frame.iterrows():
        raw = {name: row.get(header) for name, header in columns.items()}
        issues: list[RowIssue] = []
        record = normalize_pile_record(raw, project_id, issues)

        if not (record["pile_id"] or record["pile_number"] or record["block"]):
            issues.insert(0, RowIssue("pile_id", REASON_MISSING_IDENTIFIER, "no Pile ID or Block"))

        enriched = _enrich_from_lookup(record, lookup)

        if not record["pile_number"]:
            if record["pile_id"]:
                record["pile_number"] = record["pile_id"]
            elif record["block"]:
                generated_counter += 1
                record["pile_number"] = f"{record['block']}-{generated_counter}"

        import_row = ImportRow(
            row_number=int(row_number),
            record=record,
            errors=issues,
            enriched_fields=enriched,
        )
        if import_row.is_valid:
            source = tracker.check_and_add(record["pile_number"], record["embedment"], f"row {row_number}")
            import_row.is_duplicate = bool(source)
            import_row.duplicate_source = source
        record["is_duplicate"] = import_row.is_duplicate
        report.rows.append(import_row)

    LOGGER.info(
        "Import validated%s: total=%d valid=%d invalid=%d duplicate=%d enriched=%d",
        f" ({filename})" if filename else "",
        report.total_count,
        report.valid_count,
        report.invalid_count,
        report.duplicate_count,
        report.enriched_count,
    )
    return report


@dataclass
class ImportCommitResult:
    attempted: int = 0
    inserted: int = 0
    skipped_duplicates: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def partial(self) -> bool:
        return self.error is not None and self.inserted > 0

    def message(self) -> str:
        if self.ok:
            text = f"Imported {self.inserted} piles."
        elif self.partial:
            text = f"Imported {self.inserted} of {self.attempted} piles before an error: {self.error}"
        else:
            text = f"Import failed: {self.error}"
        if self.skipped_duplicates:
            text += f" Skipped {self.skipped_duplicates} duplicates."
        return text


def commit_import(
    db: PileDatabase,
    report: ImportReport,
    *,
    batch_size: int = 50,
    skip_duplicates: bool = False,
) -> ImportCommitResult:
    """Insert the report's valid rows in batches; stops at the first failed batch."""

    records = report.records_to_insert(skip_duplicates=skip_duplicates)
    result = ImportCommitResult(
        attempted=len(records),
        skipped_duplicates=report.duplicate_count if skip_duplicates else 0,
    )
    inserted, failures = insert_in_batches(db, PILES_TABLE, records, batch_size, stop_on_error=True)
    result.inserted = inserted
    if failures:
        index, message = failures[0]
        result.error = f"batch {index + 1}: {message}"
    LOGGER.info(
        "Import committed for project %s: inserted=%d attempted=%d error=%s",
        report.project_id,
        inserted,
        len(records),
        result.error,
    )
    return result


def load_existing_pile_keys(db: PileDatabase, project_id: str) -> pd.DataFrame:
    return (
        db.table(PILES_TABLE)
        .select(["pile_number", "embedment"])
        .eq("project_id", project_id)
        .fetch()
    )


class PileImporter:
    """Read -> map -> validate -> commit, bound to one database and config."""

    def __init__(self, db: PileDatabase, config: AppConfig | None = None):
        self._db = db
        self._config = config or AppConfig()

    def read(self, content: bytes, filename: str) -> tuple[pd.DataFrame, ColumnMapping]:
        frame = read_tabular_file(content, filename, patterns=PILE_FIELD_PATTERNS)
        mapping = infer_column_mapping(list(frame.columns))
        return frame, mapping

    def validate(
        self,
        frame: pd.DataFrame,
        mapping: ColumnMapping,
        project_id: str,
        *,
        filename: str = "",
    ) -> ImportReport:
        lookup = load_lookup_index(self._db, project_id)
        existing = load_existing_pile_keys(self._db, project_id)
        return build_import_report(
            frame,
            mapping,
            project_id=project_id,
            lookup=lookup,
            existing=existing,
            filename=filename,
        )

    def commit(self, report: ImportReport, *, skip_duplicates: bool = False) -> ImportCommitResult:
        return commit_import(
            self._db,
            report,
            batch_size=self._config.import_batch_size,
            skip_duplicates=skip_duplicates,
        )

    def run(
        self,
        content: bytes,
        filename: str,
        project_id: str,
        *,
        overrides: Mapping[str, str | int | None] | None = None,
        skip_duplicates: bool = False,
        dry_run: bool = False,
    ) -> tuple[ImportReport, ImportCommitResult | None]:
        frame, mapping = self.read(content, filename)
        if overrides:
            mapping = mapping.with_overrides(overrides)
        report = self.validate(frame, mapping, project_id, filename=filename)
        if dry_run:
            return report, None
        return report, self.commit(report, skip_duplicates=skip_duplicates)


def iter_error_lines(report: ImportReport, limit: int = 20) -> Iterable[str]:
    for row in report.invalid_rows[:limit]:
        yield f"Row {row.row_number}: " + "; ".join(issue.describe() for issue in row.errors)
