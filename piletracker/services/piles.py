"""Single-pile and bulk pile mutations used by the pile list."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from ..database import PileDatabase, delete_in_batches
from ..importer import RowIssue, normalize_pile_record
from ..status import STATUSES


LOGGER = logging.getLogger(__name__)

PILES_TABLE = "piles"
PILE_FORM_FIELDS = (
    "pile_number", "pile_id", "block", "zone", "machine", "pile_type", "pile_size", "start_date",
    "start_time", "stop_time", "duration", "start_z", "end_z", "embedment", "design_embedment", "notes",
)
# derived column -> the form fields it is computed from
_DERIVED_FROM = {
    "duration": ("start_time", "stop_time"),
    "gain_per_30_seconds": ("embedment", "duration", "start_time", "stop_time"),
}


def normalize_pile_form(values: Mapping[str, Any], project_id: str) -> dict[str, Any]:
    """Apply the import normalization to a manually entered pile.

    Raises ``ValueError`` listing every field that failed to parse.
    """

    issues: list[RowIssue] = []
    record = normalize_pile_record(values, project_id, issues)
    if issues:
        raise ValueError("; ".join(issue.describe() for issue in issues))
    if not (record["pile_id"] or record["pile_number"]):
        raise ValueError("Pile ID or pile number is required.")
    record["pile_number"] = record["pile_number"] or record["pile_id"]
    return record


def create_pile(db: PileDatabase, project_id: str, values: Mapping[str, Any]) -> str:
    record = normalize_pile_form(values, project_id)
    if "published" in values:
        record["published"] = bool(values["published"])
    pile_id = db.table(PILES_TABLE).insert(record)[0]
    LOGGER.info("Created pile %s in project %s", record["pile_number"], project_id)
    return pile_id


def get_pile(db: PileDatabase, pile_id: str | None) -> dict[str, Any] | None:
    if not pile_id:
        return None
    return db.table(PILES_TABLE).eq("id", pile_id).first()


def pile_form_values(record: Mapping[str, Any] | None) -> dict[str, Any]:
    """Stored pile -> values for the pile form (blank when ``record`` is None)."""

    record = record or {}
    return {name: record.get(name) for name in PILE_FORM_FIELDS}


def update_pile(db: PileDatabase, pile_id: str, project_id: str, values: Mapping[str, Any]) -> int:
    """Update the fields present in ``values``; every other column keeps its stored value.

    Duration and gain are recomputed when one of their inputs changes and the
    derived value itself was left as stored.
    """

    existing = get_pile(db, pile_id)
    if existing is None:
        raise ValueError(f"Pile '{pile_id}' does not exist.")
    before = normalize_pile_form(existing, project_id)
    merged = {**existing, **values}
    record = normalize_pile_form(merged, project_id)
    changed = {name for name in record if record[name] != before.get(name)}
    stale = [
        derived for derived, inputs in _DERIVED_FROM.items()
        if derived not in changed and changed.intersection(inputs)
    ]
    if stale:
        merged.update({derived: None for derived in stale})
        record = normalize_pile_form(merged, project_id)
    record.pop("project_id", None)
    updated = db.table(PILES_TABLE).eq("id", pile_id).update(record)
    LOGGER.info("Updated pile %s (%s)", pile_id, ", ".join(sorted(changed)) or "no changes")
    return updated


def set_pile_status(db: PileDatabase, pile_id: str, status: str | None) -> int:
    """Set or clear (``None``) the operator status override."""

    if status is not None and status not in STATUSES:
        raise ValueError(f"Unknown pile status '{status}'.")
    return db.table(PILES_TABLE).eq("id", pile_id).update({"pile_status": status})


def update_notes(db: PileDatabase, pile_id: str, notes: str | None) -> int:
    text = (notes or "").strip()
    return db.table(PILES_TABLE).eq("id", pile_id).update({"notes": text or None})


def delete_pile(db: PileDatabase, pile_id: str) -> int:
    return db.table(PILES_TABLE).eq("id", pile_id).delete()


def delete_piles(db: PileDatabase, pile_ids: Iterable[str], batch_size: int = 50) -> int:
    deleted = delete_in_batches(db, PILES_TABLE, [str(pid) for pid in pile_ids], batch_size)
    LOGGER.info("Bulk deleted %d piles", deleted)
    return deleted


def delete_all_piles(db: PileDatabase, project_id: str) -> int:
    deleted = db.table(PILES_TABLE).eq("project_id", project_id).delete()
    LOGGER.warning("Deleted all %d piles for project %s", deleted, project_id)
    return deleted


def set_published(db: PileDatabase, project_id: str, published: bool, pile_ids: Iterable[str] | None = None) -> int:
    """Publish or unpublish the given piles, or every pile in the project."""

    query = db.table(PILES_TABLE).eq("project_id", project_id)
    if pile_ids is not None:
        query = query.in_("id", list(pile_ids))
    return query.update({"published": bool(published)})


__all__ = [
    "PILE_FORM_FIELDS",
    "create_pile",
    "delete_all_piles",
    "delete_pile",
    "delete_piles",
    "get_pile",
    "normalize_pile_form",
    "pile_form_values",
    "set_pile_status",
    "set_published",
    "update_notes",
    "update_pile",
]
