"""Duplicate pile grouping and the operator reconciliation actions."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import pandas as pd

from .database import DatabaseError, PileDatabase
from .normalizers import normalize_pile_tag, normalize_text, to_number

LOGGER = logging.getLogger(__name__)

PILES_TABLE = "piles"

ACTION_DELETE_ALL_BUT_ONE = "delete_all_but_one"
ACTION_KEEP_HIGHEST_EMBEDMENT = "keep_highest_embedment"
ACTION_COMBINE = "combine"
ACTION_DELETE_IDENTICAL = "delete_identical"

ACTION_LABELS = {
    ACTION_DELETE_ALL_BUT_ONE: "Delete all but one",
    ACTION_KEEP_HIGHEST_EMBEDMENT: "Keep highest embedment",
    ACTION_COMBINE: "Combine",
    ACTION_DELETE_IDENTICAL: "Delete identical records",
}


def duplicate_key(row: Any) -> str:
    """Group key: the external pile id, falling back to the pile number."""

    return normalize_pile_tag(row.get("pile_id")) or normalize_pile_tag(row.get("pile_number"))


def _creation_order(frame: pd.DataFrame) -> pd.DataFrame:
    sort_cols = [col for col in ("created_at", "row_seq") if col in frame.columns]
    if not sort_cols:
        return frame
    return frame.sort_values(sort_cols, kind="mergesort", na_position="last")


def duplicate_mask(piles: pd.DataFrame) -> pd.Series:
    """True for rows whose group key occurs more than once."""

    if piles.empty:
        return pd.Series(dtype=bool, index=piles.index)
    keys = piles.apply(duplicate_key, axis=1)
    counts = keys[keys != ""].value_counts()
    return keys.map(lambda key: bool(key) and counts.get(key, 0) > 1).astype(bool)


@dataclass(frozen=True, eq=False)
class DuplicateGroup:
    key: str
    rows: pd.DataFrame  # in creation order

    @property
    def ids(self) -> list[str]:
        return [str(value) for value in self.rows["id"].tolist()]

    @property
    def size(self) -> int:
        return len(self.rows)


def find_duplicate_groups(piles: pd.DataFrame) -> list[DuplicateGroup]:
    if piles.empty:
        return []
    ordered = _creation_order(piles)
    keys = ordered.apply(duplicate_key, axis=1)
    groups: list[DuplicateGroup] = []
    for key, group in ordered.groupby(keys, sort=False):
        if key and len(group) > 1:
            groups.append(DuplicateGroup(key=str(key), rows=group))
    groups.sort(key=lambda g: g.key)
    return groups


@dataclass
class ReconciliationPlan:
    action: str
    deletes: list[str] = field(default_factory=list)
    updates: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.deletes and not self.updates


@dataclass
class ReconciliationOutcome:
    action: str
    deleted: int = 0
    updated: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def message(self) -> str:
        label = ACTION_LABELS.get(self.action, self.action)
        text = f"{label}: deleted {self.deleted}, updated {self.updated}."
        if self.error:
            text += f" Stopped early: {self.error}"
        return text


def _number(value: Any) -> float | None:
    try:
        return to_number(value)
    except ValueError:
        return None


def _unique_sum(values: Iterable[Any]) -> float | None:
    unique: list[float] = []
    for value in values:
        number = _number(value)
        if number is None:
            continue
        rounded = round(number, 4)
        if rounded not in unique:
            unique.append(rounded)
    return round(sum(unique), 4) if unique else None


def _plan_keep(group: DuplicateGroup, keeper_id: str, plan: ReconciliationPlan) -> None:
    plan.deletes.extend(pid for pid in group.ids if pid != keeper_id)
    plan.updates.append((keeper_id, {"is_duplicate": False}))


def _highest_embedment_id(group: DuplicateGroup) -> str:
    best_id = group.ids[0]
    best_value: float | None = None
    for record in group.rows.to_dict("records"):
        value = _number(record.get("embedment"))
        if value is not None and (best_value is None or value > best_value):
            best_value = value
            best_id = str(record["id"])
    return best_id


def _combine_values(group: DuplicateGroup) -> dict[str, Any]:
    records = group.rows.to_dict("records")
    dates = sorted({normalize_text(record.get("start_date")) for record in records} - {""})
    return {
        "embedment": _unique_sum(record.get("embedment") for record in records),
        "gain_per_30_seconds": _unique_sum(record.get("gain_per_30_seconds") for record in records),
        "combined_start_date": dates[0] if dates else None,
        "combined_end_date": dates[-1] if dates else None,
        "combined_pile_ids": json.dumps(group.ids),
        "is_combined": True,
        "is_duplicate": False,
    }


def _identical_ids(group: DuplicateGroup) -> list[str]:
    seen: set[tuple[Any, Any, str]] = set()
    extras: list[str] = []
    for record in group.rows.to_dict("records"):
        emb = _number(record.get("embedment"))
        gain = _number(record.get("gain_per_30_seconds"))
        signature = (
            None if emb is None else round(emb, 4),
            None if gain is None else round(gain, 4),
            normalize_text(record.get("start_time")),
        )
        if signature in seen:
            extras.append(str(record["id"]))
        else:
            seen.add(signature)
    return extras


def plan_reconciliation(groups: Sequence[DuplicateGroup], action: str) -> ReconciliationPlan:
    """Translate an operator action into row deletes and keeper updates."""

    if action not in ACTION_LABELS:
        raise ValueError(f"Unknown duplicate action '{action}'.")
    plan = ReconciliationPlan(action=action)
    for group in groups:
        if group.size < 2:
            continue
        if action == ACTION_DELETE_ALL_BUT_ONE:
            _plan_keep(group, group.ids[0], plan)
        elif action == ACTION_KEEP_HIGHEST_EMBEDMENT:
            _plan_keep(group, _highest_embedment_id(group), plan)
        elif action == ACTION_COMBINE:
            keeper = group.ids[0]
            plan.deletes.extend(group.ids[1:])
            plan.updates.append((keeper, _combine_values(group)))
        else:
            plan.deletes.extend(_identical_ids(group))
    return plan


def apply_reconciliation(
    db: PileDatabase,
    plan: ReconciliationPlan,
    *,
    batch_size: int = 50,
) -> ReconciliationOutcome:
    """Run keeper updates first, then batched deletes.

    There is no transaction across batches: on failure the outcome reports how
    far it got and the error, and earlier writes stay applied.
    """

    outcome = ReconciliationOutcome(action=plan.action)
    try:
        for pile_id, values in plan.updates:
            outcome.updated += db.table(PILES_TABLE).eq("id", pile_id).update(values)
        size = max(1, int(batch_size))
        for start in range(0, len(plan.deletes), size):
            batch = plan.deletes[start : start + size]
            outcome.deleted += db.table(PILES_TABLE).in_("id", batch).delete()
    except DatabaseError as exc:
        LOGGER.error("Duplicate reconciliation '%s' stopped: %s", plan.action, exc)
        outcome.error = str(exc)
    LOGGER.info(
        "Duplicate reconciliation '%s': deleted=%d updated=%d",
        plan.action,
        outcome.deleted,
        outcome.updated,
    )
    return outcome


def reconcile_duplicates(
    db: PileDatabase,
    piles: pd.DataFrame,
    action: str,
    *,
    keys: Sequence[str] | None = None,
    batch_size: int = 50,
) -> ReconciliationOutcome:
    """Group ``piles``, optionally restrict to ``keys`` and apply ``action``."""

    groups = find_duplicate_groups(piles)
    if keys is not None:
        wanted = {normalize_pile_tag(key) for key in keys}
        groups = [group for group in groups if group.key in wanted]
    plan = plan_reconciliation(groups, action)
    if plan.is_empty:
        return ReconciliationOutcome(action=action)
    return apply_reconciliation(db, plan, batch_size=batch_size)
