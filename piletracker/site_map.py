"""Pile plot positions joined with installed piles for the site map tab."""
from __future__ import annotations

import logging
from typing import Iterable

import pandas as pd

from .normalizers import normalize_pile_tag, normalize_text, strip_float_suffix
from .status import STATUS_ACCEPTED, STATUS_REFUSAL, STATUS_TOLERANCE

LOGGER = logging.getLogger(__name__)

STATUS_PENDING = "pending"
MAP_STATUSES = (STATUS_ACCEPTED, STATUS_TOLERANCE, STATUS_REFUSAL, STATUS_PENDING)
MAP_STATUS_LABELS = {
    STATUS_ACCEPTED: "Accepted",
    STATUS_TOLERANCE: "Tolerance",
    STATUS_REFUSAL: "Refusal",
    STATUS_PENDING: "Pending",
}
MAP_STATUS_COLORS = {
    STATUS_ACCEPTED: "#10B981",
    STATUS_TOLERANCE: "#6366F1",
    STATUS_REFUSAL: "#F59E0B",
    STATUS_PENDING: "#9CA3AF",
}
MAP_COLUMNS = [
    "pile_tag", "northing", "easting", "status", "block", "pile_type",
    "embedment", "design_embedment", "start_day", "pile_record_id",
]


def _installed_by_tag(prepared: pd.DataFrame) -> tuple[dict[str, dict], dict[str, dict]]:
    # later rows overwrite earlier ones, so the most recent record of a tag wins
    by_id: dict[str, dict] = {}
    by_number: dict[str, dict] = {}
    if prepared.empty:
        return by_id, by_number
    for record in prepared.to_dict("records"):
        pile_id = normalize_pile_tag(record.get("pile_id"))
        if pile_id:
            by_id[pile_id] = record
        pile_number = normalize_pile_tag(record.get("pile_number"))
        if pile_number:
            by_number[pile_number] = record
    return by_id, by_number


def _number(*values: object) -> float | None:
    for value in values:
        if value is None:
            continue
        number = pd.to_numeric(value, errors="coerce")
        if not pd.isna(number):
            return float(number)
    return None


def _map_status(record: dict | None) -> str:
    if record is None:
        return STATUS_PENDING
    status = record.get("display_status") or record.get("status")
    return status if status in MAP_STATUSES else STATUS_PENDING


def build_site_map_frame(lookup: pd.DataFrame, prepared: pd.DataFrame) -> pd.DataFrame:
    """One point per pile plot tag with coordinates, coloured by its installed pile.

    Points take the displayed status (operator override, else derived). Tags
    with no installed pile, or whose pile is missing or n/a, are ``pending``.
    Coordinates are plotted as plain planar easting/northing.
    """

    if lookup.empty or not {"northing", "easting"}.issubset(lookup.columns):
        return pd.DataFrame(columns=MAP_COLUMNS)
    coords = lookup.assign(
        northing=pd.to_numeric(lookup["northing"], errors="coerce"),
        easting=pd.to_numeric(lookup["easting"], errors="coerce"),
    ).dropna(subset=["northing", "easting"])
    by_id, by_number = _installed_by_tag(prepared)

    rows = []
    for entry in coords.to_dict("records"):
        tag = normalize_pile_tag(entry.get("pile_tag"))
        if not tag:
            continue
        pile = by_id.get(tag) or by_number.get(tag)
        installed = pile or {}
        rows.append(
            {
                "pile_tag": normalize_text(entry.get("pile_tag")),
                "northing": float(entry["northing"]),
                "easting": float(entry["easting"]),
                "status": _map_status(pile),
                "block": strip_float_suffix(installed.get("block")) or strip_float_suffix(entry.get("block")),
                "pile_type": normalize_text(installed.get("pile_type")) or normalize_text(entry.get("pile_type")),
                "embedment": _number(installed.get("embedment")),
                "design_embedment": _number(installed.get("design_embedment"), entry.get("design_embedment")),
                "start_day": normalize_text(installed.get("start_day")),
                "pile_record_id": installed.get("id"),
            }
        )
    LOGGER.debug("Site map: %d of %d lookup rows have coordinates", len(rows), len(lookup))
    return pd.DataFrame(rows, columns=MAP_COLUMNS)


def filter_site_map(
    frame: pd.DataFrame,
    statuses: Iterable[str] | None = None,
    blocks: Iterable[str] | None = None,
) -> pd.DataFrame:
    statuses = [s for s in (statuses or []) if s]
    blocks = [strip_float_suffix(b) for b in (blocks or []) if normalize_text(b)]
    if frame.empty:
        return frame
    mask = pd.Series(True, index=frame.index)
    if statuses:
        mask &= frame["status"].isin(statuses)
    if blocks:
        mask &= frame["block"].isin(blocks)
    return frame.loc[mask]


def site_map_counts(frame: pd.DataFrame) -> dict[str, int]:
    counts = {status: 0 for status in MAP_STATUSES}
    if not frame.empty:
        for status, count in frame["status"].value_counts().items():
            counts[str(status)] = int(count)
    return counts


__all__ = [
    "MAP_STATUSES",
    "MAP_STATUS_COLORS",
    "MAP_STATUS_LABELS",
    "STATUS_PENDING",
    "build_site_map_frame",
    "filter_site_map",
    "site_map_counts",
]
