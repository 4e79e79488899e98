"""Pile list filtering, ordering and pagination."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import pandas as pd

from .duplicates import duplicate_key
from .normalizers import format_date, natural_key, normalize_text, strip_float_suffix
from .status import STATUSES

LOGGER = logging.getLogger(__name__)

SEARCH_COLUMNS = (
    "pile_number",
    "pile_id",
    "zone",
    "block",
    "pile_type",
    "pile_size",
    "pile_color",
    "notes",
)


@dataclass
class PileFilters:
    """Selections from the pile list toolbar."""

    statuses: List[str] = field(default_factory=list)
    blocks: List[str] = field(default_factory=list)
    start_date: str | None = None
    end_date: str | None = None
    duplicates_only: bool = False
    search: str = ""

    def describe(self) -> Dict[str, str]:
        """Human readable active filters, used in report headers."""

        active: Dict[str, str] = {}
        if self.statuses:
            active["Status"] = ", ".join(self.statuses)
        if self.blocks:
            active["Block"] = ", ".join(self.blocks)
        if self.start_date or self.end_date:
            active["Dates"] = f"{self.start_date or '...'} to {self.end_date or '...'}"
        if self.duplicates_only:
            active["Duplicates"] = "only"
        if normalize_text(self.search):
            active["Search"] = normalize_text(self.search)
        return active


def apply_pile_filters(prepared: pd.DataFrame, filters: PileFilters) -> pd.DataFrame:
    """Filter a frame produced by ``metrics.prepare_piles``."""

    filtered = prepared
    if filtered.empty:
        return filtered

    statuses = [status for status in filters.statuses if status in STATUSES]
    if statuses:
        filtered = filtered[filtered["display_status"].isin(statuses)]

    if filters.blocks and "block" in filtered.columns:
        wanted = {strip_float_suffix(block) for block in filters.blocks}
        filtered = filtered[filtered["block"].map(strip_float_suffix).isin(wanted)]

    start = format_date(filters.start_date)
    end = format_date(filters.end_date)
    if start or end:
        days = filtered["start_day"]
        keep = days != ""
        if start:
            keep &= days >= start
        if end:
            keep &= days <= end
        filtered = filtered[keep]

    if filters.duplicates_only:
        filtered = filtered[filtered["has_duplicates"]]

    needle = normalize_text(filters.search).lower()
    if needle:
        columns = [col for col in SEARCH_COLUMNS if col in filtered.columns]
        haystack = pd.Series("", index=filtered.index)
        for col in columns:
            haystack = haystack + " " + filtered[col].map(normalize_text).str.lower()
        filtered = filtered[haystack.str.contains(needle, regex=False)]

    LOGGER.debug("Pile filters kept %d of %d rows (%s)", len(filtered), len(prepared), filters.describe())
    return filtered


def sort_and_group_duplicates(prepared: pd.DataFrame) -> pd.DataFrame:
    """Duplicate groups first (grouped by pile id), then everything else by pile number."""

    if prepared.empty:
        return prepared
    keys = prepared.apply(duplicate_key, axis=1)
    numbers = prepared["pile_number"] if "pile_number" in prepared.columns else keys
    seq = prepared["row_seq"] if "row_seq" in prepared.columns else pd.Series(range(len(prepared)), index=prepared.index)
    order = sorted(
        prepared.index,
        key=lambda idx: (
            0 if bool(prepared.at[idx, "has_duplicates"]) else 1,
            natural_key(keys[idx]) if prepared.at[idx, "has_duplicates"] else natural_key(numbers[idx]),
            seq[idx],
        ),
    )
    return prepared.loc[order]


def piles_with_notes(prepared: pd.DataFrame) -> pd.DataFrame:
    """Piles carrying a field note, newest install day first."""

    if prepared.empty or "notes" not in prepared.columns:
        return prepared.iloc[0:0]
    noted = prepared[prepared["notes"].map(normalize_text) != ""]
    if "start_day" in noted.columns:
        noted = noted.sort_values("start_day", ascending=False, kind="mergesort")
    return noted


def page_count(total_rows: int, page_size: int = 50) -> int:
    return max(1, -(-int(total_rows) // max(1, int(page_size))))


def paginate(frame: pd.DataFrame, page: int, page_size: int = 50) -> pd.DataFrame:
    """Return the 1-based ``page``; out-of-range pages clamp to the last page."""

    pages = page_count(len(frame), page_size)
    current = min(max(1, int(page or 1)), pages)
    start = (current - 1) * page_size
    return frame.iloc[start : start + page_size]


def unique_blocks(piles: pd.DataFrame) -> List[str]:
    if piles.empty or "block" not in piles.columns:
        return []
    blocks = {strip_float_suffix(value) for value in piles["block"]}
    blocks.discard("")
    return sorted(blocks, key=natural_key)


def filter_options(values: Sequence[str]) -> List[Dict[str, str]]:
    return [{"label": value, "value": value} for value in values]
