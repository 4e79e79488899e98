"""Computation helpers for pile status and machine production metrics."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from .duplicates import duplicate_mask
from .normalizers import duration_minutes, format_date, natural_key, normalize_text, strip_float_suffix
from .status import (
    STATUS_ACCEPTED,
    STATUS_MISSING,
    STATUS_NA,
    STATUS_REFUSAL,
    STATUS_TOLERANCE,
    STATUSES,
    classify_frame,
    display_status,
    drive_time_class,
    is_low_gain,
)

LOGGER = logging.getLogger(__name__)

INVALID_MACHINE_IDS = {"", "unknown", "null", "undefined", "none", "nan"}
TOP_MACHINE_LIMIT = 10

MACHINE_SORT_KEYS = (
    "machine",
    "total_piles",
    "accepted_percent",
    "refusal_percent",
    "average_drive_time",
    "average_embedment",
)


def _drive_minutes(frame: pd.DataFrame) -> pd.Series:
    seconds = pd.to_numeric(frame.get("duration_seconds", pd.Series(np.nan, index=frame.index)), errors="coerce")
    minutes = seconds / 60.0
    if "duration" in frame.columns:
        missing = minutes.isna()
        if missing.any():
            minutes.loc[missing] = frame.loc[missing, "duration"].map(duration_minutes)
    return minutes.fillna(0.0)


def prepare_piles(
    piles: pd.DataFrame,
    tolerance: float = 1.0,
    *,
    slow_threshold_minutes: float = 10.0,
    low_gain_threshold: float = 6.0,
) -> pd.DataFrame:
    """Add derived columns used by every view.

    status         derived from embedment vs design (analytics always use this)
    display_status operator override when set, else status
    drive_minutes  minutes from duration_seconds or the duration text (0 when unknown)
    is_low_gain    gain per 30 s below ``low_gain_threshold`` (False when no gain)
    start_day      ISO date text or ''
    has_duplicates pile id/number occurs more than once in the frame
    """

    if piles.empty:
        extra = [
            "status", "display_status", "drive_minutes", "drive_time_rating", "is_slow",
            "is_low_gain", "start_day", "has_duplicates",
        ]
        return piles.reindex(columns=list(piles.columns) + [c for c in extra if c not in piles.columns])

    working = piles.copy()
    working["status"] = classify_frame(working, tolerance)
    if "pile_status" in working.columns:
        working["display_status"] = [
            display_status(override, derived)
            for override, derived in zip(working["pile_status"], working["status"])
        ]
    else:
        working["display_status"] = working["status"]
    working["drive_minutes"] = _drive_minutes(working)
    has_time = pd.Series(False, index=working.index)
    for col in ("duration_seconds", "duration"):
        if col in working.columns:
            has_time |= working[col].map(lambda v: normalize_text(v) != "")
    working["drive_time_rating"] = [
        drive_time_class(minutes) if timed else ""
        for minutes, timed in zip(working["drive_minutes"], has_time)
    ]
    working["is_slow"] = working["drive_minutes"] > float(slow_threshold_minutes)
    if "gain_per_30_seconds" in working.columns:
        working["is_low_gain"] = working["gain_per_30_seconds"].map(
            lambda gain: is_low_gain(gain, float(low_gain_threshold))
        ).astype(bool)
    else:
        working["is_low_gain"] = False
    working["start_day"] = (
        working["start_date"].map(format_date) if "start_date" in working.columns else ""
    )
    working["has_duplicates"] = duplicate_mask(working)
    return working


def status_counts(prepared: pd.DataFrame, column: str = "status") -> dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    if not prepared.empty and column in prepared.columns:
        for status, count in prepared[column].value_counts().items():
            counts[str(status)] = int(count)
    counts["total"] = int(len(prepared))
    return counts


def status_percentages(counts: dict[str, int]) -> dict[str, float]:
    total = counts.get("total", 0)
    return {
        status: (counts.get(status, 0) / total * 100.0) if total else 0.0
        for status in STATUSES
    }


def clean_machine_id(value: object) -> str:
    text = strip_float_suffix(value)
    return "" if text.lower() in INVALID_MACHINE_IDS else text


@dataclass
class MachineSummary:
    """Per-machine production rollup."""

    machine: str
    total_piles: int = 0
    accepted: int = 0
    tolerance: int = 0
    refusal: int = 0
    missing: int = 0
    not_applicable: int = 0
    slow_drive_count: int = 0
    low_gain_count: int = 0
    total_duration_minutes: float = 0.0
    average_drive_time: float = 0.0
    average_embedment: float = 0.0
    piles_per_block: dict[str, int] = field(default_factory=dict)
    piles_per_date: dict[str, int] = field(default_factory=dict)
    first_date: str = ""
    last_date: str = ""

    def _percent(self, count: int) -> float:
        return (count / self.total_piles * 100.0) if self.total_piles else 0.0

    @property
    def accepted_percent(self) -> float:
        return self._percent(self.accepted)

    @property
    def tolerance_percent(self) -> float:
        return self._percent(self.tolerance)

    @property
    def refusal_percent(self) -> float:
        return self._percent(self.refusal)

    @property
    def has_performance_issues(self) -> bool:
        return self.refusal > 0 or self.slow_drive_count > 0

    @property
    def active_days(self) -> int:
        return len(self.piles_per_date)

    @property
    def piles_per_day(self) -> float:
        return self.total_piles / self.active_days if self.active_days else 0.0

    def to_row(self) -> dict[str, object]:
        return {
            "machine": self.machine,
            "total_piles": self.total_piles,
            "accepted": self.accepted,
            "tolerance": self.tolerance,
            "refusal": self.refusal,
            "missing": self.missing,
            "accepted_percent": round(self.accepted_percent, 1),
            "refusal_percent": round(self.refusal_percent, 1),
            "slow_drive_count": self.slow_drive_count,
            "low_gain_count": self.low_gain_count,
            "average_drive_time": round(self.average_drive_time, 2),
            "average_embedment": round(self.average_embedment, 2),
            "total_duration_minutes": round(self.total_duration_minutes, 1),
            "active_days": self.active_days,
            "piles_per_day": round(self.piles_per_day, 1),
            "blocks": len(self.piles_per_block),
            "first_date": self.first_date,
            "last_date": self.last_date,
        }


MACHINE_COLUMNS = list(MachineSummary(machine="").to_row().keys())


def summarize_machines(prepared: pd.DataFrame) -> list[MachineSummary]:
    """Roll prepared pile rows up per machine; rows without a valid machine are ignored."""

    if prepared.empty or "machine" not in prepared.columns:
        return []
    working = prepared.assign(_machine=prepared["machine"].map(clean_machine_id))
    working = working.loc[working["_machine"] != ""]
    summaries: list[MachineSummary] = []
    for machine, group in working.groupby("_machine", sort=False):
        statuses = group["status"].value_counts()
        embedments = pd.to_numeric(group.get("embedment"), errors="coerce").dropna()
        total_minutes = float(group["drive_minutes"].sum())
        days = group["start_day"][group["start_day"] != ""]
        blocks = group["block"].map(strip_float_suffix) if "block" in group.columns else pd.Series(dtype=str)
        blocks = blocks[blocks != ""]
        summary = MachineSummary(
            machine=str(machine),
            total_piles=int(len(group)),
            accepted=int(statuses.get(STATUS_ACCEPTED, 0)),
            tolerance=int(statuses.get(STATUS_TOLERANCE, 0)),
            refusal=int(statuses.get(STATUS_REFUSAL, 0)),
            missing=int(statuses.get(STATUS_MISSING, 0)),
            not_applicable=int(statuses.get(STATUS_NA, 0)),
            slow_drive_count=int(group["is_slow"].sum()),
            low_gain_count=int(group["is_low_gain"].sum()),
            total_duration_minutes=total_minutes,
            average_drive_time=total_minutes / len(group),
            average_embedment=float(embedments.mean()) if not embedments.empty else 0.0,
            piles_per_block={str(k): int(v) for k, v in blocks.value_counts().items()},
            piles_per_date={str(k): int(v) for k, v in days.value_counts().sort_index().items()},
            first_date=str(days.min()) if not days.empty else "",
            last_date=str(days.max()) if not days.empty else "",
        )
        summaries.append(summary)
    return sort_machines(summaries, "total_piles", descending=True)


def machines_frame(summaries: Sequence[MachineSummary]) -> pd.DataFrame:
    return pd.DataFrame([s.to_row() for s in summaries], columns=MACHINE_COLUMNS)


def filter_machines(
    summaries: Iterable[MachineSummary],
    *,
    search: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    performance_only: bool = False,
) -> list[MachineSummary]:
    """Search by machine id, keep machines active within the date range, optionally only problem machines."""

    needle = normalize_text(search).lower()
    start = format_date(start_date) or None
    end = format_date(end_date) or None
    result: list[MachineSummary] = []
    for summary in summaries:
        if needle and needle not in summary.machine.lower():
            continue
        if start or end:
            in_range = [
                day for day in summary.piles_per_date
                if (start is None or day >= start) and (end is None or day <= end)
            ]
            if not in_range:
                continue
        if performance_only and not summary.has_performance_issues:
            continue
        result.append(summary)
    return result


def sort_machines(
    summaries: Iterable[MachineSummary],
    key: str = "total_piles",
    descending: bool = True,
) -> list[MachineSummary]:
    if key not in MACHINE_SORT_KEYS:
        raise ValueError(f"Unknown machine sort key '{key}'.")
    if key == "machine":
        return sorted(summaries, key=lambda s: natural_key(s.machine), reverse=descending)
    return sorted(summaries, key=lambda s: (getattr(s, key), natural_key(s.machine)), reverse=descending)


def top_machines(summaries: Sequence[MachineSummary], limit: int = TOP_MACHINE_LIMIT) -> pd.DataFrame:
    """Chart data: busiest machines with status rates and efficiency (accepted %)."""

    ranked = sort_machines(summaries, "total_piles", descending=True)[:limit]
    return pd.DataFrame(
        [
            {
                "machine": s.machine,
                "total_piles": s.total_piles,
                "accepted_rate": round(s.accepted_percent, 1),
                "tolerance_rate": round(s.tolerance_percent, 1),
                "refusal_rate": round(s.refusal_percent, 1),
                "efficiency": round(s.accepted_percent, 1),
                "average_drive_time": round(s.average_drive_time, 2),
            }
            for s in ranked
        ],
        columns=[
            "machine", "total_piles", "accepted_rate", "tolerance_rate",
            "refusal_rate", "efficiency", "average_drive_time",
        ],
    )


def daily_production(prepared: pd.DataFrame, machine: str | None = None) -> pd.DataFrame:
    """Piles per day with status split, oldest first. ``machine`` narrows to one machine."""

    columns = ["date", "piles", "accepted", "tolerance", "refusal", "machines", "average_drive_time"]
    if prepared.empty:
        return pd.DataFrame(columns=columns)
    working = prepared.loc[prepared["start_day"] != ""]
    if machine is not None and "machine" in working.columns:
        working = working.loc[working["machine"].map(clean_machine_id) == machine]
    if working.empty:
        return pd.DataFrame(columns=columns)
    machine_col = working["machine"].map(clean_machine_id) if "machine" in working.columns else pd.Series("", index=working.index)
    grouped = working.assign(_machine=machine_col).groupby("start_day")
    frame = pd.DataFrame(
        {
            "piles": grouped.size(),
            "accepted": grouped["status"].apply(lambda s: int((s == STATUS_ACCEPTED).sum())),
            "tolerance": grouped["status"].apply(lambda s: int((s == STATUS_TOLERANCE).sum())),
            "refusal": grouped["status"].apply(lambda s: int((s == STATUS_REFUSAL).sum())),
            "machines": grouped["_machine"].apply(lambda s: int(s[s != ""].nunique())),
            "average_drive_time": grouped["drive_minutes"].mean().round(2),
        }
    )
    frame = frame.reset_index().rename(columns={"start_day": "date"}).sort_values("date")
    return frame[columns].reset_index(drop=True)


def machine_daily_breakdown(prepared: pd.DataFrame, machine: str) -> pd.DataFrame:
    """Daily rows for one machine, most recent first."""

    daily = daily_production(prepared, machine=machine)
    return daily.sort_values("date", ascending=False).reset_index(drop=True)


def summarize_groups(prepared: pd.DataFrame, by: str = "block") -> pd.DataFrame:
    """Block (or pile type) rollup: counts by status, slow drives, averages."""

    columns = [
        by, "total_piles", "accepted", "tolerance", "refusal", "missing",
        "slow_drive_count", "low_gain_count", "average_drive_time", "average_embedment", "design_embedment",
        "refusal_percent",
    ]
    if prepared.empty or by not in prepared.columns:
        return pd.DataFrame(columns=columns)
    working = prepared.assign(_group=prepared[by].map(strip_float_suffix).replace("", "Unassigned"))
    rows = []
    for key, group in working.groupby("_group", sort=False):
        statuses = group["status"].value_counts()
        embedments = pd.to_numeric(group.get("embedment"), errors="coerce").dropna()
        designs = pd.to_numeric(group.get("design_embedment"), errors="coerce").dropna()
        total = int(len(group))
        refusal = int(statuses.get(STATUS_REFUSAL, 0))
        rows.append(
            {
                by: key,
                "total_piles": total,
                "accepted": int(statuses.get(STATUS_ACCEPTED, 0)),
                "tolerance": int(statuses.get(STATUS_TOLERANCE, 0)),
                "refusal": refusal,
                "missing": int(statuses.get(STATUS_MISSING, 0)),
                "slow_drive_count": int(group["is_slow"].sum()),
                "low_gain_count": int(group["is_low_gain"].sum()),
                "average_drive_time": round(float(group["drive_minutes"].mean()), 2),
                "average_embedment": round(float(embedments.mean()), 2) if not embedments.empty else 0.0,
                "design_embedment": round(float(designs.mean()), 2) if not designs.empty else None,
                "refusal_percent": round(refusal / total * 100.0, 1) if total else 0.0,
            }
        )
    frame = pd.DataFrame(rows, columns=columns)
    order = sorted(range(len(frame)), key=lambda i: natural_key(frame.iloc[i][by]))
    return frame.iloc[order].reset_index(drop=True)


def production_overview(prepared: pd.DataFrame, summaries: Sequence[MachineSummary]) -> dict[str, float]:
    """Headline numbers for the production page."""

    counts = status_counts(prepared)
    days = prepared["start_day"][prepared["start_day"] != ""].nunique() if not prepared.empty else 0
    total = counts["total"]
    return {
        "total_piles": total,
        "machines": len(summaries),
        "active_days": int(days),
        "piles_per_day": round(total / days, 1) if days else 0.0,
        "accepted_percent": round(counts[STATUS_ACCEPTED] / total * 100.0, 1) if total else 0.0,
        "refusal_percent": round(counts[STATUS_REFUSAL] / total * 100.0, 1) if total else 0.0,
        "slow_drives": int(prepared["is_slow"].sum()) if not prepared.empty else 0,
        "low_gain_piles": int(prepared["is_low_gain"].sum()) if not prepared.empty else 0,
        "average_drive_time": round(float(prepared["drive_minutes"].mean()), 2) if not prepared.empty else 0.0,
    }
