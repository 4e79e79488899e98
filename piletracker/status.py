"""Pile status classification and drive-time ratings."""
from __future__ import annotations

import math
from typing import Any

import numpy as np
import pandas as pd

from .normalizers import normalize_text

STATUS_ACCEPTED = "accepted"
STATUS_TOLERANCE = "tolerance"
STATUS_REFUSAL = "refusal"
STATUS_MISSING = "missing"
STATUS_NA = "n/a"

STATUSES = (STATUS_ACCEPTED, STATUS_TOLERANCE, STATUS_REFUSAL, STATUS_MISSING, STATUS_NA)
STATUS_LABELS = {
    STATUS_ACCEPTED: "Accepted",
    STATUS_TOLERANCE: "Tolerance",
    STATUS_REFUSAL: "Refusal",
    STATUS_MISSING: "Missing",
    STATUS_NA: "N/A",
}
STATUS_COLORS = {
    STATUS_ACCEPTED: "#2E7D32",
    STATUS_TOLERANCE: "#F9A825",
    STATUS_REFUSAL: "#C62828",
    STATUS_MISSING: "#90A4AE",
    STATUS_NA: "#CFD8DC",
}

DRIVE_OPTIMAL = "Optimal"
DRIVE_SUBOPTIMAL = "Suboptimal"
DRIVE_BAD = "Bad"
OPTIMAL_DRIVE_MINUTES = 5.0
SUBOPTIMAL_DRIVE_MINUTES = 10.0


def _as_float(value: Any) -> float | None:
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def classify_pile_status(embedment: Any, design_embedment: Any, tolerance: float = 1.0) -> str:
    """Compare actual against design embedment.

    accepted  : embedment >= design
    tolerance : design - tolerance <= embedment < design
    refusal   : embedment < design - tolerance
    missing   : no actual embedment recorded
    n/a       : no design embedment to compare against
    """

    actual = _as_float(embedment)
    if actual is None:
        return STATUS_MISSING
    design = _as_float(design_embedment)
    if design is None:
        return STATUS_NA
    if actual >= design:
        return STATUS_ACCEPTED
    if actual >= design - float(tolerance):
        return STATUS_TOLERANCE
    return STATUS_REFUSAL


def classify_frame(frame: pd.DataFrame, tolerance: float = 1.0) -> pd.Series:
    """Vectorised ``classify_pile_status`` over a pile frame."""

    if frame.empty:
        return pd.Series(dtype="object", index=frame.index)
    empty = pd.Series(np.nan, index=frame.index)
    actual = pd.to_numeric(frame.get("embedment", empty), errors="coerce")
    design = pd.to_numeric(frame.get("design_embedment", empty), errors="coerce")
    result = np.select(
        [
            actual.isna(),
            design.isna(),
            actual >= design,
            actual >= design - float(tolerance),
        ],
        [STATUS_MISSING, STATUS_NA, STATUS_ACCEPTED, STATUS_TOLERANCE],
        default=STATUS_REFUSAL,
    )
    return pd.Series(result, index=frame.index, dtype="object")


def display_status(override: Any, derived: str) -> str:
    """An operator-set ``pile_status`` wins for display when it names a known status."""

    text = normalize_text(override).lower()
    return text if text in STATUSES else derived


def drive_time_class(minutes: Any) -> str:
    value = _as_float(minutes)
    if value is None:
        return ""
    if value <= OPTIMAL_DRIVE_MINUTES:
        return DRIVE_OPTIMAL
    if value <= SUBOPTIMAL_DRIVE_MINUTES:
        return DRIVE_SUBOPTIMAL
    return DRIVE_BAD


def is_slow_drive(minutes: Any, threshold_minutes: float = 10.0) -> bool:
    value = _as_float(minutes)
    return value is not None and value > threshold_minutes


def is_low_gain(gain: Any, threshold: float = 6.0) -> bool:
    value = _as_float(gain)
    return value is not None and value < threshold
