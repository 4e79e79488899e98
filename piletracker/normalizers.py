"""Text, number, date, time and duration normalization for spreadsheet cells."""
from __future__ import annotations

import datetime as dt
import math
import re
from typing import Any

import numpy as np
import pandas as pd

EXCEL_EPOCH = dt.date(1899, 12, 30)
MIN_YEAR = 1900
MAX_YEAR = 2100

_EMPTY_TOKENS = {"", "nan", "none", "null", "nat", "<na>", "n/a", "-"}

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_US_SLASH_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_US_DASH_RE = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")
_YMD_SLASH_RE = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$")
_SERIAL_RE = re.compile(r"^\d{5}(?:\.0+)?$")
_TIME_RE = re.compile(
    r"^(\d{1,2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?\s*([AaPp]\.?[Mm]\.?)?$"
)
_DATETIME_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ](.+)$")
_MIN_SEC_RE = re.compile(
    r"^(?:(\d+(?:\.\d+)?)\s*m(?:in(?:ute)?s?)?)?\s*(?:(\d+(?:\.\d+)?)\s*s(?:ec(?:ond)?s?)?)?$",
    re.IGNORECASE,
)
_NATURAL_SPLIT = re.compile(r"(\d+)")
_THOUSANDS_RE = re.compile(r"^[-+]?\d{1,3}(,\d{3})+(\.\d+)?$")


# --- Text --------------------------------------------------------------------
def is_blank(value: object) -> bool:
    return normalize_text(value) == ""


def normalize_text(value: object) -> str:
    """Return a stripped string, treating NaN/None/'null' style placeholders as empty."""

    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    if value is pd.NaT or value is pd.NA:
        return ""
    text = str(value).replace("\u00a0", " ").strip()
    if text.lower() in _EMPTY_TOKENS:
        return ""
    return text


def strip_float_suffix(value: object) -> str:
    """'12.0' -> '12' for identifiers that spreadsheets turned into floats."""

    text = normalize_text(value)
    if text.endswith(".0") and text[:-2].lstrip("-").isdigit():
        return text[:-2]
    return text


def normalize_header(text: object) -> str:
    if text is None:
        return ""
    s = str(text)
    s = s.replace("\n", " ").replace("\r", " ")
    s = s.replace("_", " ")
    s = re.sub(r"[^\w\s]", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s.lower()


def canonical_key(text: object) -> str:
    return re.sub(r"\s+", "", normalize_header(text))


def normalize_pile_tag(value: object) -> str:
    """Upper-cased, whitespace-collapsed tag used to join piles with lookup rows."""

    text = strip_float_suffix(value)
    return re.sub(r"\s+", " ", text).upper()


def natural_key(value: object) -> tuple:
    """Sort key that orders 'M2' before 'M10'."""

    text = normalize_text(value).lower()
    parts = _NATURAL_SPLIT.split(text)
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts if p != "")


# --- Numbers -----------------------------------------------------------------
def to_number(value: Any) -> float | None:
    """Parse a numeric cell. Blank -> None, junk -> ValueError."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid number: {value!r}")
    if isinstance(value, (int, float, np.integer, np.floating)):
        number = float(value)
        return None if math.isnan(number) else number
    text = normalize_text(value)
    if not text:
        return None
    cleaned = text.replace(" ", "")
    if "," in cleaned:
        # Commas are only accepted as thousands separators.
        if not _THOUSANDS_RE.match(cleaned):
            raise ValueError(f"Invalid number: {text!r}")
        cleaned = cleaned.replace(",", "")
    try:
        number = float(cleaned)
    except ValueError as exc:
        raise ValueError(f"Invalid number: {text!r}") from exc
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"Invalid number: {text!r}")
    return number


# --- Dates -------------------------------------------------------------------
def _checked_date(year: int, month: int, day: int, raw: object) -> dt.date:
    if not (1 <= month <= 12 and 1 <= day <= 31 and MIN_YEAR <= year <= MAX_YEAR):
        raise ValueError(f"Invalid date: {raw!r}")
    try:
        return dt.date(year, month, day)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {raw!r}") from exc


def excel_serial_to_date(serial: float) -> dt.date:
    """Convert an Excel serial day number (1900 date system) to a date."""

    days = int(serial)
    if days < 1:
        raise ValueError(f"Invalid Excel serial date: {serial!r}")
    result = EXCEL_EPOCH + dt.timedelta(days=days)
    if not (MIN_YEAR <= result.year <= MAX_YEAR):
        raise ValueError(f"Invalid Excel serial date: {serial!r}")
    return result


def parse_date(value: Any) -> dt.date | None:
    """Parse ISO, M/D/YYYY, M-D-YYYY, YYYY/M/D, Excel serials and long-form text."""

    if value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        return value.date()
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        if isinstance(value, (float, np.floating)) and math.isnan(value):
            return None
        return excel_serial_to_date(float(value))

    text = normalize_text(value)
    if not text:
        return None

    if _SERIAL_RE.match(text):
        return excel_serial_to_date(float(text))
    match = _ISO_DATE_RE.match(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _checked_date(year, month, day, value)
    match = _US_SLASH_RE.match(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        if year < 100:
            year += 2000
        return _checked_date(year, month, day, value)
    match = _US_DASH_RE.match(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        return _checked_date(year, month, day, value)
    match = _YMD_SLASH_RE.match(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _checked_date(year, month, day, value)

    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        raise ValueError(f"Invalid date: {text!r}")
    return _checked_date(parsed.year, parsed.month, parsed.day, value)


def format_date(value: Any) -> str:
    """ISO text for any parseable date, '' when blank or unparseable."""

    try:
        parsed = parse_date(value)
    except ValueError:
        return ""
    return parsed.isoformat() if parsed else ""


# --- Times -------------------------------------------------------------------
def _format_clock(total_seconds: int) -> str:
    total_seconds %= 86400
    hours, rem = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def parse_time(value: Any) -> str | None:
    """Return 'HH:MM:SS' for clock text, decimal hours or Excel day fractions."""

    if value is pd.NaT:
        return None
    if isinstance(value, dt.time):
        return value.strftime("%H:%M:%S")
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        return value.strftime("%H:%M:%S")
    if isinstance(value, dt.datetime):
        return value.strftime("%H:%M:%S")
    if isinstance(value, (dt.timedelta, pd.Timedelta)):
        return _format_clock(int(pd.Timedelta(value).total_seconds()))
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        return _time_from_number(float(value), value)

    text = normalize_text(value)
    if not text:
        return None
    prefixed = _DATETIME_PREFIX_RE.match(text)
    if prefixed:
        text = prefixed.group(1).strip()

    match = _TIME_RE.match(text)
    if match:
        hours = int(match.group(1))
        minutes = int(match.group(2))
        seconds = int(match.group(3) or 0)
        meridiem = (match.group(4) or "").replace(".", "").lower()
        if minutes > 59 or seconds > 59:
            raise ValueError(f"Invalid time: {text!r}")
        if meridiem:
            if not 1 <= hours <= 12:
                raise ValueError(f"Invalid time: {text!r}")
            if meridiem == "am":
                hours = 0 if hours == 12 else hours
            else:
                hours = hours if hours == 12 else hours + 12
        elif hours > 23:
            raise ValueError(f"Invalid time: {text!r}")
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    try:
        number = float(text)
    except ValueError as exc:
        raise ValueError(f"Invalid time: {text!r}") from exc
    return _time_from_number(number, value)


def _time_from_number(number: float, raw: object) -> str | None:
    if math.isnan(number):
        return None
    if 0 <= number < 1:
        return _format_clock(int(round(number * 86400)))
    if 1 <= number <= 24:
        return _format_clock(int(round(number * 3600)))
    raise ValueError(f"Invalid time: {raw!r}")


def time_to_seconds(value: str) -> int:
    hours, minutes, seconds = (int(part) for part in value.split(":"))
    return hours * 3600 + minutes * 60 + seconds


def seconds_between(start: str | None, stop: str | None) -> int | None:
    """Seconds from start to stop clock time; crossing midnight adds a day."""

    if not start or not stop:
        return None
    diff = time_to_seconds(stop) - time_to_seconds(start)
    if diff < 0:
        diff += 86400
    return diff


def format_time_12h(value: Any) -> str:
    """'13:05:00' -> '1:05 PM'. Blank or unparseable input gives ''."""

    try:
        clock = parse_time(value)
    except ValueError:
        return ""
    if not clock:
        return ""
    hours, minutes, _ = (int(part) for part in clock.split(":"))
    suffix = "AM" if hours < 12 else "PM"
    display = hours % 12 or 12
    return f"{display}:{minutes:02d} {suffix}"


# --- Durations ---------------------------------------------------------------
def parse_duration_seconds(value: Any) -> int | None:
    """Parse drive duration into whole seconds.

    Accepts H:MM:SS, M:SS, "N min M sec", integers (seconds), decimals >= 1
    (minutes), Excel day fractions (< 1) and time/timedelta objects.
    """

    if value is pd.NaT:
        return None
    if isinstance(value, (dt.timedelta, pd.Timedelta)):
        if pd.isna(value):
            return None
        return _non_negative(int(round(pd.Timedelta(value).total_seconds())), value)
    if isinstance(value, dt.time):
        return value.hour * 3600 + value.minute * 60 + value.second
    if isinstance(value, (pd.Timestamp, dt.datetime)):
        if pd.isna(value):
            return None
        return value.hour * 3600 + value.minute * 60 + value.second
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        return _duration_from_number(float(value), value)

    text = normalize_text(value)
    if not text:
        return None

    if ":" in text:
        parts = text.split(":")
        try:
            numbers = [float(part) for part in parts]
        except ValueError as exc:
            raise ValueError(f"Invalid duration: {text!r}") from exc
        if len(numbers) == 3:
            hours, minutes, seconds = numbers
        elif len(numbers) == 2:
            hours, (minutes, seconds) = 0.0, numbers
        else:
            raise ValueError(f"Invalid duration: {text!r}")
        if min(numbers) < 0 or seconds >= 60 or (len(numbers) == 3 and minutes >= 60):
            raise ValueError(f"Invalid duration: {text!r}")
        return int(round(hours * 3600 + minutes * 60 + seconds))

    try:
        number = float(text.replace(",", ""))
    except ValueError:
        match = _MIN_SEC_RE.match(text)
        if not match or not (match.group(1) or match.group(2)):
            raise ValueError(f"Invalid duration: {text!r}")
        minutes = float(match.group(1) or 0)
        seconds = float(match.group(2) or 0)
        return int(round(minutes * 60 + seconds))
    return _duration_from_number(number, value)


def _non_negative(seconds: int, raw: object) -> int:
    if seconds < 0:
        raise ValueError(f"Invalid duration: {raw!r}")
    return seconds


def _duration_from_number(number: float, raw: object) -> int | None:
    if math.isnan(number):
        return None
    if number < 0:
        raise ValueError(f"Invalid duration: {raw!r}")
    if 0 < number < 1:
        return int(round(number * 86400))
    if float(number).is_integer():
        return int(number)
    return int(round(number * 60))


def duration_minutes(value: Any) -> float:
    """Minutes for analytics; unparseable or blank durations count as 0."""

    try:
        seconds = parse_duration_seconds(value)
    except ValueError:
        return 0.0
    return 0.0 if seconds is None else seconds / 60.0


def format_duration(seconds: int | float | None) -> str:
    if seconds is None or (isinstance(seconds, float) and math.isnan(seconds)):
        return ""
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"
