"""Shared helpers for Dash callback registration."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Iterable, Mapping, Sequence

import dash_bootstrap_components as dbc
import pandas as pd

from .column_mapping import UNMAPPED, ColumnMapping

LOGGER = logging.getLogger(__name__)

TOAST_ICONS = {"success": "success", "error": "danger", "warning": "warning", "info": "primary"}


def decode_upload(contents: str | None, filename: str | None) -> bytes:
    """Decode a ``dcc.Upload`` data URL into raw bytes."""

    if not contents or not filename:
        raise ValueError("No file received.")
    try:
        _, payload = contents.split(",", 1)
        return base64.b64decode(payload)
    except (ValueError, binascii.Error) as exc:
        raise ValueError(f"Could not read '{filename}': {exc}") from exc


def make_toast(message: str, kind: str = "info", header: str | None = None) -> dbc.Toast:
    """Auto-dismissing notification shown in the toast container."""

    icon = TOAST_ICONS.get(kind, "primary")
    return dbc.Toast(
        message,
        header=header or kind.capitalize(),
        icon=icon,
        dismissable=True,
        is_open=True,
        duration=6000 if kind != "error" else 10000,
        style={"minWidth": "320px"},
    )


def ensure_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value if item not in (None, "")]
    return [value] if value != "" else []


def mapping_options(headers: Sequence[str]) -> list[dict[str, str]]:
    options = [{"label": "(not mapped)", "value": UNMAPPED}]
    options.extend({"label": header, "value": header} for header in headers)
    return options


def mapping_rows(mapping: ColumnMapping, labels: Mapping[str, str]) -> list[dict[str, str]]:
    """Rows for the editable mapping table: field label and the chosen column."""

    return [
        {"field": record["field"], "label": record["label"], "column": record["column"] or UNMAPPED}
        for record in mapping.to_records(labels)
    ]


def overrides_from_rows(rows: Iterable[Mapping[str, Any]] | None) -> dict[str, str | None]:
    overrides: dict[str, str | None] = {}
    for row in rows or []:
        name = row.get("field")
        if not name:
            continue
        column = row.get("column")
        overrides[str(name)] = None if column in (None, "", UNMAPPED) else str(column)
    return overrides


def frame_to_records(frame: pd.DataFrame, columns: Sequence[str] | None = None) -> list[dict[str, Any]]:
    """JSON-safe records for a ``DataTable`` (NaN and NaT become None)."""

    if frame.empty:
        return []
    working = frame[list(columns)] if columns else frame
    working = working.astype(object).where(pd.notna(working), None)
    return working.to_dict("records")

