"""Field entry link, its QR code and the submission handler behind it."""
from __future__ import annotations

import base64
import datetime as dt
import logging
from io import BytesIO
from typing import Any, Mapping
from urllib.parse import urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from .database import PileDatabase
from .importer import RowIssue, normalize_pile_record
from .normalizers import normalize_text
from .services.projects import get_project

LOGGER = logging.getLogger(__name__)

PILES_TABLE = "piles"
FIELD_ENTRY_PATH = "/field-entry"
REQUIRED_FIELDS = {
    "inspector_name": "Inspector name",
    "pile_id": "Pile ID",
    "pile_number": "Pile number",
}


def build_field_entry_url(base_url: str, project_id: str) -> str:
    if not project_id:
        raise ValueError("Select a project before generating a field entry link.")
    return f"{base_url.rstrip('/')}{FIELD_ENTRY_PATH}?{urlencode({'project': project_id})}"


def make_qr_svg(data: str, *, box_size: int = 10, border: int = 4) -> bytes:
    """Render ``data`` as an SVG QR code."""

    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(image_factory=SvgPathImage)
    buffer = BytesIO()
    image.save(buffer)
    return buffer.getvalue()


def qr_data_uri(data: str) -> str:
    """SVG QR code as a data URI usable as an ``html.Img`` source."""

    encoded = base64.b64encode(make_qr_svg(data)).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def normalize_field_entry(values: Mapping[str, Any], project_id: str) -> dict[str, Any]:
    """Validate a field submission and return the pile record to insert."""

    missing = [label for name, label in REQUIRED_FIELDS.items() if not normalize_text(values.get(name))]
    if missing:
        raise ValueError("Required: " + ", ".join(missing) + ".")

    raw = dict(values)
    if not normalize_text(raw.get("start_date")):
        raw["start_date"] = dt.date.today().isoformat()
    issues: list[RowIssue] = []
    record = normalize_pile_record(raw, project_id, issues)
    if issues:
        raise ValueError("; ".join(issue.describe() for issue in issues))
    return record


def submit_field_entry(db: PileDatabase, project_id: str, values: Mapping[str, Any]) -> str:
    """Insert a field entry as a pile; returns the new row id."""

    if get_project(db, project_id) is None:
        raise ValueError("Unknown project. Ask for a new field entry link.")
    record = normalize_field_entry(values, project_id)
    pile_id = db.table(PILES_TABLE).insert(record)[0]
    LOGGER.info(
        "Field entry saved: project=%s pile=%s inspector=%s",
        project_id,
        record["pile_number"],
        record["inspector_name"],
    )
    return pile_id
