"""
Unit tests for piletracker/field_entry.py
"""

import base64
import datetime as dt

import pytest

from piletracker.field_entry import (
    build_field_entry_url,
    make_qr_svg,
    normalize_field_entry,
    qr_data_uri,
    submit_field_entry,
)

FORM = {"inspector_name": "Dana", "pile_id": "A7", "pile_number": "P-7", "start_z": "100", "end_z": "91"}


@pytest.mark.unit
class TestLink:
    def test_url_carries_project(self):
        url = build_field_entry_url("https://piles.example.com/", "abc 1")
        assert url == "https://piles.example.com/field-entry?project=abc+1"

    def test_project_required(self):
        with pytest.raises(ValueError):
            build_field_entry_url("https://piles.example.com", "")

    def test_qr_svg(self):
        svg = make_qr_svg("https://piles.example.com/field-entry?project=1")
        assert b"<svg" in svg
        uri = qr_data_uri("hello")
        assert uri.startswith("data:image/svg+xml;base64,")
        assert b"<svg" in base64.b64decode(uri.split(",", 1)[1])


@pytest.mark.unit
class TestNormalize:
    def test_required_fields_listed(self):
        with pytest.raises(ValueError, match="Inspector name, Pile number"):
            normalize_field_entry({"pile_id": "A7"}, "proj")

    def test_date_defaults_to_today(self):
        record = normalize_field_entry(FORM, "proj")
        assert record["start_date"] == dt.date.today().isoformat()
        assert record["embedment"] == 9.0
        assert record["inspector_name"] == "Dana"

    def test_bad_values_rejected(self):
        with pytest.raises(ValueError, match="End Z"):
            normalize_field_entry({**FORM, "end_z": "deep"}, "proj")


@pytest.mark.integration
class TestSubmit:
    def test_submission_is_published_pile(self, db, project_id):
        pile = submit_field_entry(db, project_id, {**FORM, "start_date": "2024-05-03", "notes": "leaning"})
        row = db.table("piles").eq("id", pile).single()
        assert row["pile_number"] == "P-7"
        assert row["start_date"] == "2024-05-03"
        assert row["notes"] == "leaning"
        assert bool(row["published"]) is True

    def test_unknown_project_rejected(self, db, project_id):
        with pytest.raises(ValueError, match="Unknown project"):
            submit_field_entry(db, "no-such-project", FORM)
        assert db.table("piles").count() == 0
