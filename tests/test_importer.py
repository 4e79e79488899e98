"""
Unit tests for piletracker/importer.py
"""

import pandas as pd
import pytest

from piletracker.column_mapping import infer_column_mapping
from piletracker.database import DatabaseError, PileDatabase
from piletracker.importer import (
    REASON_INVALID_NUMBER,
    REASON_MISSING_IDENTIFIER,
    PileImporter,
    build_import_report,
    compute_embedment,
    compute_gain_per_30_seconds,
    iter_error_lines,
)
from piletracker.lookup import LookupIndex


def _report(rows: list[dict], **kwargs):
    frame = pd.DataFrame(rows, dtype=object)
    frame.index = range(2, len(frame) + 2)
    mapping = infer_column_mapping(list(frame.columns))
    return build_import_report(frame, mapping, project_id="proj", **kwargs)


@pytest.mark.unit
class TestComputations:
    def test_embedment_from_elevations(self):
        assert compute_embedment(100.0, 90.0) == 10.0
        assert compute_embedment(100.0, None) is None

    def test_gain_per_30_seconds(self):
        # 10 ft = 120 in over 60 s (two 30 s windows)
        assert compute_gain_per_30_seconds(10.0, 60) == 60.0
        assert compute_gain_per_30_seconds(10.0, 0) is None


@pytest.mark.unit
class TestRowValidation:
    """Per-row parsing and invalid-row reasons."""

    def test_non_numeric_start_z_is_invalid(self):
        report = _report([{"Pile ID": "A1", "Start Z": "abc", "End Z": "90"}])
        assert report.invalid_count == 1
        reasons = [issue.reason for issue in report.rows[0].errors]
        assert REASON_INVALID_NUMBER in reasons
        assert report.error_summary() == {REASON_INVALID_NUMBER: 1}

    def test_decimal_comma_embedment_is_invalid(self):
        report = _report([{"Pile ID": "A1", "Embedment": "12,5"}, {"Pile ID": "A2", "Embedment": "1,250"}])
        assert report.invalid_count == 1
        assert report.rows[0].errors[0].reason == REASON_INVALID_NUMBER
        assert report.rows[1].record["embedment"] == 1250.0

    def test_missing_identifier(self):
        report = _report([{"Pile ID": "", "Embedment": "10"}])
        assert report.rows[0].errors[0].reason == REASON_MISSING_IDENTIFIER

    def test_embedment_and_gain_computed(self):
        report = _report([{"Pile ID": "A1", "Start Z": "100", "End Z": "90", "Duration": "0:01:00"}])
        record = report.rows[0].record
        assert record["embedment"] == 10.0
        assert record["duration_seconds"] == 60
        assert record["gain_per_30_seconds"] == 60.0

    def test_duration_derived_from_clock_times(self):
        report = _report([{"Pile ID": "A1", "Start Time": "23:58", "Stop Time": "00:02"}])
        record = report.rows[0].record
        assert record["duration_seconds"] == 240
        assert record["duration"] == "0:04:00"

    def test_excel_serial_date(self):
        report = _report([{"Pile ID": "A1", "Start Date": 45000}])
        assert report.rows[0].record["start_date"] == "2023-03-15"

    def test_pile_number_defaults(self):
        report = _report([{"Pile ID": "A1"}, {"Block": "B1"}])
        assert report.rows[0].record["pile_number"] == "A1"
        assert report.rows[1].record["pile_number"] == "B1-1"

    def test_invalid_rows_are_not_inserted(self):
        report = _report([{"Pile ID": "A1", "Embedment": "x"}, {"Pile ID": "A2", "Embedment": "9"}])
        records = report.records_to_insert()
        assert [r["pile_id"] for r in records] == ["A2"]
        assert list(iter_error_lines(report))[0].startswith("Row 2:")


@pytest.mark.unit
class TestDuplicates:
    def test_same_number_close_embedment_within_file(self):
        report = _report(
            [
                {"Pile Number": "P1", "Embedment": "10.0"},
                {"Pile Number": "P1", "Embedment": "10.0004"},
                {"Pile Number": "P1", "Embedment": "11"},
            ]
        )
        assert [row.is_duplicate for row in report.rows] == [False, True, False]
        assert report.rows[1].duplicate_source == "row 2"

    def test_existing_pile_in_project(self):
        existing = pd.DataFrame([{"pile_number": "p1", "embedment": 10.0}])
        report = _report([{"Pile Number": "P1", "Embedment": "10.0009"}], existing=existing)
        assert report.duplicate_count == 1
        assert report.rows[0].duplicate_source == "existing pile"

    def test_duplicates_still_uploaded_unless_skipped(self):
        report = _report([{"Pile Number": "P1", "Embedment": "10"}, {"Pile Number": "P1", "Embedment": "10"}])
        assert len(report.records_to_insert()) == 2
        assert len(report.records_to_insert(skip_duplicates=True)) == 1


@pytest.mark.unit
class TestLookupEnrichment:
    def test_missing_fields_filled_from_lookup(self):
        lookup = LookupIndex(
            pd.DataFrame(
                [{"pile_tag": "A1", "normalized_tag": "A1", "design_embedment": 12.0,
                  "pile_type": "T1", "block": "B9", "pile_size": None}]
            )
        )
        report = _report([{"Pile ID": "a1", "Embedment": "11"}], lookup=lookup)
        record = report.rows[0].record
        assert record["design_embedment"] == 12.0
        assert record["pile_type"] == "T1"
        assert record["block"] == "B9"
        assert report.enriched_count == 1

    def test_file_values_win(self):
        lookup = LookupIndex(pd.DataFrame([{"pile_tag": "A1", "normalized_tag": "A1", "block": "B9"}]))
        report = _report([{"Pile ID": "A1", "Block": "B1"}], lookup=lookup)
        assert report.rows[0].record["block"] == "B1"


@pytest.mark.integration
class TestPileImporter:
    """Read -> validate -> commit against the database."""

    def test_run_inserts_in_batches(self, db, config, project_id, csv_bytes):
        content = csv_bytes(
            [
                {"Pile ID": "A1", "Block": "B1", "Embedment": 10},
                {"Pile ID": "A2", "Block": "B1", "Embedment": 9},
                {"Pile ID": "A3", "Block": "B2", "Embedment": "bad"},
                {"Pile ID": "A4", "Block": "B2", "Embedment": 8},
            ]
        )
        report, result = PileImporter(db, config).run(content, "piles.csv", project_id)
        assert report.valid_count == 3
        assert result.ok
        assert result.inserted == 3
        assert db.table("piles").eq("project_id", project_id).count() == 3

    def test_dry_run_writes_nothing(self, db, config, project_id, csv_bytes):
        content = csv_bytes([{"Pile ID": "A1", "Embedment": 10}])
        _, result = PileImporter(db, config).run(content, "piles.csv", project_id, dry_run=True)
        assert result is None
        assert db.table("piles").count() == 0

    def test_existing_rows_flag_duplicates(self, db, config, project_id, csv_bytes):
        content = csv_bytes([{"Pile Number": "P1", "Embedment": 10}])
        importer = PileImporter(db, config)
        importer.run(content, "piles.csv", project_id)
        report, result = importer.run(content, "piles.csv", project_id, skip_duplicates=True)
        assert report.duplicate_count == 1
        assert result.inserted == 0
        assert result.skipped_duplicates == 1

    def test_failed_batch_stops_and_keeps_earlier(self, db, config, project_id, csv_bytes, monkeypatch):
        content = csv_bytes([{"Pile ID": f"A{i}", "Embedment": 10 + i} for i in range(5)])
        original = PileDatabase.execute_many_in_transaction
        calls = {"n": 0}

        def _flaky(self, statements):
            calls["n"] += 1
            if calls["n"] == 2:
                raise DatabaseError("connection lost")
            return original(self, statements)

        monkeypatch.setattr(PileDatabase, "execute_many_in_transaction", _flaky)
        _, result = PileImporter(db, config).run(content, "piles.csv", project_id)
        assert result.inserted == 2
        assert result.partial
        assert "connection lost" in result.message()
        assert db.table("piles").count() == 2
