"""
Unit tests for piletracker/lookup.py and piletracker/preliminary.py
"""

import io

import pandas as pd
import pytest

from piletracker.database import DatabaseError, PileDatabase
from piletracker.lookup import (
    LookupIndex,
    build_lookup_records,
    count_lookup_rows,
    describe_lookup_upload,
    load_lookup_index,
    pick_pile_plot_sheet,
    read_lookup_file,
    replace_lookup_data,
)
from piletracker.preliminary import (
    build_preliminary_records,
    clear_preliminary,
    delete_preliminary_record,
    read_preliminary_file,
    upload_preliminary,
)


def _pile_plot_workbook() -> bytes:
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        pd.DataFrame({"Notes": ["cover sheet"]}).to_excel(writer, sheet_name="Summary", index=False)
        pd.DataFrame(
            {
                "Tag": ["A1", "A2", None, 7.0],
                "Block": ["B1", "B1", "B2", "B3"],
                "Type": ["T1", "T2", "T1", "T1"],
                "Embedment": [10.0, "n/a?", 11.0, 12.0],
            }
        ).to_excel(writer, sheet_name="Pile Plot", index=False)
    return buffer.getvalue()


@pytest.mark.unit
class TestPilePlotParsing:
    def test_sheet_choice(self):
        assert pick_pile_plot_sheet(["Summary", "PILE PLOT (rev 2)"]) == "PILE PLOT (rev 2)"
        assert pick_pile_plot_sheet(["Sheet1", "Sheet2"]) == "Sheet1"

    def test_records_from_workbook(self):
        frame, mapping = read_lookup_file(_pile_plot_workbook(), "plot.xlsx")
        records, skipped = build_lookup_records(frame, mapping, "proj")
        assert skipped == 1
        assert [r["pile_tag"] for r in records] == ["A1", "A2", "7"]
        # junk numbers are stored empty instead of rejecting the row
        assert records[1]["design_embedment"] is None
        assert records[0]["normalized_tag"] == "A1"

    def test_tag_column_required(self):
        frame, mapping = read_lookup_file(b"Block,Type\nB1,T1\n", "plot.csv")
        with pytest.raises(ValueError):
            build_lookup_records(frame, mapping, "proj")

    def test_index_normalizes_tags(self):
        index = LookupIndex(pd.DataFrame([{"pile_tag": "a 1", "normalized_tag": None, "block": "B1"}]))
        assert "A 1" in index
        assert index.get(" a   1 ")["block"] == "B1"
        assert index.get("") is None


@pytest.mark.integration
class TestReplaceLookup:
    def test_replace_removes_previous_rows(self, db, project_id):
        first = [{"project_id": project_id, "pile_tag": f"T{i}", "normalized_tag": f"T{i}"} for i in range(3)]
        replace_lookup_data(db, project_id, first, batch_size=2)
        result = replace_lookup_data(db, project_id, first[:1], batch_size=2, skipped=4)
        assert result.ok
        assert result.deleted == 3
        assert result.inserted == 1
        assert result.skipped == 4
        assert count_lookup_rows(db, project_id) == 1
        assert len(load_lookup_index(db, project_id)) == 1

    def test_preview_reports_rows_to_replace(self, db, project_id):
        rows = [{"project_id": project_id, "pile_tag": f"T{i}", "normalized_tag": f"T{i}"} for i in range(3)]
        replace_lookup_data(db, project_id, rows, batch_size=2)
        text = describe_lookup_upload(db, project_id, ready=5, skipped=1)
        assert text == "5 lookup rows ready, 1 rows without a tag will be skipped; 3 existing rows will be replaced."

    def test_failed_batch_reported(self, db, project_id, monkeypatch):
        original = PileDatabase.execute_many_in_transaction
        calls = {"n": 0}

        def _flaky(self, statements):
            calls["n"] += 1
            if calls["n"] == 1:
                raise DatabaseError("disk full")
            return original(self, statements)

        monkeypatch.setattr(PileDatabase, "execute_many_in_transaction", _flaky)
        records = [{"project_id": project_id, "pile_tag": f"T{i}", "normalized_tag": f"T{i}"} for i in range(3)]
        result = replace_lookup_data(db, project_id, records, batch_size=2)
        assert not result.ok
        assert result.inserted == 1
        assert result.errors == ["Batch 1: disk full"]


@pytest.mark.unit
class TestPreliminaryRecords:
    """Machine-keyed field log rows."""

    CSV = (
        b"Machine,Pile ID,Date,Start Time,Stop Time,Embedment\n"
        b"M1,A1,2024-05-01,08:00,08:06,10\n"
        b",A2,2024-05-01,08:10,08:15,9\n"
        b"M2,,05/02/2024,09:00,09:04,oops\n"
    )

    def test_rows_without_machine_skipped(self):
        frame, mapping = read_preliminary_file(self.CSV, "prelim.csv")
        records, skipped = build_preliminary_records(frame, mapping, "proj")
        assert skipped == [3]
        assert [r["machine"] for r in records] == ["M1", "M2"]

    def test_generated_ids_and_derived_duration(self):
        frame, mapping = read_preliminary_file(self.CSV, "prelim.csv")
        records, _ = build_preliminary_records(frame, mapping, "proj")
        assert records[0]["duration_seconds"] == 360
        assert records[0]["duration"] == "0:06:00"
        assert records[1]["pile_id"] == "PRELIM-3"
        assert records[1]["pile_number"] == "PRELIM-3"
        assert records[1]["start_date"] == "2024-05-02"
        assert records[1]["embedment"] is None

    def test_machine_column_required(self):
        frame, mapping = read_preliminary_file(b"Pile ID,Block\nA1,B1\n", "prelim.csv")
        with pytest.raises(ValueError):
            build_preliminary_records(frame, mapping, "proj")


@pytest.mark.integration
class TestPreliminaryStorage:
    def test_upload_and_clear(self, db, project_id):
        records = [{"project_id": project_id, "machine": f"M{i}", "pile_id": f"A{i}"} for i in range(3)]
        result = upload_preliminary(db, records, batch_size=2, skipped_rows=[7])
        assert result.inserted == 3
        assert "Skipped 1 rows" in result.message()

        first = db.table("preliminary_production").order("row_seq").first()
        assert delete_preliminary_record(db, first["id"]) == 1
        assert clear_preliminary(db, project_id) == 2
