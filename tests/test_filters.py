"""
Unit tests for piletracker/filters.py
"""

import pandas as pd
import pytest

from piletracker.filters import (
    PileFilters,
    apply_pile_filters,
    page_count,
    paginate,
    piles_with_notes,
    sort_and_group_duplicates,
    unique_blocks,
)
from piletracker.metrics import prepare_piles


@pytest.fixture
def prepared():
    piles = pd.DataFrame(
        [
            {"id": "1", "pile_number": "P10", "pile_id": "A10", "block": "B1", "embedment": 10.0,
             "design_embedment": 10.0, "start_date": "2024-05-01", "row_seq": 1, "notes": None},
            {"id": "2", "pile_number": "P2", "pile_id": "A2", "block": "B2", "embedment": 7.0,
             "design_embedment": 10.0, "start_date": "2024-05-03", "row_seq": 2, "notes": "bent head"},
            {"id": "3", "pile_number": "P3", "pile_id": "A2", "block": "B2", "embedment": 9.5,
             "design_embedment": 10.0, "start_date": None, "row_seq": 3, "notes": None},
            {"id": "4", "pile_number": "P1", "pile_id": "A1", "block": 3.0, "embedment": 11.0,
             "design_embedment": 10.0, "start_date": "2024-05-02", "row_seq": 4, "notes": None,
             "pile_status": "refusal"},
        ]
    )
    return prepare_piles(piles, 1.0)


def _ids(frame):
    return frame["id"].tolist()


@pytest.mark.unit
class TestApplyPileFilters:
    """Toolbar filters against prepared piles."""

    def test_no_filters_keeps_everything(self, prepared):
        assert len(apply_pile_filters(prepared, PileFilters())) == 4

    def test_status_uses_display_status(self, prepared):
        filtered = apply_pile_filters(prepared, PileFilters(statuses=["refusal"]))
        assert _ids(filtered) == ["2", "4"]

    def test_unknown_status_ignored(self, prepared):
        assert len(apply_pile_filters(prepared, PileFilters(statuses=["weird"]))) == 4

    def test_blocks_match_numeric_cells(self, prepared):
        assert _ids(apply_pile_filters(prepared, PileFilters(blocks=["3"]))) == ["4"]
        assert _ids(apply_pile_filters(prepared, PileFilters(blocks=["B2"]))) == ["2", "3"]

    def test_date_range_excludes_undated(self, prepared):
        filtered = apply_pile_filters(prepared, PileFilters(start_date="2024-05-02", end_date="2024-05-03"))
        assert _ids(filtered) == ["2", "4"]

    def test_duplicates_only(self, prepared):
        assert _ids(apply_pile_filters(prepared, PileFilters(duplicates_only=True))) == ["2", "3"]

    def test_search_covers_notes(self, prepared):
        assert _ids(apply_pile_filters(prepared, PileFilters(search="BENT"))) == ["2"]

    def test_describe(self):
        described = PileFilters(statuses=["accepted"], start_date="2024-05-01", search=" x ").describe()
        assert described == {"Status": "accepted", "Dates": "2024-05-01 to ...", "Search": "x"}


@pytest.mark.unit
class TestOrdering:
    def test_duplicates_first_then_pile_number(self, prepared):
        ordered = sort_and_group_duplicates(prepared)
        assert _ids(ordered) == ["2", "3", "4", "1"]

    def test_unique_blocks_natural_order(self, prepared):
        assert unique_blocks(prepared) == ["3", "B1", "B2"]

    def test_piles_with_notes_newest_first(self, prepared):
        frame = prepared.copy()
        frame.loc[frame["id"] == "1", "notes"] = "re-drive"
        frame.loc[frame["id"] == "4", "notes"] = "   "
        assert _ids(piles_with_notes(frame)) == ["2", "1"]
        assert piles_with_notes(prepared.iloc[0:0]).empty


@pytest.mark.unit
class TestPagination:
    def test_page_count(self):
        assert page_count(0, 50) == 1
        assert page_count(50, 50) == 1
        assert page_count(51, 50) == 2

    def test_paginate_clamps(self):
        frame = pd.DataFrame({"n": range(5)})
        assert paginate(frame, 2, 2)["n"].tolist() == [2, 3]
        assert paginate(frame, 9, 2)["n"].tolist() == [4]
        assert paginate(frame, 0, 2)["n"].tolist() == [0, 1]
