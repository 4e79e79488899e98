"""
Unit tests for piletracker/status.py and piletracker/metrics.py
"""

import pandas as pd
import pytest

from piletracker.metrics import (
    clean_machine_id,
    daily_production,
    filter_machines,
    machine_daily_breakdown,
    prepare_piles,
    production_overview,
    sort_machines,
    status_counts,
    status_percentages,
    summarize_groups,
    summarize_machines,
    top_machines,
)
from piletracker.status import (
    DRIVE_BAD,
    DRIVE_OPTIMAL,
    DRIVE_SUBOPTIMAL,
    classify_pile_status,
    display_status,
    drive_time_class,
    is_low_gain,
    is_slow_drive,
)


@pytest.mark.unit
class TestStatus:
    """Embedment versus design classification."""

    def test_refusal_below_tolerance(self):
        assert classify_pile_status(8.5, 10.0, 1.0) == "refusal"

    def test_tolerance_band(self):
        assert classify_pile_status(9.0, 10.0, 1.0) == "tolerance"
        assert classify_pile_status(9.5, 10.0, 1.0) == "tolerance"

    def test_accepted(self):
        assert classify_pile_status(10.0, 10.0, 1.0) == "accepted"

    def test_missing_and_na(self):
        assert classify_pile_status(None, 10.0) == "missing"
        assert classify_pile_status(10.0, None) == "n/a"

    def test_override_for_display(self):
        assert display_status("Accepted", "refusal") == "accepted"
        assert display_status("bogus", "refusal") == "refusal"
        assert display_status(None, "tolerance") == "tolerance"

    def test_drive_time_rating(self):
        assert drive_time_class(5) == DRIVE_OPTIMAL
        assert drive_time_class(9.9) == DRIVE_SUBOPTIMAL
        assert drive_time_class(10.1) == DRIVE_BAD
        assert drive_time_class(None) == ""

    def test_slow_and_low_gain(self):
        assert is_slow_drive(12, 10)
        assert not is_slow_drive(10, 10)
        assert is_low_gain(5.9, 6)
        assert not is_low_gain(None)


@pytest.fixture
def prepared():
    piles = pd.DataFrame(
        [
            {"id": "1", "pile_id": "A1", "pile_number": "P1", "machine": "M2", "block": "B2", "embedment": 10.0,
             "design_embedment": 10.0, "start_date": "2024-05-01", "duration_seconds": 240, "duration": "0:04:00",
             "gain_per_30_seconds": 8.0},
            {"id": "2", "pile_id": "A2", "pile_number": "P2", "machine": "M2", "block": "B10", "embedment": 8.0,
             "design_embedment": 10.0, "start_date": "2024-05-02", "duration_seconds": 720, "duration": "0:12:00",
             "pile_status": "accepted", "gain_per_30_seconds": 4.0},
            {"id": "3", "pile_id": "A3", "pile_number": "P3", "machine": "M10", "block": "B2", "embedment": 9.5,
             "design_embedment": 10.0, "start_date": "2024-05-02", "duration_seconds": None, "duration": "7:00",
             "gain_per_30_seconds": 5.5},
            {"id": "4", "pile_id": "A3", "pile_number": "P4", "machine": "unknown", "block": None, "embedment": None,
             "design_embedment": 10.0, "start_date": None, "duration_seconds": None, "duration": None,
             "gain_per_30_seconds": None},
        ]
    )
    return prepare_piles(piles, 1.0, slow_threshold_minutes=10.0, low_gain_threshold=6.0)


@pytest.mark.unit
class TestPreparePiles:
    def test_derived_columns(self, prepared):
        assert prepared["status"].tolist() == ["accepted", "refusal", "tolerance", "missing"]
        # the override changes display only
        assert prepared["display_status"].tolist() == ["accepted", "accepted", "tolerance", "missing"]
        assert prepared["drive_minutes"].tolist() == [4.0, 12.0, 7.0, 0.0]
        assert prepared["drive_time_rating"].tolist() == ["Optimal", "Bad", "Suboptimal", ""]
        assert prepared["is_slow"].tolist() == [False, True, False, False]
        assert prepared["is_low_gain"].tolist() == [False, True, True, False]
        assert prepared["start_day"].tolist() == ["2024-05-01", "2024-05-02", "2024-05-02", ""]
        assert prepared["has_duplicates"].tolist() == [False, False, True, True]

    def test_empty_frame_gets_columns(self):
        empty = prepare_piles(pd.DataFrame(columns=["id", "embedment"]))
        assert "status" in empty.columns
        assert empty.empty

    def test_counts_and_percentages(self, prepared):
        counts = status_counts(prepared)
        assert counts["total"] == 4
        assert counts["refusal"] == 1
        assert status_percentages(counts)["accepted"] == 25.0


@pytest.mark.unit
class TestMachines:
    """Per-machine rollups."""

    def test_invalid_machine_ids_ignored(self, prepared):
        summaries = summarize_machines(prepared)
        assert [s.machine for s in summaries] == ["M2", "M10"]
        assert clean_machine_id("null") == ""

    def test_summary_values(self, prepared):
        m2 = summarize_machines(prepared)[0]
        assert m2.total_piles == 2
        assert m2.accepted == 1
        assert m2.refusal == 1
        assert m2.slow_drive_count == 1
        assert m2.low_gain_count == 1
        assert m2.average_drive_time == pytest.approx(8.0)
        assert m2.active_days == 2
        assert m2.first_date == "2024-05-01"
        assert m2.has_performance_issues

    def test_filters(self, prepared):
        summaries = summarize_machines(prepared)
        assert [s.machine for s in filter_machines(summaries, search="10")] == ["M10"]
        assert [s.machine for s in filter_machines(summaries, start_date="2024-05-02", end_date="2024-05-02")] == [
            "M2",
            "M10",
        ]
        assert [s.machine for s in filter_machines(summaries, end_date="2024-05-01")] == ["M2"]
        assert [s.machine for s in filter_machines(summaries, performance_only=True)] == ["M2"]

    def test_sort_natural_by_id(self, prepared):
        ordered = sort_machines(summarize_machines(prepared), "machine", descending=False)
        assert [s.machine for s in ordered] == ["M2", "M10"]

    def test_sort_unknown_key(self, prepared):
        with pytest.raises(ValueError):
            sort_machines(summarize_machines(prepared), "colour")

    def test_top_machines_rates(self, prepared):
        top = top_machines(summarize_machines(prepared))
        row = top.iloc[0]
        assert row["machine"] == "M2"
        assert row["accepted_rate"] == 50.0
        assert row["refusal_rate"] == 50.0
        assert row["efficiency"] == 50.0


@pytest.mark.unit
class TestRollups:
    def test_daily_production(self, prepared):
        daily = daily_production(prepared)
        assert daily["date"].tolist() == ["2024-05-01", "2024-05-02"]
        assert daily["piles"].tolist() == [1, 2]
        assert daily["machines"].tolist() == [1, 2]

    def test_machine_daily_breakdown_newest_first(self, prepared):
        daily = machine_daily_breakdown(prepared, "M2")
        assert daily["date"].tolist() == ["2024-05-02", "2024-05-01"]

    def test_block_summary(self, prepared):
        blocks = summarize_groups(prepared, "block")
        assert blocks["block"].tolist() == ["B2", "B10", "Unassigned"]
        b2 = blocks.iloc[0]
        assert b2["total_piles"] == 2
        assert b2["accepted"] == 1
        assert b2["tolerance"] == 1
        assert b2["low_gain_count"] == 1

    def test_overview(self, prepared):
        overview = production_overview(prepared, summarize_machines(prepared))
        assert overview["total_piles"] == 4
        assert overview["machines"] == 2
        assert overview["active_days"] == 2
        assert overview["piles_per_day"] == 2.0
        assert overview["slow_drives"] == 1
        assert overview["low_gain_piles"] == 2
