"""
Unit tests for piletracker/duplicates.py
"""

import json

import pytest

from piletracker.database import DatabaseError, PileDatabase
from piletracker.duplicates import (
    ACTION_COMBINE,
    ACTION_DELETE_ALL_BUT_ONE,
    ACTION_DELETE_IDENTICAL,
    ACTION_KEEP_HIGHEST_EMBEDMENT,
    find_duplicate_groups,
    plan_reconciliation,
    reconcile_duplicates,
)


@pytest.fixture
def seeded(db, project_id, make_pile):
    """Three records of pile A1 (inserted in order) plus a unique A2."""
    ids = db.table("piles").insert(
        [
            make_pile(project_id, pile_id="A1", embedment=10.0, gain_per_30_seconds=5.0,
                      start_date="2024-05-02", start_time="08:00:00"),
            make_pile(project_id, pile_id="A1", embedment=12.0, gain_per_30_seconds=6.0,
                      start_date="2024-05-01", start_time="09:00:00"),
            make_pile(project_id, pile_id="a1", embedment=10.0, gain_per_30_seconds=5.0,
                      start_date="2024-05-03", start_time="08:00:00"),
            make_pile(project_id, pile_id="A2", pile_number="P-2"),
        ]
    )
    return ids


def _piles(db, project_id):
    return db.table("piles").eq("project_id", project_id).fetch()


@pytest.mark.unit
class TestGrouping:
    def test_groups_by_normalized_pile_id(self, db, project_id, seeded):
        groups = find_duplicate_groups(_piles(db, project_id))
        assert len(groups) == 1
        assert groups[0].key == "A1"
        assert groups[0].ids == seeded[:3]

    def test_unknown_action(self, db, project_id, seeded):
        groups = find_duplicate_groups(_piles(db, project_id))
        with pytest.raises(ValueError):
            plan_reconciliation(groups, "shred")


@pytest.mark.integration
class TestActions:
    """Each operator action against the database."""

    def test_delete_all_but_one_keeps_earliest(self, db, project_id, seeded):
        outcome = reconcile_duplicates(db, _piles(db, project_id), ACTION_DELETE_ALL_BUT_ONE)
        assert outcome.ok
        assert outcome.deleted == 2
        remaining = set(_piles(db, project_id)["id"])
        assert remaining == {seeded[0], seeded[3]}

    def test_keep_highest_embedment(self, db, project_id, seeded):
        reconcile_duplicates(db, _piles(db, project_id), ACTION_KEEP_HIGHEST_EMBEDMENT)
        remaining = set(_piles(db, project_id)["id"])
        assert remaining == {seeded[1], seeded[3]}

    def test_combine_sums_unique_embedments_and_records_ids(self, db, project_id, seeded):
        outcome = reconcile_duplicates(db, _piles(db, project_id), ACTION_COMBINE)
        assert outcome.deleted == 2
        assert outcome.updated == 1
        keeper = db.table("piles").eq("id", seeded[0]).single()
        # 10 and 12 are the unique embedments; the repeated 10 counts once
        assert keeper["embedment"] == pytest.approx(22.0)
        assert keeper["gain_per_30_seconds"] == pytest.approx(11.0)
        assert json.loads(keeper["combined_pile_ids"]) == seeded[:3]
        assert keeper["combined_start_date"] == "2024-05-01"
        assert keeper["combined_end_date"] == "2024-05-03"
        assert bool(keeper["is_combined"]) is True

    def test_delete_identical_keeps_distinct_records(self, db, project_id, seeded):
        outcome = reconcile_duplicates(db, _piles(db, project_id), ACTION_DELETE_IDENTICAL)
        assert outcome.deleted == 1
        remaining = set(_piles(db, project_id)["id"])
        assert seeded[2] not in remaining
        assert seeded[0] in remaining

    def test_keys_restrict_groups(self, db, project_id, seeded):
        outcome = reconcile_duplicates(db, _piles(db, project_id), ACTION_DELETE_ALL_BUT_ONE, keys=["ZZZ"])
        assert outcome.deleted == 0
        assert len(_piles(db, project_id)) == 4

    def test_failure_reports_partial_progress(self, db, project_id, seeded, monkeypatch):
        piles = _piles(db, project_id)
        original = PileDatabase.execute_write
        calls = {"n": 0}

        def _flaky(self, sql, params):
            calls["n"] += 1
            if sql.startswith("DELETE"):
                raise DatabaseError("timeout")
            return original(self, sql, params)

        monkeypatch.setattr(PileDatabase, "execute_write", _flaky)
        outcome = reconcile_duplicates(db, piles, ACTION_DELETE_ALL_BUT_ONE)
        assert not outcome.ok
        assert outcome.updated == 1
        assert outcome.deleted == 0
        assert "timeout" in outcome.message()
