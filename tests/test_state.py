"""
Unit tests for piletracker/state.py
"""

import dataclasses

import pytest

from piletracker.database import DatabaseError, PileDatabase
from piletracker.services.projects import ProjectSettings, update_project
from piletracker.state import AppDataStore, fetch_paginated


@pytest.fixture
def seven_piles(db, project_id, make_pile):
    return db.table("piles").insert(
        [make_pile(project_id, pile_number=f"P-{i}", pile_id=f"A{i}") for i in range(7)]
    )


@pytest.mark.integration
class TestFetchPaginated:
    """Parallel page fetches."""

    def test_all_pages_merged_in_creation_order(self, db, project_id, seven_piles):
        frame = fetch_paginated(lambda: db.table("piles").eq("project_id", project_id), page_size=3, workers=2)
        assert frame["id"].tolist() == seven_piles

    def test_empty_query(self, db, project_id):
        frame = fetch_paginated(lambda: db.table("piles").eq("project_id", project_id), page_size=3)
        assert frame.empty

    def test_failed_page_is_dropped(self, db, project_id, seven_piles, monkeypatch):
        original = PileDatabase.query_df

        def _flaky(self, sql, params):
            if "OFFSET 3" in sql:
                raise DatabaseError("statement timeout")
            return original(self, sql, params)

        monkeypatch.setattr(PileDatabase, "query_df", _flaky)
        frame = fetch_paginated(lambda: db.table("piles").eq("project_id", project_id), page_size=3, workers=2)
        assert frame["id"].tolist() == seven_piles[:3] + seven_piles[6:]


@pytest.mark.integration
class TestAppDataStore:
    def test_caches_until_invalidated(self, db, config, project_id, make_pile):
        store = AppDataStore(config, db)
        db.table("piles").insert(make_pile(project_id))
        assert len(store.get_piles(project_id)) == 1
        db.table("piles").insert(make_pile(project_id, pile_id="A2"))
        assert len(store.get_piles(project_id)) == 1
        store.invalidate(project_id)
        assert store.version(project_id) == 1
        assert len(store.get_piles(project_id)) == 2

    def test_owner_sees_published_only(self, db, config, project_id, make_pile):
        db.table("piles").insert([make_pile(project_id), make_pile(project_id, pile_id="A2", published=False)])
        owner = AppDataStore(dataclasses.replace(config, account_type="owner"), db)
        editor = AppDataStore(config, db)
        assert owner.get_piles(project_id)["pile_id"].tolist() == ["A1"]
        assert len(editor.get_piles(project_id)) == 2

    def test_prepared_piles_use_project_tolerance(self, db, config, project_id, make_pile):
        db.table("piles").insert(make_pile(project_id, embedment=8.5, design_embedment=10.0))
        store = AppDataStore(config, db)
        assert store.get_prepared_piles(project_id)["status"].tolist() == ["refusal"]

        settings = ProjectSettings.from_form(
            {"project_name": "Solar Farm", "project_location": "Nevada", "embedment_tolerance": "2"}
        )
        update_project(db, project_id, settings)
        store.invalidate(project_id)
        assert store.get_prepared_piles(project_id)["status"].tolist() == ["tolerance"]

    def test_prepared_piles_use_gain_threshold(self, db, config, project_id, make_pile):
        db.table("piles").insert(make_pile(project_id, gain_per_30_seconds=7.0))
        assert AppDataStore(config, db).get_prepared_piles(project_id)["is_low_gain"].tolist() == [False]
        strict = AppDataStore(dataclasses.replace(config, gain_threshold=8.0), db)
        assert strict.get_prepared_piles(project_id)["is_low_gain"].tolist() == [True]

    def test_metadata_tracks_last_pile_date(self, db, config, project_id, make_pile):
        db.table("piles").insert([make_pile(project_id), make_pile(project_id, pile_id="A2", start_date="2024-06-01")])
        store = AppDataStore(config, db)
        store.get_piles(project_id)
        assert store.get_metadata(project_id).last_pile_date == "2024-06-01"

    def test_lookup_cached_until_invalidated(self, db, config, project_id):
        rows = [
            {"project_id": project_id, "pile_tag": f"A{i}", "normalized_tag": f"A{i}", "northing": 1.0 * i,
             "easting": 2.0}
            for i in range(4)
        ]
        db.table("pile_lookup_data").insert(rows[:2])
        store = AppDataStore(config, db)
        assert store.get_lookup(project_id)["pile_tag"].tolist() == ["A0", "A1"]
        db.table("pile_lookup_data").insert(rows[2:])
        assert len(store.get_lookup(project_id)) == 2
        store.invalidate(project_id)
        # four rows span two fetch pages of three
        assert store.get_lookup(project_id)["pile_tag"].tolist() == ["A0", "A1", "A2", "A3"]
