"""
Unit tests for piletracker/services/
"""

import pytest

from piletracker.services.piles import (
    create_pile,
    delete_all_piles,
    delete_piles,
    get_pile,
    normalize_pile_form,
    pile_form_values,
    set_pile_status,
    set_published,
    update_notes,
    update_pile,
)
from piletracker.services.projects import (
    ProjectSettings,
    assign_user,
    create_project,
    delete_project,
    get_project,
    has_completed_project_setup,
    list_members,
    project_tolerance,
    projects_for_user,
    remove_user,
    update_project,
)


@pytest.mark.unit
class TestProjectSettings:
    def test_defaults(self):
        settings = ProjectSettings.from_form({"project_name": " Farm ", "project_location": "TX"})
        assert settings.project_name == "Farm"
        assert settings.embedment_tolerance == 1.0
        assert settings.tracker_system == "software"

    @pytest.mark.parametrize(
        "values",
        [
            {"project_location": "TX"},
            {"project_name": "Farm"},
            {"project_name": "Farm", "project_location": "TX", "embedment_tolerance": "-1"},
            {"project_name": "Farm", "project_location": "TX", "tracker_system": "abacus"},
            {"project_name": "Farm", "project_location": "TX", "total_project_piles": "lots"},
        ],
    )
    def test_invalid_forms(self, values):
        with pytest.raises(ValueError):
            ProjectSettings.from_form(values)


@pytest.mark.integration
class TestProjects:
    """Project lifecycle and membership."""

    def test_create_links_owner(self, db, project_id):
        assert get_project(db, project_id)["project_name"] == "Solar Farm"
        assert has_completed_project_setup(db, "user-1")
        assert not has_completed_project_setup(db, "user-2")

    def test_projects_for_user(self, db, project_id):
        other = create_project(db, ProjectSettings.from_form({"project_name": "Alpha", "project_location": "AZ"}))
        assert projects_for_user(db, "user-1")["id"].tolist() == [project_id]
        assign_user(db, other, "user-1", role="editor")
        projects = projects_for_user(db, "user-1")
        assert projects["project_name"].tolist() == ["Alpha", "Solar Farm"]
        assert projects["member_role"].tolist() == ["editor", "owner"]

    def test_assign_twice_updates_role(self, db, project_id):
        first = assign_user(db, project_id, "user-2")
        second = assign_user(db, project_id, "user-2", role="editor")
        assert first == second
        assert remove_user(db, project_id, "user-2") == 1

    def test_list_members(self, db, project_id):
        assign_user(db, project_id, "user-2", role="viewer")
        members = list_members(db, project_id)
        assert members["user_id"].tolist() == ["user-1", "user-2"]
        assert members["role"].tolist() == ["owner", "viewer"]
        assert [bool(flag) for flag in members["is_owner"]] == [True, False]

    def test_update_and_tolerance(self, db, project_id):
        update_project(
            db,
            project_id,
            ProjectSettings.from_form(
                {"project_name": "Solar Farm", "project_location": "Nevada", "embedment_tolerance": "0.5"}
            ),
        )
        assert project_tolerance(db, project_id) == 0.5
        assert project_tolerance(db, "missing", default=2.0) == 2.0

    def test_update_missing_project(self, db):
        with pytest.raises(ValueError):
            update_project(db, "missing", ProjectSettings.from_form({"project_name": "A", "project_location": "B"}))

    def test_delete_cascades(self, db, project_id, make_pile):
        db.table("piles").insert(make_pile(project_id))
        db.table("pile_lookup_data").insert({"project_id": project_id, "pile_tag": "A1", "normalized_tag": "A1"})
        removed = delete_project(db, project_id)
        assert removed["piles"] == 1
        assert removed["pile_lookup_data"] == 1
        assert removed["user_projects"] == 1
        assert removed["projects"] == 1
        assert all(count == 0 for count in db.table_counts().values())


@pytest.mark.integration
class TestPiles:
    def test_form_normalization(self, project_id):
        record = normalize_pile_form({"pile_id": "A1", "start_z": "100", "end_z": "88.5"}, project_id)
        assert record["pile_number"] == "A1"
        assert record["embedment"] == 11.5

    def test_form_errors(self, project_id):
        with pytest.raises(ValueError, match="Start Z"):
            normalize_pile_form({"pile_id": "A1", "start_z": "abc"}, project_id)
        with pytest.raises(ValueError):
            normalize_pile_form({"block": "B1"}, project_id)

    def test_create_update_notes(self, db, project_id):
        pile = create_pile(db, project_id, {"pile_id": "A1", "embedment": "9", "published": False})
        row = db.table("piles").eq("id", pile).single()
        assert row["embedment"] == 9.0
        assert bool(row["published"]) is False

        update_pile(db, pile, project_id, {"pile_id": "A1", "embedment": "9.5", "block": "B4"})
        assert db.table("piles").eq("id", pile).single()["block"] == "B4"

        update_notes(db, pile, "  bent  ")
        assert db.table("piles").eq("id", pile).single()["notes"] == "bent"
        update_notes(db, pile, "   ")
        assert db.table("piles").eq("id", pile).single()["notes"] is None

    def test_update_missing_pile(self, db, project_id):
        with pytest.raises(ValueError):
            update_pile(db, "missing", project_id, {"pile_id": "A1"})

    def test_status_override(self, db, project_id, make_pile):
        pile = db.table("piles").insert(make_pile(project_id))[0]
        assert set_pile_status(db, pile, "refusal") == 1
        assert db.table("piles").eq("id", pile).single()["pile_status"] == "refusal"
        set_pile_status(db, pile, None)
        assert db.table("piles").eq("id", pile).single()["pile_status"] is None
        with pytest.raises(ValueError):
            set_pile_status(db, pile, "great")

    def test_publish_and_delete(self, db, project_id, make_pile):
        ids = db.table("piles").insert([make_pile(project_id, pile_id=f"A{i}") for i in range(3)])
        assert set_published(db, project_id, False) == 3
        assert set_published(db, project_id, True, ids[:1]) == 1
        assert db.table("piles").eq("published", True).count() == 1
        assert delete_piles(db, ids[:2], batch_size=1) == 2
        assert delete_all_piles(db, project_id) == 1

    def test_update_keeps_fields_not_submitted(self, db, project_id, make_pile):
        pile = db.table("piles").insert(
            make_pile(project_id, inspector_name="Dana", gain_per_30_seconds=7.5, zone="Z2")
        )[0]
        update_pile(db, pile, project_id, {"block": "B9"})
        row = db.table("piles").eq("id", pile).single()
        assert row["block"] == "B9"
        assert row["inspector_name"] == "Dana"
        assert row["zone"] == "Z2"
        assert row["gain_per_30_seconds"] == 7.5
        assert row["design_embedment"] == 10.0

    def test_update_recomputes_derived_values(self, db, project_id):
        pile = create_pile(
            db,
            project_id,
            {"pile_id": "A1", "start_z": "100", "end_z": "90", "start_time": "08:00", "stop_time": "08:01"},
        )
        row = db.table("piles").eq("id", pile).single()
        assert row["embedment"] == 10.0
        assert row["gain_per_30_seconds"] == 60.0

        # the stored duration text is still submitted, as the pile form does
        form = pile_form_values(get_pile(db, pile))
        update_pile(db, pile, project_id, {**form, "end_z": "95", "stop_time": "08:02"})
        row = db.table("piles").eq("id", pile).single()
        assert row["embedment"] == 5.0
        assert row["duration_seconds"] == 120
        assert row["duration"] == "0:02:00"
        assert row["gain_per_30_seconds"] == 15.0

    def test_form_values(self, db, project_id, make_pile):
        pile = db.table("piles").insert(make_pile(project_id, notes="bent"))[0]
        values = pile_form_values(get_pile(db, pile))
        assert values["pile_id"] == "A1"
        assert values["notes"] == "bent"
        assert "project_id" not in values
        assert set(pile_form_values(None).values()) == {None}
        assert get_pile(db, "missing") is None
        assert get_pile(db, None) is None
