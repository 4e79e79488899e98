"""Project records and user membership."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import pandas as pd

from ..database import DatabaseError, PileDatabase
from ..normalizers import normalize_text, to_number


LOGGER = logging.getLogger(__name__)

PROJECTS_TABLE = "projects"
MEMBERSHIP_TABLE = "user_projects"
PROJECT_DATA_TABLES = ("piles", "pile_lookup_data", "preliminary_production", MEMBERSHIP_TABLE)
TRACKER_SYSTEMS = ("software", "manual", "none")
DEFAULT_TOLERANCE = 1.0

_EDITABLE_FIELDS = (
    "project_name",
    "project_location",
    "total_project_piles",
    "tracker_system",
    "geotech_company",
    "role",
    "embedment_tolerance",
)


@dataclass(frozen=True)
class ProjectSettings:
    """Validated project form values."""

    project_name: str
    project_location: str
    total_project_piles: int | None = None
    tracker_system: str = "software"
    geotech_company: str | None = None
    role: str = "project_manager"
    embedment_tolerance: float = DEFAULT_TOLERANCE

    @classmethod
    def from_form(cls, values: Mapping[str, Any]) -> "ProjectSettings":
        name = normalize_text(values.get("project_name"))
        location = normalize_text(values.get("project_location"))
        if not name:
            raise ValueError("Project name is required.")
        if not location:
            raise ValueError("Project location is required.")
        total = to_number(values.get("total_project_piles"))
        if total is not None and total < 0:
            raise ValueError("Total project piles must not be negative.")
        tolerance = to_number(values.get("embedment_tolerance"))
        if tolerance is None:
            tolerance = DEFAULT_TOLERANCE
        if tolerance < 0:
            raise ValueError("Embedment tolerance must not be negative.")
        tracker = normalize_text(values.get("tracker_system")).lower() or "software"
        if tracker not in TRACKER_SYSTEMS:
            raise ValueError(f"Tracker system must be one of {', '.join(TRACKER_SYSTEMS)}.")
        return cls(
            project_name=name,
            project_location=location,
            total_project_piles=int(total) if total is not None else None,
            tracker_system=tracker,
            geotech_company=normalize_text(values.get("geotech_company")) or None,
            role=normalize_text(values.get("role")) or "project_manager",
            embedment_tolerance=float(tolerance),
        )

    def to_record(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in _EDITABLE_FIELDS}


def create_project(db: PileDatabase, settings: ProjectSettings, owner_user_id: str | None = None) -> str:
    """Insert a project and, when ``owner_user_id`` is given, its owner membership.

    If the membership insert fails the project row is removed again and the
    error re-raised.
    """

    project_id = db.table(PROJECTS_TABLE).insert(settings.to_record())[0]
    if owner_user_id:
        try:
            db.table(MEMBERSHIP_TABLE).insert(
                {"user_id": owner_user_id, "project_id": project_id, "role": "owner", "is_owner": True}
            )
        except DatabaseError:
            LOGGER.exception("Owner link for project %s failed; removing project", project_id)
            db.table(PROJECTS_TABLE).eq("id", project_id).delete()
            raise
    LOGGER.info("Created project %s (%s)", settings.project_name, project_id)
    return project_id


def list_projects(db: PileDatabase) -> pd.DataFrame:
    return db.table(PROJECTS_TABLE).order("project_name").fetch()


def get_project(db: PileDatabase, project_id: str | None) -> dict[str, Any] | None:
    if not project_id:
        return None
    return db.table(PROJECTS_TABLE).eq("id", project_id).first()


def update_project(db: PileDatabase, project_id: str, settings: ProjectSettings) -> int:
    updated = db.table(PROJECTS_TABLE).eq("id", project_id).update(settings.to_record())
    if not updated:
        raise ValueError(f"Project '{project_id}' does not exist.")
    LOGGER.info("Updated project %s", project_id)
    return updated


def delete_project(db: PileDatabase, project_id: str) -> dict[str, int]:
    """Delete a project together with its piles, lookup, preliminary and membership rows."""

    removed: dict[str, int] = {}
    for table in PROJECT_DATA_TABLES:
        removed[table] = db.table(table).eq("project_id", project_id).delete()
    removed[PROJECTS_TABLE] = db.table(PROJECTS_TABLE).eq("id", project_id).delete()
    LOGGER.info("Deleted project %s: %s", project_id, removed)
    return removed


def assign_user(db: PileDatabase, project_id: str, user_id: str, role: str = "viewer") -> str:
    existing = db.table(MEMBERSHIP_TABLE).eq("project_id", project_id).eq("user_id", user_id).first()
    if existing is not None:
        db.table(MEMBERSHIP_TABLE).eq("id", existing["id"]).update({"role": role})
        return str(existing["id"])
    return db.table(MEMBERSHIP_TABLE).insert(
        {"user_id": user_id, "project_id": project_id, "role": role, "is_owner": False}
    )[0]


def list_members(db: PileDatabase, project_id: str) -> pd.DataFrame:
    return (
        db.table(MEMBERSHIP_TABLE)
        .select(["user_id", "role", "is_owner"])
        .eq("project_id", project_id)
        .order("row_seq")
        .fetch()
    )


def remove_user(db: PileDatabase, project_id: str, user_id: str) -> int:
    return db.table(MEMBERSHIP_TABLE).eq("project_id", project_id).eq("user_id", user_id).delete()


def projects_for_user(db: PileDatabase, user_id: str) -> pd.DataFrame:
    memberships = db.table(MEMBERSHIP_TABLE).select(["project_id", "role", "is_owner"]).eq("user_id", user_id).fetch()
    if memberships.empty:
        return list_projects(db).iloc[0:0]
    projects = db.table(PROJECTS_TABLE).in_("id", memberships["project_id"].tolist()).order("project_name").fetch()
    return projects.merge(
        memberships.rename(columns={"project_id": "id", "role": "member_role"}),
        on="id",
        how="left",
    )


def has_completed_project_setup(db: PileDatabase, user_id: str) -> bool:
    """A user has finished onboarding once they belong to at least one project."""

    return db.table(MEMBERSHIP_TABLE).eq("user_id", user_id).count() > 0


def project_tolerance(db: PileDatabase, project_id: str | None, default: float = DEFAULT_TOLERANCE) -> float:
    project = get_project(db, project_id)
    if project is None:
        return float(default)
    value = project.get("embedment_tolerance")
    return float(value) if value is not None else float(default)


__all__ = [
    "ProjectSettings",
    "assign_user",
    "create_project",
    "delete_project",
    "get_project",
    "has_completed_project_setup",
    "list_members",
    "list_projects",
    "project_tolerance",
    "projects_for_user",
    "remove_user",
    "update_project",
]
