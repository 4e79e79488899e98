"""
Pytest fixtures shared by the test suite.

Every test gets its own in-memory DuckDB database, so nothing touches disk.
"""

import io
from collections.abc import Generator

import pandas as pd
import pytest

from piletracker.config import AppConfig
from piletracker.database import PileDatabase
from piletracker.services.projects import ProjectSettings, create_project


@pytest.fixture
def db() -> Generator[PileDatabase, None, None]:
    """Fresh in-memory database with the full schema."""
    database = PileDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture
def config() -> AppConfig:
    """Editor configuration with small batches to exercise batching."""
    return AppConfig(
        database_path=":memory:",
        account_type="epc",
        import_batch_size=2,
        lookup_batch_size=2,
        preliminary_batch_size=2,
        fetch_page_size=3,
        fetch_workers=2,
        public_base_url="https://piles.example.com",
        current_user_id="user-1",
    )


@pytest.fixture
def project_id(db: PileDatabase) -> str:
    """A project with the default 1 ft tolerance."""
    settings = ProjectSettings.from_form({"project_name": "Solar Farm", "project_location": "Nevada"})
    return create_project(db, settings, owner_user_id="user-1")


@pytest.fixture
def csv_bytes():
    """Build CSV upload bytes from a list of row dicts."""

    def _build(rows: list[dict]) -> bytes:
        buffer = io.StringIO()
        pd.DataFrame(rows).to_csv(buffer, index=False)
        return buffer.getvalue().encode("utf-8")

    return _build


@pytest.fixture
def make_pile():
    """Factory for minimal valid pile records."""

    def _make(project_id: str, **overrides) -> dict:
        record = {
            "project_id": project_id,
            "pile_number": "P-1",
            "pile_id": "A1",
            "block": "B1",
            "machine": "M1",
            "embedment": 10.0,
            "design_embedment": 10.0,
            "start_date": "2024-05-01",
            "duration": "0:04:00",
            "duration_seconds": 240,
        }
        record.update(overrides)
        return record

    return _make
