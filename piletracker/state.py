"""Centralized runtime data store for the Dash server."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Tuple

import pandas as pd

from .config import AppConfig
from .database import DatabaseError, PileDatabase, TableQuery
from .lookup import LOOKUP_TABLE
from .metrics import prepare_piles
from .preliminary import PRELIMINARY_TABLE
from .services.projects import get_project, project_tolerance

LOGGER = logging.getLogger(__name__)

PILES_TABLE = "piles"

QueryFactory = Callable[[], TableQuery]


def fetch_paginated(
    query_factory: QueryFactory,
    page_size: int = 1000,
    workers: int = 4,
    *,
    order_column: str = "row_seq",
) -> pd.DataFrame:
    """Fetch every row of a query in parallel pages.

    A page that fails is logged and left out; the merged frame is
    de-duplicated by id and re-sorted by ``order_column``.
    """

    total = query_factory().count()
    if total == 0:
        return query_factory().limit(0).fetch()

    size = max(1, int(page_size))
    ranges = [(start, min(start + size, total) - 1) for start in range(0, total, size)]

    def _fetch(bounds: Tuple[int, int]) -> pd.DataFrame:
        start, end = bounds
        return query_factory().order(order_column).range(start, end).fetch()

    pages: Dict[int, pd.DataFrame] = {}
    failed = 0
    with ThreadPoolExecutor(max_workers=max(1, int(workers))) as pool:
        futures = {pool.submit(_fetch, bounds): index for index, bounds in enumerate(ranges)}
        for future in as_completed(futures):
            index = futures[future]
            try:
                pages[index] = future.result()
            except DatabaseError as exc:
                failed += 1
                LOGGER.error("Page %d of %d failed and was dropped: %s", index + 1, len(ranges), exc)

    if not pages:
        LOGGER.error("All %d pages failed", len(ranges))
        return pd.DataFrame()

    frames = [pages[index] for index in sorted(pages)]
    merged = pd.concat(frames, ignore_index=True) if len(frames) > 1 else frames[0].copy()
    if "id" in merged.columns:
        merged = merged.drop_duplicates(subset="id", keep="first")
    if order_column in merged.columns:
        merged = merged.sort_values(order_column, kind="mergesort")
    LOGGER.debug(
        "Fetched %d rows in %d pages (failed=%d, expected=%d)",
        len(merged),
        len(ranges),
        failed,
        total,
    )
    return merged.reset_index(drop=True)


@dataclass
class DatasetMetadata:
    """Human-readable metadata for the currently loaded project."""

    last_pile_date: str | None = None
    last_pile_date_text: str = "N/A"
    last_loaded_text: str = "N/A"

    def update_from_df(self, df: pd.DataFrame) -> None:
        dates = df["start_date"].dropna().astype(str) if "start_date" in df.columns else pd.Series(dtype=str)
        dates = dates[dates != ""]
        self.last_pile_date = str(dates.max()) if not dates.empty else None
        self.last_pile_date_text = self.last_pile_date or "N/A"
        self.last_loaded_text = pd.Timestamp.now().strftime("%Y-%m-%d %H:%M")


class AppDataStore:
    """Per-project cache of pile, preliminary and pile plot frames guarded by a re-entrant lock."""

    def __init__(self, config: AppConfig, db: PileDatabase):
        self._config = config
        self._db = db
        self._lock = RLock()
        self._piles: Dict[Tuple[str, bool], pd.DataFrame] = {}
        self._preliminary: Dict[str, pd.DataFrame] = {}
        self._lookup: Dict[str, pd.DataFrame] = {}
        self._versions: Dict[str, int] = {}
        self.metadata: Dict[str, DatasetMetadata] = {}

    @property
    def db(self) -> PileDatabase:
        return self._db

    @property
    def config(self) -> AppConfig:
        return self._config

    def version(self, project_id: str) -> int:
        with self._lock:
            return self._versions.get(project_id, 0)

    def invalidate(self, project_id: str) -> None:
        """Drop cached frames for ``project_id`` after a write."""

        with self._lock:
            self._piles.pop((project_id, True), None)
            self._piles.pop((project_id, False), None)
            self._preliminary.pop(project_id, None)
            self._lookup.pop(project_id, None)
            self._versions[project_id] = self._versions.get(project_id, 0) + 1
        LOGGER.debug("Invalidated cache for project %s", project_id)

    def get_piles(self, project_id: str, *, include_unpublished: bool | None = None) -> pd.DataFrame:
        """Raw pile rows; viewers without edit rights only see published rows."""

        if include_unpublished is None:
            include_unpublished = self._config.can_edit
        key = (project_id, bool(include_unpublished))
        with self._lock:
            cached = self._piles.get(key)
        if cached is not None:
            return cached

        def _query() -> TableQuery:
            query = self._db.table(PILES_TABLE).eq("project_id", project_id)
            if not include_unpublished:
                query = query.eq("published", True)
            return query

        frame = fetch_paginated(_query, self._config.fetch_page_size, self._config.fetch_workers)
        with self._lock:
            self._piles[key] = frame
            self.metadata.setdefault(project_id, DatasetMetadata()).update_from_df(frame)
        LOGGER.info("Loaded %d piles for project %s", len(frame), project_id)
        return frame

    def get_prepared_piles(self, project_id: str, *, include_unpublished: bool | None = None) -> pd.DataFrame:
        piles = self.get_piles(project_id, include_unpublished=include_unpublished)
        return prepare_piles(
            piles,
            self.get_tolerance(project_id),
            slow_threshold_minutes=self._config.drive_time_threshold_minutes,
            low_gain_threshold=self._config.gain_threshold,
        )

    def get_preliminary(self, project_id: str) -> pd.DataFrame:
        with self._lock:
            cached = self._preliminary.get(project_id)
        if cached is not None:
            return cached
        frame = fetch_paginated(
            lambda: self._db.table(PRELIMINARY_TABLE).eq("project_id", project_id),
            self._config.fetch_page_size,
            self._config.fetch_workers,
        )
        with self._lock:
            self._preliminary[project_id] = frame
        LOGGER.info("Loaded %d preliminary records for project %s", len(frame), project_id)
        return frame

    def get_prepared_preliminary(self, project_id: str) -> pd.DataFrame:
        return prepare_piles(
            self.get_preliminary(project_id),
            self.get_tolerance(project_id),
            slow_threshold_minutes=self._config.drive_time_threshold_minutes,
            low_gain_threshold=self._config.gain_threshold,
        )

    def get_lookup(self, project_id: str) -> pd.DataFrame:
        """Pile plot rows (tag, block, type, design, northing, easting) for the site map."""

        with self._lock:
            cached = self._lookup.get(project_id)
        if cached is not None:
            return cached
        frame = fetch_paginated(
            lambda: self._db.table(LOOKUP_TABLE).eq("project_id", project_id),
            self._config.fetch_page_size,
            self._config.fetch_workers,
        )
        with self._lock:
            self._lookup[project_id] = frame
        LOGGER.info("Loaded %d pile plot rows for project %s", len(frame), project_id)
        return frame

    def get_project(self, project_id: str) -> dict | None:
        return get_project(self._db, project_id)

    def get_tolerance(self, project_id: str) -> float:
        return project_tolerance(self._db, project_id, self._config.default_embedment_tolerance)

    def get_metadata(self, project_id: str) -> DatasetMetadata:
        with self._lock:
            return self.metadata.get(project_id, DatasetMetadata())


__all__ = ["AppDataStore", "DatasetMetadata", "fetch_paginated"]
