"""DuckDB-backed table client with a small filter/select/range/order query builder."""
from __future__ import annotations

import datetime as dt
import json
import logging
import math
import uuid
from threading import RLock
from typing import Any, Iterable, Mapping, Sequence

import duckdb
import numpy as np
import pandas as pd

LOGGER = logging.getLogger(__name__)


class DatabaseError(RuntimeError):
    """Raised for any failed query against the pile database."""


_SCHEMA: dict[str, str] = {
    "projects": """
        id VARCHAR NOT NULL,
        project_name VARCHAR NOT NULL,
        project_location VARCHAR NOT NULL,
        total_project_piles INTEGER,
        tracker_system VARCHAR DEFAULT 'software',
        geotech_company VARCHAR,
        role VARCHAR DEFAULT 'project_manager',
        embedment_tolerance DOUBLE DEFAULT 1.0,
        row_seq BIGINT DEFAULT nextval('projects_seq'),
        created_at TIMESTAMP DEFAULT current_timestamp,
        updated_at TIMESTAMP DEFAULT current_timestamp
    """,
    "user_projects": """
        id VARCHAR NOT NULL,
        user_id VARCHAR NOT NULL,
        project_id VARCHAR NOT NULL,
        role VARCHAR DEFAULT 'viewer',
        is_owner BOOLEAN DEFAULT FALSE,
        row_seq BIGINT DEFAULT nextval('user_projects_seq'),
        created_at TIMESTAMP DEFAULT current_timestamp
    """,
    "piles": """
        id VARCHAR NOT NULL,
        project_id VARCHAR NOT NULL,
        pile_number VARCHAR,
        pile_id VARCHAR,
        pile_location VARCHAR,
        pile_type VARCHAR,
        pile_size VARCHAR,
        pile_status VARCHAR,
        pile_color VARCHAR,
        block VARCHAR,
        zone VARCHAR,
        machine VARCHAR,
        design_embedment DOUBLE,
        embedment DOUBLE,
        start_z DOUBLE,
        end_z DOUBLE,
        gain_per_30_seconds DOUBLE,
        duration VARCHAR,
        duration_seconds INTEGER,
        start_date VARCHAR,
        start_time VARCHAR,
        stop_time VARCHAR,
        installation_date VARCHAR,
        inspector_name VARCHAR,
        notes VARCHAR,
        published BOOLEAN DEFAULT TRUE,
        is_duplicate BOOLEAN DEFAULT FALSE,
        is_combined BOOLEAN DEFAULT FALSE,
        combined_pile_ids VARCHAR,
        combined_start_date VARCHAR,
        combined_end_date VARCHAR,
        row_seq BIGINT DEFAULT nextval('piles_seq'),
        created_at TIMESTAMP DEFAULT current_timestamp,
        updated_at TIMESTAMP DEFAULT current_timestamp
    """,
    "pile_lookup_data": """
        id VARCHAR NOT NULL,
        project_id VARCHAR NOT NULL,
        pile_tag VARCHAR NOT NULL,
        normalized_tag VARCHAR NOT NULL,
        block VARCHAR,
        pile_type VARCHAR,
        design_embedment DOUBLE,
        northing DOUBLE,
        easting DOUBLE,
        pile_size VARCHAR,
        row_seq BIGINT DEFAULT nextval('pile_lookup_data_seq'),
        created_at TIMESTAMP DEFAULT current_timestamp
    """,
    "preliminary_production": """
        id VARCHAR NOT NULL,
        project_id VARCHAR NOT NULL,
        machine VARCHAR NOT NULL,
        pile_id VARCHAR,
        pile_number VARCHAR,
        block VARCHAR,
        start_date VARCHAR,
        start_time VARCHAR,
        stop_time VARCHAR,
        duration VARCHAR,
        duration_seconds INTEGER,
        embedment DOUBLE,
        design_embedment DOUBLE,
        pile_type VARCHAR,
        notes VARCHAR,
        row_seq BIGINT DEFAULT nextval('preliminary_production_seq'),
        created_at TIMESTAMP DEFAULT current_timestamp,
        updated_at TIMESTAMP DEFAULT current_timestamp
    """,
}

TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    table: tuple(
        line.strip().split()[0]
        for line in ddl.strip().splitlines()
        if line.strip()
    )
    for table, ddl in _SCHEMA.items()
}

_SERVER_MANAGED = {"row_seq", "created_at", "updated_at"}


def _to_db_value(value: Any) -> Any:
    """Coerce pandas/numpy scalars and containers into DuckDB parameter values."""

    if value is None:
        return None
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(list(value) if isinstance(value, tuple) else value)
    if value is pd.NaT:
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, dt.date) and not isinstance(value, dt.datetime):
        return value.isoformat()
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class TableQuery:
    """Chainable query against a single table.

    Filters accumulate with AND. ``fetch``/``count``/``first`` read,
    ``insert``/``update``/``delete`` write. ``update`` and ``delete`` refuse to
    run without at least one filter.
    """

    def __init__(self, db: "PileDatabase", table: str):
        if table not in TABLE_COLUMNS:
            raise DatabaseError(f"Unknown table '{table}'.")
        self._db = db
        self._table = table
        self._columns: list[str] | None = None
        self._where: list[str] = []
        self._params: list[Any] = []
        self._order: list[str] = []
        self._limit: int | None = None
        self._offset: int | None = None

    # -- selection -----------------------------------------------------------
    def _check(self, column: str) -> str:
        if column not in TABLE_COLUMNS[self._table]:
            raise DatabaseError(f"Unknown column '{column}' for table '{self._table}'.")
        return column

    def select(self, columns: str | Sequence[str] = "*") -> "TableQuery":
        if isinstance(columns, str):
            if columns.strip() == "*":
                self._columns = None
                return self
            columns = [part.strip() for part in columns.split(",") if part.strip()]
        self._columns = [self._check(col) for col in columns]
        return self

    def _add(self, clause: str, *params: Any) -> "TableQuery":
        self._where.append(clause)
        self._params.extend(params)
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        col = self._check(column)
        value = _to_db_value(value)
        if value is None:
            return self._add(f"{col} IS NULL")
        return self._add(f"{col} = ?", value)

    def neq(self, column: str, value: Any) -> "TableQuery":
        col = self._check(column)
        value = _to_db_value(value)
        if value is None:
            return self._add(f"{col} IS NOT NULL")
        return self._add(f"({col} IS NULL OR {col} <> ?)", value)

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        col = self._check(column)
        cleaned = [_to_db_value(v) for v in values]
        cleaned = [v for v in cleaned if v is not None]
        if not cleaned:
            return self._add("FALSE")
        return self._add(f"{col} IN (SELECT * FROM UNNEST(?))", cleaned)

    def is_null(self, column: str) -> "TableQuery":
        return self._add(f"{self._check(column)} IS NULL")

    def not_null(self, column: str) -> "TableQuery":
        return self._add(f"{self._check(column)} IS NOT NULL")

    def gt(self, column: str, value: Any) -> "TableQuery":
        return self._add(f"{self._check(column)} > ?", _to_db_value(value))

    def gte(self, column: str, value: Any) -> "TableQuery":
        return self._add(f"{self._check(column)} >= ?", _to_db_value(value))

    def lt(self, column: str, value: Any) -> "TableQuery":
        return self._add(f"{self._check(column)} < ?", _to_db_value(value))

    def lte(self, column: str, value: Any) -> "TableQuery":
        return self._add(f"{self._check(column)} <= ?", _to_db_value(value))

    def ilike(self, column: str, pattern: str) -> "TableQuery":
        return self._add(f"{self._check(column)} ILIKE ?", pattern)

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        direction = "DESC" if desc else "ASC"
        self._order.append(f"{self._check(column)} {direction} NULLS LAST")
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Restrict to rows ``start``..``end`` inclusive (zero based)."""

        if start < 0 or end < start:
            raise DatabaseError(f"Invalid range {start}..{end}.")
        self._offset = start
        self._limit = end - start + 1
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = int(count)
        return self

    # -- reads ---------------------------------------------------------------
    def _where_sql(self) -> str:
        return (" WHERE " + " AND ".join(self._where)) if self._where else ""

    def fetch(self) -> pd.DataFrame:
        cols = ", ".join(self._columns) if self._columns else "*"
        sql = f"SELECT {cols} FROM {self._table}{self._where_sql()}"
        if self._order:
            sql += " ORDER BY " + ", ".join(self._order)
        if self._limit is not None:
            sql += f" LIMIT {int(self._limit)}"
        if self._offset:
            sql += f" OFFSET {int(self._offset)}"
        return self._db.query_df(sql, self._params)

    def count(self) -> int:
        sql = f"SELECT count(*) FROM {self._table}{self._where_sql()}"
        row = self._db.query_one(sql, self._params)
        return int(row[0]) if row else 0

    def first(self) -> dict[str, Any] | None:
        self._limit = 1
        frame = self.fetch()
        if frame.empty:
            return None
        return {key: (None if _to_db_value(val) is None else val) for key, val in frame.iloc[0].items()}

    def single(self) -> dict[str, Any]:
        row = self.first()
        if row is None:
            raise DatabaseError(f"No matching row in '{self._table}'.")
        return row

    # -- writes --------------------------------------------------------------
    def insert(self, rows: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> list[str]:
        """Insert one or many rows in a single transaction; returns their ids."""

        if isinstance(rows, Mapping):
            rows = [rows]
        prepared: list[dict[str, Any]] = []
        for row in rows:
            record = {}
            for key, value in row.items():
                if key in _SERVER_MANAGED:
                    continue
                record[self._check(key)] = _to_db_value(value)
            record.setdefault("id", str(uuid.uuid4()))
            if record["id"] is None:
                record["id"] = str(uuid.uuid4())
            prepared.append(record)
        if not prepared:
            return []

        groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for record in prepared:
            groups.setdefault(tuple(record.keys()), []).append(record)

        statements = []
        for keys, records in groups.items():
            placeholders = ", ".join("?" for _ in keys)
            sql = f"INSERT INTO {self._table} ({', '.join(keys)}) VALUES ({placeholders})"
            statements.append((sql, [[rec[k] for k in keys] for rec in records]))
        self._db.execute_many_in_transaction(statements)
        return [str(rec["id"]) for rec in prepared]

    def update(self, values: Mapping[str, Any]) -> int:
        if not self._where:
            raise DatabaseError(f"Refusing to update '{self._table}' without a filter.")
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in values.items():
            if key in _SERVER_MANAGED or key == "id":
                continue
            assignments.append(f"{self._check(key)} = ?")
            params.append(_to_db_value(value))
        if not assignments:
            return 0
        if "updated_at" in TABLE_COLUMNS[self._table]:
            assignments.append("updated_at = current_timestamp")
        sql = f"UPDATE {self._table} SET {', '.join(assignments)}{self._where_sql()}"
        return self._db.execute_write(sql, params + self._params)

    def delete(self) -> int:
        if not self._where:
            raise DatabaseError(f"Refusing to delete from '{self._table}' without a filter.")
        sql = f"DELETE FROM {self._table}{self._where_sql()}"
        return self._db.execute_write(sql, self._params)


class PileDatabase:
    """Owns the DuckDB connection and hands out per-table query builders."""

    def __init__(self, path: str = ":memory:"):
        self._path = path
        self._write_lock = RLock()
        try:
            self._conn = duckdb.connect(database=path, read_only=False)
        except duckdb.Error as exc:
            raise DatabaseError(f"Unable to open database '{path}': {exc}") from exc
        self._create_schema()
        LOGGER.info("Opened pile database: %s", path)

    @property
    def path(self) -> str:
        return self._path

    def _create_schema(self) -> None:
        with self._write_lock:
            for table, ddl in _SCHEMA.items():
                self._conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {table}_seq")
                self._conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({ddl})")
            for table in ("piles", "pile_lookup_data", "preliminary_production", "user_projects"):
                self._conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_project_id ON {table}(project_id)"
                )

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    def query_df(self, sql: str, params: Sequence[Any]) -> pd.DataFrame:
        cursor = self._conn.cursor()
        try:
            return cursor.execute(sql, list(params)).df()
        except duckdb.Error as exc:
            raise DatabaseError(str(exc)) from exc
        finally:
            cursor.close()

    def query_one(self, sql: str, params: Sequence[Any]) -> tuple | None:
        cursor = self._conn.cursor()
        try:
            return cursor.execute(sql, list(params)).fetchone()
        except duckdb.Error as exc:
            raise DatabaseError(str(exc)) from exc
        finally:
            cursor.close()

    def execute_write(self, sql: str, params: Sequence[Any]) -> int:
        with self._write_lock:
            cursor = self._conn.cursor()
            try:
                row = cursor.execute(sql, list(params)).fetchone()
            except duckdb.Error as exc:
                raise DatabaseError(str(exc)) from exc
            finally:
                cursor.close()
        return int(row[0]) if row else 0

    def execute_many_in_transaction(self, statements: Sequence[tuple[str, list[list[Any]]]]) -> None:
        with self._write_lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN TRANSACTION")
                for sql, rows in statements:
                    cursor.executemany(sql, rows)
                cursor.execute("COMMIT")
            except duckdb.Error as exc:
                try:
                    cursor.execute("ROLLBACK")
                except duckdb.Error:
                    LOGGER.debug("Rollback after failed insert was not possible", exc_info=True)
                raise DatabaseError(str(exc)) from exc
            finally:
                cursor.close()

    def table_counts(self) -> dict[str, int]:
        return {name: self.table(name).count() for name in TABLE_COLUMNS}

    def ping(self) -> bool:
        try:
            self.query_one("SELECT 1", [])
        except DatabaseError:
            return False
        return True

    def close(self) -> None:
        self._conn.close()


def insert_in_batches(
    db: PileDatabase,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    batch_size: int,
    *,
    stop_on_error: bool = True,
) -> tuple[int, list[tuple[int, str]]]:
    """Insert ``rows`` in batches; returns (inserted, [(batch_index, error), ...])."""

    inserted = 0
    failures: list[tuple[int, str]] = []
    for index, batch in enumerate(_chunks(list(rows), max(1, int(batch_size)))):
        try:
            db.table(table).insert(batch)
        except DatabaseError as exc:
            LOGGER.error("Insert batch %d into %s failed: %s", index + 1, table, exc)
            failures.append((index, str(exc)))
            if stop_on_error:
                break
            continue
        inserted += len(batch)
    return inserted, failures


def delete_in_batches(db: PileDatabase, table: str, ids: Sequence[str], batch_size: int) -> int:
    """Delete rows by id in batches; a failing batch raises after earlier batches are applied."""

    deleted = 0
    for batch in _chunks(list(ids), max(1, int(batch_size))):
        deleted += db.table(table).in_("id", batch).delete()
    return deleted


__all__ = [
    "DatabaseError",
    "PileDatabase",
    "TableQuery",
    "TABLE_COLUMNS",
    "delete_in_batches",
    "insert_in_batches",
]
