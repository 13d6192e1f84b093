from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

import streamlit as st

from fishops.errors import TransientStoreError
from fishops.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "unable to open database", "disk i/o error")


def connect(db_path: Path, timeout_s: float = 5.0) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(str(db_path), timeout=float(timeout_s), check_same_thread=False)
    except sqlite3.OperationalError as e:
        raise TransientStoreError(str(e), entity="database", entity_id=str(db_path), operation="connect") from e
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@st.cache_resource
def get_conn(db_path: Path, timeout_s: float = 5.0) -> sqlite3.Connection:
    return connect(db_path, timeout_s)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as e:
        msg = str(e).lower()
        if any(m in msg for m in _TRANSIENT_MARKERS):
            logger.warning("Transient store error during %s: %s", operation, e)
            raise TransientStoreError(str(e), entity="database", operation=operation) from e
        raise


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    cols = [r["name"] for r in rows]
    return column in cols


def ensure_schema(conn: sqlite3.Connection) -> None:
    with _store_errors("ensure_schema"):
        # Create base schema (for new installs)
        conn.executescript(SCHEMA_SQL)

        # ---- migrations for existing installs ----
        if not _column_exists(conn, "storage_locations", "current_usage_kg"):
            conn.execute("ALTER TABLE storage_locations ADD COLUMN current_usage_kg REAL NOT NULL DEFAULT 0;")

        # Transfer provenance on stock rows
        if not _column_exists(conn, "sorting_results", "transfer_id"):
            conn.execute("ALTER TABLE sorting_results ADD COLUMN transfer_id INTEGER;")
        if not _column_exists(conn, "sorting_results", "transfer_source_storage_id"):
            conn.execute("ALTER TABLE sorting_results ADD COLUMN transfer_source_storage_id INTEGER;")

        # Sorting batches come from processing records, one batch per record
        if not _column_exists(conn, "sorting_batches", "processing_record_id"):
            conn.execute("ALTER TABLE sorting_batches ADD COLUMN processing_record_id INTEGER REFERENCES processing_records(id);")
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_sorting_batches_processing_record "
            "ON sorting_batches(processing_record_id);"
        )

        conn.commit()


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    with _store_errors("query"):
        cur = conn.execute(sql, tuple(params))
        rows = cur.fetchall()
        cur.close()
    return rows


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    with _store_errors("write"):
        cur = conn.execute(sql, tuple(params))
        conn.commit()
        last = cur.lastrowid
        cur.close()
    return int(last)


def execute(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
    """Run one statement without committing; the caller owns the transaction."""
    with _store_errors("write"):
        return conn.execute(sql, tuple(params))


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    All-or-nothing unit of work.

    BEGIN IMMEDIATE takes the write lock up front, so the reads made inside
    the block cannot be invalidated by another writer before COMMIT.
    """
    with _store_errors("begin"):
        conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    try:
        with _store_errors("commit"):
            conn.commit()
    except TransientStoreError:
        conn.rollback()
        raise
