import sqlite3

import pytest

from fishops.db import connect, ensure_schema, execute, q, transaction, x
from fishops.errors import TransientStoreError


def test_ensure_schema_is_repeatable(conn):
    ensure_schema(conn)
    cols = {r["name"] for r in q(conn, "PRAGMA table_info(sorting_results)")}
    assert {"transfer_id", "transfer_source_storage_id"} <= cols


def test_transaction_rolls_back_on_error(conn):
    with pytest.raises(RuntimeError):
        with transaction(conn):
            execute(
                conn,
                "INSERT INTO storage_locations (name, location_type, capacity_kg, status, created_at) VALUES (?, ?, ?, ?, ?)",
                ("Ghost", "freezer", 10, "active", "2026-01-01T00:00:00+00:00"),
            )
            raise RuntimeError("boom")

    assert q(conn, "SELECT * FROM storage_locations WHERE name = 'Ghost'") == []


def test_transaction_commits(conn):
    with transaction(conn):
        execute(
            conn,
            "INSERT INTO storage_locations (name, location_type, capacity_kg, status, created_at) VALUES (?, ?, ?, ?, ?)",
            ("Kept", "freezer", 10, "active", "2026-01-01T00:00:00+00:00"),
        )
    assert len(q(conn, "SELECT * FROM storage_locations WHERE name = 'Kept'")) == 1


def test_write_lock_held_elsewhere_is_transient(conn, db_path):
    other = connect(db_path, timeout_s=0.1)
    try:
        with transaction(conn):
            with pytest.raises(TransientStoreError) as exc:
                with transaction(other):
                    pass
            assert exc.value.entity == "database"
    finally:
        other.close()


def test_programming_errors_are_not_transient(conn):
    with pytest.raises(sqlite3.OperationalError):
        q(conn, "SELECT * FROM no_such_table")


def test_x_returns_new_row_id(conn):
    first = x(conn, "INSERT INTO sorting_batches (batch_number, created_at, status) VALUES ('X-1', '2026-01-01', 'pending')")
    second = x(conn, "INSERT INTO sorting_batches (batch_number, created_at, status) VALUES ('X-2', '2026-01-01', 'pending')")
    assert second == first + 1


def test_older_database_gains_processing_link(tmp_path):
    c = connect(tmp_path / "old.db")
    try:
        c.execute(
            "CREATE TABLE sorting_batches (id INTEGER PRIMARY KEY AUTOINCREMENT, batch_number TEXT NOT NULL UNIQUE, "
            "created_at TEXT NOT NULL, completed_at TEXT, status TEXT NOT NULL DEFAULT 'pending', sorted_by TEXT, notes TEXT)"
        )
        c.execute("INSERT INTO sorting_batches (batch_number, created_at) VALUES ('OLD-1', '2025-12-01')")
        c.commit()

        ensure_schema(c)

        cols = {r["name"] for r in q(c, "PRAGMA table_info(sorting_batches)")}
        assert "processing_record_id" in cols
        [row] = q(c, "SELECT processing_record_id FROM sorting_batches")
        assert row["processing_record_id"] is None
    finally:
        c.close()
