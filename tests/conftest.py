"""
Pytest configuration and shared fixtures.

Each test gets its own on-disk SQLite database (so concurrency tests can open
extra connections to the same file) with the schema and default size bands.
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from fishops.db import connect, ensure_schema
from fishops.services.intake import create_farmer, record_processing, record_warehouse_entry
from fishops.services.sizing import seed_default_thresholds
from fishops.services.sorting import add_sorting_result, complete_sorting_batch, create_sorting_batch
from fishops.services.storage import create_location

BASE_TS = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "fishops.db"


@pytest.fixture
def conn(db_path):
    c = connect(db_path, timeout_s=5.0)
    ensure_schema(c)
    seed_default_thresholds(c)
    yield c
    c.close()


@pytest.fixture
def make_location(conn):
    def _make(name, capacity_kg=2000.0, location_type="cold_storage", status="active"):
        return create_location(
            conn,
            name=name,
            location_type=location_type,
            capacity_kg=capacity_kg,
            status=status,
        )

    return _make


@pytest.fixture
def make_processing_record(conn):
    """Farmer delivery, processed and ready to sort. Returns the processing record id."""
    counter = itertools.count(1)

    def _make(weight_kg=50.0, pieces=100, *, farmer_id=None):
        n = next(counter)
        if farmer_id is None:
            farmer_id = create_farmer(conn, name=f"Farmer {n}")
        entry_id = record_warehouse_entry(conn, farmer_id=farmer_id, total_weight_kg=weight_kg, total_pieces=pieces)
        return record_processing(
            conn,
            warehouse_entry_id=entry_id,
            post_processing_weight_kg=weight_kg,
            ready_for_dispatch_count=pieces,
        )

    return _make


@pytest.fixture
def add_stock(conn, make_processing_record):
    """Create a completed sorting batch holding one size class at one location.

    Batches get strictly increasing created_at values, so call order is FIFO order.
    """
    counter = itertools.count(1)

    def _add(location_id, size_class, pieces, weight_grams, *, created_at=None):
        n = next(counter)
        created_at = created_at or (BASE_TS + timedelta(days=n)).isoformat()
        record_id = make_processing_record(max(weight_grams / 1000.0, 0.001), max(pieces, 1))
        batch_id = create_sorting_batch(conn, record_id, created_at=created_at, batch_number=f"TEST-{n:03d}")
        add_sorting_result(
            conn,
            batch_id,
            size_class=size_class,
            pieces=pieces,
            weight_grams=weight_grams,
            storage_location_id=location_id,
        )
        complete_sorting_batch(conn, batch_id)
        return batch_id

    return _add
