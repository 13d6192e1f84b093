from fishops.db import q
from fishops.services.demo_data import DEFAULT_LOCATIONS, load_demo_data, table_counts, upsert_reference_data, wipe_all
from fishops.services.inventory import summarize
from fishops.services.orders import list_dispatches
from fishops.services.storage import capacity_overview, list_locations
from fishops.services.transfers import list_transfers


def test_reference_data_is_idempotent(conn):
    upsert_reference_data(conn)
    upsert_reference_data(conn)
    assert len(list_locations(conn)) == len(DEFAULT_LOCATIONS)


def test_demo_data_exercises_every_workflow(conn):
    load_demo_data(conn)

    assert len(q(conn, "SELECT id FROM sorting_batches WHERE status = 'completed'")) == 6
    assert sorted(t.status.value for t in list_transfers(conn)) == ["completed", "pending"]
    assert len(list_dispatches(conn, status="dispatched")) == 1
    assert summarize(conn)
    assert all(c.current_usage_kg <= c.capacity_kg for c in capacity_overview(conn))


def test_wipe_all_clears_operational_data(conn):
    load_demo_data(conn)
    wipe_all(conn)

    assert summarize(conn) == []
    assert list_transfers(conn) == []
    assert q(conn, "SELECT id FROM stock_movements") == []
    assert q(conn, "SELECT id FROM farmers") == []


def test_table_counts_follow_the_data(conn):
    upsert_reference_data(conn)
    counts = {c["table_name"]: c["n"] for c in table_counts(conn)}
    assert counts["storage_locations"] == len(DEFAULT_LOCATIONS)
    assert counts["transfers"] == 0


def test_demo_sorting_runs_come_from_processed_deliveries(conn):
    load_demo_data(conn)

    rows = q(
        conn,
        """
        SELECT b.processing_record_id, p.post_processing_weight_grams, p.pre_processing_weight_grams
        FROM sorting_batches b JOIN processing_records p ON p.id = b.processing_record_id
        """,
    )
    assert len(rows) == 6
    assert all(r["post_processing_weight_grams"] < r["pre_processing_weight_grams"] for r in rows)
    counts = {c["table_name"]: c["n"] for c in table_counts(conn)}
    assert (counts["farmers"], counts["warehouse_entries"], counts["processing_records"]) == (3, 6, 6)
