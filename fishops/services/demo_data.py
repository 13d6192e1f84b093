from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from fishops.db import ensure_schema, q
from fishops.services.intake import create_farmer, record_processing, record_warehouse_entry
from fishops.services.orders import OrderItemInput, create_order, dispatch_order
from fishops.services.sizing import seed_default_thresholds
from fishops.services.sorting import complete_sorting_batch, create_sorting_batch, sort_fish
from fishops.services.storage import create_location
from fishops.services import transfers


DEFAULT_LOCATIONS = [
    ("Cold Storage A", "cold_storage", 2000.0),
    ("Cold Storage B", "cold_storage", 1500.0),
    ("Freezer 1", "freezer", 800.0),
    ("Processing Hall", "processing_area", 300.0),
]

DEMO_FARMERS = [
    ("Mary Achieng", "+254 700 100 201", "Kisumu"),
    ("Peter Otieno", "+254 700 100 202", "Homa Bay"),
    ("Grace Wanjiru", "+254 700 100 203", "Siaya"),
]

# (size_class, typical grams) for generated catches
_DEMO_WEIGHTS = [(1, 150), (2, 250), (3, 400), (4, 650), (5, 950)]


def upsert_reference_data(conn) -> None:
    ensure_schema(conn)
    seed_default_thresholds(conn)

    existing = {str(r["name"]) for r in q(conn, "SELECT name FROM storage_locations")}
    for name, ltype, cap in DEFAULT_LOCATIONS:
        if name not in existing:
            create_location(conn, name=name, location_type=ltype, capacity_kg=cap)


_COUNTED_TABLES = [
    "farmers",
    "warehouse_entries",
    "processing_records",
    "storage_locations",
    "sorting_batches",
    "sorting_results",
    "transfers",
    "outlet_orders",
    "dispatch_records",
    "outlet_receiving",
    "disposal_records",
    "stock_movements",
]


def table_counts(conn) -> list[dict]:
    return [
        {"table_name": t, "n": int(q(conn, f"SELECT COUNT(*) AS n FROM {t}")[0]["n"])}
        for t in _COUNTED_TABLES
    ]


def wipe_all(conn) -> None:
    # Keep schema and thresholds, delete data (order matters for FKs).
    for t in [
        "outlet_receiving",
        "dispatch_items",
        "dispatch_records",
        "outlet_order_items",
        "outlet_orders",
        "disposal_records",
        "stock_movements",
        "sorted_fish_items",
        "sorting_results",
        "transfers",
        "sorting_batches",
        "processing_records",
        "warehouse_entries",
        "farmers",
        "storage_locations",
    ]:
        conn.execute(f"DELETE FROM {t};")
    conn.commit()


def load_demo_data(conn, *, seed: int = 7) -> None:
    random.seed(seed)
    upsert_reference_data(conn)

    locations = {str(r["name"]): int(r["id"]) for r in q(conn, "SELECT id, name FROM storage_locations")}
    targets = [locations["Cold Storage A"], locations["Cold Storage B"], locations["Freezer 1"]]

    known = {str(r["name"]): int(r["id"]) for r in q(conn, "SELECT id, name FROM farmers")}
    farmer_ids = [known.get(n) or create_farmer(conn, name=n, phone=p, location=loc) for n, p, loc in DEMO_FARMERS]

    # Six deliveries over the last week, each processed and sorted the same day
    base = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=6)
    for i in range(6):
        created_at = (base + timedelta(days=i)).isoformat()

        weights = []
        for _, grams in _DEMO_WEIGHTS:
            for _ in range(random.randint(40, 90)):
                weights.append(round(random.uniform(grams * 0.85, grams * 1.15), 2))
        processed_kg = round(sum(weights) / 1000.0, 3)

        entry_id = record_warehouse_entry(
            conn,
            farmer_id=farmer_ids[i % len(farmer_ids)],
            total_weight_kg=round(processed_kg * random.uniform(1.08, 1.15), 3),
            total_pieces=len(weights),
            fish_type="Tilapia",
            entry_date=created_at[:10],
            received_by="demo",
        )
        record_id = record_processing(
            conn,
            warehouse_entry_id=entry_id,
            post_processing_weight_kg=processed_kg,
            ready_for_dispatch_count=len(weights),
            processed_by="demo",
            processing_date=created_at[:10],
        )

        batch_id = create_sorting_batch(conn, record_id, sorted_by="demo", notes="Demo sorting run", created_at=created_at)
        sort_fish(conn, batch_id, weights, storage_location_id=targets[i % len(targets)])
        complete_sorting_batch(conn, batch_id)

    # One completed transfer and one waiting for approval
    t = transfers.request(
        conn,
        from_storage_id=targets[0],
        to_storage_id=targets[2],
        size_class=3,
        quantity=20,
        weight_kg=8.0,
        requested_by="demo",
    )
    transfers.approve(conn, t.id, approved_by="demo-manager")
    transfers.complete(conn, t.id)

    transfers.request(
        conn,
        from_storage_id=targets[1],
        to_storage_id=targets[0],
        size_class=2,
        quantity=10,
        weight_kg=2.5,
        requested_by="demo",
    )

    # An outlet order already on the road
    order_id = create_order(
        conn,
        outlet_name="Lakeside Outlet",
        items=[OrderItemInput(size_class=3, pieces=25, unit_price=420.0), OrderItemInput(size_class=4, pieces=15, unit_price=560.0)],
        requested_by="demo",
    )
    dispatch_order(conn, order_id, dispatched_by="demo")
