"""
Upstream of sorting: farmers deliver fish to the warehouse, each delivery is
processed once, and each processing record is sorted once.

    farmer -> warehouse entry -> processing record -> sorting batch
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fishops.db import execute, q, transaction, x
from fishops.errors import InvalidTransitionError, NotFoundError, ValidationError
from fishops.utils import grams_to_kg, iso_now, iso_today, kg_to_grams, safe_div

logger = logging.getLogger(__name__)


def create_farmer(conn, *, name: str, phone: Optional[str] = None, location: Optional[str] = None) -> int:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Farmer name is required.", entity="farmer", operation="create")
    try:
        farmer_id = x(
            conn,
            "INSERT INTO farmers (name, phone, location, status, created_at) VALUES (?, ?, ?, 'active', ?)",
            (name, phone, location, iso_now()),
        )
    except sqlite3.IntegrityError as e:
        raise ValidationError(f"A farmer named {name!r} already exists.", entity="farmer", operation="create") from e
    logger.info("Registered farmer %s", name)
    return farmer_id


def get_farmer(conn, farmer_id: int):
    rows = q(conn, "SELECT * FROM farmers WHERE id = ?", (int(farmer_id),))
    if not rows:
        raise NotFoundError(f"Farmer {farmer_id} not found.", entity="farmer", entity_id=farmer_id, operation="get")
    return rows[0]


def list_farmers(conn):
    return q(conn, "SELECT * FROM farmers ORDER BY name")


def _generate_entry_code(conn, entry_date: str) -> str:
    """
    Consistent system code:
      WE-{YYYYMMDD}-{NNN}
    """
    prefix = f"WE-{str(entry_date)[:10].replace('-', '')}-"
    r = q(conn, "SELECT COUNT(1) AS n FROM warehouse_entries WHERE entry_code LIKE ?", (prefix + "%",))
    return f"{prefix}{int(r[0]['n']) + 1:03d}"


def record_warehouse_entry(
    conn,
    *,
    farmer_id: int,
    total_weight_kg: float,
    total_pieces: int,
    fish_type: Optional[str] = None,
    entry_date: Optional[str] = None,
    received_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    farmer = get_farmer(conn, farmer_id)
    if farmer["status"] != "active":
        raise ValidationError(f"Farmer {farmer['name']} is not active.", entity="warehouse_entry", operation="create")

    grams = kg_to_grams(total_weight_kg)
    if grams <= 0:
        raise ValidationError("Total weight (kg) must be > 0.", entity="warehouse_entry", operation="create")
    if int(total_pieces) <= 0:
        raise ValidationError("Total pieces must be > 0.", entity="warehouse_entry", operation="create")

    entry_date = entry_date or iso_today()
    entry_id = x(
        conn,
        """
        INSERT INTO warehouse_entries
          (entry_code, farmer_id, entry_date, total_weight_grams, total_pieces, fish_type, received_by, notes, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            _generate_entry_code(conn, entry_date),
            int(farmer_id),
            entry_date,
            grams,
            int(total_pieces),
            fish_type,
            received_by,
            notes,
            iso_now(),
        ),
    )
    logger.info("Warehouse entry %s: %s pcs / %.3f kg from %s", entry_id, total_pieces, grams_to_kg(grams), farmer["name"])
    return entry_id


def get_warehouse_entry(conn, entry_id: int):
    rows = q(conn, "SELECT * FROM warehouse_entries WHERE id = ?", (int(entry_id),))
    if not rows:
        raise NotFoundError(f"Warehouse entry {entry_id} not found.", entity="warehouse_entry", entity_id=entry_id, operation="get")
    return rows[0]


def list_warehouse_entries(conn, *, unprocessed_only: bool = False):
    where = "WHERE p.id IS NULL" if unprocessed_only else ""
    return q(
        conn,
        f"""
        SELECT w.*, f.name AS farmer_name, p.id AS processing_record_id
        FROM warehouse_entries w
        JOIN farmers f ON f.id = w.farmer_id
        LEFT JOIN processing_records p ON p.warehouse_entry_id = w.id
        {where}
        ORDER BY w.entry_date DESC, w.id DESC
        """,
    )


def record_processing(
    conn,
    *,
    warehouse_entry_id: int,
    post_processing_weight_kg: float,
    ready_for_dispatch_count: int,
    final_grade: Optional[str] = "A",
    processed_by: Optional[str] = None,
    processing_date: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    """Process a warehouse entry once. Pre-processing weight is the entry's weight."""
    entry = get_warehouse_entry(conn, warehouse_entry_id)
    pre_grams = int(entry["total_weight_grams"])
    post_grams = kg_to_grams(post_processing_weight_kg)
    count = int(ready_for_dispatch_count)

    if post_grams <= 0:
        raise ValidationError("Post-processing weight (kg) must be > 0.", entity="processing_record", operation="create")
    if post_grams > pre_grams:
        raise ValidationError(
            f"Post-processing weight {grams_to_kg(post_grams):.3f} kg exceeds the "
            f"{grams_to_kg(pre_grams):.3f} kg received.",
            entity="processing_record",
            operation="create",
        )
    if count <= 0 or count > int(entry["total_pieces"]):
        raise ValidationError(
            f"Ready pieces must be between 1 and the {entry['total_pieces']} received.",
            entity="processing_record",
            operation="create",
        )

    with transaction(conn):
        if q(conn, "SELECT 1 FROM processing_records WHERE warehouse_entry_id = ?", (int(warehouse_entry_id),)):
            raise InvalidTransitionError(
                f"Warehouse entry {entry['entry_code']} was already processed.",
                entity="warehouse_entry",
                entity_id=warehouse_entry_id,
                operation="process",
            )
        cur = execute(
            conn,
            """
            INSERT INTO processing_records
              (warehouse_entry_id, processing_date, pre_processing_weight_grams, post_processing_weight_grams,
               ready_for_dispatch_count, final_grade, processed_by, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(warehouse_entry_id),
                processing_date or iso_today(),
                pre_grams,
                post_grams,
                count,
                final_grade,
                processed_by,
                notes,
                iso_now(),
            ),
        )
        record_id = int(cur.lastrowid)

    logger.info(
        "Processed entry %s: %.3f -> %.3f kg (yield %.2f%%)",
        entry["entry_code"], grams_to_kg(pre_grams), grams_to_kg(post_grams), safe_div(post_grams, pre_grams) * 100,
    )
    return record_id


def _with_yield(row) -> dict:
    r = dict(row)
    pre, post = int(r["pre_processing_weight_grams"]), int(r["post_processing_weight_grams"])
    r["processing_waste_kg"] = grams_to_kg(pre - post)
    r["processing_yield"] = round(safe_div(post, pre) * 100, 2)
    return r


def get_processing_record(conn, record_id: int) -> dict:
    rows = q(conn, "SELECT * FROM processing_records WHERE id = ?", (int(record_id),))
    if not rows:
        raise NotFoundError(
            f"Processing record {record_id} not found.",
            entity="processing_record",
            entity_id=record_id,
            operation="get",
        )
    return _with_yield(rows[0])


def validate_for_sorting(conn, record_id: int) -> dict:
    """The record must exist, carry output, and not be sorted already (one batch per record)."""
    record = get_processing_record(conn, record_id)
    if int(record["post_processing_weight_grams"]) <= 0 or int(record["ready_for_dispatch_count"]) <= 0:
        raise ValidationError(
            f"Processing record {record_id} has no output to sort.",
            entity="processing_record",
            entity_id=record_id,
            operation="sort",
        )
    existing = q(conn, "SELECT batch_number, status FROM sorting_batches WHERE processing_record_id = ?", (int(record_id),))
    if existing:
        raise InvalidTransitionError(
            f"Processing record {record_id} already has sorting batch {existing[0]['batch_number']} ({existing[0]['status']}).",
            current=str(existing[0]["status"]),
            entity="processing_record",
            entity_id=record_id,
            operation="sort",
        )
    return record


def processing_records_ready_for_sorting(conn) -> list[dict]:
    rows = q(
        conn,
        """
        SELECT p.*, w.entry_code, w.fish_type, f.name AS farmer_name
        FROM processing_records p
        JOIN warehouse_entries w ON w.id = p.warehouse_entry_id
        JOIN farmers f ON f.id = w.farmer_id
        LEFT JOIN sorting_batches b ON b.processing_record_id = p.id
        WHERE b.id IS NULL
          AND p.post_processing_weight_grams > 0
          AND p.ready_for_dispatch_count > 0
        ORDER BY p.processing_date DESC, p.id DESC
        """,
    )
    return [_with_yield(r) for r in rows]


def processing_stats(conn) -> dict:
    r = q(
        conn,
        """
        SELECT COUNT(1) AS n,
               COALESCE(SUM(pre_processing_weight_grams), 0) AS pre_g,
               COALESCE(SUM(post_processing_weight_grams), 0) AS post_g
        FROM processing_records
        """,
    )[0]
    pre, post = int(r["pre_g"]), int(r["post_g"])
    return {
        "records": int(r["n"]),
        "received_kg": grams_to_kg(pre),
        "processed_kg": grams_to_kg(post),
        "waste_kg": grams_to_kg(pre - post),
        "overall_yield": round(safe_div(post, pre) * 100, 2),
    }
