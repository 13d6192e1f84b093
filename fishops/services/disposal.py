from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fishops.db import execute, q, transaction
from fishops.errors import InsufficientStockError, ValidationError
from fishops.services.inventory import apply_draw_down, fifo_slices, plan_draw_down, refresh_usage_cache
from fishops.services.storage import get_location
from fishops.utils import grams_to_kg, iso_now

logger = logging.getLogger(__name__)

DISPOSAL_REASONS = ["AGE", "SPOILAGE", "DAMAGE", "QUALITY_REJECT", "STORAGE_FAILURE", "OTHER"]


def dispose(
    conn,
    *,
    location_id: int,
    size_class: int,
    pieces: int,
    reason: str,
    disposed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    """Write off stock at one location, oldest batches first. Weight follows each batch's average."""
    if int(pieces) <= 0:
        raise ValidationError("Pieces to dispose must be > 0.", entity="disposal", operation="dispose")
    reason = str(reason or "").strip().upper()
    if reason not in DISPOSAL_REASONS:
        raise ValidationError(
            f"Invalid disposal reason. Use one of: {', '.join(DISPOSAL_REASONS)}.",
            entity="disposal",
            operation="dispose",
        )

    loc = get_location(conn, location_id)

    with transaction(conn):
        slices = fifo_slices(conn, size_class=int(size_class), location_id=loc.id)
        try:
            allocations = plan_draw_down(slices, int(pieces))
        except InsufficientStockError as e:
            logger.warning("Disposal at %s refused: %s", loc.name, e)
            raise InsufficientStockError(
                f"{loc.name} holds {e.available} pcs of size {size_class}; {pieces} to dispose.",
                available=e.available,
                requested=e.requested,
                entity="storage_location",
                entity_id=loc.id,
                operation="dispose",
            ) from e

        grams = sum(a.weight_grams for a in allocations)
        cur = execute(
            conn,
            """
            INSERT INTO disposal_records
              (storage_location_id, size_class, pieces, weight_grams, reason, disposed_by, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (loc.id, int(size_class), int(pieces), grams, reason, disposed_by, notes, iso_now()),
        )
        disposal_id = int(cur.lastrowid)
        apply_draw_down(conn, allocations, reason="disposal", ref_id=disposal_id)
        refresh_usage_cache(conn, [loc.id])

    logger.info("Disposed %s pcs / %.3f kg of size %s at %s (%s)", pieces, grams_to_kg(grams), size_class, loc.name, reason)
    return disposal_id


def disposal_candidates(conn, days_old: int = 30, *, now: Optional[datetime] = None):
    """Stock rows whose sorting batch is older than `days_old` days."""
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(days=int(days_old))).replace(microsecond=0).isoformat()
    return q(
        conn,
        """
        SELECT r.id AS result_id, b.batch_number, b.created_at AS sorted_at,
               sl.id AS storage_location_id, sl.name AS storage_location, sl.status AS location_status,
               r.size_class, r.total_pieces,
               ROUND(r.total_weight_grams / 1000.0, 3) AS weight_kg
        FROM sorting_results r
        JOIN sorting_batches b ON b.id = r.batch_id
        JOIN storage_locations sl ON sl.id = r.storage_location_id
        WHERE b.status = 'completed'
          AND r.total_weight_grams > 0
          AND b.created_at < ?
        ORDER BY b.created_at ASC, r.id ASC
        """,
        (cutoff,),
    )


def list_disposals(conn, limit: int = 50):
    return q(
        conn,
        """
        SELECT d.id, d.created_at, sl.name AS storage_location, d.size_class, d.pieces,
               ROUND(d.weight_grams / 1000.0, 3) AS weight_kg, d.reason, d.disposed_by, d.notes
        FROM disposal_records d
        JOIN storage_locations sl ON sl.id = d.storage_location_id
        ORDER BY d.id DESC
        LIMIT ?
        """,
        (int(limit),),
    )


def disposal_stats(conn) -> dict:
    rows = q(
        conn,
        """
        SELECT reason, COUNT(1) AS n, SUM(pieces) AS pieces, SUM(weight_grams) AS grams
        FROM disposal_records
        GROUP BY reason
        ORDER BY grams DESC
        """,
    )
    by_reason = {
        str(r["reason"]): {"count": int(r["n"]), "pieces": int(r["pieces"]), "weight_kg": grams_to_kg(int(r["grams"]))}
        for r in rows
    }
    return {
        "total_disposals": sum(v["count"] for v in by_reason.values()),
        "total_weight_kg": round(sum(v["weight_kg"] for v in by_reason.values()), 3),
        "top_reason": rows[0]["reason"] if rows else None,
        "by_reason": by_reason,
    }
