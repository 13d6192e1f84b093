from __future__ import annotations

import logging
from typing import Any, Optional

from fishops.db import execute, q
from fishops.errors import ConsistencyViolationError, InsufficientStockError, ValidationError
from fishops.models import Allocation, InventorySummary, StockSlice
from fishops.utils import grams_to_kg, iso_now

logger = logging.getLogger(__name__)

# Rows that count as stock: completed batch, placed, and carrying weight.
_STOCK_WHERE = """
    b.status = 'completed'
    AND r.storage_location_id IS NOT NULL
    AND r.total_weight_grams > 0
"""


def summarize(conn, *, location_id: Optional[int] = None, size_class: Optional[int] = None) -> list[InventorySummary]:
    """
    Per (location, size class) stock, recomputed from sorting_results on every call.

    Pending batches are excluded entirely. Groups with no rows are omitted, not
    zero-filled; use storage.capacity_overview() for a full location list.
    """
    where = [_STOCK_WHERE]
    params: list[Any] = []
    if location_id is not None:
        where.append("AND r.storage_location_id = ?")
        params.append(int(location_id))
    if size_class is not None:
        where.append("AND r.size_class = ?")
        params.append(int(size_class))

    rows = q(
        conn,
        f"""
        SELECT
          r.storage_location_id,
          r.size_class,
          SUM(r.total_pieces) AS total_pieces,
          SUM(r.total_weight_grams) AS total_weight_grams,
          COUNT(DISTINCT r.batch_id) AS batch_count
        FROM sorting_results r
        JOIN sorting_batches b ON b.id = r.batch_id
        WHERE {' '.join(where)}
        GROUP BY r.storage_location_id, r.size_class
        ORDER BY r.storage_location_id, r.size_class
        """,
        params,
    )
    return [
        InventorySummary(
            storage_location_id=int(r["storage_location_id"]),
            size_class=int(r["size_class"]),
            total_pieces=int(r["total_pieces"]),
            total_weight_grams=int(r["total_weight_grams"]),
            batch_count=int(r["batch_count"]),
        )
        for r in rows
    ]


def usage_by_location(conn) -> dict[int, int]:
    """Live stock weight in grams per location; locations without stock are absent."""
    rows = q(
        conn,
        f"""
        SELECT r.storage_location_id, SUM(r.total_weight_grams) AS grams
        FROM sorting_results r
        JOIN sorting_batches b ON b.id = r.batch_id
        WHERE {_STOCK_WHERE}
        GROUP BY r.storage_location_id
        """,
    )
    return {int(r["storage_location_id"]): int(r["grams"]) for r in rows}


def location_usage_grams(conn, location_id: int) -> int:
    return sum(s.total_weight_grams for s in summarize(conn, location_id=int(location_id)))


def available_stock(conn, location_id: int, size_class: int) -> tuple[int, int]:
    """(pieces, grams) currently held at a location for one size class."""
    rows = summarize(conn, location_id=int(location_id), size_class=int(size_class))
    if not rows:
        return 0, 0
    return rows[0].total_pieces, rows[0].total_weight_grams


def stock_by_size(conn) -> list[dict]:
    """Stock per size class across all locations, with the per-location breakdown."""
    by_size: dict[int, dict] = {}
    names = {int(r["id"]): str(r["name"]) for r in q(conn, "SELECT id, name FROM storage_locations")}
    for s in summarize(conn):
        entry = by_size.setdefault(
            s.size_class,
            {"size_class": s.size_class, "total_pieces": 0, "total_weight_kg": 0.0, "_grams": 0, "locations": []},
        )
        entry["total_pieces"] += s.total_pieces
        entry["_grams"] += s.total_weight_grams
        entry["locations"].append(
            {
                "storage_location_id": s.storage_location_id,
                "storage_location_name": names.get(s.storage_location_id, str(s.storage_location_id)),
                "pieces": s.total_pieces,
                "weight_kg": s.total_weight_kg,
            }
        )

    out = []
    for size in sorted(by_size):
        entry = by_size[size]
        entry["total_weight_kg"] = grams_to_kg(entry.pop("_grams"))
        out.append(entry)
    return out


def fifo_slices(conn, *, size_class: int, location_id: Optional[int] = None) -> list[StockSlice]:
    """Stock rows for a size class, oldest sorting batch first."""
    params: list[Any] = [int(size_class)]
    loc_filter = ""
    if location_id is not None:
        loc_filter = "AND r.storage_location_id = ?"
        params.append(int(location_id))

    rows = q(
        conn,
        f"""
        SELECT
          r.id AS result_id,
          r.batch_id,
          b.batch_number,
          b.created_at AS batch_created_at,
          r.storage_location_id,
          r.size_class,
          r.total_pieces,
          r.total_weight_grams
        FROM sorting_results r
        JOIN sorting_batches b ON b.id = r.batch_id
        WHERE {_STOCK_WHERE}
          AND r.size_class = ?
          {loc_filter}
        ORDER BY b.created_at ASC, b.id ASC, r.id ASC
        """,
        params,
    )
    return [
        StockSlice(
            result_id=int(r["result_id"]),
            batch_id=int(r["batch_id"]),
            batch_number=str(r["batch_number"]),
            batch_created_at=str(r["batch_created_at"]),
            storage_location_id=int(r["storage_location_id"]),
            size_class=int(r["size_class"]),
            pieces=int(r["total_pieces"]),
            weight_grams=int(r["total_weight_grams"]),
        )
        for r in rows
    ]


def _spread_weight(picks: list[tuple[StockSlice, int]], pieces: int, weight_grams: int) -> list[int]:
    # FIFO only ever leaves the last pick partly drained. Fully drained rows give up
    # all their grams; the partial row takes the rest and must keep >= 1 g per piece
    # on both sides of the split.
    *full, (last, last_pieces) = picks
    shares = [s.weight_grams for s, _ in full]
    rest = int(weight_grams) - sum(shares)

    if last_pieces == last.pieces:
        low = high = last.weight_grams
    else:
        low = last_pieces
        high = last.weight_grams - (last.pieces - last_pieces)

    if not low <= rest <= high:
        min_g = sum(shares) + low
        max_g = sum(shares) + high
        raise ValidationError(
            f"{pieces} pieces from these batches weigh between {grams_to_kg(min_g):.3f} and "
            f"{grams_to_kg(max_g):.3f} kg; {grams_to_kg(weight_grams):.3f} kg requested.",
            entity="stock",
            operation="allocate",
        )
    return shares + [rest]


def plan_draw_down(slices: list[StockSlice], pieces: int, weight_grams: Optional[int] = None) -> list[Allocation]:
    """
    FIFO allocation of `pieces` (and optionally an exact weight) across slices.

    Without an explicit weight each slice gives up its own average weight per
    piece, and a slice drained of all its pieces gives up all its grams.
    """
    pieces = int(pieces)
    if pieces <= 0:
        raise ValidationError("Pieces to allocate must be > 0.", entity="stock", operation="allocate")
    avail_pieces = sum(s.pieces for s in slices)
    if pieces > avail_pieces:
        raise InsufficientStockError(
            f"Requested {pieces} pieces but only {avail_pieces} are in stock.",
            available=avail_pieces,
            requested=pieces,
            entity="stock",
            operation="allocate",
        )

    picks: list[tuple[StockSlice, int]] = []
    remaining = pieces
    for s in slices:
        if remaining <= 0:
            break
        take = min(remaining, s.pieces)
        if take <= 0:
            continue
        picks.append((s, take))
        remaining -= take

    if weight_grams is None:
        # A partly drained row keeps at least 1 g per remaining piece.
        grams = [
            s.weight_grams if p == s.pieces
            else max(0, min(int(round(s.weight_grams * p / s.pieces)), s.weight_grams - (s.pieces - p)))
            for s, p in picks
        ]
    else:
        avail_grams = sum(s.weight_grams for s in slices)
        if int(weight_grams) > avail_grams:
            raise InsufficientStockError(
                f"Requested {grams_to_kg(weight_grams):.3f} kg but only {grams_to_kg(avail_grams):.3f} kg are in stock.",
                available=grams_to_kg(avail_grams),
                requested=grams_to_kg(weight_grams),
                entity="stock",
                operation="allocate",
            )
        grams = _spread_weight(picks, pieces, int(weight_grams))

    allocations = [Allocation(slice=s, pieces=p, weight_grams=g) for (s, p), g in zip(picks, grams)]
    for a in allocations:
        logger.debug(
            "FIFO pick: result %s (batch %s) -> %s pcs / %s g",
            a.slice.result_id,
            a.slice.batch_number,
            a.pieces,
            a.weight_grams,
        )
    return allocations


def record_movement(conn, *, result_id: int, location_id: int, size_class: int,
                    pieces_delta: int, grams_delta: int, reason: str, ref_id: Optional[int]) -> None:
    execute(
        conn,
        """
        INSERT INTO stock_movements
          (ts, result_id, storage_location_id, size_class, pieces_delta, grams_delta, reason, ref_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (iso_now(), int(result_id), int(location_id), int(size_class), int(pieces_delta), int(grams_delta), reason, ref_id),
    )


def apply_draw_down(conn, allocations: list[Allocation], *, reason: str, ref_id: Optional[int]) -> None:
    """
    Decrement stock rows; must run inside db.transaction().

    Each update is conditional on the row still holding exactly what was
    planned from, so a concurrent writer shows up as a ConsistencyViolationError
    instead of a lost update.
    """
    for a in allocations:
        cur = execute(
            conn,
            """
            UPDATE sorting_results
            SET total_pieces = total_pieces - ?,
                total_weight_grams = total_weight_grams - ?
            WHERE id = ?
              AND total_pieces = ?
              AND total_weight_grams = ?
            """,
            (a.pieces, a.weight_grams, a.slice.result_id, a.slice.pieces, a.slice.weight_grams),
        )
        if cur.rowcount != 1:
            raise ConsistencyViolationError(
                f"Stock row {a.slice.result_id} changed while {reason} was being applied.",
                entity="sorting_results",
                entity_id=a.slice.result_id,
                operation=reason,
            )
        record_movement(
            conn,
            result_id=a.slice.result_id,
            location_id=a.slice.storage_location_id,
            size_class=a.slice.size_class,
            pieces_delta=-a.pieces,
            grams_delta=-a.weight_grams,
            reason=reason,
            ref_id=ref_id,
        )


def refresh_usage_cache(conn, location_ids: Optional[list[int]] = None) -> None:
    """Rewrite storage_locations.current_usage_kg from live stock. The column is never read as truth."""
    own_tx = not conn.in_transaction
    usage = usage_by_location(conn)
    if location_ids is None:
        location_ids = [int(r["id"]) for r in q(conn, "SELECT id FROM storage_locations")]
    for loc_id in location_ids:
        execute(
            conn,
            "UPDATE storage_locations SET current_usage_kg = ? WHERE id = ?",
            (grams_to_kg(usage.get(int(loc_id), 0)), int(loc_id)),
        )
    if own_tx:
        conn.commit()


def list_movements(conn, *, location_id: Optional[int] = None, limit: int = 200):
    params: list[Any] = []
    where = ""
    if location_id is not None:
        where = "WHERE m.storage_location_id = ?"
        params.append(int(location_id))
    params.append(int(limit))
    return q(
        conn,
        f"""
        SELECT m.ts, sl.name AS storage_location, m.size_class, m.pieces_delta,
               ROUND(m.grams_delta / 1000.0, 3) AS kg_delta, m.reason, m.ref_id, b.batch_number
        FROM stock_movements m
        JOIN storage_locations sl ON sl.id = m.storage_location_id
        JOIN sorting_results r ON r.id = m.result_id
        JOIN sorting_batches b ON b.id = r.batch_id
        {where}
        ORDER BY m.id DESC
        LIMIT ?
        """,
        params,
    )
