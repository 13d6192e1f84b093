from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from fishops.db import execute, q, transaction
from fishops.errors import (
    CapacityExceededError,
    InvalidTransitionError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from fishops.models import BatchStatus, parse_status
from fishops.services.intake import validate_for_sorting
from fishops.services.inventory import refresh_usage_cache
from fishops.services.sizing import SizeClassifier, load_classifier
from fishops.services.storage import get_location, location_capacity
from fishops.utils import grams_to_kg, iso_now

logger = logging.getLogger(__name__)


def _generate_batch_number(conn, created_at: str) -> str:
    """
    Consistent system code:
      SORT-{YYYYMMDD}-{NNN}
    """
    ymd = str(created_at)[:10].replace("-", "")
    prefix = f"SORT-{ymd}-"
    r = q(conn, "SELECT COUNT(1) AS n FROM sorting_batches WHERE batch_number LIKE ?", (prefix + "%",))
    n = int(r[0]["n"]) if r else 0
    return f"{prefix}{n + 1:03d}"


def create_sorting_batch(
    conn,
    processing_record_id: int,
    *,
    sorted_by: Optional[str] = None,
    notes: Optional[str] = None,
    created_at: Optional[str] = None,
    batch_number: Optional[str] = None,
) -> int:
    """Open a pending batch for a processed delivery. Each processing record is sorted at most once."""
    created_at = created_at or iso_now()
    batch_number = (batch_number or "").strip() or _generate_batch_number(conn, created_at)

    if q(conn, "SELECT 1 FROM sorting_batches WHERE batch_number = ?", (batch_number,)):
        raise ValidationError(f"Batch number {batch_number} already exists.", entity="sorting_batch", operation="create")

    with transaction(conn):
        validate_for_sorting(conn, processing_record_id)
        cur = execute(
            conn,
            """
            INSERT INTO sorting_batches (batch_number, processing_record_id, created_at, status, sorted_by, notes)
            VALUES (?, ?, ?, 'pending', ?, ?)
            """,
            (batch_number, int(processing_record_id), created_at, sorted_by, notes),
        )
        batch_id = int(cur.lastrowid)
    logger.info("Opened sorting batch %s for processing record %s", batch_number, processing_record_id)
    return batch_id


def get_sorting_batch(conn, batch_id: int):
    rows = q(conn, "SELECT * FROM sorting_batches WHERE id = ?", (int(batch_id),))
    if not rows:
        raise NotFoundError(f"Sorting batch {batch_id} not found.", entity="sorting_batch", entity_id=batch_id, operation="get")
    return rows[0]


def list_sorting_batches(conn, *, status: Optional[str] = None):
    if status is None:
        return q(conn, "SELECT * FROM sorting_batches ORDER BY created_at DESC, id DESC")
    return q(
        conn,
        "SELECT * FROM sorting_batches WHERE status = ? ORDER BY created_at DESC, id DESC",
        (parse_status(BatchStatus, status).value,),
    )


def list_results(conn, batch_id: int):
    return q(
        conn,
        """
        SELECT r.*, sl.name AS storage_location_name
        FROM sorting_results r
        LEFT JOIN storage_locations sl ON sl.id = r.storage_location_id
        WHERE r.batch_id = ?
        ORDER BY r.size_class, r.id
        """,
        (int(batch_id),),
    )


def _require_pending(conn, batch_id: int, operation: str):
    b = get_sorting_batch(conn, batch_id)
    status = parse_status(BatchStatus, b["status"])
    if status is not BatchStatus.PENDING:
        raise InvalidTransitionError(
            f"Sorting batch {b['batch_number']} is {status.value}; completed batches are immutable.",
            current=status.value,
            entity="sorting_batch",
            entity_id=batch_id,
            operation=operation,
        )
    return b


def _require_accepting(conn, location_id: int, operation: str) -> None:
    loc = get_location(conn, location_id)
    if not loc.accepts_new_stock:
        raise StorageUnavailableError(
            f"{loc.name} is {loc.status.value} and not accepting new stock.",
            entity="storage_location",
            entity_id=loc.id,
            operation=operation,
        )


def _upsert_result(conn, batch_id: int, size_class: int, pieces: int, grams: int, location_id: Optional[int]) -> int:
    # Caller owns the transaction.
    existing = q(
        conn,
        """
        SELECT id FROM sorting_results
        WHERE batch_id = ? AND size_class = ? AND storage_location_id IS ? AND transfer_id IS NULL
        """,
        (int(batch_id), int(size_class), location_id),
    )
    if existing:
        rid = int(existing[0]["id"])
        execute(
            conn,
            """
            UPDATE sorting_results
            SET total_pieces = total_pieces + ?, total_weight_grams = total_weight_grams + ?
            WHERE id = ?
            """,
            (int(pieces), int(grams), rid),
        )
        return rid

    cur = execute(
        conn,
        """
        INSERT INTO sorting_results
          (batch_id, size_class, total_pieces, total_weight_grams, storage_location_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (int(batch_id), int(size_class), int(pieces), int(grams), location_id, iso_now()),
    )
    return int(cur.lastrowid)


def add_sorting_result(
    conn,
    batch_id: int,
    *,
    size_class: int,
    pieces: int,
    weight_grams: int,
    storage_location_id: Optional[int] = None,
    classifier: Optional[SizeClassifier] = None,
) -> int:
    """Record a pre-counted bucket of one size class. No location = unplaced."""
    if int(pieces) < 0:
        raise ValidationError("Pieces must be >= 0.", entity="sorting_result", operation="add")
    if int(weight_grams) < 0:
        raise ValidationError("Weight (g) must be >= 0.", entity="sorting_result", operation="add")

    classifier = classifier or load_classifier(conn)
    if int(size_class) not in classifier.classes:
        raise ValidationError(f"Unknown size class {size_class}.", entity="sorting_result", operation="add")

    _require_pending(conn, batch_id, "add_result")
    if storage_location_id is not None:
        _require_accepting(conn, int(storage_location_id), "add_result")

    with transaction(conn):
        rid = _upsert_result(
            conn,
            batch_id,
            int(size_class),
            int(pieces),
            int(weight_grams),
            int(storage_location_id) if storage_location_id is not None else None,
        )
    return rid


def sort_fish(
    conn,
    batch_id: int,
    weights_grams: Iterable[float],
    *,
    storage_location_id: Optional[int] = None,
    classifier: Optional[SizeClassifier] = None,
) -> dict[int, dict]:
    """
    Classify individually weighed fish and fold them into the batch's results.
    Returns {size_class: {"pieces": n, "weight_grams": g}} for this call.
    """
    weights = list(weights_grams)
    if not weights:
        raise ValidationError("No fish weights supplied.", entity="sorting_batch", entity_id=batch_id, operation="sort_fish")

    classifier = classifier or load_classifier(conn)
    # Classify everything first so a bad weight rejects the whole call.
    classified = [(float(w), classifier.classify(w)) for w in weights]

    _require_pending(conn, batch_id, "sort_fish")
    loc_id = int(storage_location_id) if storage_location_id is not None else None
    if loc_id is not None:
        _require_accepting(conn, loc_id, "sort_fish")

    buckets: dict[int, list[float]] = defaultdict(list)
    for w, size in classified:
        buckets[size].append(w)

    with transaction(conn):
        for w, size in classified:
            execute(
                conn,
                "INSERT INTO sorted_fish_items (batch_id, weight_grams, size_class, storage_location_id) VALUES (?, ?, ?, ?)",
                (int(batch_id), w, size, loc_id),
            )
        for size, ws in buckets.items():
            _upsert_result(conn, batch_id, size, len(ws), int(round(sum(ws))), loc_id)

    logger.info("Sorted %d fish into %d size classes for batch %s", len(weights), len(buckets), batch_id)
    return {size: {"pieces": len(ws), "weight_grams": int(round(sum(ws)))} for size, ws in sorted(buckets.items())}


def complete_sorting_batch(conn, batch_id: int) -> dict:
    """
    Freeze a batch and release its placed results into inventory.
    Every target location must be active and have headroom for what this batch puts there.
    """
    b = _require_pending(conn, batch_id, "complete")

    with transaction(conn):
        # Status and capacity are read under the write lock so two completions
        # into the same location cannot both see the same free space.
        b = _require_pending(conn, batch_id, "complete")
        placed = q(
            conn,
            """
            SELECT storage_location_id, SUM(total_weight_grams) AS grams, SUM(total_pieces) AS pieces
            FROM sorting_results
            WHERE batch_id = ? AND storage_location_id IS NOT NULL
            GROUP BY storage_location_id
            """,
            (int(batch_id),),
        )
        total = q(conn, "SELECT COUNT(1) AS n FROM sorting_results WHERE batch_id = ?", (int(batch_id),))[0]
        if int(total["n"]) == 0:
            raise ValidationError(
                f"Sorting batch {b['batch_number']} has no results to complete.",
                entity="sorting_batch",
                entity_id=batch_id,
                operation="complete",
            )

        for p in placed:
            loc_id = int(p["storage_location_id"])
            _require_accepting(conn, loc_id, "complete")
            cap = location_capacity(conn, loc_id)
            needed_kg = grams_to_kg(int(p["grams"]))
            if needed_kg > cap.available_capacity_kg:
                raise CapacityExceededError(
                    f"{cap.location.name} has {cap.available_capacity_kg:.3f} kg free; batch needs {needed_kg:.3f} kg.",
                    available_kg=cap.available_capacity_kg,
                    requested_kg=needed_kg,
                    entity="storage_location",
                    entity_id=loc_id,
                    operation="complete_sorting_batch",
                )

        cur = execute(
            conn,
            "UPDATE sorting_batches SET status = 'completed', completed_at = ? WHERE id = ? AND status = 'pending'",
            (iso_now(), int(batch_id)),
        )
        if cur.rowcount != 1:
            raise InvalidTransitionError(
                f"Sorting batch {b['batch_number']} was completed concurrently.",
                current=BatchStatus.COMPLETED.value,
                entity="sorting_batch",
                entity_id=batch_id,
                operation="complete",
            )
        refresh_usage_cache(conn, [int(p["storage_location_id"]) for p in placed])

    logger.info("Completed sorting batch %s", b["batch_number"])
    return {
        "batch_id": int(batch_id),
        "batch_number": str(b["batch_number"]),
        "placed_kg": grams_to_kg(sum(int(p["grams"]) for p in placed)),
        "placed_pieces": sum(int(p["pieces"]) for p in placed),
    }
