"""
Transfers of one size class between storage locations.

    pending -> approved -> completed
    pending -> rejected

Stock is re-validated at every step because aggregated reads are only
point-in-time snapshots. Completion runs as one transaction: the source rows
are drawn down oldest batch first and matching rows are created at the
destination, tagged with the transfer for audit.
"""

from __future__ import annotations

import logging
from typing import Optional

from fishops.db import execute, q, transaction
from fishops.errors import (
    CapacityExceededError,
    ConsistencyViolationError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from fishops.models import Transfer, TransferStatus, parse_status
from fishops.services.inventory import (
    apply_draw_down,
    available_stock,
    fifo_slices,
    plan_draw_down,
    record_movement,
    refresh_usage_cache,
)
from fishops.services.storage import get_location, location_capacity
from fishops.utils import grams_to_kg, iso_now, kg_to_grams

logger = logging.getLogger(__name__)

_ALLOWED = {
    TransferStatus.PENDING: {TransferStatus.APPROVED, TransferStatus.REJECTED},
    TransferStatus.APPROVED: {TransferStatus.COMPLETED},
    TransferStatus.COMPLETED: set(),
    TransferStatus.REJECTED: set(),
}


def _validate_request(from_storage_id, to_storage_id, quantity, weight_kg) -> tuple[int, int]:
    if int(from_storage_id) == int(to_storage_id):
        raise ValidationError(
            "Source and destination must be different locations.",
            entity="transfer",
            operation="request",
        )
    try:
        qty = int(quantity)
        grams = kg_to_grams(float(weight_kg))
    except (TypeError, ValueError):
        raise ValidationError("Quantity and weight must be numbers.", entity="transfer", operation="request")
    if qty <= 0 or qty != float(quantity):
        raise ValidationError("Quantity must be a whole number of pieces > 0.", entity="transfer", operation="request")
    if grams <= 0:
        raise ValidationError("Weight (kg) must be > 0.", entity="transfer", operation="request")
    return qty, grams


def get_transfer(conn, transfer_id: int) -> Transfer:
    rows = q(conn, "SELECT * FROM transfers WHERE id = ?", (int(transfer_id),))
    if not rows:
        raise NotFoundError(f"Transfer {transfer_id} not found.", entity="transfer", entity_id=transfer_id, operation="get")
    return Transfer.from_row(rows[0])


def _require_transition(t: Transfer, target: TransferStatus, operation: str) -> None:
    if target not in _ALLOWED[t.status]:
        raise InvalidTransitionError(
            f"Transfer {t.id} is {t.status.value}; cannot move to {target.value}.",
            current=t.status.value,
            target=target.value,
            entity="transfer",
            entity_id=t.id,
            operation=operation,
        )


def _check_source_stock(conn, t_from: int, size_class: int, qty: int, grams: int, operation: str, transfer_id=None) -> None:
    pieces_held, grams_held = available_stock(conn, t_from, size_class)
    if pieces_held < qty:
        raise InsufficientStockError(
            f"Location {t_from} holds {pieces_held} pcs of size {size_class}; {qty} requested.",
            available=pieces_held,
            requested=qty,
            entity="transfer",
            entity_id=transfer_id,
            operation=operation,
        )
    if grams_held < grams:
        raise InsufficientStockError(
            f"Location {t_from} holds {grams_to_kg(grams_held):.3f} kg of size {size_class}; "
            f"{grams_to_kg(grams):.3f} kg requested.",
            available=grams_to_kg(grams_held),
            requested=grams_to_kg(grams),
            entity="transfer",
            entity_id=transfer_id,
            operation=operation,
        )


def _check_weight_split(conn, t_from: int, size_class: int, qty: int, grams: int, operation: str, transfer_id=None) -> None:
    # The weight must be one the source rows can give up without stranding pieces or grams.
    try:
        plan_draw_down(fifo_slices(conn, size_class=size_class, location_id=t_from), qty, grams)
    except ValidationError as e:
        raise ValidationError(e.message, entity="transfer", entity_id=transfer_id, operation=operation) from e


def _reserved_inbound_grams(conn, to_id: int, exclude_id: Optional[int] = None) -> int:
    """Weight of approved transfers not yet completed into a location."""
    r = q(
        conn,
        """
        SELECT COALESCE(SUM(weight_grams), 0) AS grams
        FROM transfers
        WHERE to_storage_id = ? AND status = 'approved' AND id IS NOT ?
        """,
        (int(to_id), exclude_id),
    )
    return int(r[0]["grams"])


def _check_headroom(conn, t: Transfer, operation: str, reserved_grams: int = 0) -> None:
    cap = location_capacity(conn, t.to_storage_id)
    headroom_grams = kg_to_grams(cap.capacity_kg) - cap.usage_grams - reserved_grams
    if headroom_grams < t.weight_grams:
        free_kg = grams_to_kg(max(0, headroom_grams))
        raise CapacityExceededError(
            f"{cap.location.name} has {free_kg:.3f} kg free"
            + (f" after {grams_to_kg(reserved_grams):.3f} kg already approved inbound" if reserved_grams else "")
            + f"; transfer needs {t.weight_kg:.3f} kg.",
            available_kg=free_kg,
            requested_kg=t.weight_kg,
            entity="transfer",
            entity_id=t.id,
            operation=operation,
        )


def _check_destination(conn, to_id: int, operation: str, transfer_id=None):
    dest = get_location(conn, to_id)
    if not dest.accepts_new_stock:
        raise StorageUnavailableError(
            f"{dest.name} is {dest.status.value} and not accepting new stock.",
            entity="transfer",
            entity_id=transfer_id,
            operation=operation,
        )
    return dest


def request(
    conn,
    *,
    from_storage_id: int,
    to_storage_id: int,
    size_class: int,
    quantity: int,
    weight_kg: float,
    requested_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Transfer:
    qty, grams = _validate_request(from_storage_id, to_storage_id, quantity, weight_kg)

    get_location(conn, from_storage_id)
    _check_destination(conn, int(to_storage_id), "request")
    try:
        _check_source_stock(conn, int(from_storage_id), int(size_class), qty, grams, "request")
        _check_weight_split(conn, int(from_storage_id), int(size_class), qty, grams, "request")
    except (InsufficientStockError, ValidationError) as e:
        logger.warning("Transfer request rejected: %s", e)
        raise

    with transaction(conn):
        cur = execute(
            conn,
            """
            INSERT INTO transfers
              (from_storage_id, to_storage_id, size_class, quantity, weight_grams, status, requested_by, notes, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (int(from_storage_id), int(to_storage_id), int(size_class), qty, grams, requested_by, notes, iso_now()),
        )
        transfer_id = int(cur.lastrowid)

    logger.info(
        "Transfer %s requested: %s pcs / %.3f kg of size %s from %s to %s",
        transfer_id, qty, grams_to_kg(grams), size_class, from_storage_id, to_storage_id,
    )
    return get_transfer(conn, transfer_id)


def approve(conn, transfer_id: int, approved_by: Optional[str] = None) -> Transfer:
    t = get_transfer(conn, transfer_id)
    _require_transition(t, TransferStatus.APPROVED, "approve")

    try:
        # Stock may have moved since the request.
        _check_source_stock(conn, t.from_storage_id, t.size_class, t.quantity, t.weight_grams, "approve", t.id)
        _check_weight_split(conn, t.from_storage_id, t.size_class, t.quantity, t.weight_grams, "approve", t.id)
        _check_destination(conn, t.to_storage_id, "approve", t.id)
        _check_headroom(conn, t, "approve", _reserved_inbound_grams(conn, t.to_storage_id, exclude_id=t.id))
    except (InsufficientStockError, ValidationError, CapacityExceededError, StorageUnavailableError) as e:
        logger.warning("Transfer %s approval refused: %s", t.id, e)
        raise

    with transaction(conn):
        cur = execute(
            conn,
            "UPDATE transfers SET status = 'approved', approved_by = ?, approved_at = ? WHERE id = ? AND status = 'pending'",
            (approved_by, iso_now(), t.id),
        )
        if cur.rowcount != 1:
            current = get_transfer(conn, t.id)
            raise InvalidTransitionError(
                f"Transfer {t.id} changed to {current.status.value} before approval.",
                current=current.status.value,
                target=TransferStatus.APPROVED.value,
                entity="transfer",
                entity_id=t.id,
                operation="approve",
            )

    logger.info("Transfer %s approved by %s", t.id, approved_by or "-")
    return get_transfer(conn, t.id)


def complete(conn, transfer_id: int) -> Transfer:
    t = get_transfer(conn, transfer_id)
    _require_transition(t, TransferStatus.COMPLETED, "complete")

    with transaction(conn):
        # Re-read under the write lock; another completion may have won.
        t = get_transfer(conn, transfer_id)
        _require_transition(t, TransferStatus.COMPLETED, "complete")

        slices = fifo_slices(conn, size_class=t.size_class, location_id=t.from_storage_id)
        try:
            allocations = plan_draw_down(slices, t.quantity, t.weight_grams)
        except (InsufficientStockError, ValidationError) as e:
            raise ConsistencyViolationError(
                f"Transfer {t.id}: source stock no longer covers the approved quantity ({e}).",
                entity="transfer",
                entity_id=t.id,
                operation="complete",
            ) from e

        # Stock placed since approval may have used up the room this transfer needs.
        _check_headroom(conn, t, "complete")

        apply_draw_down(conn, allocations, reason="transfer_out", ref_id=t.id)

        now = iso_now()
        for a in allocations:
            cur = execute(
                conn,
                """
                INSERT INTO sorting_results
                  (batch_id, size_class, total_pieces, total_weight_grams, storage_location_id,
                   transfer_id, transfer_source_storage_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (a.slice.batch_id, t.size_class, a.pieces, a.weight_grams, t.to_storage_id, t.id, t.from_storage_id, now),
            )
            record_movement(
                conn,
                result_id=int(cur.lastrowid),
                location_id=t.to_storage_id,
                size_class=t.size_class,
                pieces_delta=a.pieces,
                grams_delta=a.weight_grams,
                reason="transfer_in",
                ref_id=t.id,
            )

        execute(
            conn,
            "UPDATE transfers SET status = 'completed', completed_at = ? WHERE id = ? AND status = 'approved'",
            (now, t.id),
        )
        refresh_usage_cache(conn, [t.from_storage_id, t.to_storage_id])

    logger.info("Transfer %s completed across %d batch slice(s)", t.id, len(allocations))
    return get_transfer(conn, t.id)


def reject(conn, transfer_id: int, reason: str, rejected_by: Optional[str] = None) -> Transfer:
    reason = str(reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required.", entity="transfer", entity_id=transfer_id, operation="reject")

    t = get_transfer(conn, transfer_id)
    _require_transition(t, TransferStatus.REJECTED, "reject")

    with transaction(conn):
        cur = execute(
            conn,
            """
            UPDATE transfers
            SET status = 'rejected', rejection_reason = ?, rejected_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (reason, iso_now(), t.id),
        )
        if cur.rowcount != 1:
            raise InvalidTransitionError(
                f"Transfer {t.id} is no longer pending.",
                target=TransferStatus.REJECTED.value,
                entity="transfer",
                entity_id=t.id,
                operation="reject",
            )

    logger.info("Transfer %s rejected by %s: %s", t.id, rejected_by or "-", reason)
    return get_transfer(conn, t.id)


def list_transfers(conn, *, status: Optional[str] = None) -> list[Transfer]:
    if status is None:
        rows = q(conn, "SELECT * FROM transfers ORDER BY id DESC")
    else:
        rows = q(
            conn,
            "SELECT * FROM transfers WHERE status = ? ORDER BY id DESC",
            (parse_status(TransferStatus, status).value,),
        )
    return [Transfer.from_row(r) for r in rows]


def transfer_history(conn, limit: int = 100):
    return q(
        conn,
        """
        SELECT t.id, t.created_at, t.status, t.size_class, t.quantity,
               ROUND(t.weight_grams / 1000.0, 3) AS weight_kg,
               fl.name AS from_location, tl.name AS to_location,
               t.requested_by, t.approved_by, t.rejection_reason,
               t.approved_at, t.completed_at, t.rejected_at
        FROM transfers t
        JOIN storage_locations fl ON fl.id = t.from_storage_id
        JOIN storage_locations tl ON tl.id = t.to_storage_id
        ORDER BY t.id DESC
        LIMIT ?
        """,
        (int(limit),),
    )
