from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fishops.db import execute, q, transaction
from fishops.errors import InsufficientStockError, InvalidTransitionError, NotFoundError, ValidationError
from fishops.models import DispatchStatus, OrderStatus, parse_status
from fishops.services.inventory import apply_draw_down, fifo_slices, plan_draw_down, refresh_usage_cache
from fishops.utils import grams_to_kg, iso_now, iso_today

logger = logging.getLogger(__name__)


@dataclass
class OrderItemInput:
    size_class: int
    pieces: int
    unit_price: Optional[float] = None


def _normalize_outlet(outlet_name: Optional[str]) -> str:
    s = str(outlet_name or "").strip()
    if not s:
        raise ValidationError("Outlet name is required.", entity="outlet_order", operation="create")
    return s


def create_order(
    conn,
    *,
    outlet_name: str,
    items: list[OrderItemInput],
    requested_by: Optional[str] = None,
    order_date: Optional[str] = None,
    delivery_date: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    outlet = _normalize_outlet(outlet_name)
    lines = [i for i in items if int(i.pieces) > 0]
    if not lines:
        raise ValidationError("At least one size line with pieces > 0 is required.", entity="outlet_order", operation="create")
    if any(int(i.pieces) < 0 for i in items):
        raise ValidationError("Pieces must be >= 0.", entity="outlet_order", operation="create")

    sizes = [int(i.size_class) for i in lines]
    if len(set(sizes)) != len(sizes):
        raise ValidationError("Each size class may appear once per order.", entity="outlet_order", operation="create")

    for i in lines:
        if i.unit_price is not None and float(i.unit_price) < 0:
            raise ValidationError("Unit price must be >= 0.", entity="outlet_order", operation="create")

    now = iso_now()
    with transaction(conn):
        cur = execute(
            conn,
            """
            INSERT INTO outlet_orders (outlet_name, order_date, delivery_date, status, requested_by, notes, created_at)
            VALUES (?, ?, ?, 'pending', ?, ?, ?)
            """,
            (outlet, order_date or iso_today(), delivery_date, requested_by, notes, now),
        )
        order_id = int(cur.lastrowid)
        for i in lines:
            execute(
                conn,
                "INSERT INTO outlet_order_items (order_id, size_class, pieces, unit_price) VALUES (?, ?, ?, ?)",
                (order_id, int(i.size_class), int(i.pieces), float(i.unit_price) if i.unit_price is not None else None),
            )

    logger.info("Outlet order %s created for %s (%d lines)", order_id, outlet, len(lines))
    return order_id


def get_order(conn, order_id: int):
    rows = q(conn, "SELECT * FROM outlet_orders WHERE id = ?", (int(order_id),))
    if not rows:
        raise NotFoundError(f"Order {order_id} not found.", entity="outlet_order", entity_id=order_id, operation="get")
    return rows[0]


def order_items(conn, order_id: int):
    return q(conn, "SELECT * FROM outlet_order_items WHERE order_id = ? ORDER BY size_class", (int(order_id),))


def list_orders(conn, *, status: Optional[str] = None):
    if status is None:
        return q(conn, "SELECT * FROM outlet_orders ORDER BY id DESC")
    return q(
        conn,
        "SELECT * FROM outlet_orders WHERE status = ? ORDER BY id DESC",
        (parse_status(OrderStatus, status).value,),
    )


def _set_status(conn, order_id: int, allowed_from: set[OrderStatus], target: OrderStatus, operation: str) -> None:
    # Caller owns the transaction.
    o = get_order(conn, order_id)
    current = parse_status(OrderStatus, o["status"])
    if current not in allowed_from:
        raise InvalidTransitionError(
            f"Order {order_id} is {current.value}; cannot move to {target.value}.",
            current=current.value,
            target=target.value,
            entity="outlet_order",
            entity_id=order_id,
            operation=operation,
        )
    execute(
        conn,
        "UPDATE outlet_orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
        (target.value, iso_now(), int(order_id), current.value),
    )


def confirm_order(conn, order_id: int) -> None:
    with transaction(conn):
        _set_status(conn, order_id, {OrderStatus.PENDING}, OrderStatus.CONFIRMED, "confirm")
    logger.info("Order %s confirmed", order_id)


def cancel_order(conn, order_id: int) -> None:
    with transaction(conn):
        _set_status(conn, order_id, {OrderStatus.PENDING, OrderStatus.CONFIRMED}, OrderStatus.CANCELLED, "cancel")
    logger.info("Order %s cancelled", order_id)


def fulfillment_plan(conn, order_id: int) -> dict:
    """Preview of the FIFO picks a dispatch would make right now. Nothing is mutated."""
    get_order(conn, order_id)
    names = {int(r["id"]): str(r["name"]) for r in q(conn, "SELECT id, name FROM storage_locations")}

    items = []
    total_shortfall = 0
    est_grams = 0
    for it in order_items(conn, order_id):
        size = int(it["size_class"])
        requested = int(it["pieces"])
        slices = fifo_slices(conn, size_class=size)
        available = sum(s.pieces for s in slices)

        picks = plan_draw_down(slices, min(requested, available)) if available else []
        shortfall = max(0, requested - available)
        total_shortfall += shortfall
        est_grams += sum(a.weight_grams for a in picks)

        items.append(
            {
                "size_class": size,
                "requested_quantity": requested,
                "available_quantity": available,
                "shortfall": shortfall,
                "selected_batches": [
                    {
                        "batch_id": a.slice.batch_id,
                        "batch_number": a.slice.batch_number,
                        "storage_location_id": a.slice.storage_location_id,
                        "storage_location_name": names.get(a.slice.storage_location_id, ""),
                        "quantity": a.pieces,
                        "weight_kg": grams_to_kg(a.weight_grams),
                    }
                    for a in picks
                ],
            }
        )

    return {
        "order_id": int(order_id),
        "can_fulfill": total_shortfall == 0,
        "fulfillment_items": items,
        "total_shortfall": total_shortfall,
        "estimated_dispatch_weight_kg": grams_to_kg(est_grams),
    }


def dispatch_order(conn, order_id: int, *, dispatched_by: Optional[str] = None) -> int:
    """
    Consume stock for every order line (oldest batches first, any location) and
    write the dispatch manifest. All lines go out together or none do.
    """
    touched: set[int] = set()
    with transaction(conn):
        _set_status(conn, order_id, {OrderStatus.PENDING, OrderStatus.CONFIRMED}, OrderStatus.DISPATCHED, "dispatch")

        cur = execute(
            conn,
            "INSERT INTO dispatch_records (order_id, status, dispatched_by, dispatched_at) VALUES (?, 'dispatched', ?, ?)",
            (int(order_id), dispatched_by, iso_now()),
        )
        dispatch_id = int(cur.lastrowid)

        for it in order_items(conn, order_id):
            size = int(it["size_class"])
            slices = fifo_slices(conn, size_class=size)
            try:
                allocations = plan_draw_down(slices, int(it["pieces"]))
            except InsufficientStockError as e:
                logger.warning("Dispatch of order %s refused for size %s: %s", order_id, size, e)
                raise InsufficientStockError(
                    f"Order {order_id}: size {size} needs {it['pieces']} pcs, {e.available} in stock.",
                    available=e.available,
                    requested=e.requested,
                    entity="outlet_order",
                    entity_id=order_id,
                    operation="dispatch",
                ) from e

            apply_draw_down(conn, allocations, reason="dispatch", ref_id=dispatch_id)
            touched.update(a.slice.storage_location_id for a in allocations)
            execute(
                conn,
                "INSERT INTO dispatch_items (dispatch_id, size_class, pieces, weight_grams) VALUES (?, ?, ?, ?)",
                (dispatch_id, size, sum(a.pieces for a in allocations), sum(a.weight_grams for a in allocations)),
            )

        refresh_usage_cache(conn, sorted(touched))

    logger.info("Order %s dispatched as dispatch %s", order_id, dispatch_id)
    return dispatch_id


def get_dispatch(conn, dispatch_id: int):
    rows = q(conn, "SELECT * FROM dispatch_records WHERE id = ?", (int(dispatch_id),))
    if not rows:
        raise NotFoundError(f"Dispatch {dispatch_id} not found.", entity="dispatch_record", entity_id=dispatch_id, operation="get")
    return rows[0]


def dispatch_manifest(conn, dispatch_id: int) -> dict[int, dict]:
    """Expected lines per size class: {size_class: {"pieces": n, "weight_grams": g}}."""
    rows = q(
        conn,
        "SELECT size_class, pieces, weight_grams FROM dispatch_items WHERE dispatch_id = ? ORDER BY size_class",
        (int(dispatch_id),),
    )
    return {int(r["size_class"]): {"pieces": int(r["pieces"]), "weight_grams": int(r["weight_grams"])} for r in rows}


def list_dispatches(conn, *, status: Optional[str] = None):
    sql = """
        SELECT d.*, o.outlet_name
        FROM dispatch_records d
        JOIN outlet_orders o ON o.id = d.order_id
    """
    if status is None:
        return q(conn, sql + " ORDER BY d.id DESC")
    return q(conn, sql + " WHERE d.status = ? ORDER BY d.id DESC", (parse_status(DispatchStatus, status).value,))
