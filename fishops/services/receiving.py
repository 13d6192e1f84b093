from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from fishops.db import execute, q, transaction
from fishops.errors import InvalidTransitionError, NotFoundError, ValidationError
from fishops.models import DispatchStatus, ReceivingStatus, ReconciliationResult, SizeDelta, parse_status
from fishops.services.orders import dispatch_manifest, get_dispatch
from fishops.utils import grams_to_kg, iso_now, kg_to_grams

logger = logging.getLogger(__name__)


@dataclass
class ReceivedLine:
    size_class: int
    pieces: int
    weight_kg: float


def _normalize_lines(actual: Iterable[Union[ReceivedLine, dict]]) -> dict[int, tuple[int, int]]:
    out: dict[int, tuple[int, int]] = {}
    for line in actual:
        if isinstance(line, dict):
            line = ReceivedLine(
                size_class=line.get("size_class"),
                pieces=line.get("pieces", 0),
                weight_kg=line.get("weight_kg", 0.0),
            )
        try:
            size = int(line.size_class)
            pieces = int(line.pieces)
            grams = kg_to_grams(float(line.weight_kg))
        except (TypeError, ValueError):
            raise ValidationError("Received lines need numeric size_class, pieces and weight_kg.", entity="outlet_receiving", operation="reconcile")
        if pieces < 0 or grams < 0:
            raise ValidationError(f"Size {size}: received quantities must be >= 0.", entity="outlet_receiving", operation="reconcile")
        if size in out:
            raise ValidationError(f"Size {size} appears more than once.", entity="outlet_receiving", operation="reconcile")
        out[size] = (pieces, grams)
    return out


def compare(expected: dict[int, dict], actual: dict[int, tuple[int, int]], tolerance: float = 0.0) -> tuple[dict[int, SizeDelta], ReceivingStatus]:
    """Signed actual-minus-expected deltas per size; zero deltas are left out."""
    deltas: dict[int, SizeDelta] = {}
    within = True
    for size in sorted(set(expected) | set(actual)):
        exp = expected.get(size, {"pieces": 0, "weight_grams": 0})
        act_pieces, act_grams = actual.get(size, (0, 0))
        d_pieces = act_pieces - int(exp["pieces"])
        d_grams = act_grams - int(exp["weight_grams"])
        if d_pieces == 0 and d_grams == 0:
            continue
        d_kg = round(grams_to_kg(d_grams), 3)
        deltas[size] = SizeDelta(pieces=d_pieces, weight_kg=d_kg)
        if abs(d_pieces) > tolerance or abs(d_kg) > tolerance:
            within = False
    return deltas, (ReceivingStatus.MATCH if within else ReceivingStatus.DISCREPANCY)


def reconcile(
    conn,
    dispatch_id: int,
    actual: Iterable[Union[ReceivedLine, dict]],
    *,
    tolerance: float = 0.0,
    received_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> ReconciliationResult:
    """
    Record what an outlet actually received against the dispatch manifest.

    Inventory is not touched here; dispatch already consumed it. The
    discrepancy map is always persisted, even when the status is a match.
    """
    lines = _normalize_lines(actual)
    try:
        tol = float(tolerance)
    except (TypeError, ValueError):
        raise ValidationError("Tolerance must be a number.", entity="outlet_receiving", operation="reconcile")
    if tol < 0:
        raise ValidationError("Tolerance must be >= 0.", entity="outlet_receiving", operation="reconcile")

    d = get_dispatch(conn, dispatch_id)
    if parse_status(DispatchStatus, d["status"]) is not DispatchStatus.DISPATCHED:
        raise InvalidTransitionError(
            f"Dispatch {dispatch_id} was already received.",
            current=str(d["status"]),
            target=DispatchStatus.RECEIVED.value,
            entity="dispatch_record",
            entity_id=dispatch_id,
            operation="reconcile",
        )

    deltas, status = compare(dispatch_manifest(conn, dispatch_id), lines, tol)
    actual_json = {str(size): {"pieces": p, "weight_kg": grams_to_kg(g)} for size, (p, g) in sorted(lines.items())}
    discrepancies_json = {str(size): delta.to_json() for size, delta in deltas.items()}

    with transaction(conn):
        cur = execute(
            conn,
            "UPDATE dispatch_records SET status = 'received' WHERE id = ? AND status = 'dispatched'",
            (int(dispatch_id),),
        )
        if cur.rowcount != 1:
            raise InvalidTransitionError(
                f"Dispatch {dispatch_id} was received concurrently.",
                target=DispatchStatus.RECEIVED.value,
                entity="dispatch_record",
                entity_id=dispatch_id,
                operation="reconcile",
            )
        cur = execute(
            conn,
            """
            INSERT INTO outlet_receiving
              (dispatch_id, received_at, received_by, actual_json, discrepancies_json, status, tolerance, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(dispatch_id),
                iso_now(),
                received_by,
                json.dumps(actual_json, sort_keys=True),
                json.dumps(discrepancies_json, sort_keys=True),
                status.value,
                tol,
                notes,
            ),
        )
        receiving_id = int(cur.lastrowid)
        execute(
            conn,
            "UPDATE outlet_orders SET status = 'delivered', updated_at = ? WHERE id = ? AND status = 'dispatched'",
            (iso_now(), int(d["order_id"])),
        )

    if status is ReceivingStatus.DISCREPANCY:
        logger.warning("Dispatch %s received with discrepancies: %s", dispatch_id, discrepancies_json)
    else:
        logger.info("Dispatch %s received, matches manifest", dispatch_id)

    return ReconciliationResult(receiving_id=receiving_id, dispatch_id=int(dispatch_id), status=status, discrepancies=deltas)


def get_receiving(conn, receiving_id: int) -> dict:
    rows = q(conn, "SELECT * FROM outlet_receiving WHERE id = ?", (int(receiving_id),))
    if not rows:
        raise NotFoundError(f"Receiving {receiving_id} not found.", entity="outlet_receiving", entity_id=receiving_id, operation="get")
    r = dict(rows[0])
    r["actual"] = json.loads(r.pop("actual_json"))
    r["discrepancies"] = json.loads(r.pop("discrepancies_json"))
    return r


def list_receivings(conn, limit: int = 50):
    return q(
        conn,
        """
        SELECT rc.id, rc.received_at, rc.dispatch_id, o.outlet_name, rc.status,
               rc.discrepancies_json, rc.received_by
        FROM outlet_receiving rc
        JOIN dispatch_records d ON d.id = rc.dispatch_id
        JOIN outlet_orders o ON o.id = d.order_id
        ORDER BY rc.id DESC
        LIMIT ?
        """,
        (int(limit),),
    )
