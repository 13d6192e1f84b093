"""
Transfer workflow: validation, state machine, FIFO execution, conservation
and concurrent completion.
"""
import threading

import pytest

from fishops.db import connect, q
from fishops.errors import (
    CapacityExceededError,
    ConsistencyViolationError,
    InsufficientStockError,
    InvalidTransitionError,
    StorageUnavailableError,
    ValidationError,
)
from fishops.models import TransferStatus
from fishops.services import transfers
from fishops.services.disposal import dispose
from fishops.services.inventory import available_stock, fifo_slices, list_movements, summarize
from fishops.services.storage import set_status


def _request(conn, src, dst, qty, kg, size=3):
    return transfers.request(
        conn,
        from_storage_id=src,
        to_storage_id=dst,
        size_class=size,
        quantity=qty,
        weight_kg=kg,
        requested_by="tester",
    )


def _total(conn, size):
    rows = summarize(conn, size_class=size)
    return sum(r.total_pieces for r in rows), sum(r.total_weight_grams for r in rows)


@pytest.fixture
def two_stores(make_location):
    return make_location("A"), make_location("B")


@pytest.mark.parametrize(
    "qty, kg",
    [(0, 1.0), (-3, 1.0), (2.5, 1.0), (5, 0), (5, -1.0), ("five", 1.0)],
)
def test_request_validates_quantity_and_weight(conn, two_stores, add_stock, qty, kg):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    with pytest.raises(ValidationError):
        _request(conn, a, b, qty, kg)


def test_request_between_same_location_is_rejected(conn, two_stores, add_stock):
    a, _ = two_stores
    add_stock(a, 3, 10, 4000)
    with pytest.raises(ValidationError):
        _request(conn, a, a, 5, 2.0)


def test_request_beyond_source_stock_is_rejected(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)

    with pytest.raises(InsufficientStockError) as exc:
        _request(conn, a, b, 11, 4.0)
    assert (exc.value.available, exc.value.requested) == (10, 11)

    with pytest.raises(InsufficientStockError):
        _request(conn, a, b, 5, 4.5)

    assert transfers.list_transfers(conn) == []


def test_request_to_unavailable_destination_is_rejected(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    set_status(conn, b, "maintenance")
    with pytest.raises(StorageUnavailableError):
        _request(conn, a, b, 5, 2.0)


def test_request_does_not_move_stock(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)

    t = _request(conn, a, b, 5, 2.0)
    transfers.approve(conn, t.id, approved_by="manager")

    assert t.status is TransferStatus.PENDING
    assert available_stock(conn, a, 3) == (10, 4000)
    assert available_stock(conn, b, 3) == (0, 0)


def test_complete_requires_approval(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    t = _request(conn, a, b, 5, 2.0)

    with pytest.raises(InvalidTransitionError) as exc:
        transfers.complete(conn, t.id)
    assert exc.value.current == "pending"
    assert available_stock(conn, a, 3) == (10, 4000)


def test_completed_transfer_conserves_stock_and_records_provenance(conn, two_stores, add_stock):
    a, b = two_stores
    batch = add_stock(a, 3, 100, 40000)
    before = _total(conn, 3)

    t = _request(conn, a, b, 100, 40.0)
    transfers.approve(conn, t.id, approved_by="manager")
    done = transfers.complete(conn, t.id)

    assert done.status is TransferStatus.COMPLETED
    assert _total(conn, 3) == before
    assert available_stock(conn, a, 3) == (0, 0)
    assert available_stock(conn, b, 3) == (100, 40000)

    [dest_row] = q(conn, "SELECT * FROM sorting_results WHERE transfer_id = ?", (t.id,))
    assert dest_row["storage_location_id"] == b
    assert dest_row["transfer_source_storage_id"] == a
    assert dest_row["batch_id"] == batch


def test_completion_draws_oldest_batch_first(conn, two_stores, add_stock):
    a, b = two_stores
    old = add_stock(a, 3, 30, 12000)
    new = add_stock(a, 3, 30, 15000)

    t = _request(conn, a, b, 40, 17.0)
    transfers.approve(conn, t.id)
    transfers.complete(conn, t.id)

    [left] = fifo_slices(conn, size_class=3, location_id=a)
    assert (left.batch_id, left.pieces, left.weight_grams) == (new, 20, 10000)

    moved = {s.batch_id: (s.pieces, s.weight_grams) for s in fifo_slices(conn, size_class=3, location_id=b)}
    assert moved == {old: (30, 12000), new: (10, 5000)}


def test_approval_rechecks_stock(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    t = _request(conn, a, b, 10, 4.0)

    dispose(conn, location_id=a, size_class=3, pieces=5, reason="spoilage")

    with pytest.raises(InsufficientStockError):
        transfers.approve(conn, t.id)
    assert transfers.get_transfer(conn, t.id).status is TransferStatus.PENDING


def test_approval_checks_destination_capacity(conn, make_location, add_stock):
    a = make_location("A")
    small = make_location("Small", capacity_kg=10)
    add_stock(small, 1, 10, 1500)
    add_stock(a, 3, 50, 20000)

    t = _request(conn, a, small, 25, 10.0)
    with pytest.raises(CapacityExceededError) as exc:
        transfers.approve(conn, t.id)
    assert exc.value.available_kg == pytest.approx(8.5)
    assert exc.value.requested_kg == pytest.approx(10.0)


def test_approval_refuses_destination_taken_out_of_service(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    t = _request(conn, a, b, 5, 2.0)
    set_status(conn, b, "inactive")

    with pytest.raises(StorageUnavailableError):
        transfers.approve(conn, t.id)


def test_reject_requires_reason_and_is_terminal(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    t = _request(conn, a, b, 5, 2.0)

    with pytest.raises(ValidationError):
        transfers.reject(conn, t.id, "  ")

    rejected = transfers.reject(conn, t.id, "Not needed", rejected_by="manager")
    assert rejected.status is TransferStatus.REJECTED
    assert rejected.rejection_reason == "Not needed"
    assert rejected.approved_by is None

    with pytest.raises(InvalidTransitionError):
        transfers.approve(conn, t.id)
    with pytest.raises(InvalidTransitionError):
        transfers.complete(conn, t.id)
    assert available_stock(conn, a, 3) == (10, 4000)


def test_approved_transfer_cannot_be_rejected_or_completed_twice(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    t = _request(conn, a, b, 5, 2.0)
    transfers.approve(conn, t.id)

    with pytest.raises(InvalidTransitionError):
        transfers.reject(conn, t.id, "Changed mind")

    transfers.complete(conn, t.id)
    with pytest.raises(InvalidTransitionError):
        transfers.complete(conn, t.id)
    assert available_stock(conn, b, 3) == (5, 2000)


def test_second_completion_over_shared_stock_fails_cleanly(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 100, 40000)
    first = _request(conn, a, b, 60, 24.0)
    second = _request(conn, a, b, 60, 24.0)
    transfers.approve(conn, first.id)
    transfers.approve(conn, second.id)

    transfers.complete(conn, first.id)
    with pytest.raises(ConsistencyViolationError):
        transfers.complete(conn, second.id)

    assert transfers.get_transfer(conn, second.id).status is TransferStatus.APPROVED
    assert available_stock(conn, a, 3) == (40, 16000)
    assert available_stock(conn, b, 3) == (60, 24000)


def test_concurrent_completions_never_oversell(conn, db_path, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 100, 40000)
    ids = []
    for _ in range(2):
        t = _request(conn, a, b, 60, 24.0)
        transfers.approve(conn, t.id)
        ids.append(t.id)

    barrier = threading.Barrier(len(ids))
    outcomes = {}

    def worker(transfer_id):
        c = connect(db_path, timeout_s=10)
        try:
            barrier.wait()
            transfers.complete(c, transfer_id)
            outcomes[transfer_id] = "completed"
        except ConsistencyViolationError:
            outcomes[transfer_id] = "conflict"
        finally:
            c.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in ids]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert sorted(outcomes.values()) == ["completed", "conflict"]
    assert available_stock(conn, a, 3) == (40, 16000)
    assert available_stock(conn, b, 3) == (60, 24000)
    assert _total(conn, 3) == (100, 40000)


def test_completion_writes_ledger_and_history(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 10, 4000)
    t = _request(conn, a, b, 4, 1.6)
    transfers.approve(conn, t.id, approved_by="manager")
    transfers.complete(conn, t.id)

    moves = [(m["reason"], m["pieces_delta"]) for m in list_movements(conn) if m["ref_id"] == t.id]
    assert sorted(moves) == [("transfer_in", 4), ("transfer_out", -4)]

    [h] = transfers.transfer_history(conn)
    assert (h["from_location"], h["to_location"], h["status"], h["approved_by"]) == ("A", "B", "completed", "manager")
    assert [x.id for x in transfers.list_transfers(conn, status="completed")] == [t.id]


@pytest.mark.parametrize("qty, kg", [(10, 12.0), (30, 10.0)])
def test_request_weight_must_fit_the_pieces_it_moves(conn, two_stores, add_stock, qty, kg):
    a, b = two_stores
    add_stock(a, 3, 30, 12000)

    with pytest.raises(ValidationError):
        _request(conn, a, b, qty, kg)

    assert transfers.list_transfers(conn) == []
    assert available_stock(conn, a, 3) == (30, 12000)
    assert _total(conn, 3) == (30, 12000)


def test_partial_transfer_leaves_weight_with_the_remaining_pieces(conn, two_stores, add_stock):
    a, b = two_stores
    add_stock(a, 3, 30, 12000)
    t = _request(conn, a, b, 10, 4.5)
    transfers.approve(conn, t.id)
    transfers.complete(conn, t.id)

    assert available_stock(conn, a, 3) == (20, 7500)
    assert available_stock(conn, b, 3) == (10, 4500)


def test_approval_counts_transfers_already_approved_into_the_destination(conn, make_location, add_stock):
    a = make_location("A")
    small = make_location("Small", capacity_kg=10)
    add_stock(a, 3, 50, 20000)

    first = _request(conn, a, small, 20, 8.0)
    second = _request(conn, a, small, 20, 8.0)
    transfers.approve(conn, first.id)

    with pytest.raises(CapacityExceededError) as exc:
        transfers.approve(conn, second.id)
    assert exc.value.available_kg == pytest.approx(2.0)
    assert transfers.get_transfer(conn, second.id).status is TransferStatus.PENDING

    transfers.complete(conn, first.id)
    assert available_stock(conn, small, 3) == (20, 8000)


def test_completion_rechecks_destination_capacity(conn, make_location, add_stock):
    a = make_location("A")
    small = make_location("Small", capacity_kg=10)
    add_stock(a, 3, 50, 20000)

    t = _request(conn, a, small, 20, 8.0)
    transfers.approve(conn, t.id)
    add_stock(small, 1, 20, 5000)

    with pytest.raises(CapacityExceededError):
        transfers.complete(conn, t.id)

    assert transfers.get_transfer(conn, t.id).status is TransferStatus.APPROVED
    assert available_stock(conn, a, 3) == (50, 20000)
    assert available_stock(conn, small, 3) == (0, 0)
