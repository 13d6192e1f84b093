"""
Storage location registry: provisioning, status asymmetry, live capacity.
"""
import pytest

from fishops.db import q, x
from fishops.errors import NotFoundError, ValidationError
from fishops.models import LocationStatus
from fishops.services.inventory import summarize
from fishops.services.storage import (
    available_for_new_stock,
    capacity_of,
    capacity_overview,
    create_location,
    get_location,
    list_locations,
    location_capacity,
    set_status,
)


def test_create_and_get_location(conn):
    loc_id = create_location(conn, name="Cold Storage A", location_type="cold_storage", capacity_kg=2000)
    loc = get_location(conn, loc_id)
    assert loc.name == "Cold Storage A"
    assert loc.status is LocationStatus.ACTIVE
    assert capacity_of(conn, loc_id) == 2000.0


def test_location_names_are_unique(conn, make_location):
    make_location("Freezer 1")
    with pytest.raises(ValidationError):
        make_location("Freezer 1")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": "", "location_type": "freezer", "capacity_kg": 10},
        {"name": "X", "location_type": "garage", "capacity_kg": 10},
        {"name": "X", "location_type": "freezer", "capacity_kg": 0},
        {"name": "X", "location_type": "freezer", "capacity_kg": 10, "status": "closed"},
    ],
)
def test_create_location_rejects_bad_input(conn, kwargs):
    with pytest.raises(ValidationError):
        create_location(conn, **kwargs)


def test_unknown_location_raises_not_found(conn):
    with pytest.raises(NotFoundError) as exc:
        get_location(conn, 999)
    assert exc.value.entity_id == 999


def test_status_is_parsed_case_insensitively(conn, make_location):
    loc_id = make_location("Ambient Shed", location_type="ambient")
    assert set_status(conn, loc_id, " Maintenance ").status is LocationStatus.MAINTENANCE


def test_inactive_location_keeps_stock_but_stops_accepting(conn, make_location, add_stock):
    a = make_location("A")
    b = make_location("B")
    add_stock(a, 3, 40, 16000)

    set_status(conn, a, "inactive")

    assert [c.location.id for c in available_for_new_stock(conn)] == [b]
    assert summarize(conn, location_id=a)[0].total_pieces == 40
    assert location_capacity(conn, a).current_usage_kg == pytest.approx(16.0)


def test_available_for_new_stock_respects_headroom(conn, make_location, add_stock):
    small = make_location("Small", capacity_kg=50)
    big = make_location("Big", capacity_kg=500)
    add_stock(small, 2, 100, 30000)

    ids = [c.location.id for c in available_for_new_stock(conn, required_kg=25)]
    assert ids == [big]
    assert {c.location.id for c in available_for_new_stock(conn)} == {small, big}


def test_utilization_from_aggregated_usage(conn, make_location, add_stock):
    loc = make_location("Cold Storage A", capacity_kg=2000)
    add_stock(loc, 3, 2000, 600000)
    add_stock(loc, 5, 500, 483750)

    cap = location_capacity(conn, loc)
    assert cap.current_usage_kg == pytest.approx(1083.75)
    assert cap.utilization_percent == pytest.approx(54.19, abs=0.01)
    assert cap.available_capacity_kg == pytest.approx(916.25)


def test_stored_usage_column_is_never_trusted(conn, make_location, add_stock):
    loc = make_location("A", capacity_kg=100)
    add_stock(loc, 1, 10, 5000)
    cached = q(conn, "SELECT current_usage_kg FROM storage_locations WHERE id = ?", (loc,))[0]
    assert cached["current_usage_kg"] == pytest.approx(5.0)

    x(conn, "UPDATE storage_locations SET current_usage_kg = 99 WHERE id = ?", (loc,))
    assert location_capacity(conn, loc).current_usage_kg == pytest.approx(5.0)


def test_capacity_overview_zero_fills_empty_locations(conn, make_location, add_stock):
    a = make_location("A")
    b = make_location("B")
    add_stock(a, 1, 5, 750)

    usage = {c.location.id: c.usage_grams for c in capacity_overview(conn)}
    assert usage == {a: 750, b: 0}
    assert len(list_locations(conn)) == 2
    assert [l.id for l in list_locations(conn, status="active")] == [a, b]
