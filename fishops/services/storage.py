from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fishops.db import q, x
from fishops.errors import NotFoundError, ValidationError
from fishops.models import LocationCapacity, LocationStatus, LocationType, StorageLocation, parse_status
from fishops.services.inventory import location_usage_grams, usage_by_location
from fishops.utils import iso_now

logger = logging.getLogger(__name__)


def create_location(
    conn,
    *,
    name: str,
    location_type: str,
    capacity_kg: float,
    status: str = LocationStatus.ACTIVE.value,
) -> int:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Location name is required.", entity="storage_location", operation="create")

    ltype = parse_status(LocationType, location_type)
    lstatus = parse_status(LocationStatus, status)

    try:
        capacity = float(capacity_kg)
    except (TypeError, ValueError):
        raise ValidationError("Capacity (kg) must be a number.", entity="storage_location", operation="create")
    if capacity <= 0:
        raise ValidationError("Capacity (kg) must be > 0.", entity="storage_location", operation="create")

    if q(conn, "SELECT 1 FROM storage_locations WHERE name = ?", (name,)):
        raise ValidationError(f"A location named {name!r} already exists.", entity="storage_location", operation="create")

    try:
        loc_id = x(
            conn,
            """
            INSERT INTO storage_locations (name, location_type, capacity_kg, status, current_usage_kg, created_at)
            VALUES (?, ?, ?, ?, 0, ?)
            """,
            (name, ltype.value, capacity, lstatus.value, iso_now()),
        )
    except sqlite3.IntegrityError as e:
        raise ValidationError(str(e), entity="storage_location", operation="create") from e

    logger.info("Created storage location %s (%s, %.1f kg)", name, ltype.value, capacity)
    return loc_id


def list_locations(conn, *, status: Optional[str] = None) -> list[StorageLocation]:
    if status is None:
        rows = q(conn, "SELECT * FROM storage_locations ORDER BY name")
    else:
        rows = q(
            conn,
            "SELECT * FROM storage_locations WHERE status = ? ORDER BY name",
            (parse_status(LocationStatus, status).value,),
        )
    return [StorageLocation.from_row(r) for r in rows]


def get_location(conn, location_id: int) -> StorageLocation:
    rows = q(conn, "SELECT * FROM storage_locations WHERE id = ?", (int(location_id),))
    if not rows:
        raise NotFoundError(
            f"Storage location {location_id} not found.",
            entity="storage_location",
            entity_id=location_id,
            operation="get",
        )
    return StorageLocation.from_row(rows[0])


def set_status(conn, location_id: int, status: str) -> StorageLocation:
    """
    Free-form status change. Only acceptance of new stock depends on status;
    stock already held stays visible and countable.
    """
    loc = get_location(conn, location_id)
    new_status = parse_status(LocationStatus, status)
    x(
        conn,
        "UPDATE storage_locations SET status = ?, updated_at = ? WHERE id = ?",
        (new_status.value, iso_now(), int(location_id)),
    )
    logger.info("Storage location %s status %s -> %s", loc.name, loc.status.value, new_status.value)
    return get_location(conn, location_id)


def capacity_of(conn, location_id: int) -> float:
    return get_location(conn, location_id).capacity_kg


def location_capacity(conn, location_id: int) -> LocationCapacity:
    loc = get_location(conn, location_id)
    return LocationCapacity(location=loc, usage_grams=location_usage_grams(conn, loc.id))


def capacity_overview(conn) -> list[LocationCapacity]:
    """Every location (zero-filled) joined against live aggregated usage."""
    usage = usage_by_location(conn)
    return [LocationCapacity(location=loc, usage_grams=usage.get(loc.id, 0)) for loc in list_locations(conn)]


def available_for_new_stock(conn, required_kg: float = 0.0) -> list[LocationCapacity]:
    """Active locations with at least `required_kg` headroom, most headroom first."""
    out = [
        c
        for c in capacity_overview(conn)
        if c.location.accepts_new_stock and c.available_capacity_kg >= float(required_kg)
    ]
    return sorted(out, key=lambda c: c.available_capacity_kg, reverse=True)
