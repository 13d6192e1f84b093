"""Status enums and row types shared by the services.

Statuses are closed sets. Raw strings read from the store are parsed with
``parse_status`` so an unknown or mis-cased value fails loudly instead of
drifting through the workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Type, TypeVar

from fishops.errors import ValidationError
from fishops.utils import grams_to_kg, safe_div


class LocationType(str, Enum):
    COLD_STORAGE = "cold_storage"
    FREEZER = "freezer"
    AMBIENT = "ambient"
    PROCESSING_AREA = "processing_area"


class LocationStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    INACTIVE = "inactive"


class BatchStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class TransferStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DispatchStatus(str, Enum):
    DISPATCHED = "dispatched"
    RECEIVED = "received"


class ReceivingStatus(str, Enum):
    MATCH = "match"
    DISCREPANCY = "discrepancy"


E = TypeVar("E", bound=Enum)


def parse_status(enum_cls: Type[E], value) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {enum_cls.__name__} {value!r}. Use one of: {allowed}.")


@dataclass(frozen=True)
class StorageLocation:
    id: int
    name: str
    location_type: LocationType
    capacity_kg: float
    status: LocationStatus

    @property
    def accepts_new_stock(self) -> bool:
        return self.status is LocationStatus.ACTIVE

    @classmethod
    def from_row(cls, r) -> "StorageLocation":
        return cls(
            id=int(r["id"]),
            name=str(r["name"]),
            location_type=parse_status(LocationType, r["location_type"]),
            capacity_kg=float(r["capacity_kg"]),
            status=parse_status(LocationStatus, r["status"]),
        )


@dataclass(frozen=True)
class InventorySummary:
    storage_location_id: int
    size_class: int
    total_pieces: int
    total_weight_grams: int
    batch_count: int

    @property
    def total_weight_kg(self) -> float:
        return grams_to_kg(self.total_weight_grams)


@dataclass(frozen=True)
class LocationCapacity:
    location: StorageLocation
    usage_grams: int

    @property
    def capacity_kg(self) -> float:
        return self.location.capacity_kg

    @property
    def current_usage_kg(self) -> float:
        return grams_to_kg(self.usage_grams)

    @property
    def available_capacity_kg(self) -> float:
        return max(0.0, self.capacity_kg - self.current_usage_kg)

    @property
    def utilization_percent(self) -> float:
        return round(safe_div(self.current_usage_kg, self.capacity_kg) * 100.0, 2)


@dataclass(frozen=True)
class StockSlice:
    """One FIFO-ordered stock row a draw-down can take from."""

    result_id: int
    batch_id: int
    batch_number: str
    batch_created_at: str
    storage_location_id: int
    size_class: int
    pieces: int
    weight_grams: int


@dataclass(frozen=True)
class Allocation:
    slice: StockSlice
    pieces: int
    weight_grams: int


@dataclass(frozen=True)
class Transfer:
    id: int
    from_storage_id: int
    to_storage_id: int
    size_class: int
    quantity: int
    weight_grams: int
    status: TransferStatus
    requested_by: Optional[str]
    approved_by: Optional[str]
    created_at: str
    rejection_reason: Optional[str] = None

    @property
    def weight_kg(self) -> float:
        return grams_to_kg(self.weight_grams)

    @classmethod
    def from_row(cls, r) -> "Transfer":
        return cls(
            id=int(r["id"]),
            from_storage_id=int(r["from_storage_id"]),
            to_storage_id=int(r["to_storage_id"]),
            size_class=int(r["size_class"]),
            quantity=int(r["quantity"]),
            weight_grams=int(r["weight_grams"]),
            status=parse_status(TransferStatus, r["status"]),
            requested_by=r["requested_by"],
            approved_by=r["approved_by"],
            created_at=str(r["created_at"]),
            rejection_reason=r["rejection_reason"],
        )


@dataclass(frozen=True)
class SizeDelta:
    pieces: int
    weight_kg: float

    def to_json(self) -> dict:
        return {"pieces": self.pieces, "weight_kg": self.weight_kg}


@dataclass(frozen=True)
class ReconciliationResult:
    receiving_id: int
    dispatch_id: int
    status: ReceivingStatus
    discrepancies: dict[int, SizeDelta] = field(default_factory=dict)
