"""Error taxonomy for the stock core.

Every error carries the entity, its id and the attempted operation so a
failure can be reported without re-querying the store.
"""

from __future__ import annotations

from typing import Any, Optional


class FishOpsError(Exception):
    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        entity_id: Any = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.operation = operation

    def context(self) -> dict:
        return {"entity": self.entity, "entity_id": self.entity_id, "operation": self.operation}


class ValidationError(FishOpsError, ValueError):
    """Bad input; rejected before the store is touched. Never retried."""


class OutOfRangeError(ValidationError):
    """Weight outside the classifier's domain (negative or not a number)."""


class NotFoundError(FishOpsError, LookupError):
    pass


class BusinessRuleError(FishOpsError):
    """Rule rejection surfaced verbatim to the caller. Never retried automatically."""


class InsufficientStockError(BusinessRuleError):
    def __init__(self, message: str, *, available: float = 0, requested: float = 0, **ctx: Any):
        super().__init__(message, **ctx)
        self.available = available
        self.requested = requested


class CapacityExceededError(BusinessRuleError):
    def __init__(self, message: str, *, available_kg: float = 0.0, requested_kg: float = 0.0, **ctx: Any):
        super().__init__(message, **ctx)
        self.available_kg = available_kg
        self.requested_kg = requested_kg


class StorageUnavailableError(BusinessRuleError):
    """Location is not accepting new stock (maintenance or inactive)."""


class InvalidTransitionError(BusinessRuleError):
    def __init__(self, message: str, *, current: Optional[str] = None, target: Optional[str] = None, **ctx: Any):
        super().__init__(message, **ctx)
        self.current = current
        self.target = target


class ConsistencyViolationError(FishOpsError):
    """Pre-validated quantities no longer hold at commit time; caller must re-request."""


class TransientStoreError(FishOpsError):
    """Store busy, locked or unreachable. Safe to retry at the caller's discretion."""
