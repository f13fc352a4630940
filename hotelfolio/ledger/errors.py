"""Exception types raised by the billing ledger."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable


@dataclass(frozen=True, slots=True)
class FieldIssue:
    """A single field-level problem reported by validation."""

    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""

    def __init__(self, message: str | Iterable[FieldIssue]) -> None:
        if isinstance(message, str):
            issues = [FieldIssue("__all__", message)]
        else:
            issues = list(message)
            message = "; ".join(f"{issue.field}: {issue.message}" for issue in issues)
        super().__init__(message)
        self.issues = issues


class NotFoundError(ValidationError):
    """Raised when a record cannot be found in the store."""


class InvoiceStateError(ValidationError):
    """Raised when an invoice operation is not allowed in its current status."""


class RuleConfigurationError(RuntimeError):
    """Raised in strict mode when no active rule covers a chargeable department."""

    def __init__(self, component: str, department: str, reason: str) -> None:
        super().__init__(f"{component} not applied to department {department!r}: {reason}")
        self.component = component
        self.department = department
        self.reason = reason


class ConsistencyError(RuntimeError):
    """Raised when a stored balance disagrees with the balance derived from its entries."""

    def __init__(self, entity: str, entity_id: str, stored: Decimal, derived: Decimal) -> None:
        super().__init__(
            f"{entity} {entity_id} stored balance {stored} does not match derived balance {derived}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.stored = stored
        self.derived = derived

    @property
    def discrepancy(self) -> Decimal:
        return self.stored - self.derived


__all__ = [
    "ConsistencyError",
    "FieldIssue",
    "InvoiceStateError",
    "NotFoundError",
    "RuleConfigurationError",
    "ValidationError",
]
