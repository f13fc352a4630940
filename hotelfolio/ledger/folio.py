"""Per-guest folio ledger with a balance that always tracks its entries."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from .audit import AuditTrail
from .errors import ConsistencyError, FieldIssue, ValidationError
from .money import money_sum, parse_timestamp, quantize, to_decimal, utcnow

logger = logging.getLogger(__name__)

CATEGORY_BY_DEPARTMENT = {
    "front-office": "room",
    "room": "room",
    "fnb": "fnb",
    "kitchen": "fnb",
    "restaurant": "fnb",
    "bar": "fnb",
    "spa": "extra-service",
    "extra-service": "extra-service",
}


def category_for(department: str) -> str:
    return CATEGORY_BY_DEPARTMENT.get(department, "other")


@dataclass(frozen=True, slots=True)
class FolioCharge:
    description: str
    amount: Decimal
    quantity: Decimal
    department: str
    timestamp: dt.datetime = field(default_factory=utcnow)
    category: str = ""
    taxable: bool | None = None
    service_charge_applicable: bool | None = None
    posted_by: str | None = None
    routed_from: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "quantity", to_decimal(self.quantity, field="quantity"))
        if not self.category:
            object.__setattr__(self, "category", category_for(self.department))

    @property
    def total(self) -> Decimal:
        return quantize(self.amount * self.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "amount": str(self.amount),
            "quantity": str(self.quantity),
            "department": self.department,
            "category": self.category,
            "timestamp": self.timestamp.isoformat(),
            "taxable": self.taxable,
            "service_charge_applicable": self.service_charge_applicable,
            "posted_by": self.posted_by,
            "routed_from": self.routed_from,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FolioCharge":
        return cls(
            id=data["id"],
            description=data["description"],
            amount=to_decimal(data["amount"]),
            quantity=to_decimal(data.get("quantity", 1), field="quantity"),
            department=data["department"],
            category=data.get("category", ""),
            timestamp=parse_timestamp(data["timestamp"]),
            taxable=data.get("taxable"),
            service_charge_applicable=data.get("service_charge_applicable"),
            posted_by=data.get("posted_by"),
            routed_from=data.get("routed_from"),
        )


@dataclass(frozen=True, slots=True)
class FolioPayment:
    amount: Decimal
    method: str
    status: str = "paid"
    timestamp: dt.datetime = field(default_factory=utcnow)
    reference: str | None = None
    received_by: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "method": self.method,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "reference": self.reference,
            "received_by": self.received_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FolioPayment":
        return cls(
            id=data["id"],
            amount=to_decimal(data["amount"]),
            method=data["method"],
            status=data.get("status", "paid"),
            timestamp=parse_timestamp(data["timestamp"]),
            reference=data.get("reference"),
            received_by=data.get("received_by"),
        )


def derive_balance(charges: Iterable[FolioCharge], payments: Iterable[FolioPayment]) -> Decimal:
    return quantize(
        money_sum(charge.total for charge in charges) - money_sum(payment.amount for payment in payments)
    )


class Folio:
    """A guest's running account.

    ``balance`` is only ever changed together with the charge or payment that
    causes it. Loading a folio whose stored balance disagrees with its entries
    is detected by :meth:`verify_balance` and repaired by :meth:`reconcile`.
    """

    def __init__(
        self,
        *,
        guest_id: str | None,
        reservation_id: str | None = None,
        folio_id: str | None = None,
        master_folio_id: str | None = None,
        charges: Iterable[FolioCharge] = (),
        payments: Iterable[FolioPayment] = (),
        audit_trail: AuditTrail | None = None,
        created_at: dt.datetime | None = None,
    ) -> None:
        self.id = folio_id or uuid.uuid4().hex
        self.guest_id = guest_id
        self.reservation_id = reservation_id
        self.master_folio_id = master_folio_id
        self._charges: list[FolioCharge] = list(charges)
        self._payments: list[FolioPayment] = list(payments)
        self._balance = derive_balance(self._charges, self._payments)
        self.audit_trail = audit_trail or AuditTrail()
        self.created_at = created_at or utcnow()

    @property
    def charges(self) -> tuple[FolioCharge, ...]:
        return tuple(self._charges)

    @property
    def payments(self) -> tuple[FolioPayment, ...]:
        return tuple(self._payments)

    @property
    def balance(self) -> Decimal:
        return self._balance

    @property
    def total_charges(self) -> Decimal:
        return money_sum(charge.total for charge in self._charges)

    @property
    def total_payments(self) -> Decimal:
        return money_sum(payment.amount for payment in self._payments)

    def add_charge(self, charge: FolioCharge, *, actor: str = "system") -> FolioCharge:
        if not charge.description.strip():
            raise ValidationError([FieldIssue("description", "Charge description is required")])
        if charge.quantity <= 0:
            raise ValidationError([FieldIssue("quantity", "Quantity must be greater than 0")])
        new_balance = quantize(self._balance + charge.total)
        self._charges.append(charge)
        self._balance = new_balance
        self.audit_trail.record(
            "charge-posted",
            f"{charge.description} {charge.total} ({charge.department})",
            actor,
        )
        return charge

    def add_payment(self, payment: FolioPayment, *, actor: str = "system") -> FolioPayment:
        if payment.amount <= 0:
            raise ValidationError([FieldIssue("amount", "Payment amount must be greater than 0")])
        new_balance = quantize(self._balance - payment.amount)
        self._payments.append(payment)
        self._balance = new_balance
        self.audit_trail.record("payment-received", f"{payment.method} {payment.amount}", actor)
        return payment

    def verify_balance(self) -> None:
        derived = derive_balance(self._charges, self._payments)
        if derived != self._balance:
            raise ConsistencyError("Folio", self.id, self._balance, derived)

    def reconcile(self, *, actor: str = "system") -> Decimal | None:
        """Repair a drifted balance; return the discrepancy that was corrected."""

        try:
            self.verify_balance()
        except ConsistencyError as exc:
            logger.warning("%s; correcting", exc)
            self._balance = exc.derived
            self.audit_trail.record(
                "balance-corrected",
                f"Stored balance {exc.stored} replaced by derived balance {exc.derived}",
                actor,
            )
            return exc.discrepancy
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "guest_id": self.guest_id,
            "reservation_id": self.reservation_id,
            "master_folio_id": self.master_folio_id,
            "charges": [charge.to_dict() for charge in self._charges],
            "payments": [payment.to_dict() for payment in self._payments],
            "balance": str(self._balance),
            "audit_trail": self.audit_trail.to_list(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Folio":
        folio = cls(
            folio_id=data["id"],
            guest_id=data.get("guest_id"),
            reservation_id=data.get("reservation_id"),
            master_folio_id=data.get("master_folio_id"),
            charges=[FolioCharge.from_dict(item) for item in data.get("charges") or ()],
            payments=[FolioPayment.from_dict(item) for item in data.get("payments") or ()],
            audit_trail=AuditTrail.from_list(data.get("audit_trail")),
            created_at=parse_timestamp(data.get("created_at")),
        )
        if "balance" in data:
            # Keep the stored figure so a drifted record is caught by verify_balance.
            folio._balance = to_decimal(data["balance"])
        return folio
