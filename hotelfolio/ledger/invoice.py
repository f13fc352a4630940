"""Invoice lifecycle: status machine, payments, validation and audit trail."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Sequence

from .audit import AuditTrail
from .discounts import Discount
from .errors import FieldIssue, InvoiceStateError, ValidationError
from .line_items import LineItem, reprice_line_item
from .money import ZERO, money_sum, parse_date, parse_timestamp, quantize, to_decimal, utcnow
from .rules import RuleSet
from .totals import Totals, compute_totals

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 7

INVOICE_PREFIXES = {
    "guest-folio": "INV",
    "room-only": "RM",
    "fnb-only": "FB",
    "extras-only": "EX",
    "group-master": "GM",
    "proforma": "PRO",
    "credit-note": "CN",
    "debit-note": "DN",
}
INVOICE_TYPES = tuple(INVOICE_PREFIXES)
ADJUSTMENT_TYPES = ("credit-note", "debit-note")

STATUSES = (
    "draft",
    "interim",
    "final",
    "posted",
    "cancelled",
    "refunded",
    "partially-refunded",
)
EDITABLE_STATUSES = ("draft", "interim", "final")
REFUNDABLE_STATUSES = ("posted", "partially-refunded")
TRANSITIONS = {
    "draft": ("interim", "final", "cancelled"),
    "interim": ("final", "cancelled"),
    "final": ("posted", "cancelled"),
}


def format_invoice_number(invoice_type: str, year: int, sequence: int) -> str:
    return f"{INVOICE_PREFIXES[invoice_type]}-{year}-{sequence:05d}"


@dataclass(frozen=True, slots=True)
class InvoicePayment:
    amount: Decimal
    method: str
    received_at: dt.datetime = field(default_factory=utcnow)
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
            "received_at": self.received_at.isoformat(),
            "reference": self.reference,
            "received_by": self.received_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvoicePayment":
        return cls(
            id=data["id"],
            amount=to_decimal(data["amount"]),
            method=data["method"],
            received_at=parse_timestamp(data["received_at"]),
            reference=data.get("reference"),
            received_by=data.get("received_by"),
        )


@dataclass(frozen=True, slots=True)
class PaymentReversal:
    payment_id: str
    amount: Decimal
    reason: str
    reversed_at: dt.datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "amount": str(self.amount),
            "reason": self.reason,
            "reversed_at": self.reversed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentReversal":
        return cls(
            id=data["id"],
            payment_id=data["payment_id"],
            amount=to_decimal(data["amount"]),
            reason=data.get("reason", ""),
            reversed_at=parse_timestamp(data["reversed_at"]),
        )


@dataclass(frozen=True, slots=True)
class ValidationResult:
    errors: tuple[FieldIssue, ...] = ()
    warnings: tuple[FieldIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(self.errors)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


class Invoice:
    """A priced snapshot of charges with a status and payments against it.

    Totals are derived from the line item snapshot and discounts every time
    they change; nothing hands them in. After posting, lines, discounts and
    totals are frozen and corrections go through credit or debit notes.
    """

    def __init__(
        self,
        *,
        invoice_type: str,
        line_items: Iterable[LineItem] = (),
        discounts: Iterable[Discount] = (),
        guest_id: str | None = None,
        guest_name: str | None = None,
        folio_id: str | None = None,
        reservation_id: str | None = None,
        master_folio_id: str | None = None,
        original_invoice_id: str | None = None,
        invoice_date: dt.date | None = None,
        due_date: dt.date | None = None,
        invoice_id: str | None = None,
        invoice_number: str | None = None,
        status: str = "draft",
        payments: Iterable[InvoicePayment] = (),
        reversals: Iterable[PaymentReversal] = (),
        audit_trail: AuditTrail | None = None,
        notes: str = "",
    ) -> None:
        if invoice_type not in INVOICE_TYPES:
            raise ValidationError([FieldIssue("invoice_type", f"Unknown invoice type {invoice_type!r}")])
        if status not in STATUSES:
            raise ValidationError([FieldIssue("status", f"Unknown status {status!r}")])
        self.id = invoice_id or uuid.uuid4().hex
        self.invoice_number = invoice_number
        self.invoice_type = invoice_type
        self.status = status
        self.guest_id = guest_id
        self.guest_name = guest_name
        self.folio_id = folio_id
        self.reservation_id = reservation_id
        self.master_folio_id = master_folio_id
        self.original_invoice_id = original_invoice_id
        self.invoice_date = invoice_date or dt.date.today()
        self.due_date = due_date or (self.invoice_date + dt.timedelta(days=DEFAULT_DUE_DAYS))
        self.notes = notes
        self._line_items: list[LineItem] = list(line_items)
        self._discounts: list[Discount] = list(discounts)
        self._payments: list[InvoicePayment] = list(payments)
        self._reversals: list[PaymentReversal] = list(reversals)
        self.audit_trail = audit_trail or AuditTrail()
        self._totals = compute_totals(self._line_items, self._discounts)

    # ------------------------------------------------------------------
    # Derived figures
    # ------------------------------------------------------------------
    @property
    def line_items(self) -> tuple[LineItem, ...]:
        return tuple(self._line_items)

    @property
    def discounts(self) -> tuple[Discount, ...]:
        return tuple(self._discounts)

    @property
    def payments(self) -> tuple[InvoicePayment, ...]:
        return tuple(self._payments)

    @property
    def reversals(self) -> tuple[PaymentReversal, ...]:
        return tuple(self._reversals)

    @property
    def totals(self) -> Totals:
        return self._totals

    @property
    def subtotal(self) -> Decimal:
        return self._totals.subtotal

    @property
    def total_discount(self) -> Decimal:
        return self._totals.total_discount

    @property
    def service_charge_amount(self) -> Decimal:
        return self._totals.service_charge_amount

    @property
    def total_tax(self) -> Decimal:
        return self._totals.total_tax

    @property
    def grand_total(self) -> Decimal:
        return self._totals.grand_total

    @property
    def total_received(self) -> Decimal:
        return money_sum(payment.amount for payment in self._payments)

    @property
    def total_refunded(self) -> Decimal:
        return money_sum(reversal.amount for reversal in self._reversals)

    @property
    def total_paid(self) -> Decimal:
        return quantize(self.total_received - self.total_refunded)

    @property
    def amount_due(self) -> Decimal:
        return quantize(self.grand_total - self.total_paid)

    @property
    def is_adjustment(self) -> bool:
        return self.invoice_type in ADJUSTMENT_TYPES

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    # ------------------------------------------------------------------
    # Edits (pre-posting only)
    # ------------------------------------------------------------------
    def _require_editable(self, operation: str) -> None:
        if not self.is_editable:
            raise InvoiceStateError(
                [FieldIssue("status", f"Cannot {operation} an invoice that is {self.status}")]
            )

    def _refresh(self) -> None:
        self._totals = compute_totals(self._line_items, self._discounts)

    def add_line_item(self, item: LineItem, *, actor: str) -> LineItem:
        self._require_editable("add lines to")
        self._line_items.append(item)
        self._refresh()
        self.audit_trail.record("line-added", f"Added {item.description} ({item.line_grand_total})", actor)
        return item

    def remove_line_item(self, line_id: str, *, actor: str) -> LineItem:
        self._require_editable("remove lines from")
        item = self._find_line(line_id)
        self._line_items.remove(item)
        self._discounts = [d for d in self._discounts if d.line_id != line_id]
        self._refresh()
        self.audit_trail.record("line-removed", f"Removed {item.description}", actor)
        return item

    def update_line_item(
        self,
        line_id: str,
        rules: RuleSet,
        *,
        actor: str,
        quantity: object | None = None,
        unit_price: object | None = None,
    ) -> LineItem:
        self._require_editable("edit lines on")
        current = self._find_line(line_id)
        updated = reprice_line_item(current, rules, quantity=quantity, unit_price=unit_price)
        self._line_items[self._line_items.index(current)] = updated
        self._refresh()
        self.audit_trail.record(
            "line-updated",
            f"{current.description}: {current.quantity} x {current.unit_price}"
            f" -> {updated.quantity} x {updated.unit_price}",
            actor,
        )
        return updated

    def add_discount(self, discount: Discount, *, actor: str) -> Discount:
        self._require_editable("discount")
        if discount.scope == "line-level" and discount.line_id is not None:
            self._find_line(discount.line_id)
        self._discounts.append(discount)
        self._refresh()
        label = f"{discount.value}%" if discount.kind == "percentage" else str(discount.value)
        self.audit_trail.record(
            "discount-applied", f"{discount.scope} discount {label} {discount.reason}".strip(), actor
        )
        return discount

    def remove_discount(self, discount_id: str, *, actor: str) -> None:
        self._require_editable("change discounts on")
        remaining = [d for d in self._discounts if d.id != discount_id]
        if len(remaining) == len(self._discounts):
            raise ValidationError([FieldIssue("discount_id", "Discount not found")])
        self._discounts = remaining
        self._refresh()
        self.audit_trail.record("discount-removed", f"Removed discount {discount_id}", actor)

    def _find_line(self, line_id: str) -> LineItem:
        for item in self._line_items:
            if item.id == line_id:
                return item
        raise ValidationError([FieldIssue("line_id", "Line item not found")])

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------
    def transition(self, target: str, *, actor: str, reason: str = "") -> None:
        allowed = TRANSITIONS.get(self.status, ())
        if target not in allowed:
            raise InvoiceStateError(
                [FieldIssue("status", f"Cannot move invoice from {self.status} to {target}")]
            )
        if target != "cancelled":
            validate_invoice(self).raise_for_errors()
        previous = self.status
        self.status = target
        description = f"Status {previous} -> {target}"
        if reason:
            description = f"{description}: {reason}"
        self.audit_trail.record(target, description, actor)
        logger.info("Invoice %s moved from %s to %s by %s", self.invoice_number or self.id, previous, target, actor)

    def cancel(self, *, actor: str, reason: str = "") -> None:
        self.transition("cancelled", actor=actor, reason=reason)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------
    def add_payment(self, payment: InvoicePayment, *, actor: str) -> InvoicePayment:
        if self.status in ("cancelled", "refunded"):
            raise InvoiceStateError(
                [FieldIssue("status", f"Cannot take payments on a {self.status} invoice")]
            )
        if payment.amount <= 0:
            raise ValidationError([FieldIssue("amount", "Payment amount must be greater than 0")])
        self._payments.append(payment)
        self.audit_trail.record(
            "payment-received", f"{payment.method} {payment.amount}; amount due {self.amount_due}", actor
        )
        return payment

    def apply_payment_reversal(self, reversal: PaymentReversal, *, actor: str) -> PaymentReversal:
        """Refund (part of) a payment on a posted invoice and move it to a refund status."""

        if self.status not in REFUNDABLE_STATUSES:
            raise InvoiceStateError(
                [FieldIssue("status", f"Only posted invoices can be refunded, not {self.status}")]
            )
        payment = next((p for p in self._payments if p.id == reversal.payment_id), None)
        if payment is None:
            raise ValidationError([FieldIssue("payment_id", "Payment not found on this invoice")])
        already = money_sum(r.amount for r in self._reversals if r.payment_id == payment.id)
        if reversal.amount <= 0 or reversal.amount > payment.amount - already:
            raise ValidationError(
                [FieldIssue("amount", f"Reversal must be between 0 and {payment.amount - already}")]
            )
        self._reversals.append(reversal)
        previous = self.status
        self.status = "refunded" if self.total_refunded >= self.total_received else "partially-refunded"
        self.audit_trail.record(
            "payment-reversed",
            f"Reversed {reversal.amount} of payment {payment.id}: {reversal.reason}",
            actor,
        )
        if previous != self.status:
            self.audit_trail.record(self.status, f"Status {previous} -> {self.status}", actor)
        return reversal

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "invoice_type": self.invoice_type,
            "status": self.status,
            "guest_id": self.guest_id,
            "guest_name": self.guest_name,
            "folio_id": self.folio_id,
            "reservation_id": self.reservation_id,
            "master_folio_id": self.master_folio_id,
            "original_invoice_id": self.original_invoice_id,
            "invoice_date": self.invoice_date.isoformat(),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "notes": self.notes,
            "line_items": [item.to_dict() for item in self._line_items],
            "discounts": [discount.to_dict() for discount in self._discounts],
            "payments": [payment.to_dict() for payment in self._payments],
            "reversals": [reversal.to_dict() for reversal in self._reversals],
            "audit_trail": self.audit_trail.to_list(),
            "total_paid": str(self.total_paid),
            "amount_due": str(self.amount_due),
        }
        data.update(self._totals.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Invoice":
        # Stored totals are ignored and recomputed from the line snapshot.
        return cls(
            invoice_id=data["id"],
            invoice_number=data.get("invoice_number"),
            invoice_type=data["invoice_type"],
            status=data.get("status", "draft"),
            guest_id=data.get("guest_id"),
            guest_name=data.get("guest_name"),
            folio_id=data.get("folio_id"),
            reservation_id=data.get("reservation_id"),
            master_folio_id=data.get("master_folio_id"),
            original_invoice_id=data.get("original_invoice_id"),
            invoice_date=parse_date(data.get("invoice_date")),
            due_date=parse_date(data.get("due_date")),
            notes=data.get("notes", ""),
            line_items=[LineItem.from_dict(item) for item in data.get("line_items") or ()],
            discounts=[Discount.from_dict(item) for item in data.get("discounts") or ()],
            payments=[InvoicePayment.from_dict(item) for item in data.get("payments") or ()],
            reversals=[PaymentReversal.from_dict(item) for item in data.get("reversals") or ()],
            audit_trail=AuditTrail.from_list(data.get("audit_trail")),
        )


def _line_issues(invoice: Invoice) -> tuple[list[FieldIssue], list[FieldIssue]]:
    errors: list[FieldIssue] = []
    warnings: list[FieldIssue] = []
    for index, item in enumerate(invoice.line_items):
        prefix = f"line_items[{index}]"
        if not item.description.strip():
            errors.append(FieldIssue(f"{prefix}.description", "Description is required"))
        if item.quantity < 0:
            errors.append(FieldIssue(f"{prefix}.quantity", "Quantity cannot be negative"))
        elif item.quantity == 0:
            warnings.append(FieldIssue(f"{prefix}.quantity", "Line has zero quantity"))
        if item.unit_price < 0 and not invoice.is_adjustment:
            warnings.append(FieldIssue(f"{prefix}.unit_price", "Negative unit price on a non-adjustment invoice"))
    return errors, warnings


def validate_invoice(invoice: Invoice) -> ValidationResult:
    """Check every rule an invoice must meet before it can be saved."""

    errors: list[FieldIssue] = []
    warnings: list[FieldIssue] = []
    billed_to_master = invoice.invoice_type == "group-master" and invoice.master_folio_id
    # Notes inherit their party from the original invoice they reference.
    guest_optional = invoice.invoice_type == "proforma" or invoice.is_adjustment or billed_to_master
    if not (invoice.guest_id or guest_optional):
        errors.append(FieldIssue("guest_id", "Guest is required"))
    if not invoice.line_items:
        errors.append(FieldIssue("line_items", "Invoice must have at least one line item"))
    if invoice.is_adjustment and not invoice.original_invoice_id:
        errors.append(
            FieldIssue("original_invoice_id", f"A {invoice.invoice_type} must reference the original invoice")
        )
    if invoice.grand_total < ZERO and not invoice.is_adjustment:
        errors.append(FieldIssue("grand_total", "Grand total cannot be negative"))
    if invoice.due_date and invoice.due_date < invoice.invoice_date:
        errors.append(FieldIssue("due_date", "Due date cannot be before the invoice date"))
    line_errors, line_warnings = _line_issues(invoice)
    errors.extend(line_errors)
    warnings.extend(line_warnings)
    if invoice.grand_total >= ZERO and invoice.total_paid > invoice.grand_total:
        warnings.append(FieldIssue("total_paid", "Total paid exceeds grand total"))
    if invoice.totals.is_negative:
        warnings.append(FieldIssue("grand_total", "Invoice total is negative"))
    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))


def create_invoice(
    *,
    invoice_type: str,
    line_items: Sequence[LineItem],
    actor: str,
    **fields: Any,
) -> Invoice:
    """Build a draft invoice, refusing it outright when validation fails."""

    invoice = Invoice(invoice_type=invoice_type, line_items=line_items, **fields)
    validate_invoice(invoice).raise_for_errors()
    invoice.audit_trail.record(
        "created", f"{invoice_type} invoice created for {invoice.grand_total}", actor
    )
    return invoice


def adjustment_note(
    original: Invoice,
    *,
    invoice_type: str,
    line_items: Sequence[LineItem],
    actor: str,
    reason: str,
) -> Invoice:
    """Create a credit or debit note against a posted invoice."""

    if invoice_type not in ADJUSTMENT_TYPES:
        raise ValidationError([FieldIssue("invoice_type", "Adjustments must be a credit-note or debit-note")])
    if original.status not in ("posted", "partially-refunded", "refunded"):
        raise InvoiceStateError(
            [FieldIssue("original_invoice_id", "Adjustments can only reference a posted invoice")]
        )
    note = create_invoice(
        invoice_type=invoice_type,
        line_items=line_items,
        actor=actor,
        guest_id=original.guest_id,
        guest_name=original.guest_name,
        folio_id=original.folio_id,
        reservation_id=original.reservation_id,
        master_folio_id=original.master_folio_id,
        original_invoice_id=original.id,
        notes=reason,
    )
    return note
