"""Turn raw folio charges into priced, taxed invoice line items."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from .errors import RuleConfigurationError
from .money import ZERO, money_sum, parse_timestamp, percent_of, quantize, to_decimal
from .rules import RuleSet

logger = logging.getLogger(__name__)

UNTAXED_DESCRIPTIONS = ("advance-deposit", "advance deposit", "refund")
SERVICE_CHARGE_DEPARTMENTS = ("fnb", "kitchen")

ITEM_TYPES = {
    "front-office": "room-charge",
    "fnb": "fnb-restaurant",
    "kitchen": "fnb-restaurant",
    "spa": "extra-service",
}


class ChargeLike(Protocol):
    description: str
    amount: Decimal
    quantity: Decimal
    department: str
    timestamp: dt.datetime | None


@dataclass(frozen=True, slots=True)
class TaxLine:
    name: str
    rate: Decimal
    taxable_amount: Decimal
    amount: Decimal
    is_inclusive: bool = False
    calculation_order: int = 1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "rate": str(self.rate),
            "taxable_amount": str(self.taxable_amount),
            "amount": str(self.amount),
            "is_inclusive": self.is_inclusive,
            "calculation_order": self.calculation_order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaxLine":
        return cls(
            name=data["name"],
            rate=to_decimal(data["rate"]),
            taxable_amount=to_decimal(data["taxable_amount"]),
            amount=to_decimal(data["amount"]),
            is_inclusive=bool(data.get("is_inclusive", False)),
            calculation_order=int(data.get("calculation_order", 1)),
        )


@dataclass(frozen=True, slots=True)
class LineItem:
    """A priced invoice line.

    Only the inputs and the rule-dependent components are held; ``line_total``,
    ``total_tax`` and ``line_grand_total`` are always derived from them. Build
    instances with :func:`build_line_item` rather than by hand.
    """

    description: str
    department: str
    quantity: Decimal
    unit_price: Decimal
    taxable: bool
    service_charge_applicable: bool
    service_charge_amount: Decimal = ZERO
    tax_lines: tuple[TaxLine, ...] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    item_type: str = "misc"
    source_charge_id: str | None = None
    date: dt.datetime | None = None

    @property
    def line_total(self) -> Decimal:
        return quantize(self.quantity * self.unit_price)

    @property
    def total_tax(self) -> Decimal:
        return money_sum(tax.amount for tax in self.tax_lines if not tax.is_inclusive)

    @property
    def inclusive_tax(self) -> Decimal:
        return money_sum(tax.amount for tax in self.tax_lines if tax.is_inclusive)

    @property
    def line_grand_total(self) -> Decimal:
        return quantize(self.line_total + self.service_charge_amount + self.total_tax)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "department": self.department,
            "item_type": self.item_type,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "taxable": self.taxable,
            "service_charge_applicable": self.service_charge_applicable,
            "service_charge_amount": str(self.service_charge_amount),
            "tax_lines": [tax.to_dict() for tax in self.tax_lines],
            "source_charge_id": self.source_charge_id,
            "date": self.date.isoformat() if self.date else None,
            "line_total": str(self.line_total),
            "total_tax": str(self.total_tax),
            "line_grand_total": str(self.line_grand_total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        # Derived keys in ``data`` are ignored; they are recomputed on access.
        return cls(
            id=data["id"],
            description=data["description"],
            department=data["department"],
            item_type=data.get("item_type", "misc"),
            quantity=to_decimal(data["quantity"]),
            unit_price=to_decimal(data["unit_price"]),
            taxable=bool(data["taxable"]),
            service_charge_applicable=bool(data["service_charge_applicable"]),
            service_charge_amount=to_decimal(data.get("service_charge_amount", "0")),
            tax_lines=tuple(TaxLine.from_dict(item) for item in data.get("tax_lines") or ()),
            source_charge_id=data.get("source_charge_id"),
            date=parse_timestamp(data.get("date")),
        )


def _report_gap(component: str, department: str, reason: str, *, strict: bool) -> None:
    error = RuleConfigurationError(component, department, reason)
    if strict:
        raise error
    logger.warning("Rule configuration gap: %s", error)


def _service_charge(
    line_total: Decimal,
    department: str,
    applicable: bool,
    rules: RuleSet,
    *,
    strict: bool,
) -> Decimal:
    if not applicable:
        return ZERO
    rule = rules.service_charge
    if rule is None:
        _report_gap("service charge", department, "no service-charge rule configured", strict=strict)
        return ZERO
    if not rule.is_active:
        _report_gap("service charge", department, "service-charge rule is inactive", strict=strict)
        return ZERO
    if department not in rule.applies_to:
        _report_gap("service charge", department, "department missing from applies_to", strict=strict)
        return ZERO
    return percent_of(line_total, rule.rate)


def _tax_lines(
    line_total: Decimal,
    service_charge: Decimal,
    department: str,
    rules: RuleSet,
    *,
    strict: bool,
) -> tuple[TaxLine, ...]:
    selected = rules.taxes_for(department)
    if not selected:
        _report_gap("tax", department, "no active tax definition applies", strict=strict)
        return ()
    include_service_charge = rules.service_charge is not None and rules.service_charge.is_taxable
    lines: list[TaxLine] = []
    applied = Decimal("0")
    for tax in selected:
        base = line_total
        if tax.taxable_on_service_charge and include_service_charge:
            base += service_charge
        if tax.is_compound:
            base += applied
        amount = percent_of(base, tax.rate)
        lines.append(
            TaxLine(
                name=tax.name,
                rate=tax.rate,
                taxable_amount=quantize(base),
                amount=amount,
                is_inclusive=tax.is_inclusive,
                calculation_order=tax.calculation_order,
            )
        )
        applied += amount
    return tuple(lines)


def build_line_item(
    *,
    description: str,
    department: str,
    quantity: object,
    unit_price: object,
    rules: RuleSet,
    taxable: bool = True,
    service_charge_applicable: bool = False,
    tax_exempt: bool = False,
    item_type: str | None = None,
    source_charge_id: str | None = None,
    date: dt.datetime | None = None,
    line_id: str | None = None,
    strict: bool = False,
) -> LineItem:
    """Price a single line against ``rules``.

    Departments no rule covers get a zero component for that rule; the line is
    still produced. With ``strict`` such gaps raise
    :class:`RuleConfigurationError` instead of being logged.
    """

    quantity = to_decimal(quantity, field="quantity")
    unit_price = to_decimal(unit_price, field="unit_price")
    line_total = quantize(quantity * unit_price)
    service_charge = ZERO
    tax_lines: tuple[TaxLine, ...] = ()
    if line_total != ZERO:
        service_charge = _service_charge(
            line_total, department, service_charge_applicable, rules, strict=strict
        )
        if taxable and not tax_exempt:
            tax_lines = _tax_lines(line_total, service_charge, department, rules, strict=strict)
    return LineItem(
        id=line_id or uuid.uuid4().hex,
        description=description,
        department=department,
        item_type=item_type or ITEM_TYPES.get(department, "misc"),
        quantity=quantity,
        unit_price=unit_price,
        taxable=taxable,
        service_charge_applicable=service_charge_applicable,
        service_charge_amount=service_charge,
        tax_lines=tax_lines,
        source_charge_id=source_charge_id,
        date=date,
    )


def default_taxable(description: str) -> bool:
    return description.strip().lower() not in UNTAXED_DESCRIPTIONS


def default_service_charge(department: str) -> bool:
    return department in SERVICE_CHARGE_DEPARTMENTS


def line_item_from_charge(
    charge: ChargeLike,
    rules: RuleSet,
    *,
    tax_exempt: bool = False,
    strict: bool = False,
) -> LineItem:
    """Build a line from a folio charge, honouring its own flags when present."""

    taxable = getattr(charge, "taxable", None)
    service_charge_applicable = getattr(charge, "service_charge_applicable", None)
    return build_line_item(
        description=charge.description,
        department=charge.department,
        quantity=charge.quantity,
        unit_price=charge.amount,
        rules=rules,
        taxable=default_taxable(charge.description) if taxable is None else taxable,
        service_charge_applicable=(
            default_service_charge(charge.department)
            if service_charge_applicable is None
            else service_charge_applicable
        ),
        tax_exempt=tax_exempt,
        source_charge_id=getattr(charge, "id", None),
        date=charge.timestamp,
        strict=strict,
    )


def department_for_category(category_name: str) -> str:
    lowered = category_name.lower()
    if "spa" in lowered:
        return "spa"
    if "laundry" in lowered:
        return "housekeeping"
    return "front-office"


def build_extra_service_line(
    *,
    service_name: str,
    category_name: str,
    quantity: object,
    unit_price: object,
    rules: RuleSet,
    tax_exempt: bool = False,
    date: dt.datetime | None = None,
    strict: bool = False,
) -> LineItem:
    return build_line_item(
        description=f"{service_name} - {category_name}",
        department=department_for_category(category_name),
        item_type="extra-service",
        quantity=quantity,
        unit_price=unit_price,
        rules=rules,
        taxable=True,
        service_charge_applicable=False,
        tax_exempt=tax_exempt,
        date=date,
        strict=strict,
    )


def reprice_line_item(
    item: LineItem,
    rules: RuleSet,
    *,
    quantity: object | None = None,
    unit_price: object | None = None,
    tax_exempt: bool = False,
    strict: bool = False,
) -> LineItem:
    """Rebuild ``item`` from its inputs, optionally changing quantity or price."""

    return build_line_item(
        line_id=item.id,
        description=item.description,
        department=item.department,
        item_type=item.item_type,
        quantity=item.quantity if quantity is None else quantity,
        unit_price=item.unit_price if unit_price is None else unit_price,
        rules=rules,
        taxable=item.taxable,
        service_charge_applicable=item.service_charge_applicable,
        tax_exempt=tax_exempt,
        source_charge_id=item.source_charge_id,
        date=item.date,
        strict=strict,
    )
