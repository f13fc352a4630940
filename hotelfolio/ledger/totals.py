"""Aggregate line items and discounts into invoice totals."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

from .discounts import AppliedDiscount, Discount, apply_discounts
from .line_items import LineItem, TaxLine, reprice_line_item
from .money import ZERO, money_sum, quantize
from .rules import RuleSet


@dataclass(frozen=True, slots=True)
class Totals:
    subtotal: Decimal
    total_discount: Decimal
    service_charge_amount: Decimal
    tax_lines: tuple[TaxLine, ...]
    total_tax: Decimal
    inclusive_tax: Decimal
    grand_total: Decimal
    applied_discounts: tuple[AppliedDiscount, ...] = ()

    @property
    def is_negative(self) -> bool:
        return self.grand_total < ZERO

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "total_discount": str(self.total_discount),
            "service_charge_amount": str(self.service_charge_amount),
            "tax_lines": [tax.to_dict() for tax in self.tax_lines],
            "total_tax": str(self.total_tax),
            "inclusive_tax": str(self.inclusive_tax),
            "grand_total": str(self.grand_total),
            "is_negative": self.is_negative,
        }


def merge_tax_lines(line_items: Sequence[LineItem]) -> tuple[TaxLine, ...]:
    """Sum tax lines by name, keeping calculation order."""

    merged: dict[str, TaxLine] = {}
    for line in line_items:
        for tax in line.tax_lines:
            current = merged.get(tax.name)
            if current is None:
                merged[tax.name] = tax
                continue
            merged[tax.name] = TaxLine(
                name=tax.name,
                rate=current.rate,
                taxable_amount=quantize(current.taxable_amount + tax.taxable_amount),
                amount=quantize(current.amount + tax.amount),
                is_inclusive=current.is_inclusive,
                calculation_order=current.calculation_order,
            )
    return tuple(sorted(merged.values(), key=lambda tax: (tax.calculation_order, tax.name)))


def compute_totals(
    line_items: Sequence[LineItem],
    discounts: Sequence[Discount] = (),
    rules: RuleSet | None = None,
    *,
    tax_exempt: bool = False,
) -> Totals:
    """Return the financial snapshot for ``line_items`` and ``discounts``.

    With ``rules`` every line is repriced first; without, lines are taken as
    already priced (the case for invoice snapshots). Pure and idempotent.
    """

    if rules is not None:
        line_items = [reprice_line_item(line, rules, tax_exempt=tax_exempt) for line in line_items]
    discount_result = apply_discounts(line_items, discounts)
    subtotal = discount_result.subtotal
    total_discount = discount_result.total_discount
    service_charge = money_sum(line.service_charge_amount for line in line_items)
    tax_lines = merge_tax_lines(line_items)
    total_tax = money_sum(tax.amount for tax in tax_lines if not tax.is_inclusive)
    inclusive_tax = money_sum(tax.amount for tax in tax_lines if tax.is_inclusive)
    grand_total = quantize(subtotal - total_discount + service_charge + total_tax)
    return Totals(
        subtotal=subtotal,
        total_discount=total_discount,
        service_charge_amount=service_charge,
        tax_lines=tax_lines,
        total_tax=total_tax,
        inclusive_tax=inclusive_tax,
        grand_total=grand_total,
        applied_discounts=discount_result.applied,
    )
