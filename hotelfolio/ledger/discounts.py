"""Invoice-level and line-level discounts."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Sequence

from .errors import FieldIssue, ValidationError
from .line_items import LineItem
from .money import ZERO, money_sum, percent_of, quantize, to_decimal

SCOPES = ("invoice-level", "line-level")
KINDS = ("percentage", "fixed-amount")


@dataclass(frozen=True, slots=True)
class Discount:
    scope: str
    kind: str
    value: Decimal
    reason: str = ""
    line_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.scope not in SCOPES:
            raise ValidationError([FieldIssue("scope", f"Unknown discount scope {self.scope!r}")])
        if self.kind not in KINDS:
            raise ValidationError([FieldIssue("type", f"Unknown discount type {self.kind!r}")])
        object.__setattr__(self, "value", to_decimal(self.value, field="value"))
        if self.value < 0:
            raise ValidationError([FieldIssue("value", "Discount value cannot be negative")])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "type": self.kind,
            "value": str(self.value),
            "reason": self.reason,
            "line_id": self.line_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Discount":
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            scope=data.get("scope", "invoice-level"),
            kind=data.get("type") or data.get("kind", "percentage"),
            value=to_decimal(data["value"]),
            reason=data.get("reason", ""),
            line_id=data.get("line_id"),
        )


@dataclass(frozen=True, slots=True)
class AppliedDiscount:
    discount: Discount
    amount: Decimal


@dataclass(frozen=True, slots=True)
class DiscountResult:
    subtotal: Decimal
    applied: tuple[AppliedDiscount, ...]

    @property
    def total_discount(self) -> Decimal:
        return money_sum(item.amount for item in self.applied)


def _percentage_base(discount: Discount, subtotal: Decimal, lines: dict[str, LineItem]) -> Decimal:
    if discount.scope == "line-level" and discount.line_id in lines:
        return lines[discount.line_id].line_total
    return subtotal


def apply_discounts(line_items: Sequence[LineItem], discounts: Sequence[Discount]) -> DiscountResult:
    """Resolve each discount to an amount, in list order.

    Discounts reduce the invoice total only. Line grand totals and the tax
    computed on them are left untouched, so the line items stay an exact record
    of what was charged.
    """

    subtotal = money_sum(line.line_total for line in line_items)
    lines = {line.id: line for line in line_items}
    remaining = subtotal if subtotal > ZERO else ZERO
    applied: list[AppliedDiscount] = []
    for discount in discounts:
        if discount.kind == "percentage":
            raw = percent_of(_percentage_base(discount, subtotal, lines), discount.value)
        else:
            raw = quantize(discount.value)
            if discount.scope == "line-level" and discount.line_id in lines:
                raw = min(raw, max(lines[discount.line_id].line_total, ZERO))
        amount = max(min(raw, remaining), ZERO)
        remaining -= amount
        applied.append(AppliedDiscount(discount=discount, amount=amount))
    return DiscountResult(subtotal=subtotal, applied=tuple(applied))
