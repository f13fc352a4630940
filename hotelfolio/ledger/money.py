"""Decimal helpers for money arithmetic."""

from __future__ import annotations

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from .errors import FieldIssue, ValidationError

MONEY_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_decimal(value: object, *, field: str = "amount") -> Decimal:
    """Convert ints, strings and Decimals to Decimal without float drift.

    Missing values and NaN or infinite amounts raise :class:`ValidationError`
    against ``field``.
    """

    if value is None or value == "":
        raise ValidationError([FieldIssue(field, "A value is required")])
    if isinstance(value, Decimal):
        return _require_finite(value, field)
    if isinstance(value, float):
        # Route through str so 0.1 becomes Decimal("0.1"), not its binary expansion.
        value = repr(value)
    try:
        number = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError([FieldIssue(field, f"Not a valid number: {value!r}")]) from exc
    return _require_finite(number, field)


def _require_finite(value: Decimal, field: str) -> Decimal:
    if not value.is_finite():
        raise ValidationError([FieldIssue(field, f"Not a finite number: {value}")])
    return value


def quantize(value: object) -> Decimal:
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, rate: object) -> Decimal:
    """Return ``amount × rate / 100`` rounded to cents."""

    return quantize(to_decimal(amount) * to_decimal(rate) / HUNDRED)


def money_sum(values: Iterable[object]) -> Decimal:
    total = Decimal("0")
    for value in values:
        total += to_decimal(value)
    return quantize(total)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_timestamp(value: str | dt.datetime | None) -> dt.datetime | None:
    if value is None or isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(value)


def parse_date(value: str | dt.date | None) -> dt.date | None:
    if value is None or isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(value)
