"""Tax and service-charge configuration consumed by the line item builder."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .money import to_decimal


@dataclass(frozen=True, slots=True)
class TaxDefinition:
    name: str
    rate: Decimal
    type: str = "vat"
    is_inclusive: bool = False
    is_active: bool = True
    applies_to: frozenset[str] = frozenset()
    calculation_order: int = 1
    is_compound: bool = False
    taxable_on_service_charge: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "rate", to_decimal(self.rate, field="rate"))
        object.__setattr__(self, "applies_to", frozenset(self.applies_to))

    def covers(self, department: str) -> bool:
        return self.is_active and department in self.applies_to

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "rate": str(self.rate),
            "is_inclusive": self.is_inclusive,
            "is_active": self.is_active,
            "applies_to": sorted(self.applies_to),
            "calculation_order": self.calculation_order,
            "is_compound": self.is_compound,
            "taxable_on_service_charge": self.taxable_on_service_charge,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaxDefinition":
        return cls(
            name=data["name"],
            type=data.get("type", "vat"),
            rate=to_decimal(data["rate"]),
            is_inclusive=bool(data.get("is_inclusive", False)),
            is_active=bool(data.get("is_active", True)),
            applies_to=frozenset(data.get("applies_to") or ()),
            calculation_order=int(data.get("calculation_order", 1)),
            is_compound=bool(data.get("is_compound", False)),
            taxable_on_service_charge=bool(data.get("taxable_on_service_charge", False)),
        )


@dataclass(frozen=True, slots=True)
class ServiceChargeRule:
    rate: Decimal
    is_active: bool = True
    applies_to: frozenset[str] = frozenset()
    is_taxable: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "rate", to_decimal(self.rate, field="rate"))
        object.__setattr__(self, "applies_to", frozenset(self.applies_to))

    def covers(self, department: str) -> bool:
        return self.is_active and department in self.applies_to

    def to_dict(self) -> dict:
        return {
            "rate": str(self.rate),
            "is_active": self.is_active,
            "applies_to": sorted(self.applies_to),
            "is_taxable": self.is_taxable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceChargeRule":
        return cls(
            rate=to_decimal(data["rate"]),
            is_active=bool(data.get("is_active", True)),
            applies_to=frozenset(data.get("applies_to") or ()),
            is_taxable=bool(data.get("is_taxable", True)),
        )


@dataclass(frozen=True, slots=True)
class RuleSet:
    """Ordered tax definitions plus an optional service-charge rule."""

    taxes: tuple[TaxDefinition, ...] = ()
    service_charge: ServiceChargeRule | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "taxes", tuple(self.taxes))
        names = [tax.name for tax in self.taxes]
        if len(names) != len(set(names)):
            raise ValueError("Tax definition names must be unique")

    def taxes_for(self, department: str) -> list[TaxDefinition]:
        """Return active taxes covering ``department`` in calculation order."""

        selected = [tax for tax in self.taxes if tax.covers(department)]
        return sorted(selected, key=lambda tax: (tax.calculation_order, tax.name))

    def calculation_order(self, tax_name: str) -> int | None:
        for tax in self.taxes:
            if tax.name == tax_name:
                return tax.calculation_order
        return None

    def to_dict(self) -> dict:
        return {
            "taxes": [tax.to_dict() for tax in self.taxes],
            "service_charge": self.service_charge.to_dict() if self.service_charge else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RuleSet":
        if not data:
            return cls()
        service_charge = data.get("service_charge")
        return cls(
            taxes=tuple(TaxDefinition.from_dict(item) for item in data.get("taxes") or ()),
            service_charge=ServiceChargeRule.from_dict(service_charge) if service_charge else None,
        )


__all__ = [
    "RuleSet",
    "ServiceChargeRule",
    "TaxDefinition",
]
