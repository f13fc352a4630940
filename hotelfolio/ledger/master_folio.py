"""Master folios: group billing, charge routing and balance roll-up."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Iterable

from .audit import AuditTrail
from .errors import FieldIssue, NotFoundError, ValidationError
from .folio import Folio, FolioCharge, FolioPayment, derive_balance
from .money import HUNDRED, ZERO, parse_timestamp, percent_of, quantize, to_decimal, utcnow

logger = logging.getLogger(__name__)

MASTER_TARGET = "master"

MASTER_TYPES = ("group", "corporate", "event", "travel-agency")
BILLING_ARRANGEMENTS = ("master-only", "split-billing", "individual-with-routing")
MASTER_STATUSES = ("active", "closed", "suspended")

RULE_CATEGORIES = {
    "room-charges": "room",
    "fnb-charges": "fnb",
    "extra-services": "extra-service",
}
RULE_TYPES = ("all-charges", *RULE_CATEGORIES, "custom")


@dataclass(frozen=True, slots=True)
class RoutingRule:
    rule_type: str
    target_folio_id: str = MASTER_TARGET
    source_folio_id: str | None = None
    percentage: Decimal | None = None
    charge_types: tuple[str, ...] = ()
    is_active: bool = True
    description: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.rule_type not in RULE_TYPES:
            raise ValidationError([FieldIssue("rule_type", f"Unknown routing rule type {self.rule_type!r}")])
        object.__setattr__(self, "charge_types", tuple(self.charge_types))
        if self.percentage is not None:
            percentage = to_decimal(self.percentage, field="percentage")
            if not ZERO < percentage <= HUNDRED:
                raise ValidationError([FieldIssue("percentage", "Percentage must be between 0 and 100")])
            object.__setattr__(self, "percentage", percentage)

    def matches(self, charge: FolioCharge, source_folio_id: str) -> bool:
        if not self.is_active:
            return False
        if self.source_folio_id is not None and self.source_folio_id != source_folio_id:
            return False
        if self.rule_type == "all-charges":
            return True
        if self.rule_type == "custom":
            if not self.charge_types:
                return True
            return charge.category in self.charge_types or charge.department in self.charge_types
        return RULE_CATEGORIES[self.rule_type] == charge.category

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_type": self.rule_type,
            "target_folio_id": self.target_folio_id,
            "source_folio_id": self.source_folio_id,
            "percentage": None if self.percentage is None else str(self.percentage),
            "charge_types": list(self.charge_types),
            "is_active": self.is_active,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RoutingRule":
        percentage = data.get("percentage")
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            rule_type=data["rule_type"],
            target_folio_id=data.get("target_folio_id") or MASTER_TARGET,
            source_folio_id=data.get("source_folio_id"),
            percentage=None if percentage in (None, "") else to_decimal(percentage),
            charge_types=tuple(data.get("charge_types") or ()),
            is_active=bool(data.get("is_active", True)),
            description=data.get("description", ""),
        )


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    """Where a charge ends up. ``target`` is None when it stays on its source."""

    source_folio_id: str
    target: str | None
    routed_amount: Decimal
    retained_amount: Decimal
    rule_id: str | None = None

    @property
    def is_routed(self) -> bool:
        return self.target is not None and self.routed_amount != ZERO

    @property
    def is_split(self) -> bool:
        return self.is_routed and self.retained_amount != ZERO


class MasterFolio:
    """A billing entity that owns a set of child folios."""

    def __init__(
        self,
        *,
        name: str,
        folio_type: str = "group",
        billing_arrangement: str = "individual-with-routing",
        primary_contact: str | None = None,
        master_folio_id: str | None = None,
        child_folio_ids: Iterable[str] = (),
        routing_rules: Iterable[RoutingRule] = (),
        charges: Iterable[FolioCharge] = (),
        payments: Iterable[FolioPayment] = (),
        status: str = "active",
        closed_at: dt.datetime | None = None,
        closed_by: str | None = None,
        credit_limit: object | None = None,
        audit_trail: AuditTrail | None = None,
        created_at: dt.datetime | None = None,
    ) -> None:
        issues = []
        if not name.strip():
            issues.append(FieldIssue("name", "Master folio name is required"))
        if folio_type not in MASTER_TYPES:
            issues.append(FieldIssue("folio_type", f"Unknown master folio type {folio_type!r}"))
        if billing_arrangement not in BILLING_ARRANGEMENTS:
            issues.append(FieldIssue("billing_arrangement", f"Unknown billing arrangement {billing_arrangement!r}"))
        if status not in MASTER_STATUSES:
            issues.append(FieldIssue("status", f"Unknown status {status!r}"))
        if issues:
            raise ValidationError(issues)
        self.id = master_folio_id or uuid.uuid4().hex
        self.name = name
        self.folio_type = folio_type
        self.billing_arrangement = billing_arrangement
        self.primary_contact = primary_contact
        self.status = status
        self.closed_at = closed_at
        self.closed_by = closed_by
        self.credit_limit = None if credit_limit in (None, "") else quantize(credit_limit)
        self._child_folio_ids: list[str] = list(dict.fromkeys(child_folio_ids))
        self._routing_rules: list[RoutingRule] = list(routing_rules)
        self._charges: list[FolioCharge] = list(charges)
        self._payments: list[FolioPayment] = list(payments)
        # Sum of linked child balances as of the last roll-up; unknown until then.
        self._children_balance: Decimal | None = None if self._child_folio_ids else ZERO
        self.audit_trail = audit_trail or AuditTrail()
        self.created_at = created_at or utcnow()

    @property
    def child_folio_ids(self) -> tuple[str, ...]:
        return tuple(self._child_folio_ids)

    @property
    def routing_rules(self) -> tuple[RoutingRule, ...]:
        return tuple(self._routing_rules)

    @property
    def charges(self) -> tuple[FolioCharge, ...]:
        return tuple(self._charges)

    @property
    def payments(self) -> tuple[FolioPayment, ...]:
        return tuple(self._payments)

    @property
    def own_balance(self) -> Decimal:
        return derive_balance(self._charges, self._payments)

    @property
    def total_balance(self) -> Decimal:
        """Own charges less own payments plus the linked folio balances.

        Own entries are always current. Child balances are taken from the last
        :func:`recompute_master_balance` call, which must have run once a folio
        is linked.
        """

        if self._children_balance is None:
            raise ValidationError(
                [FieldIssue("total_balance", "Balance has not been rolled up from the linked folios yet")]
            )
        return quantize(self.own_balance + self._children_balance)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def credit_utilization(self) -> Decimal | None:
        if not self.credit_limit:
            return None
        return quantize(self.total_balance / self.credit_limit * HUNDRED)

    @property
    def is_over_credit_limit(self) -> bool:
        return self.credit_limit is not None and self.total_balance > self.credit_limit

    def _require_active(self, operation: str) -> None:
        if not self.is_active:
            raise ValidationError(
                [FieldIssue("status", f"Cannot {operation} a master folio that is {self.status}")]
            )

    def add_routing_rule(self, rule: RoutingRule, *, actor: str) -> RoutingRule:
        self._routing_rules.append(rule)
        self.audit_trail.record(
            "routing-rule-added", f"{rule.rule_type} -> {rule.target_folio_id}", actor
        )
        return rule

    def remove_routing_rule(self, rule_id: str, *, actor: str) -> RoutingRule:
        for rule in self._routing_rules:
            if rule.id == rule_id:
                self._routing_rules.remove(rule)
                self.audit_trail.record("routing-rule-removed", f"{rule.rule_type} -> {rule.target_folio_id}", actor)
                return rule
        raise NotFoundError([FieldIssue("rule_id", "Routing rule not found")])

    def add_charge(self, charge: FolioCharge, *, actor: str = "system") -> FolioCharge:
        self._require_active("post charges to")
        if charge.quantity <= 0:
            raise ValidationError([FieldIssue("quantity", "Quantity must be greater than 0")])
        self._charges.append(charge)
        self.audit_trail.record("charge-posted", f"{charge.description} {charge.total}", actor)
        return charge

    def add_payment(self, payment: FolioPayment, *, actor: str = "system") -> FolioPayment:
        if self.status == "closed":
            raise ValidationError([FieldIssue("status", "Cannot take payments on a closed master folio")])
        if payment.amount <= 0:
            raise ValidationError([FieldIssue("amount", "Payment amount must be greater than 0")])
        self._payments.append(payment)
        self.audit_trail.record("payment-received", f"{payment.method} {payment.amount}", actor)
        return payment

    def close(self, *, actor: str, override: bool = False) -> None:
        """Close the account; a non-zero balance needs ``override``."""

        if self.status == "closed":
            raise ValidationError([FieldIssue("status", "Master folio is already closed")])
        if self.total_balance != ZERO and not override:
            raise ValidationError(
                [FieldIssue("total_balance", f"Outstanding balance {self.total_balance} must be settled first")]
            )
        self.status = "closed"
        self.closed_at = utcnow()
        self.closed_by = actor
        self.audit_trail.record("closed", f"Closed with balance {self.total_balance}", actor)
        logger.info("Master folio %s closed by %s (override=%s)", self.id, actor, override)

    def reopen(self, *, actor: str) -> None:
        if self.status == "active":
            raise ValidationError([FieldIssue("status", "Master folio is already active")])
        self.status = "active"
        self.closed_at = None
        self.closed_by = None
        self.audit_trail.record("reopened", "Master folio reopened", actor)

    def suspend(self, *, actor: str, reason: str = "") -> None:
        self._require_active("suspend")
        self.status = "suspended"
        self.audit_trail.record("suspended", reason or "Master folio suspended", actor)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "folio_type": self.folio_type,
            "billing_arrangement": self.billing_arrangement,
            "primary_contact": self.primary_contact,
            "child_folio_ids": list(self._child_folio_ids),
            "routing_rules": [rule.to_dict() for rule in self._routing_rules],
            "charges": [charge.to_dict() for charge in self._charges],
            "payments": [payment.to_dict() for payment in self._payments],
            "status": self.status,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "closed_by": self.closed_by,
            "credit_limit": None if self.credit_limit is None else str(self.credit_limit),
            "credit_utilization": None if self.credit_utilization is None else str(self.credit_utilization),
            "total_balance": str(self.total_balance),
            "audit_trail": self.audit_trail.to_list(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MasterFolio":
        # total_balance is not restored; callers recompute it against the children.
        return cls(
            master_folio_id=data["id"],
            name=data["name"],
            folio_type=data.get("folio_type", "group"),
            billing_arrangement=data.get("billing_arrangement", "individual-with-routing"),
            primary_contact=data.get("primary_contact"),
            child_folio_ids=data.get("child_folio_ids") or (),
            routing_rules=[RoutingRule.from_dict(item) for item in data.get("routing_rules") or ()],
            charges=[FolioCharge.from_dict(item) for item in data.get("charges") or ()],
            payments=[FolioPayment.from_dict(item) for item in data.get("payments") or ()],
            status=data.get("status", "active"),
            closed_at=parse_timestamp(data.get("closed_at")),
            closed_by=data.get("closed_by"),
            credit_limit=data.get("credit_limit"),
            audit_trail=AuditTrail.from_list(data.get("audit_trail")),
            created_at=parse_timestamp(data.get("created_at")),
        )


def route_charge(charge: FolioCharge, master: MasterFolio, source_folio_id: str) -> RoutingDecision:
    """Decide which folio absorbs ``charge`` posted on ``source_folio_id``.

    The first active rule that matches wins. Under ``master-only`` billing an
    implicit all-charges rule sends everything to the master. Rules pointing at
    a folio that is not linked to ``master`` are skipped.
    """

    total = charge.total
    stays = RoutingDecision(source_folio_id, None, ZERO, total)
    if not master.is_active or source_folio_id not in master.child_folio_ids:
        return stays
    if master.billing_arrangement == "master-only":
        return RoutingDecision(source_folio_id, MASTER_TARGET, total, ZERO)
    for rule in master.routing_rules:
        if not rule.matches(charge, source_folio_id):
            continue
        target = rule.target_folio_id
        if target != MASTER_TARGET and target not in master.child_folio_ids:
            logger.warning(
                "Skipping routing rule %s on master folio %s: target folio %s is not linked",
                rule.id,
                master.id,
                target,
            )
            continue
        if target == source_folio_id:
            return RoutingDecision(source_folio_id, None, ZERO, total, rule.id)
        routed = total
        if rule.rule_type == "custom" and rule.percentage is not None:
            routed = percent_of(total, rule.percentage)
        return RoutingDecision(source_folio_id, target, routed, quantize(total - routed), rule.id)
    return stays


def split_charge(charge: FolioCharge, decision: RoutingDecision) -> tuple[FolioCharge | None, FolioCharge | None]:
    """Return ``(routed, retained)`` charges for a routing decision.

    A full route keeps the charge as-is apart from ``routed_from``. A split
    posts each portion as a single-quantity charge.
    """

    if not decision.is_routed:
        return None, charge
    if not decision.is_split:
        return replace(charge, routed_from=decision.source_folio_id), None
    routed = replace(
        charge,
        id=uuid.uuid4().hex,
        amount=decision.routed_amount,
        quantity=Decimal("1"),
        description=f"{charge.description} (routed share)",
        routed_from=decision.source_folio_id,
    )
    retained = replace(
        charge,
        amount=decision.retained_amount,
        quantity=Decimal("1"),
        description=f"{charge.description} (retained share)",
    )
    return routed, retained


def _linked_children(master: MasterFolio, child_folios: Iterable[Folio]) -> list[Folio]:
    by_id = {folio.id: folio for folio in child_folios}
    linked = []
    for folio_id in master.child_folio_ids:
        folio = by_id.get(folio_id)
        if folio is None:
            raise NotFoundError([FieldIssue("child_folio_ids", f"Linked folio {folio_id} was not supplied")])
        linked.append(folio)
    return linked


def recompute_master_balance(master: MasterFolio, child_folios: Iterable[Folio]) -> Decimal:
    """Recompute ``master.total_balance`` from scratch and return it.

    Only folios currently linked to ``master`` count; extra folios passed in are
    ignored.
    """

    children = _linked_children(master, child_folios)
    master._children_balance = quantize(sum((folio.balance for folio in children), ZERO))
    total = master.total_balance
    if master.is_over_credit_limit:
        logger.warning(
            "Master folio %s balance %s exceeds credit limit %s", master.id, total, master.credit_limit
        )
    return total


def link_folio(
    master: MasterFolio,
    folio: Folio,
    child_folios: Iterable[Folio],
    *,
    actor: str,
) -> Decimal:
    """Attach ``folio`` to ``master`` and return the new roll-up."""

    master._require_active("link folios to")
    if folio.master_folio_id and folio.master_folio_id != master.id:
        raise ValidationError(
            [FieldIssue("master_folio_id", f"Folio is already linked to master folio {folio.master_folio_id}")]
        )
    if folio.id in master.child_folio_ids:
        raise ValidationError([FieldIssue("folio_id", "Folio is already linked")])
    children = [child for child in child_folios if child.id != folio.id]
    _linked_children(master, children)
    master._child_folio_ids.append(folio.id)
    folio.master_folio_id = master.id
    master.audit_trail.record("folio-linked", f"Linked folio {folio.id}", actor)
    folio.audit_trail.record("linked", f"Linked to master folio {master.name}", actor)
    return recompute_master_balance(master, [*children, folio])


def unlink_folio(
    master: MasterFolio,
    folio: Folio,
    child_folios: Iterable[Folio],
    *,
    actor: str,
) -> Decimal:
    """Detach ``folio``; its balance leaves the roll-up immediately."""

    if folio.id not in master.child_folio_ids:
        raise ValidationError([FieldIssue("folio_id", "Folio is not linked to this master folio")])
    remaining = [child for child in child_folios if child.id != folio.id]
    master._child_folio_ids.remove(folio.id)
    folio.master_folio_id = None
    master.audit_trail.record("folio-unlinked", f"Unlinked folio {folio.id}", actor)
    folio.audit_trail.record("unlinked", f"Unlinked from master folio {master.name}", actor)
    return recompute_master_balance(master, remaining)


def dissolve_master_folio(master: MasterFolio, child_folios: Iterable[Folio], *, actor: str) -> list[Folio]:
    """Unlink every child ahead of deleting ``master``; returns the released folios."""

    children = _linked_children(master, child_folios)
    for folio in children:
        master._child_folio_ids.remove(folio.id)
        folio.master_folio_id = None
        folio.audit_trail.record("unlinked", f"Master folio {master.name} dissolved", actor)
    master.audit_trail.record("dissolved", f"Released {len(children)} folio(s)", actor)
    recompute_master_balance(master, ())
    return children
