"""Core orchestration logic for the hotel billing ledger."""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
import uuid
from contextlib import ExitStack, contextmanager
from typing import Any, Iterator, Sequence

from .database import (
    FolioRepository,
    GuestDirectory,
    InvoiceRepository,
    MasterFolioRepository,
    get_connection,
    get_metadata,
    initialize_database,
    next_sequence,
    set_metadata,
)
from .discounts import Discount
from .errors import FieldIssue, NotFoundError, ValidationError
from .folio import Folio, FolioCharge, FolioPayment
from .invoice import (
    Invoice,
    InvoicePayment,
    PaymentReversal,
    adjustment_note,
    create_invoice,
    format_invoice_number,
)
from .journal import journal_entries_for_invoice
from .line_items import LineItem, build_extra_service_line, build_line_item, line_item_from_charge
from .master_folio import (
    MASTER_TARGET,
    MasterFolio,
    RoutingDecision,
    RoutingRule,
    dissolve_master_folio,
    link_folio,
    recompute_master_balance,
    route_charge,
    split_charge,
    unlink_folio,
)
from .money import ZERO
from .rules import RuleSet

logger = logging.getLogger(__name__)

RULES_METADATA_KEY = "rule_set"

# Charge categories each single-department invoice type draws from.
INVOICE_CATEGORIES = {
    "room-only": ("room",),
    "fnb-only": ("fnb",),
    "extras-only": ("extra-service",),
}


class LedgerSystem:
    """High level façade over folios, master folios and invoices.

    Operations on one folio are serialized with a per-folio lock. Anything that
    touches a master folio takes the master's lock first, then the folio locks,
    so concurrent postings from two children cannot lose a roll-up update.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self.guests = GuestDirectory(self.conn)
        self.folios = FolioRepository(self.conn)
        self.invoices = InvoiceRepository(self.conn)
        self.master_folios = MasterFolioRepository(self.conn)
        self._store_lock = threading.RLock()
        self._registry_lock = threading.Lock()
        self._locks: dict[tuple[str, str], threading.RLock] = {}
        self._rules: RuleSet | None = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock(self, kind: str, entity_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._locks.setdefault((kind, entity_id), threading.RLock())

    @contextmanager
    def _locked(self, *, master_folio_id: str | None = None, folio_ids: Sequence[str] = ()) -> Iterator[None]:
        with ExitStack() as stack:
            if master_folio_id:
                stack.enter_context(self._lock("master", master_folio_id))
            for folio_id in sorted(set(folio_ids)):
                stack.enter_context(self._lock("folio", folio_id))
            yield

    @contextmanager
    def _folio_scope(self, folio_id: str) -> Iterator[Folio]:
        """Lock a folio together with the master it is linked to, if any."""

        while True:
            master_folio_id = self._load_folio(folio_id).master_folio_id
            with self._locked(master_folio_id=master_folio_id, folio_ids=[folio_id]):
                folio = self._load_folio(folio_id)
                if folio.master_folio_id == master_folio_id:
                    yield folio
                    return

    def _load_folio(self, folio_id: str) -> Folio:
        with self._store_lock:
            return self.folios.get_folio(folio_id)

    def _save_folio(self, folio: Folio) -> None:
        with self._store_lock:
            self.folios.put_folio(folio)

    def _load_master(self, master_folio_id: str) -> MasterFolio:
        with self._store_lock:
            return self.master_folios.get_master_folio(master_folio_id)

    def _save_master(self, master: MasterFolio) -> None:
        with self._store_lock:
            self.master_folios.put_master_folio(master)

    def _load_invoice(self, invoice_id: str) -> Invoice:
        with self._store_lock:
            return self.invoices.get_invoice(invoice_id)

    def _save_invoice(self, invoice: Invoice) -> None:
        with self._store_lock:
            self.invoices.put_invoice(invoice)

    def _children(self, master: MasterFolio, *fresh: Folio) -> list[Folio]:
        replaced = {folio.id: folio for folio in fresh}
        return [replaced.get(folio_id) or self._load_folio(folio_id) for folio_id in master.child_folio_ids]

    def _refresh_master(self, master: MasterFolio, *fresh: Folio) -> MasterFolio:
        recompute_master_balance(master, self._children(master, *fresh))
        self._save_master(master)
        return master

    def _generate_invoice_number(self, invoice_type: str, invoice_date: dt.date) -> str:
        with self._store_lock:
            sequence = next_sequence(self.conn, f"invoice_{invoice_type}_{invoice_date.year}")
        return format_invoice_number(invoice_type, invoice_date.year, sequence)

    def _guest_name(self, guest_id: str | None) -> str | None:
        if not guest_id:
            return None
        try:
            return self.get_guest(guest_id)["name"]
        except NotFoundError as exc:
            raise ValidationError([FieldIssue("guest_id", "Guest could not be found")]) from exc

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def configure_rules(self, rules: RuleSet) -> RuleSet:
        with self._store_lock:
            set_metadata(self.conn, RULES_METADATA_KEY, rules.to_dict())
        self._rules = rules
        logger.info(
            "Rule set updated: %d tax definition(s), service charge %s",
            len(rules.taxes),
            "configured" if rules.service_charge else "not configured",
        )
        return rules

    @property
    def rules(self) -> RuleSet:
        if self._rules is None:
            with self._store_lock:
                stored = get_metadata(self.conn, RULES_METADATA_KEY)
            self._rules = RuleSet.from_dict(json.loads(stored) if stored else None)
        return self._rules

    # ------------------------------------------------------------------
    # Guests
    # ------------------------------------------------------------------
    def register_guest(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> dict:
        if not first_name.strip() or not last_name.strip():
            raise ValidationError("First and last name are required")
        with self._store_lock:
            return self.guests.add_guest(
                guest_id=uuid.uuid4().hex,
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=phone,
            )

    def get_guest(self, guest_id: str) -> dict:
        with self._store_lock:
            return self.guests.get_guest(guest_id)

    # ------------------------------------------------------------------
    # Folios
    # ------------------------------------------------------------------
    def open_folio(self, *, guest_id: str, reservation_id: str | None = None, actor: str = "system") -> Folio:
        self._guest_name(guest_id)
        folio = Folio(guest_id=guest_id, reservation_id=reservation_id)
        folio.audit_trail.record("opened", "Folio opened", actor)
        self._save_folio(folio)
        return folio

    def get_folio(self, folio_id: str) -> Folio:
        return self._load_folio(folio_id)

    def list_folios(self, *, reservation_id: str) -> list[Folio]:
        with self._store_lock:
            return self.folios.list_folios_by_reservation(reservation_id)

    def post_charge(
        self,
        folio_id: str,
        *,
        description: str,
        amount: object,
        department: str,
        quantity: object = 1,
        actor: str = "system",
        taxable: bool | None = None,
        service_charge_applicable: bool | None = None,
    ) -> RoutingDecision:
        """Post a charge, routing it through the folio's master folio when linked."""

        charge = FolioCharge(
            description=description,
            amount=amount,
            quantity=quantity,
            department=department,
            taxable=taxable,
            service_charge_applicable=service_charge_applicable,
            posted_by=actor,
        )
        with self._folio_scope(folio_id) as folio:
            if not folio.master_folio_id:
                folio.add_charge(charge, actor=actor)
                self._save_folio(folio)
                logger.info("Posted %s to folio %s", charge.total, folio.id)
                return RoutingDecision(folio.id, None, ZERO, charge.total)
            master = self._load_master(folio.master_folio_id)
            decision = route_charge(charge, master, folio.id)
            routed, retained = split_charge(charge, decision)
            touched = [folio]
            if retained is not None:
                folio.add_charge(retained, actor=actor)
            if routed is not None and decision.target == MASTER_TARGET:
                master.add_charge(routed, actor=actor)
            elif routed is not None:
                with self._locked(folio_ids=[decision.target]):
                    target = self._load_folio(decision.target)
                    target.add_charge(routed, actor=actor)
                    self._save_folio(target)
                    touched.append(target)
            self._save_folio(folio)
            self._refresh_master(master, *touched)
            logger.info(
                "Posted %s on folio %s: %s routed to %s, %s retained",
                charge.total,
                folio.id,
                decision.routed_amount,
                decision.target or "-",
                decision.retained_amount,
            )
            return decision

    def record_folio_payment(
        self,
        folio_id: str,
        *,
        amount: object,
        method: str,
        actor: str = "system",
        reference: str | None = None,
    ) -> Folio:
        payment = FolioPayment(amount=amount, method=method, reference=reference, received_by=actor)
        with self._folio_scope(folio_id) as folio:
            folio.add_payment(payment, actor=actor)
            self._save_folio(folio)
            if folio.master_folio_id:
                self._refresh_master(self._load_master(folio.master_folio_id), folio)
            return folio

    # ------------------------------------------------------------------
    # Master folios
    # ------------------------------------------------------------------
    def create_master_folio(
        self,
        *,
        name: str,
        folio_type: str = "group",
        billing_arrangement: str = "individual-with-routing",
        primary_contact: str | None = None,
        credit_limit: object | None = None,
        actor: str = "system",
    ) -> MasterFolio:
        master = MasterFolio(
            name=name,
            folio_type=folio_type,
            billing_arrangement=billing_arrangement,
            primary_contact=primary_contact,
            credit_limit=credit_limit,
        )
        master.audit_trail.record("created", f"{folio_type} master folio created", actor)
        self._save_master(master)
        return master

    def get_master_folio(self, master_folio_id: str) -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            recompute_master_balance(master, self._children(master))
            return master

    def list_master_folios(self, *, status: str | None = None) -> list[MasterFolio]:
        with self._store_lock:
            masters = self.master_folios.list_master_folios(status=status)
        for master in masters:
            recompute_master_balance(master, self._children(master))
        return masters

    def link_folio(self, master_folio_id: str, folio_id: str, *, actor: str = "system") -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id, folio_ids=[folio_id]):
            master = self._load_master(master_folio_id)
            folio = self._load_folio(folio_id)
            link_folio(master, folio, self._children(master), actor=actor)
            self._save_folio(folio)
            self._save_master(master)
            return master

    def unlink_folio(self, master_folio_id: str, folio_id: str, *, actor: str = "system") -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id, folio_ids=[folio_id]):
            master = self._load_master(master_folio_id)
            folio = self._load_folio(folio_id)
            unlink_folio(master, folio, self._children(master), actor=actor)
            self._save_folio(folio)
            self._save_master(master)
            return master

    def add_routing_rule(self, master_folio_id: str, rule: RoutingRule, *, actor: str = "system") -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            master.add_routing_rule(rule, actor=actor)
            return self._refresh_master(master)

    def remove_routing_rule(self, master_folio_id: str, rule_id: str, *, actor: str = "system") -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            master.remove_routing_rule(rule_id, actor=actor)
            return self._refresh_master(master)

    def record_master_payment(
        self,
        master_folio_id: str,
        *,
        amount: object,
        method: str,
        actor: str = "system",
        reference: str | None = None,
    ) -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            master.add_payment(
                FolioPayment(amount=amount, method=method, reference=reference, received_by=actor), actor=actor
            )
            return self._refresh_master(master)

    def close_master_folio(self, master_folio_id: str, *, actor: str, override: bool = False) -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            recompute_master_balance(master, self._children(master))
            master.close(actor=actor, override=override)
            self._save_master(master)
            return master

    def reopen_master_folio(self, master_folio_id: str, *, actor: str) -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            master.reopen(actor=actor)
            return self._refresh_master(master)

    def suspend_master_folio(self, master_folio_id: str, *, actor: str, reason: str = "") -> MasterFolio:
        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            master.suspend(actor=actor, reason=reason)
            return self._refresh_master(master)

    def delete_master_folio(self, master_folio_id: str, *, actor: str) -> list[Folio]:
        """Release every linked folio and remove the master folio."""

        with self._locked(master_folio_id=master_folio_id):
            master = self._load_master(master_folio_id)
            with self._locked(folio_ids=master.child_folio_ids):
                released = dissolve_master_folio(master, self._children(master), actor=actor)
                for folio in released:
                    self._save_folio(folio)
            with self._store_lock:
                self.master_folios.delete_master_folio(master_folio_id)
            logger.info("Master folio %s dissolved by %s", master_folio_id, actor)
            return released

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def _issue_invoice(self, invoice: Invoice) -> Invoice:
        invoice.invoice_number = self._generate_invoice_number(invoice.invoice_type, invoice.invoice_date)
        self._save_invoice(invoice)
        logger.info("Created invoice %s for %s", invoice.invoice_number, invoice.grand_total)
        return invoice

    def create_invoice_from_folio(
        self,
        folio_id: str,
        *,
        invoice_type: str = "guest-folio",
        actor: str = "system",
        charge_ids: Sequence[str] | None = None,
        discounts: Sequence[Discount] = (),
        tax_exempt: bool = False,
        invoice_date: dt.date | None = None,
        due_date: dt.date | None = None,
        notes: str = "",
    ) -> Invoice:
        folio = self._load_folio(folio_id)
        categories = INVOICE_CATEGORIES.get(invoice_type)
        charges = [
            charge
            for charge in folio.charges
            if (charge_ids is None or charge.id in charge_ids)
            and (categories is None or charge.category in categories)
        ]
        rules = self.rules
        line_items = [line_item_from_charge(charge, rules, tax_exempt=tax_exempt) for charge in charges]
        invoice = create_invoice(
            invoice_type=invoice_type,
            line_items=line_items,
            actor=actor,
            discounts=discounts,
            guest_id=folio.guest_id,
            guest_name=self._guest_name(folio.guest_id),
            folio_id=folio.id,
            reservation_id=folio.reservation_id,
            master_folio_id=folio.master_folio_id,
            invoice_date=invoice_date,
            due_date=due_date,
            notes=notes,
        )
        return self._issue_invoice(invoice)

    def create_master_invoice(self, master_folio_id: str, *, actor: str = "system") -> Invoice:
        master = self.get_master_folio(master_folio_id)
        rules = self.rules
        invoice = create_invoice(
            invoice_type="group-master",
            line_items=[line_item_from_charge(charge, rules) for charge in master.charges],
            actor=actor,
            guest_name=master.primary_contact or master.name,
            master_folio_id=master.id,
        )
        return self._issue_invoice(invoice)

    def create_invoice(
        self,
        *,
        invoice_type: str,
        lines: Sequence[dict[str, Any]],
        guest_id: str | None = None,
        actor: str = "system",
        discounts: Sequence[Discount] = (),
        tax_exempt: bool = False,
        invoice_date: dt.date | None = None,
        due_date: dt.date | None = None,
        notes: str = "",
    ) -> Invoice:
        """Create an invoice from ad-hoc line specs, e.g. a proforma quotation."""

        line_items = [self._build_line(entry, tax_exempt=tax_exempt) for entry in lines]
        invoice = create_invoice(
            invoice_type=invoice_type,
            line_items=line_items,
            actor=actor,
            discounts=discounts,
            guest_id=guest_id,
            guest_name=self._guest_name(guest_id),
            invoice_date=invoice_date,
            due_date=due_date,
            notes=notes,
        )
        return self._issue_invoice(invoice)

    def _build_line(self, entry: dict[str, Any], *, tax_exempt: bool = False) -> LineItem:
        if "service_name" in entry:
            return build_extra_service_line(
                service_name=entry["service_name"],
                category_name=entry.get("category_name", ""),
                quantity=entry.get("quantity", 1),
                unit_price=entry["unit_price"],
                rules=self.rules,
                tax_exempt=tax_exempt,
            )
        return build_line_item(
            description=entry.get("description", ""),
            department=entry.get("department", "front-office"),
            quantity=entry.get("quantity", 1),
            unit_price=entry.get("unit_price", 0),
            rules=self.rules,
            taxable=entry.get("taxable", True),
            service_charge_applicable=entry.get("service_charge_applicable", False),
            tax_exempt=tax_exempt,
            item_type=entry.get("item_type"),
        )

    def get_invoice(self, invoice_id: str) -> Invoice:
        return self._load_invoice(invoice_id)

    def list_invoices(self, **filters: str | None) -> list[Invoice]:
        with self._store_lock:
            return self.invoices.list_invoices(**filters)

    def add_invoice_line(self, invoice_id: str, entry: dict[str, Any], *, actor: str = "system") -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.add_line_item(self._build_line(entry), actor=actor)
            self._save_invoice(invoice)
            return invoice

    def update_invoice_line(
        self,
        invoice_id: str,
        line_id: str,
        *,
        actor: str = "system",
        quantity: object | None = None,
        unit_price: object | None = None,
    ) -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.update_line_item(line_id, self.rules, actor=actor, quantity=quantity, unit_price=unit_price)
            self._save_invoice(invoice)
            return invoice

    def remove_invoice_line(self, invoice_id: str, line_id: str, *, actor: str = "system") -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.remove_line_item(line_id, actor=actor)
            self._save_invoice(invoice)
            return invoice

    def apply_invoice_discount(self, invoice_id: str, discount: Discount, *, actor: str = "system") -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.add_discount(discount, actor=actor)
            self._save_invoice(invoice)
            return invoice

    def transition_invoice(self, invoice_id: str, status: str, *, actor: str, reason: str = "") -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.transition(status, actor=actor, reason=reason)
            self._save_invoice(invoice)
            return invoice

    def record_invoice_payment(
        self,
        invoice_id: str,
        *,
        amount: object,
        method: str,
        actor: str = "system",
        reference: str | None = None,
    ) -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.add_payment(
                InvoicePayment(amount=amount, method=method, reference=reference, received_by=actor), actor=actor
            )
            self._save_invoice(invoice)
            return invoice

    def reverse_invoice_payment(
        self,
        invoice_id: str,
        payment_id: str,
        *,
        amount: object,
        reason: str,
        actor: str,
    ) -> Invoice:
        with self._lock("invoice", invoice_id):
            invoice = self._load_invoice(invoice_id)
            invoice.apply_payment_reversal(
                PaymentReversal(payment_id=payment_id, amount=amount, reason=reason), actor=actor
            )
            self._save_invoice(invoice)
            return invoice

    def create_adjustment_note(
        self,
        invoice_id: str,
        *,
        invoice_type: str,
        lines: Sequence[dict[str, Any]],
        reason: str,
        actor: str,
    ) -> Invoice:
        """Issue a credit or debit note against a posted invoice."""

        original = self._load_invoice(invoice_id)
        note = adjustment_note(
            original,
            invoice_type=invoice_type,
            line_items=[self._build_line(entry) for entry in lines],
            actor=actor,
            reason=reason,
        )
        return self._issue_invoice(note)

    def journal_entries(self, invoice_id: str) -> list[dict]:
        return journal_entries_for_invoice(self._load_invoice(invoice_id))

    def close(self) -> None:
        with self._store_lock:
            self.conn.close()
