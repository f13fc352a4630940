"""Flask application exposing the billing ledger as a JSON API."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from flask import Flask, jsonify, request

from hotelfolio.ledger.discounts import Discount
from hotelfolio.ledger.errors import InvoiceStateError, NotFoundError, ValidationError
from hotelfolio.ledger.master_folio import RoutingDecision, RoutingRule
from hotelfolio.ledger.rules import RuleSet
from hotelfolio.ledger.system import LedgerSystem

logger = logging.getLogger(__name__)


def _decision_to_dict(decision: RoutingDecision) -> dict:
    return {
        "source_folio_id": decision.source_folio_id,
        "target": decision.target,
        "routed_amount": str(decision.routed_amount),
        "retained_amount": str(decision.retained_amount),
        "rule_id": decision.rule_id,
        "is_split": decision.is_split,
    }


def _error_response(exc: ValidationError, status: int) -> Any:
    return jsonify({"error": str(exc), "issues": [issue.to_dict() for issue in exc.issues]}), status


def create_app(database_path: str | None = None, config: Mapping[str, Any] | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY="hotelfolio-secret",
        DATABASE_PATH=database_path or "hotelfolio.db",
        TAX_RULES_FILE=None,
    )
    app.config.from_prefixed_env("HOTELFOLIO")
    if config:
        app.config.update(config)

    system = LedgerSystem(app.config["DATABASE_PATH"])
    app.extensions["hotelfolio"] = system
    if app.config["TAX_RULES_FILE"]:
        rules_path = Path(app.config["TAX_RULES_FILE"])
        system.configure_rules(RuleSet.from_dict(json.loads(rules_path.read_text())))
        logger.info("Loaded tax rules from %s", rules_path)

    def payload() -> dict[str, Any]:
        return request.get_json(silent=True) or {}

    def actor() -> str:
        return request.headers.get("X-Actor") or payload().get("actor") or "system"

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc: NotFoundError) -> Any:
        return _error_response(exc, 404)

    @app.errorhandler(InvoiceStateError)
    def handle_invoice_state(exc: InvoiceStateError) -> Any:
        return _error_response(exc, 409)

    @app.errorhandler(ValidationError)
    def handle_validation(exc: ValidationError) -> Any:
        return _error_response(exc, 400)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    @app.get("/settings/tax")
    def get_tax_settings() -> Any:
        return jsonify(system.rules.to_dict())

    @app.put("/settings/tax")
    def put_tax_settings() -> Any:
        try:
            rules = RuleSet.from_dict(payload())
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"Invalid rule set: {exc}") from exc
        return jsonify(system.configure_rules(rules).to_dict())

    # ------------------------------------------------------------------
    # Guests & folios
    # ------------------------------------------------------------------
    @app.post("/guests")
    def create_guest() -> Any:
        data = payload()
        guest = system.register_guest(
            first_name=data.get("first_name", "").strip(),
            last_name=data.get("last_name", "").strip(),
            email=data.get("email"),
            phone=data.get("phone"),
        )
        return jsonify(guest), 201

    @app.get("/guests/<guest_id>")
    def get_guest(guest_id: str) -> Any:
        return jsonify(system.get_guest(guest_id))

    @app.post("/folios")
    def create_folio() -> Any:
        data = payload()
        folio = system.open_folio(
            guest_id=data.get("guest_id", ""), reservation_id=data.get("reservation_id"), actor=actor()
        )
        return jsonify(folio.to_dict()), 201

    @app.get("/folios/<folio_id>")
    def get_folio(folio_id: str) -> Any:
        return jsonify(system.get_folio(folio_id).to_dict())

    @app.get("/reservations/<reservation_id>/folios")
    def list_reservation_folios(reservation_id: str) -> Any:
        return jsonify([folio.to_dict() for folio in system.list_folios(reservation_id=reservation_id)])

    @app.post("/folios/<folio_id>/charges")
    def post_charge(folio_id: str) -> Any:
        data = payload()
        decision = system.post_charge(
            folio_id,
            description=data.get("description", ""),
            amount=data.get("amount"),
            quantity=data.get("quantity", 1),
            department=data.get("department", "front-office"),
            taxable=data.get("taxable"),
            service_charge_applicable=data.get("service_charge_applicable"),
            actor=actor(),
        )
        return (
            jsonify({"routing": _decision_to_dict(decision), "folio": system.get_folio(folio_id).to_dict()}),
            201,
        )

    @app.post("/folios/<folio_id>/payments")
    def post_folio_payment(folio_id: str) -> Any:
        data = payload()
        folio = system.record_folio_payment(
            folio_id,
            amount=data.get("amount"),
            method=data.get("method", "cash"),
            reference=data.get("reference"),
            actor=actor(),
        )
        return jsonify(folio.to_dict()), 201

    @app.post("/folios/<folio_id>/invoices")
    def create_folio_invoice(folio_id: str) -> Any:
        data = payload()
        invoice = system.create_invoice_from_folio(
            folio_id,
            invoice_type=data.get("invoice_type", "guest-folio"),
            charge_ids=data.get("charge_ids"),
            discounts=[Discount.from_dict(item) for item in data.get("discounts") or ()],
            tax_exempt=bool(data.get("tax_exempt", False)),
            notes=data.get("notes", ""),
            actor=actor(),
        )
        return jsonify(invoice.to_dict()), 201

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    @app.get("/invoices")
    def list_invoices() -> Any:
        invoices = system.list_invoices(
            status=request.args.get("status"),
            invoice_type=request.args.get("invoice_type"),
            folio_id=request.args.get("folio_id"),
            guest_id=request.args.get("guest_id"),
        )
        return jsonify([invoice.to_dict() for invoice in invoices])

    @app.post("/invoices")
    def create_invoice() -> Any:
        data = payload()
        invoice = system.create_invoice(
            invoice_type=data.get("invoice_type", "proforma"),
            lines=data.get("lines") or [],
            guest_id=data.get("guest_id"),
            discounts=[Discount.from_dict(item) for item in data.get("discounts") or ()],
            tax_exempt=bool(data.get("tax_exempt", False)),
            notes=data.get("notes", ""),
            actor=actor(),
        )
        return jsonify(invoice.to_dict()), 201

    @app.get("/invoices/<invoice_id>")
    def get_invoice(invoice_id: str) -> Any:
        return jsonify(system.get_invoice(invoice_id).to_dict())

    @app.post("/invoices/<invoice_id>/status")
    def transition_invoice(invoice_id: str) -> Any:
        data = payload()
        invoice = system.transition_invoice(
            invoice_id, data.get("status", ""), reason=data.get("reason", ""), actor=actor()
        )
        return jsonify(invoice.to_dict())

    @app.post("/invoices/<invoice_id>/lines")
    def add_invoice_line(invoice_id: str) -> Any:
        return jsonify(system.add_invoice_line(invoice_id, payload(), actor=actor()).to_dict()), 201

    @app.patch("/invoices/<invoice_id>/lines/<line_id>")
    def update_invoice_line(invoice_id: str, line_id: str) -> Any:
        data = payload()
        invoice = system.update_invoice_line(
            invoice_id,
            line_id,
            quantity=data.get("quantity"),
            unit_price=data.get("unit_price"),
            actor=actor(),
        )
        return jsonify(invoice.to_dict())

    @app.delete("/invoices/<invoice_id>/lines/<line_id>")
    def remove_invoice_line(invoice_id: str, line_id: str) -> Any:
        return jsonify(system.remove_invoice_line(invoice_id, line_id, actor=actor()).to_dict())

    @app.post("/invoices/<invoice_id>/discounts")
    def add_invoice_discount(invoice_id: str) -> Any:
        invoice = system.apply_invoice_discount(invoice_id, Discount.from_dict(payload()), actor=actor())
        return jsonify(invoice.to_dict()), 201

    @app.post("/invoices/<invoice_id>/payments")
    def post_invoice_payment(invoice_id: str) -> Any:
        data = payload()
        invoice = system.record_invoice_payment(
            invoice_id,
            amount=data.get("amount"),
            method=data.get("method", "cash"),
            reference=data.get("reference"),
            actor=actor(),
        )
        return jsonify(invoice.to_dict()), 201

    @app.post("/invoices/<invoice_id>/payments/<payment_id>/reversal")
    def reverse_invoice_payment(invoice_id: str, payment_id: str) -> Any:
        data = payload()
        invoice = system.reverse_invoice_payment(
            invoice_id,
            payment_id,
            amount=data.get("amount"),
            reason=data.get("reason", ""),
            actor=actor(),
        )
        return jsonify(invoice.to_dict())

    @app.post("/invoices/<invoice_id>/adjustments")
    def create_adjustment(invoice_id: str) -> Any:
        data = payload()
        note = system.create_adjustment_note(
            invoice_id,
            invoice_type=data.get("invoice_type", "credit-note"),
            lines=data.get("lines") or [],
            reason=data.get("reason", ""),
            actor=actor(),
        )
        return jsonify(note.to_dict()), 201

    @app.get("/invoices/<invoice_id>/journal")
    def invoice_journal(invoice_id: str) -> Any:
        lines = system.journal_entries(invoice_id)
        return jsonify(
            [{**line, "debit": str(line["debit"]), "credit": str(line["credit"])} for line in lines]
        )

    # ------------------------------------------------------------------
    # Master folios
    # ------------------------------------------------------------------
    @app.get("/master-folios")
    def list_master_folios() -> Any:
        masters = system.list_master_folios(status=request.args.get("status"))
        return jsonify([master.to_dict() for master in masters])

    @app.post("/master-folios")
    def create_master_folio() -> Any:
        data = payload()
        master = system.create_master_folio(
            name=data.get("name", ""),
            folio_type=data.get("folio_type", "group"),
            billing_arrangement=data.get("billing_arrangement", "individual-with-routing"),
            primary_contact=data.get("primary_contact"),
            credit_limit=data.get("credit_limit"),
            actor=actor(),
        )
        return jsonify(master.to_dict()), 201

    @app.get("/master-folios/<master_folio_id>")
    def get_master_folio(master_folio_id: str) -> Any:
        return jsonify(system.get_master_folio(master_folio_id).to_dict())

    @app.delete("/master-folios/<master_folio_id>")
    def delete_master_folio(master_folio_id: str) -> Any:
        released = system.delete_master_folio(master_folio_id, actor=actor())
        return jsonify({"released_folio_ids": [folio.id for folio in released]})

    @app.post("/master-folios/<master_folio_id>/folios")
    def link_folio(master_folio_id: str) -> Any:
        master = system.link_folio(master_folio_id, payload().get("folio_id", ""), actor=actor())
        return jsonify(master.to_dict()), 201

    @app.delete("/master-folios/<master_folio_id>/folios/<folio_id>")
    def unlink_folio(master_folio_id: str, folio_id: str) -> Any:
        return jsonify(system.unlink_folio(master_folio_id, folio_id, actor=actor()).to_dict())

    @app.post("/master-folios/<master_folio_id>/rules")
    def add_routing_rule(master_folio_id: str) -> Any:
        try:
            rule = RoutingRule.from_dict(payload())
        except KeyError as exc:
            raise ValidationError(f"Missing routing rule field: {exc}") from exc
        return jsonify(system.add_routing_rule(master_folio_id, rule, actor=actor()).to_dict()), 201

    @app.delete("/master-folios/<master_folio_id>/rules/<rule_id>")
    def remove_routing_rule(master_folio_id: str, rule_id: str) -> Any:
        return jsonify(system.remove_routing_rule(master_folio_id, rule_id, actor=actor()).to_dict())

    @app.post("/master-folios/<master_folio_id>/payments")
    def post_master_payment(master_folio_id: str) -> Any:
        data = payload()
        master = system.record_master_payment(
            master_folio_id,
            amount=data.get("amount"),
            method=data.get("method", "cash"),
            reference=data.get("reference"),
            actor=actor(),
        )
        return jsonify(master.to_dict()), 201

    @app.post("/master-folios/<master_folio_id>/close")
    def close_master_folio(master_folio_id: str) -> Any:
        override = bool(payload().get("override", False))
        return jsonify(system.close_master_folio(master_folio_id, actor=actor(), override=override).to_dict())

    @app.post("/master-folios/<master_folio_id>/reopen")
    def reopen_master_folio(master_folio_id: str) -> Any:
        return jsonify(system.reopen_master_folio(master_folio_id, actor=actor()).to_dict())

    @app.post("/master-folios/<master_folio_id>/suspend")
    def suspend_master_folio(master_folio_id: str) -> Any:
        master = system.suspend_master_folio(master_folio_id, actor=actor(), reason=payload().get("reason", ""))
        return jsonify(master.to_dict())

    @app.post("/master-folios/<master_folio_id>/invoices")
    def create_master_invoice(master_folio_id: str) -> Any:
        return jsonify(system.create_master_invoice(master_folio_id, actor=actor()).to_dict()), 201

    return app
