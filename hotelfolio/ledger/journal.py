"""General-ledger journal lines for posted invoices."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from .errors import FieldIssue, InvoiceStateError
from .folio import category_for
from .invoice import Invoice
from .money import ZERO, quantize

ACCOUNTS = {
    "receivable": ("1200", "Accounts Receivable"),
    "room": ("4100", "Room Revenue"),
    "fnb": ("4200", "Food & Beverage Revenue"),
    "other": ("4300", "Other Operating Revenue"),
    "service_charge": ("4500", "Service Charge Revenue"),
    "tax": ("2300", "Tax Payable"),
    "discount": ("4900", "Discounts Allowed"),
}
REVENUE_ACCOUNT_BY_CATEGORY = {"room": "room", "fnb": "fnb"}
JOURNAL_STATUSES = ("posted", "partially-refunded", "refunded")


def _line(key: str, amount: Decimal, *, debit: bool, description: str) -> dict:
    code, name = ACCOUNTS[key]
    amount = quantize(amount)
    if amount < ZERO:
        amount, debit = -amount, not debit
    return {
        "account_code": code,
        "account_name": name,
        "debit": amount if debit else ZERO,
        "credit": ZERO if debit else amount,
        "description": description,
    }


def journal_entries_for_invoice(invoice: Invoice) -> list[dict]:
    if invoice.status not in JOURNAL_STATUSES:
        raise InvoiceStateError(
            [FieldIssue("status", f"Only posted invoices can be journalled, not {invoice.status}")]
        )
    reference = invoice.invoice_number or invoice.id
    revenue: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for item in invoice.line_items:
        account = REVENUE_ACCOUNT_BY_CATEGORY.get(category_for(item.department), "other")
        revenue[account] += item.line_total - item.inclusive_tax
    totals = invoice.totals

    lines = [_line("receivable", totals.grand_total, debit=True, description=f"Invoice {reference}")]
    for account in ("room", "fnb", "other"):
        if account in revenue and revenue[account] != ZERO:
            lines.append(_line(account, revenue[account], debit=False, description=f"Revenue {reference}"))
    if totals.service_charge_amount != ZERO:
        lines.append(
            _line("service_charge", totals.service_charge_amount, debit=False, description=f"Service charge {reference}")
        )
    for tax in totals.tax_lines:
        if tax.amount != ZERO:
            lines.append(_line("tax", tax.amount, debit=False, description=f"{tax.name} {reference}"))
    if totals.total_discount != ZERO:
        lines.append(_line("discount", totals.total_discount, debit=True, description=f"Discount {reference}"))

    total_debit = sum((line["debit"] for line in lines), ZERO)
    total_credit = sum((line["credit"] for line in lines), ZERO)
    if total_debit != total_credit:
        raise ValueError(f"Journal not balanced: debit={total_debit} credit={total_credit}")
    return lines
