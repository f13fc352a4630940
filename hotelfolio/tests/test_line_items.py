import unittest
from decimal import Decimal

from hotelfolio.ledger.errors import RuleConfigurationError
from hotelfolio.ledger.folio import FolioCharge
from hotelfolio.ledger.line_items import (
    build_extra_service_line,
    build_line_item,
    line_item_from_charge,
    reprice_line_item,
)
from hotelfolio.ledger.rules import RuleSet, ServiceChargeRule, TaxDefinition


class LineItemBuilderTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.rules = RuleSet(
            taxes=(
                TaxDefinition(
                    name="VAT",
                    rate=12,
                    applies_to={"fnb", "front-office"},
                    taxable_on_service_charge=True,
                ),
            ),
            service_charge=ServiceChargeRule(rate=10, applies_to={"fnb"}),
        )

    def test_service_charge_and_tax_on_service_charge(self) -> None:
        item = build_line_item(
            description="Dinner for two",
            department="fnb",
            quantity=2,
            unit_price=100,
            rules=self.rules,
            taxable=True,
            service_charge_applicable=True,
        )
        self.assertEqual(item.line_total, Decimal("200"))
        self.assertEqual(item.service_charge_amount, Decimal("20"))
        self.assertEqual(len(item.tax_lines), 1)
        self.assertEqual(item.tax_lines[0].taxable_amount, Decimal("220"))
        self.assertEqual(item.tax_lines[0].amount, Decimal("26.4"))
        self.assertEqual(item.total_tax, Decimal("26.4"))
        self.assertEqual(item.line_grand_total, Decimal("246.4"))

    def test_compound_tax_includes_prior_tax_amounts(self) -> None:
        rules = RuleSet(
            taxes=(
                TaxDefinition(name="City levy", rate=5, applies_to={"fnb"}, calculation_order=2, is_compound=True),
                TaxDefinition(name="VAT", rate=10, applies_to={"fnb"}, calculation_order=1),
            ),
            service_charge=ServiceChargeRule(rate=10, applies_to={"fnb"}),
        )
        item = build_line_item(
            description="Lunch",
            department="fnb",
            quantity=1,
            unit_price=100,
            rules=rules,
            service_charge_applicable=True,
        )
        vat, levy = item.tax_lines
        self.assertEqual(vat.name, "VAT")
        self.assertEqual(vat.taxable_amount, Decimal("100"))
        self.assertEqual(vat.amount, Decimal("10"))
        self.assertEqual(levy.taxable_amount, Decimal("110"))
        self.assertEqual(levy.amount, Decimal("5.5"))
        self.assertEqual(item.line_grand_total, Decimal("125.5"))

    def test_inclusive_tax_is_reported_but_not_added(self) -> None:
        rules = RuleSet(
            taxes=(TaxDefinition(name="GST", rate=10, applies_to={"front-office"}, is_inclusive=True),)
        )
        item = build_line_item(
            description="Room night", department="front-office", quantity=1, unit_price=110, rules=rules
        )
        self.assertEqual(item.inclusive_tax, Decimal("11"))
        self.assertEqual(item.total_tax, Decimal("0"))
        self.assertEqual(item.line_grand_total, Decimal("110"))

    def test_zero_quantity_or_price_gives_zero_line(self) -> None:
        for quantity, price in ((0, 100), (3, 0)):
            item = build_line_item(
                description="Comp",
                department="fnb",
                quantity=quantity,
                unit_price=price,
                rules=self.rules,
                service_charge_applicable=True,
            )
            self.assertEqual(item.line_total, Decimal("0"))
            self.assertEqual(item.service_charge_amount, Decimal("0"))
            self.assertEqual(item.tax_lines, ())
            self.assertEqual(item.line_grand_total, Decimal("0"))

    def test_uncovered_department_is_logged_not_skipped(self) -> None:
        with self.assertLogs("hotelfolio.ledger.line_items", level="WARNING") as logs:
            item = build_line_item(
                description="Massage",
                department="spa",
                quantity=1,
                unit_price=80,
                rules=self.rules,
                service_charge_applicable=True,
            )
        self.assertEqual(item.line_grand_total, Decimal("80"))
        self.assertEqual(len(logs.records), 2)
        self.assertIn("spa", logs.output[0])

    def test_strict_mode_raises_on_configuration_gap(self) -> None:
        with self.assertRaises(RuleConfigurationError) as ctx:
            build_line_item(
                description="Massage",
                department="spa",
                quantity=1,
                unit_price=80,
                rules=self.rules,
                strict=True,
            )
        self.assertEqual(ctx.exception.component, "tax")
        self.assertEqual(ctx.exception.department, "spa")

    def test_tax_exempt_and_inactive_rules(self) -> None:
        exempt = build_line_item(
            description="Diplomatic stay",
            department="front-office",
            quantity=1,
            unit_price=100,
            rules=self.rules,
            tax_exempt=True,
        )
        self.assertEqual(exempt.total_tax, Decimal("0"))

        inactive = RuleSet(taxes=(TaxDefinition(name="VAT", rate=12, applies_to={"fnb"}, is_active=False),))
        with self.assertLogs("hotelfolio.ledger.line_items", level="WARNING"):
            item = build_line_item(
                description="Breakfast", department="fnb", quantity=1, unit_price=20, rules=inactive
            )
        self.assertEqual(item.total_tax, Decimal("0"))

    def test_charge_defaults(self) -> None:
        deposit = FolioCharge(description="Advance Deposit", amount=50, quantity=1, department="front-office")
        item = line_item_from_charge(deposit, self.rules)
        self.assertFalse(item.taxable)
        self.assertEqual(item.total_tax, Decimal("0"))
        self.assertEqual(item.source_charge_id, deposit.id)

        dinner = FolioCharge(description="Dinner", amount=100, quantity=2, department="fnb")
        item = line_item_from_charge(dinner, self.rules)
        self.assertTrue(item.service_charge_applicable)
        self.assertEqual(item.line_grand_total, Decimal("246.4"))

        flagged = FolioCharge(
            description="Dinner",
            amount=100,
            quantity=2,
            department="fnb",
            service_charge_applicable=False,
        )
        self.assertEqual(line_item_from_charge(flagged, self.rules).line_grand_total, Decimal("224"))

    def test_extra_service_line(self) -> None:
        with self.assertLogs("hotelfolio.ledger.line_items", level="WARNING"):
            spa = build_extra_service_line(
                service_name="Hot stone", category_name="Spa treatments", quantity=1, unit_price=90, rules=self.rules
            )
        self.assertEqual(spa.department, "spa")
        self.assertEqual(spa.item_type, "extra-service")
        self.assertEqual(spa.description, "Hot stone - Spa treatments")

        transfer = build_extra_service_line(
            service_name="Airport", category_name="Transport", quantity=2, unit_price=25, rules=self.rules
        )
        self.assertEqual(transfer.department, "front-office")
        self.assertEqual(transfer.service_charge_amount, Decimal("0"))
        self.assertEqual(transfer.total_tax, Decimal("6"))

    def test_reprice_keeps_identity(self) -> None:
        item = build_line_item(
            description="Room night", department="front-office", quantity=1, unit_price=100, rules=self.rules
        )
        repriced = reprice_line_item(item, self.rules, quantity=3)
        self.assertEqual(repriced.id, item.id)
        self.assertEqual(repriced.line_total, Decimal("300"))
        self.assertEqual(repriced.total_tax, Decimal("36"))


if __name__ == "__main__":
    unittest.main()
