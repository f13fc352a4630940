import unittest
from decimal import Decimal

from hotelfolio.ledger.discounts import Discount, apply_discounts
from hotelfolio.ledger.errors import ValidationError
from hotelfolio.ledger.line_items import build_line_item
from hotelfolio.ledger.rules import RuleSet, ServiceChargeRule, TaxDefinition
from hotelfolio.ledger.totals import compute_totals


def _rules(vat: int = 6, service_charge: int = 5) -> RuleSet:
    return RuleSet(
        taxes=(
            TaxDefinition(name="VAT", rate=vat, applies_to={"fnb", "front-office"}),
            TaxDefinition(name="Tourism levy", rate=1, applies_to={"front-office"}, calculation_order=2),
        ),
        service_charge=ServiceChargeRule(rate=service_charge, applies_to={"fnb"}),
    )


class TotalsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.rules = _rules()

    def _line(self, department: str, quantity: object, unit_price: object, **kwargs):
        return build_line_item(
            description=f"{department} charge",
            department=department,
            quantity=quantity,
            unit_price=unit_price,
            rules=self.rules,
            service_charge_applicable=department == "fnb",
            **kwargs,
        )

    def test_percentage_discount_scenario(self) -> None:
        lines = [self._line("fnb", 4, 250)]
        totals = compute_totals(lines, [Discount(scope="invoice-level", kind="percentage", value=10)])
        self.assertEqual(totals.subtotal, Decimal("1000"))
        self.assertEqual(totals.total_discount, Decimal("100"))
        self.assertEqual(totals.service_charge_amount, Decimal("50"))
        self.assertEqual(totals.total_tax, Decimal("60"))
        self.assertEqual(totals.grand_total, Decimal("1010"))
        self.assertFalse(totals.is_negative)

    def test_grand_total_identity_and_merged_tax_lines(self) -> None:
        lines = [
            self._line("front-office", 2, "149.99"),
            self._line("fnb", 3, "18.50"),
            self._line("front-office", 1, "89.00"),
        ]
        discounts = [
            Discount(scope="invoice-level", kind="fixed-amount", value=25),
            Discount(scope="invoice-level", kind="percentage", value="7.5"),
        ]
        totals = compute_totals(lines, discounts)
        self.assertEqual(
            totals.grand_total,
            totals.subtotal - totals.total_discount + totals.service_charge_amount + totals.total_tax,
        )
        self.assertEqual([tax.name for tax in totals.tax_lines], ["VAT", "Tourism levy"])
        vat = totals.tax_lines[0]
        self.assertEqual(vat.taxable_amount, Decimal("299.98") + Decimal("55.50") + Decimal("89.00"))
        self.assertEqual(vat.amount, sum((line.tax_lines[0].amount for line in lines), Decimal("0")))
        levy = totals.tax_lines[1]
        self.assertEqual(levy.taxable_amount, Decimal("388.98"))

    def test_compute_totals_is_idempotent(self) -> None:
        lines = [self._line("fnb", 3, "33.33"), self._line("front-office", 1, "120")]
        discounts = [Discount(scope="invoice-level", kind="percentage", value=15)]
        first = compute_totals(lines, discounts)
        second = compute_totals(lines, discounts)
        self.assertEqual(first, second)
        self.assertEqual(first.to_dict(), second.to_dict())
        self.assertEqual(compute_totals(lines, discounts, self.rules), compute_totals(lines, discounts, self.rules))

    def test_discounts_are_capped_at_subtotal(self) -> None:
        lines = [self._line("front-office", 1, 100)]
        discounts = [
            Discount(scope="invoice-level", kind="fixed-amount", value=80),
            Discount(scope="invoice-level", kind="fixed-amount", value=50),
            Discount(scope="invoice-level", kind="percentage", value=10),
        ]
        result = apply_discounts(lines, discounts)
        self.assertEqual([item.amount for item in result.applied], [Decimal("80"), Decimal("20"), Decimal("0")])
        self.assertEqual(result.total_discount, Decimal("100"))
        totals = compute_totals(lines, discounts)
        # Tax is still computed on the undiscounted line.
        self.assertEqual(totals.grand_total, totals.total_tax)
        self.assertEqual(lines[0].line_grand_total, Decimal("107"))

    def test_line_level_percentage_uses_line_total(self) -> None:
        room = self._line("front-office", 1, 200)
        dinner = self._line("fnb", 1, 100)
        discount = Discount(scope="line-level", kind="percentage", value=50, line_id=dinner.id)
        totals = compute_totals([room, dinner], [discount])
        self.assertEqual(totals.total_discount, Decimal("50"))

    def test_negative_total_is_flagged_not_clamped(self) -> None:
        refund = self._line("front-office", 1, -100)
        totals = compute_totals([refund])
        self.assertEqual(totals.grand_total, Decimal("-107"))
        self.assertTrue(totals.is_negative)
        self.assertEqual(totals.total_discount, Decimal("0"))

    def test_rules_argument_reprices_lines(self) -> None:
        lines = [self._line("fnb", 1, 100)]
        snapshot = compute_totals(lines)
        repriced = compute_totals(lines, rules=_rules(vat=10, service_charge=10))
        self.assertEqual(snapshot.total_tax, Decimal("6"))
        self.assertEqual(repriced.total_tax, Decimal("10"))
        self.assertEqual(repriced.service_charge_amount, Decimal("10"))
        self.assertEqual(lines[0].total_tax, Decimal("6"))

    def test_invalid_discount_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            Discount(scope="invoice-level", kind="percentage", value=-5)
        with self.assertRaises(ValidationError):
            Discount(scope="per-guest", kind="percentage", value=5)


if __name__ == "__main__":
    unittest.main()
