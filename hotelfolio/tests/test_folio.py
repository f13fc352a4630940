import unittest
from decimal import Decimal

from hotelfolio.ledger.errors import ConsistencyError, ValidationError
from hotelfolio.ledger.folio import Folio, FolioCharge, FolioPayment, derive_balance


class FolioTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.folio = Folio(guest_id="guest-1", reservation_id="res-1")

    def assertBalanceConsistent(self, folio: Folio) -> None:
        expected = sum((c.amount * c.quantity for c in folio.charges), Decimal("0")) - sum(
            (p.amount for p in folio.payments), Decimal("0")
        )
        self.assertEqual(folio.balance, expected)

    def test_balance_tracks_every_entry(self) -> None:
        self.assertEqual(self.folio.balance, Decimal("0"))
        steps = [
            FolioCharge(description="Room night", amount="189.50", quantity=2, department="front-office"),
            FolioPayment(amount=200, method="card"),
            FolioCharge(description="Room service", amount="42.75", quantity=1, department="fnb"),
            FolioCharge(description="Laundry", amount="12.10", quantity=3, department="housekeeping"),
            FolioPayment(amount="100.25", method="cash"),
        ]
        for step in steps:
            if isinstance(step, FolioCharge):
                self.folio.add_charge(step, actor="frontdesk")
            else:
                self.folio.add_payment(step, actor="frontdesk")
            self.assertBalanceConsistent(self.folio)
        self.assertEqual(self.folio.balance, Decimal("157.80"))
        self.assertEqual(len(self.folio.audit_trail), len(steps))

    def test_rejected_entries_leave_balance_untouched(self) -> None:
        self.folio.add_charge(
            FolioCharge(description="Room night", amount=100, quantity=1, department="front-office")
        )
        with self.assertRaises(ValidationError):
            self.folio.add_payment(FolioPayment(amount=0, method="cash"))
        with self.assertRaises(ValidationError):
            self.folio.add_charge(FolioCharge(description="Minibar", amount=5, quantity=0, department="fnb"))
        with self.assertRaises(ValidationError):
            self.folio.add_charge(FolioCharge(description=" ", amount=5, quantity=1, department="fnb"))
        self.assertEqual(self.folio.balance, Decimal("100"))
        self.assertEqual(len(self.folio.charges), 1)
        self.assertEqual(self.folio.payments, ())

    def test_missing_or_non_finite_amounts_are_rejected(self) -> None:
        for amount in ("NaN", "Infinity", "-inf", None, "", "ten"):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError) as ctx:
                    FolioCharge(description="Minibar", amount=amount, quantity=1, department="fnb")
                self.assertEqual([issue.field for issue in ctx.exception.issues], ["amount"])
        with self.assertRaises(ValidationError) as ctx:
            FolioCharge(description="Minibar", amount=5, quantity="NaN", department="fnb")
        self.assertEqual([issue.field for issue in ctx.exception.issues], ["quantity"])
        with self.assertRaises(ValidationError):
            FolioPayment(amount=float("inf"), method="card")
        with self.assertRaises(ValidationError):
            FolioPayment(amount=None, method="card")
        self.assertEqual(self.folio.balance, Decimal("0"))

    def test_negative_charge_amount_is_a_correction(self) -> None:
        self.folio.add_charge(FolioCharge(description="Room night", amount=100, quantity=1, department="front-office"))
        self.folio.add_charge(FolioCharge(description="Rate correction", amount=-20, quantity=1, department="front-office"))
        self.assertEqual(self.folio.balance, Decimal("80"))

    def test_category_is_derived_from_department(self) -> None:
        self.assertEqual(FolioCharge(description="Bed", amount=1, quantity=1, department="front-office").category, "room")
        self.assertEqual(FolioCharge(description="Wine", amount=1, quantity=1, department="kitchen").category, "fnb")
        self.assertEqual(FolioCharge(description="Facial", amount=1, quantity=1, department="spa").category, "extra-service")
        self.assertEqual(FolioCharge(description="Fix", amount=1, quantity=1, department="engineering").category, "other")

    def test_drifted_balance_is_detected_and_repaired(self) -> None:
        self.folio.add_charge(FolioCharge(description="Room night", amount=150, quantity=1, department="front-office"))
        data = self.folio.to_dict()
        data["balance"] = "175.00"
        loaded = Folio.from_dict(data)
        with self.assertRaises(ConsistencyError) as ctx:
            loaded.verify_balance()
        self.assertEqual(ctx.exception.discrepancy, Decimal("25"))

        with self.assertLogs("hotelfolio.ledger.folio", level="WARNING"):
            discrepancy = loaded.reconcile(actor="night-audit")
        self.assertEqual(discrepancy, Decimal("25"))
        self.assertEqual(loaded.balance, Decimal("150"))
        last = loaded.audit_trail.entries[-1]
        self.assertEqual(last.action, "balance-corrected")
        self.assertEqual(last.actor, "night-audit")
        self.assertIsNone(loaded.reconcile())

    def test_round_trip_keeps_entries(self) -> None:
        self.folio.add_charge(FolioCharge(description="Dinner", amount="55.20", quantity=2, department="fnb"))
        self.folio.add_payment(FolioPayment(amount=50, method="card", reference="AUTH-1"))
        loaded = Folio.from_dict(self.folio.to_dict())
        self.assertEqual(loaded.balance, self.folio.balance)
        self.assertEqual(loaded.charges, self.folio.charges)
        self.assertEqual(loaded.payments, self.folio.payments)
        self.assertEqual(derive_balance(loaded.charges, loaded.payments), Decimal("60.40"))


if __name__ == "__main__":
    unittest.main()
