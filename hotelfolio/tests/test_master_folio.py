import unittest
from decimal import Decimal

from hotelfolio.ledger.errors import NotFoundError, ValidationError
from hotelfolio.ledger.folio import Folio, FolioCharge, FolioPayment
from hotelfolio.ledger.master_folio import (
    MASTER_TARGET,
    MasterFolio,
    RoutingRule,
    dissolve_master_folio,
    link_folio,
    recompute_master_balance,
    route_charge,
    split_charge,
    unlink_folio,
)


def _folio_with_balance(amount: object) -> Folio:
    folio = Folio(guest_id="guest")
    folio.add_charge(FolioCharge(description="Room night", amount=amount, quantity=1, department="front-office"))
    return folio


class MasterFolioBalanceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.master = MasterFolio(name="Acme offsite", folio_type="corporate")
        self.first = _folio_with_balance(150)
        self.second = _folio_with_balance(300)

    def test_roll_up_and_unlink(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        total = link_folio(self.master, self.second, [self.first], actor="groups")
        self.assertEqual(total, Decimal("450"))
        self.assertEqual(self.master.total_balance, Decimal("450"))

        total = unlink_folio(self.master, self.second, [self.first, self.second], actor="groups")
        self.assertEqual(total, Decimal("150"))
        self.assertIsNone(self.second.master_folio_id)
        self.assertEqual(self.master.child_folio_ids, (self.first.id,))

    def test_own_entries_are_included(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        self.master.add_charge(FolioCharge(description="Meeting room", amount=500, quantity=1, department="front-office"))
        self.master.add_payment(FolioPayment(amount=200, method="transfer"))
        self.first.add_payment(FolioPayment(amount=50, method="card"))
        total = recompute_master_balance(self.master, [self.first, self.second])
        self.assertEqual(total, Decimal("500") - Decimal("200") + Decimal("100"))

    def test_own_entries_update_total_immediately(self) -> None:
        master = MasterFolio(name="Acme")
        master.add_charge(FolioCharge(description="Meeting room", amount=500, quantity=1, department="front-office"))
        self.assertEqual(master.total_balance, Decimal("500"))
        master.add_payment(FolioPayment(amount=100, method="transfer"))
        self.assertEqual(master.total_balance, Decimal("400"))

        link_folio(master, self.first, [], actor="groups")
        master.add_payment(FolioPayment(amount=400, method="transfer"))
        self.assertEqual(master.total_balance, Decimal("150"))
        with self.assertRaises(ValidationError):
            master.close(actor="manager")
        self.first.add_payment(FolioPayment(amount=150, method="card"))
        recompute_master_balance(master, [self.first])
        master.close(actor="manager")
        self.assertEqual(master.status, "closed")

    def test_loaded_master_needs_roll_up_before_total(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        loaded = MasterFolio.from_dict(self.master.to_dict())
        with self.assertRaises(ValidationError):
            loaded.total_balance
        self.assertEqual(recompute_master_balance(loaded, [self.first]), Decimal("150"))
        self.assertEqual(loaded.total_balance, Decimal("150"))

    def test_missing_child_is_reported(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        with self.assertRaises(NotFoundError):
            recompute_master_balance(self.master, [self.second])

    def test_link_is_all_or_nothing(self) -> None:
        other = MasterFolio(name="Other group")
        link_folio(other, self.first, [], actor="groups")
        with self.assertRaises(ValidationError):
            link_folio(self.master, self.first, [], actor="groups")
        self.assertEqual(self.first.master_folio_id, other.id)
        self.assertEqual(self.master.child_folio_ids, ())
        self.assertEqual(len(self.master.audit_trail), 0)

    def test_close_and_reopen(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        with self.assertRaises(ValidationError):
            self.master.close(actor="manager")
        self.master.close(actor="manager", override=True)
        self.assertEqual(self.master.status, "closed")
        self.assertEqual(self.master.closed_by, "manager")
        self.assertIsNotNone(self.master.closed_at)
        self.assertEqual(self.first.balance, Decimal("150"))
        with self.assertRaises(ValidationError):
            link_folio(self.master, self.second, [self.first], actor="groups")

        self.master.reopen(actor="manager")
        self.assertEqual(self.master.status, "active")
        self.assertIsNone(self.master.closed_at)
        self.assertIsNone(self.master.closed_by)

        self.first.add_payment(FolioPayment(amount=150, method="card"))
        recompute_master_balance(self.master, [self.first])
        self.master.close(actor="manager")
        self.assertEqual(self.master.status, "closed")

    def test_credit_utilization(self) -> None:
        master = MasterFolio(name="Travel desk", folio_type="travel-agency", credit_limit=400)
        link_folio(master, self.first, [], actor="groups")
        self.assertEqual(master.credit_utilization, Decimal("37.5"))
        self.assertFalse(master.is_over_credit_limit)
        with self.assertLogs("hotelfolio.ledger.master_folio", level="WARNING"):
            link_folio(master, self.second, [self.first], actor="groups")
        self.assertEqual(master.credit_utilization, Decimal("112.5"))
        self.assertTrue(master.is_over_credit_limit)
        self.assertIsNone(self.master.credit_utilization)

    def test_dissolve_releases_children(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        link_folio(self.master, self.second, [self.first], actor="groups")
        released = dissolve_master_folio(self.master, [self.first, self.second], actor="groups")
        self.assertEqual({folio.id for folio in released}, {self.first.id, self.second.id})
        self.assertTrue(all(folio.master_folio_id is None for folio in released))
        self.assertEqual(self.master.total_balance, Decimal("0"))

    def test_round_trip_recomputes_balance(self) -> None:
        link_folio(self.master, self.first, [], actor="groups")
        self.master.add_routing_rule(RoutingRule(rule_type="fnb-charges"), actor="groups")
        loaded = MasterFolio.from_dict(self.master.to_dict())
        self.assertEqual(loaded.routing_rules, self.master.routing_rules)
        self.assertEqual(recompute_master_balance(loaded, [self.first]), Decimal("150"))


class RoutingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.master = MasterFolio(name="Wedding party", folio_type="event")
        self.guest = Folio(guest_id="guest-a")
        self.other = Folio(guest_id="guest-b")
        link_folio(self.master, self.guest, [], actor="groups")
        link_folio(self.master, self.other, [self.guest], actor="groups")
        self.room = FolioCharge(description="Room night", amount=200, quantity=2, department="front-office")
        self.dinner = FolioCharge(description="Dinner", amount=80, quantity=1, department="fnb")

    def test_no_rule_means_no_routing(self) -> None:
        decision = route_charge(self.room, self.master, self.guest.id)
        self.assertFalse(decision.is_routed)
        self.assertEqual(decision.retained_amount, Decimal("400"))
        self.assertEqual(split_charge(self.room, decision), (None, self.room))

    def test_master_only_routes_everything(self) -> None:
        self.master.billing_arrangement = "master-only"
        self.master.add_routing_rule(RoutingRule(rule_type="fnb-charges", target_folio_id=self.other.id), actor="g")
        decision = route_charge(self.dinner, self.master, self.guest.id)
        self.assertEqual(decision.target, MASTER_TARGET)
        self.assertEqual(decision.routed_amount, Decimal("80"))

    def test_first_active_match_wins(self) -> None:
        self.master.add_routing_rule(RoutingRule(rule_type="room-charges", is_active=False), actor="g")
        self.master.add_routing_rule(RoutingRule(rule_type="fnb-charges", target_folio_id=self.other.id), actor="g")
        self.master.add_routing_rule(RoutingRule(rule_type="all-charges"), actor="g")
        self.assertEqual(route_charge(self.dinner, self.master, self.guest.id).target, self.other.id)
        self.assertEqual(route_charge(self.room, self.master, self.guest.id).target, MASTER_TARGET)

    def test_routing_is_deterministic_and_order_sensitive(self) -> None:
        fnb_rule = RoutingRule(rule_type="fnb-charges", target_folio_id=self.other.id)
        catch_all = RoutingRule(rule_type="all-charges")
        room_rule = RoutingRule(rule_type="room-charges", target_folio_id=self.other.id)
        for rule in (room_rule, fnb_rule, catch_all):
            self.master.add_routing_rule(rule, actor="g")
        first = route_charge(self.dinner, self.master, self.guest.id)
        self.assertEqual(first, route_charge(self.dinner, self.master, self.guest.id))

        edited = MasterFolio.from_dict(self.master.to_dict())
        edited._routing_rules[0] = RoutingRule(
            rule_type="room-charges", target_folio_id=MASTER_TARGET, id=room_rule.id, description="changed"
        )
        self.assertEqual(route_charge(self.dinner, edited, self.guest.id), first)

        reordered = MasterFolio.from_dict(self.master.to_dict())
        reordered._routing_rules = [catch_all, fnb_rule, room_rule]
        self.assertEqual(route_charge(self.dinner, reordered, self.guest.id).target, MASTER_TARGET)

    def test_custom_percentage_split(self) -> None:
        self.master.add_routing_rule(
            RoutingRule(rule_type="custom", percentage=30, charge_types=("room",)), actor="g"
        )
        decision = route_charge(self.room, self.master, self.guest.id)
        self.assertTrue(decision.is_split)
        self.assertEqual(decision.routed_amount, Decimal("120"))
        self.assertEqual(decision.retained_amount, Decimal("280"))
        routed, retained = split_charge(self.room, decision)
        self.assertEqual(routed.total + retained.total, self.room.total)
        self.assertEqual(routed.routed_from, self.guest.id)
        self.assertEqual(retained.id, self.room.id)
        self.assertFalse(route_charge(self.dinner, self.master, self.guest.id).is_routed)

    def test_source_folio_filter(self) -> None:
        self.master.add_routing_rule(RoutingRule(rule_type="all-charges", source_folio_id=self.other.id), actor="g")
        self.assertFalse(route_charge(self.room, self.master, self.guest.id).is_routed)
        self.assertTrue(route_charge(self.room, self.master, self.other.id).is_routed)

    def test_unlinked_target_is_skipped(self) -> None:
        self.master.add_routing_rule(RoutingRule(rule_type="all-charges", target_folio_id="stranger"), actor="g")
        self.master.add_routing_rule(RoutingRule(rule_type="room-charges"), actor="g")
        with self.assertLogs("hotelfolio.ledger.master_folio", level="WARNING"):
            decision = route_charge(self.room, self.master, self.guest.id)
        self.assertEqual(decision.target, MASTER_TARGET)

    def test_inactive_master_does_not_route(self) -> None:
        self.master.add_routing_rule(RoutingRule(rule_type="all-charges"), actor="g")
        self.master.suspend(actor="manager", reason="Payment overdue")
        self.assertFalse(route_charge(self.room, self.master, self.guest.id).is_routed)

    def test_rule_validation(self) -> None:
        with self.assertRaises(ValidationError):
            RoutingRule(rule_type="minibar-charges")
        with self.assertRaises(ValidationError):
            RoutingRule(rule_type="custom", percentage=120)


if __name__ == "__main__":
    unittest.main()
