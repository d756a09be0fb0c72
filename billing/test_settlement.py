from __future__ import annotations

from datetime import date
from decimal import Decimal

from django.test import TestCase

from billing.exceptions import DeadlineExceededError, PeriodLockedError, ValidationError
from billing.models import DistributionEntry, Expense, LedgerEntry, Settlement
from billing.services.period_locks import lock_period
from billing.services.settlement import (
    DistributionUnit,
    SettlementService,
    check_settlement_deadline,
    distribute,
)
from billing.testing import create_invoice, create_property, create_tenant, create_unit


class DistributeTests(TestCase):
    def test_equal_weights_put_residual_on_last_unit(self):
        units = [DistributionUnit(unit_id=index, area=Decimal("50"), tenant_id=index) for index in (1, 2, 3)]
        shares = distribute(Decimal("1000.00"), units, Settlement.DistributionKey.AREA)

        self.assertEqual([share.share for share in shares], [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")])

    def test_sum_of_shares_equals_total(self):
        for unit_count in (1, 2, 7, 99, 500):
            units = [
                DistributionUnit(
                    unit_id=index,
                    area=Decimal(f"{(index * 37) % 97 + 1}.{index % 10}"),
                    mea=Decimal(index % 5),
                    persons=index % 4,
                    tenant_id=index,
                )
                for index in range(1, unit_count + 1)
            ]
            for total in (Decimal("0.00"), Decimal("0.01"), Decimal("1234.57"), Decimal("98765.43")):
                for key in (Settlement.DistributionKey.AREA, Settlement.DistributionKey.FIXED):
                    shares = distribute(total, units, key)
                    self.assertEqual(sum((share.share for share in shares), Decimal("0.00")), total)

    def test_zero_weight_unit_gets_nothing(self):
        units = [
            DistributionUnit(unit_id=1, persons=2, tenant_id=1),
            DistributionUnit(unit_id=2, persons=1, tenant_id=2),
            DistributionUnit(unit_id=3, persons=0, tenant_id=3),
        ]
        shares = distribute(Decimal("100.00"), units, Settlement.DistributionKey.PERSON)

        self.assertEqual([share.share for share in shares], [Decimal("66.67"), Decimal("33.33"), Decimal("0.00")])

    def test_vacant_unit_is_charged_to_owner(self):
        units = [
            DistributionUnit(unit_id=1, area=Decimal("60"), tenant_id=10),
            DistributionUnit(unit_id=2, area=Decimal("40"), is_vacant=True),
        ]
        shares = distribute(Decimal("500.00"), units, Settlement.DistributionKey.AREA)

        self.assertEqual(shares[0].charged_to, DistributionEntry.ChargedTo.TENANT)
        self.assertEqual(shares[1].charged_to, DistributionEntry.ChargedTo.OWNER)
        self.assertEqual(shares[1].share, Decimal("200.00"))

    def test_invalid_input(self):
        units = [DistributionUnit(unit_id=1, area=Decimal("0"))]
        with self.assertRaises(ValidationError):
            distribute(Decimal("10.00"), units, Settlement.DistributionKey.AREA)
        with self.assertRaises(ValidationError):
            distribute(Decimal("10.00"), units, "quadratmeter")
        with self.assertRaises(ValidationError):
            distribute(Decimal("-10.00"), [DistributionUnit(unit_id=1, area=Decimal("1"))], "area")
        with self.assertRaises(ValidationError):
            distribute(Decimal("10.00"), [], "area")


class SettlementDeadlineTests(TestCase):
    def test_deadline_is_end_of_june_of_following_year(self):
        deadlines = check_settlement_deadline(2025, date(2026, 6, 30))
        self.assertEqual(deadlines.deadline, date(2026, 6, 30))
        self.assertEqual(deadlines.expires_on, date(2029, 1, 1))

    def test_late_settlement_needs_override(self):
        with self.assertRaises(DeadlineExceededError):
            check_settlement_deadline(2025, date(2026, 7, 1))
        check_settlement_deadline(2025, date(2026, 7, 1), allow_late=True)

    def test_expired_settlement_is_always_rejected(self):
        with self.assertRaises(DeadlineExceededError):
            check_settlement_deadline(2025, date(2029, 1, 1), allow_late=True)


class SettlementServiceTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.rented = create_unit(self.property, "1", usable_area=Decimal("60.00"))
        self.vacant = create_unit(self.property, "2", usable_area=Decimal("40.00"), is_vacant=True)
        self.tenant = create_tenant(self.rented)
        # je 55,00 BK + 15,00 HK Akonto
        create_invoice(self.tenant, 2025, 1)
        create_invoice(self.tenant, 2025, 2)
        Expense.objects.create(
            property=self.property,
            date=date(2025, 5, 1),
            category=Expense.Category.WASSER,
            amount=Decimal("1000.00"),
        )
        Expense.objects.create(
            property=self.property,
            date=date(2025, 6, 1),
            category=Expense.Category.SONSTIGES,
            amount=Decimal("500.00"),
            is_allocable=False,
        )
        self.service = SettlementService(actor="test")

    def test_calculate_distributes_allocable_expenses(self):
        settlement = self.service.calculate(self.property, 2025, key=Settlement.DistributionKey.AREA)
        tenant_entry = settlement.entries.get(unit=self.rented)
        owner_entry = settlement.entries.get(unit=self.vacant)

        self.assertEqual(settlement.status, Settlement.Status.BERECHNET)
        self.assertEqual(settlement.total_expense, Decimal("1000.00"))
        self.assertEqual(settlement.tenant_total, Decimal("600.00"))
        self.assertEqual(settlement.owner_total, Decimal("400.00"))
        self.assertEqual(tenant_entry.prepayments, Decimal("140.00"))
        self.assertEqual(tenant_entry.difference, Decimal("460.00"))
        self.assertEqual(tenant_entry.tenant, self.tenant)
        self.assertEqual(owner_entry.charged_to, DistributionEntry.ChargedTo.OWNER)
        self.assertIsNone(owner_entry.tenant)

    def test_recalculate_replaces_entries(self):
        self.service.calculate(self.property, 2025)
        settlement = self.service.calculate(self.property, 2025, key=Settlement.DistributionKey.FIXED)

        self.assertEqual(settlement.entries.count(), 2)
        self.assertEqual(settlement.tenant_total, Decimal("500.00"))

    def test_finalize_posts_difference_to_ledger(self):
        settlement = self.service.calculate(self.property, 2025)
        settlement = self.service.finalize(settlement, today=date(2026, 3, 1))
        entry = settlement.entries.get(unit=self.rented)

        self.assertEqual(settlement.status, Settlement.Status.ABGESCHLOSSEN)
        self.assertEqual(entry.ledger_entry.entry_type, LedgerEntry.EntryType.SOLL)
        self.assertEqual(entry.ledger_entry.amount, Decimal("460.00"))
        self.assertEqual(entry.ledger_entry.booking_date, date(2026, 3, 1))
        with self.assertRaises(ValidationError):
            self.service.calculate(self.property, 2025)

    def test_credit_is_posted_as_negative_soll(self):
        Expense.objects.filter(amount=Decimal("1000.00")).update(amount=Decimal("100.00"))
        settlement = self.service.calculate(self.property, 2025)
        settlement = self.service.finalize(settlement, today=date(2026, 3, 1))

        self.assertEqual(settlement.entries.get(unit=self.rented).ledger_entry.amount, Decimal("-80.00"))

    def test_finalize_after_deadline(self):
        settlement = self.service.calculate(self.property, 2025)
        with self.assertRaises(DeadlineExceededError):
            self.service.finalize(settlement, today=date(2026, 7, 1))

        settlement = self.service.finalize(settlement, today=date(2026, 7, 1), allow_late=True)
        self.assertEqual(settlement.status, Settlement.Status.ABGESCHLOSSEN)

    def test_finalize_in_locked_month(self):
        settlement = self.service.calculate(self.property, 2025)
        lock_period(self.property.organization, 2026, 3)

        with self.assertRaises(PeriodLockedError):
            self.service.finalize(settlement, today=date(2026, 3, 1))
        settlement.refresh_from_db()
        self.assertEqual(settlement.status, Settlement.Status.BERECHNET)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_pending_deadlines(self):
        self.service.calculate(self.property, 2025)

        warnings = SettlementService.pending_deadlines(date(2026, 5, 15))

        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0]["deadline"], "2026-06-30")
        self.assertFalse(warnings[0]["overdue"])
        self.assertEqual(SettlementService.pending_deadlines(date(2026, 1, 1)), [])
