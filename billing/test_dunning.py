from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase

from billing.models import DunningCase, LedgerEntry, MonthlyInvoice
from billing.services.dunning import DunningService, calculate_interest, get_level, total_due
from billing.testing import create_invoice, create_property, create_tenant, create_unit


class DunningRulesTests(TestCase):
    def test_interest_example(self):
        self.assertEqual(calculate_interest(Decimal("1000.00"), 365), Decimal("40.00"))

    def test_no_interest_within_grace_period(self):
        self.assertEqual(calculate_interest(Decimal("1000000.00"), 14), Decimal("0.00"))
        self.assertEqual(calculate_interest(Decimal("1000.00"), 0), Decimal("0.00"))

    def test_interest_is_rounded_to_cents(self):
        self.assertEqual(calculate_interest(Decimal("1000.00"), 31), Decimal("3.40"))

    def test_levels_are_monotonic(self):
        previous = -1
        for days in range(0, 120):
            level = get_level(days).level
            self.assertGreaterEqual(level, previous)
            previous = level
        self.assertEqual(get_level(13).level, 0)
        self.assertEqual(get_level(14).level, 1)
        self.assertEqual(get_level(30).level, 2)
        self.assertEqual(get_level(45).level, 3)

    def test_total_due_includes_fee_and_interest(self):
        self.assertEqual(total_due(Decimal("1000.00"), 3, 365), Decimal("1050.00"))
        self.assertEqual(total_due(Decimal("1000.00"), 1, 20), Decimal("1000.00"))


class DunningRunTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.unit = create_unit(self.property)
        self.tenant = create_tenant(self.unit)
        self.invoice = create_invoice(
            self.tenant,
            2026,
            1,
            rent_net=Decimal("1000.00"),
            rent_tax_rate=Decimal("0.00"),
            operating_costs_net=Decimal("0.00"),
            heating_costs_net=Decimal("0.00"),
        )
        self.service = DunningService(actor="test")

    def _charges(self, entry_type):
        return list(
            LedgerEntry.objects.filter(invoice=self.invoice, entry_type=entry_type)
            .order_by("pk")
            .values_list("amount", flat=True)
        )

    def test_full_year_overdue_posts_fee_and_interest(self):
        summary = self.service.run(today=self.invoice.due_date + timedelta(days=365))
        case = DunningCase.objects.get(invoice=self.invoice)

        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.escalated, 1)
        self.assertEqual(case.level, DunningCase.Level.ZWEITE_MAHNUNG)
        self.assertEqual(self._charges(LedgerEntry.EntryType.FEE), [Decimal("10.00")])
        self.assertEqual(self._charges(LedgerEntry.EntryType.INTEREST), [Decimal("40.00")])

    def test_rerun_on_same_day_posts_nothing(self):
        today = self.invoice.due_date + timedelta(days=50)
        self.service.run(today=today)
        entries_before = LedgerEntry.objects.count()

        summary = self.service.run(today=today)

        self.assertEqual(LedgerEntry.objects.count(), entries_before)
        self.assertEqual(summary.escalated, 0)
        self.assertEqual(summary.fees_posted, Decimal("0.00"))
        self.assertEqual(summary.interest_posted, Decimal("0.00"))

    def test_escalation_posts_only_the_difference(self):
        self.service.run(today=self.invoice.due_date + timedelta(days=31))
        self.service.run(today=self.invoice.due_date + timedelta(days=46))

        self.assertEqual(self._charges(LedgerEntry.EntryType.FEE), [Decimal("5.00"), Decimal("5.00")])
        self.assertEqual(sum(self._charges(LedgerEntry.EntryType.INTEREST)), calculate_interest(Decimal("1000.00"), 46))

    def test_level_never_decreases(self):
        self.service.run(today=self.invoice.due_date + timedelta(days=50))
        self.service.run(today=self.invoice.due_date + timedelta(days=20))

        self.assertEqual(DunningCase.objects.get(invoice=self.invoice).level, DunningCase.Level.ZWEITE_MAHNUNG)

    def test_reminder_level_has_no_charges(self):
        self.service.run(today=self.invoice.due_date + timedelta(days=20))

        self.assertEqual(DunningCase.objects.get(invoice=self.invoice).level, DunningCase.Level.ZAHLUNGSERINNERUNG)
        self.assertEqual(self._charges(LedgerEntry.EntryType.FEE), [])
        self.assertEqual(self._charges(LedgerEntry.EntryType.INTEREST), [])

    def test_invoice_without_tenant_does_not_abort_run(self):
        orphan = create_invoice(None, 2025, 12, unit=self.unit)

        summary = self.service.run(today=date(2026, 3, 1))

        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.errors[0]["invoice_id"], orphan.pk)
        self.assertFalse(DunningCase.objects.filter(invoice=orphan).exists())
        self.assertTrue(DunningCase.objects.filter(invoice=self.invoice).exists())

    def test_paid_invoice_case_is_closed(self):
        self.service.run(today=self.invoice.due_date + timedelta(days=20))
        MonthlyInvoice.objects.filter(pk=self.invoice.pk).update(
            paid_amount=self.invoice.gross_amount,
            status=MonthlyInvoice.Status.BEZAHLT,
        )

        summary = self.service.run(today=self.invoice.due_date + timedelta(days=40))

        self.assertEqual(summary.closed, 1)
        self.assertIsNotNone(DunningCase.objects.get(invoice=self.invoice).closed_at)

    def test_run_dunning_command(self):
        out = StringIO()
        call_command("run_dunning", today="2026-03-01", stdout=out)

        self.assertIn("processed: 1", out.getvalue())
        self.assertIn("failed: 0", out.getvalue())
        self.assertIn("Mahnlauf abgeschlossen.", out.getvalue())
