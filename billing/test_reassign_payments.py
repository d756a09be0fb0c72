from __future__ import annotations

from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.utils import timezone

from billing.models import AuditRecord, MonthlyInvoice, PaymentAllocation
from billing.services.period_locks import lock_period
from billing.services.reconciliation import payment_mismatches
from billing.testing import create_invoice, create_payment, create_property, create_tenant, create_unit


class ReassignPaymentsCommandTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.tenant = create_tenant(create_unit(self.property))
        self.december = create_invoice(self.tenant, 2025, 12)
        self.january = create_invoice(self.tenant, 2026, 1)
        self.payment = create_payment(self.tenant, Decimal("500.00"), date(2026, 1, 10))

    @staticmethod
    def _parse_summary(output: str) -> dict[str, int]:
        summary: dict[str, int] = {}
        for line in output.splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            if key.strip() in {"checked", "repaired", "failed"}:
                summary[key.strip()] = int(value.strip())
        return summary

    def test_mismatch_detection(self):
        other = create_payment(self.tenant, Decimal("50.00"), date(2026, 1, 11), unapplied_amount=Decimal("50.00"))
        create_payment(self.tenant, Decimal("70.00"), date(2026, 1, 12), reversed_at=timezone.now())

        mismatched = [payment.pk for payment in payment_mismatches(batch_size=1)]

        self.assertEqual(mismatched, [self.payment.pk])
        self.assertNotIn(other.pk, mismatched)

    def test_dry_run_writes_only_audit(self):
        out = StringIO()
        call_command("reassign_payments", stdout=out)

        summary = self._parse_summary(out.getvalue())
        self.assertEqual(summary, {"checked": 1, "repaired": 1, "failed": 0})
        self.assertIn("Dry-Run", out.getvalue())
        self.assertFalse(PaymentAllocation.objects.exists())
        self.december.refresh_from_db()
        self.assertEqual(self.december.status, MonthlyInvoice.Status.OFFEN)

        audit = AuditRecord.objects.get()
        self.assertEqual(audit.action, "reassign_payment_dryrun")
        self.assertEqual(audit.old_data["allocated"], "0.00")
        self.assertEqual(audit.new_data["allocated"], "500.00")

    def test_apply_repairs_allocations(self):
        out = StringIO()
        call_command("reassign_payments", apply=True, run_id="repair-1", stdout=out)

        self.assertEqual(self._parse_summary(out.getvalue())["repaired"], 1)
        self.assertEqual(
            set(PaymentAllocation.objects.values_list("source", flat=True)),
            {PaymentAllocation.Source.REPAIR},
        )
        self.december.refresh_from_db()
        self.january.refresh_from_db()
        self.assertEqual(self.december.status, MonthlyInvoice.Status.BEZAHLT)
        self.assertEqual(self.january.paid_amount, Decimal("100.00"))
        self.assertTrue(
            AuditRecord.objects.filter(action="reassign_payment_applied", run_id="repair-1").exists()
        )

        out = StringIO()
        call_command("reassign_payments", apply=True, stdout=out)
        self.assertEqual(self._parse_summary(out.getvalue())["checked"], 0)

    def test_small_batches_and_tenant_filter(self):
        other_tenant = create_tenant(create_unit(self.property, "2"), last_name="Andere")
        create_payment(other_tenant, Decimal("80.00"), date(2026, 1, 10))
        create_payment(self.tenant, Decimal("30.00"), date(2026, 1, 15))

        out = StringIO()
        call_command("reassign_payments", apply=True, batch_size=1, tenant_id=self.tenant.pk, stdout=out)

        self.assertEqual(self._parse_summary(out.getvalue()), {"checked": 2, "repaired": 2, "failed": 0})
        self.assertFalse(PaymentAllocation.objects.filter(payment__tenant=other_tenant).exists())

    def test_locked_period_is_reported_as_error(self):
        PaymentAllocation.objects.create(
            payment=self.payment,
            invoice=self.december,
            applied_amount=Decimal("50.00"),
            source=PaymentAllocation.Source.SEED,
        )
        lock_period(self.property.organization, 2025, 12)

        out = StringIO()
        err = StringIO()
        call_command("reassign_payments", apply=True, stdout=out, stderr=err)

        self.assertEqual(self._parse_summary(out.getvalue()), {"checked": 1, "repaired": 0, "failed": 1})
        self.assertIn(f"Zahlung #{self.payment.pk}", err.getvalue())
        error = AuditRecord.objects.get(action="reassign_payment_error")
        self.assertIn("gesperrt", error.new_data["error"])
        self.assertEqual(PaymentAllocation.objects.get().source, PaymentAllocation.Source.SEED)

    def test_failed_payment_is_visited_once(self):
        PaymentAllocation.objects.create(
            payment=self.payment,
            invoice=self.december,
            applied_amount=Decimal("50.00"),
            source=PaymentAllocation.Source.SEED,
        )
        lock_period(self.property.organization, 2025, 12)
        later = create_payment(self.tenant, Decimal("30.00"), date(2026, 1, 15))

        out = StringIO()
        call_command("reassign_payments", apply=True, batch_size=1, stdout=out, stderr=StringIO())

        self.assertEqual(self._parse_summary(out.getvalue()), {"checked": 2, "repaired": 1, "failed": 1})
        self.assertEqual(AuditRecord.objects.filter(action="reassign_payment_error").count(), 1)
        self.assertEqual(PaymentAllocation.objects.get(payment=later).invoice, self.january)

    def test_invalid_batch_size(self):
        with self.assertRaises(CommandError):
            call_command("reassign_payments", batch_size=0, stdout=StringIO())
