from __future__ import annotations

import tempfile
from datetime import date
from decimal import Decimal
from io import StringIO
from pathlib import Path

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from billing.exceptions import NotFoundError, PeriodLockedError, ValidationError
from billing.models import AuditRecord, InvoiceLine, PaymentAllocation
from billing.services.bulk_upsert import BulkLineUpserter, InvoiceLineRow, parse_invoice_line_csv
from billing.services.period_locks import lock_period
from billing.services.reconciliation import allocation_variances, line_variances
from billing.testing import create_invoice, create_payment, create_property, create_tenant, create_unit


class InvoiceLineCsvTests(TestCase):
    def test_parse_rows(self):
        rows = parse_invoice_line_csv(
            "invoice_id,unit_id,line_type,description,amount,tax_rate,meta\n"
            '7,,BK,"  Wasser   Jänner ","12,50",10,"{""zaehler"": ""W-1""}"\n'
        )

        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.invoice_id, 7)
        self.assertIsNone(row.unit_id)
        self.assertEqual(row.line_type, "bk")
        self.assertEqual(row.amount, Decimal("12.50"))
        self.assertEqual(row.meta, {"zaehler": "W-1"})
        self.assertEqual(row.key, (7, None, "bk", "wasser jänner"))

    def test_error_names_the_row(self):
        with self.assertRaisesMessage(ValidationError, "Zeile 3"):
            parse_invoice_line_csv(
                "invoice_id,line_type,description,amount\n"
                "1,bk,Wasser,10.00\n"
                "1,strom,Allgemeinstrom,5.00\n"
            )

    def test_infinite_amount_names_the_row(self):
        with self.assertRaisesMessage(ValidationError, "Zeile 2"):
            parse_invoice_line_csv(
                "invoice_id,unit_id,line_type,description,amount,tax_rate,meta\n"
                "1,,bk,Wasser,inf,10,\n"
            )

    def test_missing_columns(self):
        with self.assertRaises(ValidationError):
            parse_invoice_line_csv("invoice_id,description\n1,Wasser\n")


class BulkLineUpserterTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.unit = create_unit(self.property)
        self.tenant = create_tenant(self.unit)
        self.invoice = create_invoice(self.tenant, 2026, 1)
        self.upserter = BulkLineUpserter(actor="test")

    def _row(self, description="Wasser", amount="10.00", line_type="wasser", **kwargs):
        return InvoiceLineRow(
            invoice_id=self.invoice.pk,
            unit_id=kwargs.pop("unit_id", self.unit.pk),
            line_type=line_type,
            description=description,
            amount=Decimal(amount),
            **kwargs,
        )

    def test_insert_update_and_unchanged(self):
        first = self.upserter.upsert([self._row(), self._row("Kanal", "5.00")], run_id="run-1")
        self.assertEqual((first.inserted, first.updated, first.unchanged), (2, 0, 0))

        second = self.upserter.upsert([self._row(), self._row("Kanal", "7.50")], run_id="run-2")
        self.assertEqual((second.inserted, second.updated, second.unchanged), (0, 1, 1))
        self.assertEqual(InvoiceLine.objects.count(), 2)
        self.assertEqual(InvoiceLine.objects.get(normalized_description="kanal").amount, Decimal("7.50"))

        third = self.upserter.upsert([self._row(), self._row("Kanal", "7.50")], run_id="run-3")
        self.assertEqual((third.inserted, third.updated, third.unchanged), (0, 0, 2))

    def test_audit_rows_carry_run_id_and_amounts(self):
        self.upserter.upsert([self._row("Kanal", "5.00")], run_id="run-1")
        self.upserter.upsert([self._row("Kanal", "7.50")], run_id="run-2")

        insert = AuditRecord.objects.get(run_id="run-1", table_name="invoice_lines")
        update = AuditRecord.objects.get(run_id="run-2", table_name="invoice_lines")
        self.assertEqual(insert.action, "insert")
        self.assertEqual(insert.new_data["operation"], "insert")
        self.assertEqual(insert.new_data["newAmount"], "5.00")
        self.assertNotIn("oldAmount", insert.new_data)
        self.assertEqual(update.new_data["operation"], "update")
        self.assertEqual(update.new_data["oldAmount"], "5.00")
        self.assertEqual(update.new_data["newAmount"], "7.50")
        self.assertEqual(update.new_data["runId"], "run-2")

    def test_duplicate_keys_last_row_wins(self):
        summary = self.upserter.upsert([self._row(amount="1.00"), self._row("WASSER", "2.00")])

        self.assertEqual(summary.duplicate_rows, 1)
        self.assertEqual(summary.inserted, 1)
        self.assertEqual(InvoiceLine.objects.get().amount, Decimal("2.00"))

    def test_dry_run_writes_nothing(self):
        summary = self.upserter.upsert([self._row()], dry_run=True)

        self.assertTrue(summary.dry_run)
        self.assertEqual(summary.inserted, 1)
        self.assertFalse(InvoiceLine.objects.exists())
        self.assertFalse(AuditRecord.objects.exists())

    def test_missing_invoice_rolls_back_everything(self):
        rows = [self._row(), InvoiceLineRow(invoice_id=987654, unit_id=None, line_type="bk", description="x", amount=1)]
        with self.assertRaises(NotFoundError):
            self.upserter.upsert(rows)
        self.assertFalse(InvoiceLine.objects.exists())

    def test_locked_period_is_rejected(self):
        lock_period(self.property.organization, 2026, 1)
        with self.assertRaises(PeriodLockedError):
            self.upserter.upsert([self._row()])
        self.assertFalse(InvoiceLine.objects.exists())


class VarianceTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.unit = create_unit(self.property)
        self.tenant = create_tenant(self.unit)
        self.invoice = create_invoice(self.tenant, 2026, 1)
        BulkLineUpserter().upsert(
            [
                InvoiceLineRow(self.invoice.pk, None, "wasser", "Wasser", Decimal("10.00")),
                InvoiceLineRow(self.invoice.pk, None, "sonst", "Lift", Decimal("20.00")),
            ]
        )

    def _csv(self, body: str) -> Path:
        tmp = tempfile.NamedTemporaryFile(mode="w", suffix=".csv", delete=False, encoding="utf-8")
        try:
            tmp.write("invoice_id,unit_id,line_type,description,amount\n" + body)
        finally:
            tmp.close()
        path = Path(tmp.name)
        self.addCleanup(path.unlink, missing_ok=True)
        return path

    def test_line_variances(self):
        report = line_variances(
            [
                InvoiceLineRow(self.invoice.pk, None, "wasser", "wasser", Decimal("10.01")),
                InvoiceLineRow(self.invoice.pk, None, "sonst", "Lift", Decimal("20.50")),
                InvoiceLineRow(self.invoice.pk, None, "sonst", "Garten", Decimal("3.00")),
            ]
        )

        self.assertEqual(report.checked, 3)
        self.assertEqual(len(report.variances), 2)
        self.assertEqual(report.variances[0].difference, Decimal("0.50"))
        self.assertIsNone(report.variances[1].actual)

    def test_allocation_variances_can_exclude_seed(self):
        payment = create_payment(self.tenant, Decimal("100.00"), date(2026, 1, 10))
        PaymentAllocation.objects.create(
            payment=payment,
            invoice=self.invoice,
            applied_amount=Decimal("100.00"),
            source=PaymentAllocation.Source.SEED,
        )
        self.invoice.paid_amount = Decimal("100.00")
        self.invoice.save()

        self.assertTrue(allocation_variances().ok)
        report = allocation_variances(exclude_source=PaymentAllocation.Source.SEED)
        self.assertEqual(len(report.variances), 1)
        self.assertEqual(report.variances[0].key, f"invoice:{self.invoice.pk}")

    def test_batch_upsert_command(self):
        path = self._csv(f"{self.invoice.pk},,wasser,Wasser,11.00\n{self.invoice.pk},,hk,Heizung Nachzahlung,4.20\n")
        out = StringIO()
        call_command("batch_upsert_lines", csv=str(path), run_id="cmd-1", stdout=out)

        self.assertIn("inserted: 1", out.getvalue())
        self.assertIn("updated: 1", out.getvalue())
        self.assertEqual(AuditRecord.objects.filter(run_id="cmd-1").count(), 2)

    def test_batch_upsert_command_missing_file(self):
        with self.assertRaises(CommandError):
            call_command("batch_upsert_lines", csv="/nonexistent/lines.csv", stdout=StringIO())

    def test_check_variance_command(self):
        matching = self._csv(f"{self.invoice.pk},,wasser,Wasser,10.00\n")
        out = StringIO()
        call_command("check_variance", csv=str(matching), stdout=out)
        self.assertIn("Keine Abweichungen.", out.getvalue())

        drifted = self._csv(f"{self.invoice.pk},,wasser,Wasser,10.02\n")
        out = StringIO()
        with self.assertRaises(CommandError):
            call_command("check_variance", csv=str(drifted), stdout=out)
        self.assertIn("lines_variances: 1", out.getvalue())
