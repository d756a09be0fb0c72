import json
from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import RequestFactory, TestCase
from django.urls import reverse

from .exceptions import (
    AlreadyReversedError,
    ConcurrencyConflict,
    NotFoundError,
    PeriodLockedError,
    ValidationError,
)
from .models import AuditRecord, InvoiceLine, LedgerEntry, MonthlyInvoice, Payment, PaymentAllocation, PeriodLock
from .services.allocation import (
    MODE_WATERFALL,
    CategoryDue,
    InvoiceDue,
    PaymentAllocator,
    allocate,
    plan_fifo,
    split_by_category,
)
from .services.audit import compute_record_hash, record_audit, verify_chain, verify_stored_chain
from .services.ledger import LedgerLine, LedgerService, compute_saldo
from .services.limiter import CapacityExceeded, ConcurrencyLimiter
from .services.money import gross_from_net, quantize_cent, to_decimal, vat_from_gross
from .services.period_locks import is_period_locked, lock_period, unlock_period
from .testing import create_invoice, create_payment, create_property, create_tenant, create_unit
from .views import PaymentCreateView


def _invoice_due(invoice_id, year, month, paid=Decimal("0.00")):
    return InvoiceDue(
        invoice_id=invoice_id,
        year=year,
        month=month,
        gross_amount=Decimal("400.00"),
        paid_amount=paid,
        categories=(
            CategoryDue("operating_costs", Decimal("55.00"), Decimal("10.00")),
            CategoryDue("heating", Decimal("15.00"), Decimal("20.00")),
            CategoryDue("rent", Decimal("330.00"), Decimal("10.00")),
        ),
    )


class MoneyTests(TestCase):
    def test_to_decimal_accepts_comma_and_float(self):
        self.assertEqual(to_decimal("12,50"), Decimal("12.50"))
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(to_decimal(None), Decimal("0.00"))

    def test_to_decimal_rejects_garbage(self):
        with self.assertRaises(ValueError):
            to_decimal("zwölf")

    def test_to_decimal_rejects_non_finite(self):
        for value in ("NaN", "Infinity", "-inf", Decimal("NaN")):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    to_decimal(value)
        with self.assertRaises(ValueError):
            quantize_cent("inf")

    def test_quantize_rounds_half_up(self):
        self.assertEqual(quantize_cent("2.345"), Decimal("2.35"))
        self.assertEqual(quantize_cent("2.344"), Decimal("2.34"))

    def test_gross_and_vat(self):
        self.assertEqual(gross_from_net(Decimal("300.00"), Decimal("10.00")), Decimal("330.00"))
        self.assertEqual(vat_from_gross(Decimal("15.00"), Decimal("20.00")), Decimal("2.50"))


class AllocationPlanTests(TestCase):
    def test_fifo_fills_oldest_invoice_first(self):
        plan = plan_fifo(
            Decimal("500.00"),
            [_invoice_due(2, 2026, 1), _invoice_due(1, 2025, 12)],
        )

        self.assertEqual([line.invoice_id for line in plan.allocations], [1, 2])
        self.assertEqual(plan.allocations[0].applied_amount, Decimal("400.00"))
        self.assertEqual(plan.allocations[1].applied_amount, Decimal("100.00"))
        self.assertEqual(plan.unapplied, Decimal("0.00"))

    def test_fifo_conserves_amount(self):
        invoices = [_invoice_due(1, 2025, 11), _invoice_due(2, 2025, 12, paid=Decimal("123.45"))]
        for amount in ("0.00", "0.01", "276.55", "400.00", "676.55", "1000.00"):
            plan = plan_fifo(Decimal(amount), invoices)
            self.assertEqual(plan.total_applied + plan.unapplied, Decimal(amount))
            for line in plan.allocations:
                self.assertEqual(sum(split.applied for split in line.splits), line.applied_amount)

    def test_overpayment_is_kept_as_unapplied(self):
        plan = plan_fifo(Decimal("1000.00"), [_invoice_due(1, 2025, 12), _invoice_due(2, 2026, 1)])
        self.assertEqual(plan.total_applied, Decimal("800.00"))
        self.assertEqual(plan.unapplied, Decimal("200.00"))

    def test_negative_amount_is_rejected(self):
        with self.assertRaises(ValidationError):
            plan_fifo(Decimal("-1.00"), [_invoice_due(1, 2025, 12)])

    def test_waterfall_pays_operating_costs_then_heating_then_rent(self):
        splits = split_by_category(Decimal("60.00"), _invoice_due(1, 2025, 12))
        by_category = {split.category: split for split in splits}

        self.assertEqual(by_category["operating_costs"].applied, Decimal("55.00"))
        self.assertEqual(by_category["operating_costs"].vat, Decimal("5.00"))
        self.assertEqual(by_category["heating"].applied, Decimal("5.00"))
        self.assertEqual(by_category["heating"].vat, Decimal("0.83"))
        self.assertNotIn("rent", by_category)

    def test_waterfall_mode_needs_exactly_one_invoice(self):
        with self.assertRaises(ValidationError):
            allocate(Decimal("10.00"), [_invoice_due(1, 2025, 12), _invoice_due(2, 2026, 1)], MODE_WATERFALL)

    def test_unknown_mode(self):
        with self.assertRaises(ValidationError):
            allocate(Decimal("10.00"), [_invoice_due(1, 2025, 12)], "lifo")


class PaymentAllocatorTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.unit = create_unit(self.property)
        self.tenant = create_tenant(self.unit)
        self.december = create_invoice(self.tenant, 2025, 12)
        self.january = create_invoice(self.tenant, 2026, 1)
        self.allocator = PaymentAllocator(actor="test")

    def test_fifo_payment_marks_invoices(self):
        payment, result = self.allocator.post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )
        self.december.refresh_from_db()
        self.january.refresh_from_db()

        self.assertTrue(result.changed)
        self.assertEqual(self.december.paid_amount, Decimal("400.00"))
        self.assertEqual(self.december.status, MonthlyInvoice.Status.BEZAHLT)
        self.assertEqual(self.january.paid_amount, Decimal("100.00"))
        self.assertEqual(self.january.status, MonthlyInvoice.Status.TEILBEZAHLT)
        self.assertEqual(payment.allocations.count(), 2)
        self.assertTrue(
            LedgerEntry.objects.filter(payment=payment, entry_type=LedgerEntry.EntryType.IST).exists()
        )

    def test_allocation_records_category_split_and_vat(self):
        payment, _result = self.allocator.post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )
        january_allocation = payment.allocations.get(invoice=self.january)

        self.assertEqual(january_allocation.operating_costs_amount, Decimal("55.00"))
        self.assertEqual(january_allocation.heating_amount, Decimal("15.00"))
        self.assertEqual(january_allocation.rent_amount, Decimal("30.00"))
        self.assertEqual(january_allocation.vat_amount, Decimal("10.23"))

    def test_reallocation_is_idempotent(self):
        payment, _result = self.allocator.post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )
        audit_count = AuditRecord.objects.count()

        result = self.allocator.allocate_payment(payment)
        self.december.refresh_from_db()
        self.january.refresh_from_db()

        self.assertFalse(result.changed)
        self.assertEqual(AuditRecord.objects.count(), audit_count)
        self.assertEqual(PaymentAllocation.objects.filter(payment=payment).count(), 2)
        self.assertEqual(self.december.paid_amount, Decimal("400.00"))
        self.assertEqual(self.january.paid_amount, Decimal("100.00"))
        self.assertEqual(self.january.status, MonthlyInvoice.Status.TEILBEZAHLT)

    def test_overpayment_note_on_payment(self):
        payment, result = self.allocator.post_payment(
            tenant=self.tenant,
            amount=Decimal("1000.00"),
            booking_date=date(2026, 1, 10),
        )
        payment.refresh_from_db()

        self.assertEqual(result.plan.unapplied, Decimal("200.00"))
        self.assertEqual(payment.unapplied_amount, Decimal("200.00"))
        self.assertIn("Überzahlung: 200.00 EUR", payment.notes)

    def test_waterfall_on_single_invoice(self):
        payment = create_payment(self.tenant, Decimal("60.00"), date(2026, 1, 10))
        result = self.allocator.allocate_payment(payment, mode=MODE_WATERFALL, invoice_ids=[self.january.pk])
        allocation = PaymentAllocation.objects.get(payment=payment)

        self.assertEqual(result.touched_invoice_ids, [self.january.pk])
        self.assertEqual(allocation.operating_costs_amount, Decimal("55.00"))
        self.assertEqual(allocation.heating_amount, Decimal("5.00"))
        self.assertEqual(allocation.rent_amount, Decimal("0.00"))
        self.assertEqual(allocation.vat_amount, Decimal("5.83"))

    def test_unknown_invoice_ids(self):
        payment = create_payment(self.tenant, Decimal("60.00"), date(2026, 1, 10))
        with self.assertRaises(NotFoundError):
            self.allocator.allocate_payment(payment, invoice_ids=[self.january.pk, 987654])

    def test_non_positive_payment_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.allocator.post_payment(tenant=self.tenant, amount=Decimal("0.00"), booking_date=date(2026, 1, 10))

    def test_stale_invoice_version_raises_conflict(self):
        payment = create_payment(self.tenant, Decimal("100.00"), date(2026, 1, 10))
        PaymentAllocation.objects.create(
            payment=payment,
            invoice=self.january,
            applied_amount=Decimal("100.00"),
            source=PaymentAllocation.Source.MANUAL,
        )
        MonthlyInvoice.objects.filter(pk=self.january.pk).update(version=5)

        with self.assertRaises(ConcurrencyConflict):
            self.allocator.sync_invoice(self.january)


class LedgerTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.tenant = create_tenant(create_unit(self.property))
        self.december = create_invoice(self.tenant, 2025, 12)
        self.january = create_invoice(self.tenant, 2026, 1)
        self.ledger = LedgerService(actor="test")
        for invoice in (self.december, self.january):
            self.ledger.post_entry(
                tenant=self.tenant,
                invoice=invoice,
                entry_type=LedgerEntry.EntryType.SOLL,
                amount=invoice.gross_amount,
                booking_date=invoice.period_start,
            )
        self.payment, _result = PaymentAllocator(actor="test").post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )

    def test_compute_saldo_signs(self):
        entries = [
            LedgerLine(LedgerEntry.EntryType.SOLL, Decimal("400.00")),
            LedgerLine(LedgerEntry.EntryType.FEE, Decimal("5.00")),
            LedgerLine(LedgerEntry.EntryType.IST, Decimal("300.00")),
            LedgerLine(LedgerEntry.EntryType.STORNO, Decimal("300.00")),
        ]
        self.assertEqual(compute_saldo(entries), Decimal("405.00"))

    def test_compute_saldo_ignores_entry_order(self):
        entries = [
            LedgerLine(LedgerEntry.EntryType.SOLL, Decimal("400.00")),
            LedgerLine(LedgerEntry.EntryType.IST, Decimal("250.10")),
            LedgerLine(LedgerEntry.EntryType.INTEREST, Decimal("3.40")),
            LedgerLine(LedgerEntry.EntryType.SOLL, Decimal("400.00")),
            LedgerLine(LedgerEntry.EntryType.STORNO, Decimal("250.10")),
            LedgerLine(LedgerEntry.EntryType.FEE, Decimal("5.00")),
            LedgerLine(LedgerEntry.EntryType.IST, Decimal("120.33")),
        ]
        orderings = [
            entries,
            list(reversed(entries)),
            sorted(entries, key=lambda line: line.amount),
            sorted(entries, key=lambda line: line.entry_type),
            entries[3:] + entries[:3],
        ]

        results = {compute_saldo(ordering) for ordering in orderings}

        self.assertEqual(results, {Decimal("688.07")})
        self.assertEqual(compute_saldo(entries), compute_saldo(entries))

    def test_saldo_is_stable_across_calls(self):
        self.ledger.post_entry(
            tenant=self.tenant,
            invoice=self.january,
            entry_type=LedgerEntry.EntryType.FEE,
            amount=Decimal("5.00"),
            booking_date=date(2026, 1, 25),
        )

        first = self.ledger.saldo(self.tenant)
        second = self.ledger.saldo(self.tenant)

        self.assertEqual(first, second)
        self.assertEqual(first, Decimal("305.00"))
        self.assertEqual(first, self.ledger.statement(self.tenant)[-1].saldo)

    def test_saldo_and_statement(self):
        self.assertEqual(self.ledger.saldo(self.tenant), Decimal("300.00"))
        rows = self.ledger.statement(self.tenant)
        self.assertEqual([row.saldo for row in rows], [Decimal("400.00"), Decimal("800.00"), Decimal("300.00")])

    def test_reverse_reopens_debt(self):
        storno = self.ledger.reverse(self.payment, booking_date=date(2026, 1, 20))
        self.payment.refresh_from_db()
        self.december.refresh_from_db()
        self.january.refresh_from_db()

        self.assertEqual(storno.entry_type, LedgerEntry.EntryType.STORNO)
        self.assertEqual(storno.amount, Decimal("500.00"))
        self.assertEqual(self.ledger.saldo(self.tenant), Decimal("800.00"))
        self.assertIsNotNone(self.payment.reversed_at)
        self.assertEqual(self.payment.allocations.count(), 0)
        self.assertEqual(self.december.status, MonthlyInvoice.Status.OFFEN)
        self.assertEqual(self.january.paid_amount, Decimal("0.00"))

    def test_second_reversal_is_rejected(self):
        self.ledger.reverse(self.payment, booking_date=date(2026, 1, 20))
        with self.assertRaises(AlreadyReversedError):
            self.ledger.reverse(self.payment, booking_date=date(2026, 1, 21))
        self.assertEqual(
            LedgerEntry.objects.filter(payment=self.payment, entry_type=LedgerEntry.EntryType.STORNO).count(),
            1,
        )

    def test_reversed_payment_cannot_be_allocated(self):
        self.ledger.reverse(self.payment, booking_date=date(2026, 1, 20))
        with self.assertRaises(ValidationError):
            PaymentAllocator().allocate_payment(self.payment)

    def test_reverse_without_ist_entry(self):
        payment = create_payment(self.tenant, Decimal("50.00"), date(2026, 1, 12))
        with self.assertRaises(NotFoundError):
            self.ledger.reverse(payment)

    def test_post_entry_rejects_manual_storno_and_zero(self):
        with self.assertRaises(ValidationError):
            self.ledger.post_entry(
                tenant=self.tenant,
                entry_type=LedgerEntry.EntryType.STORNO,
                amount=Decimal("10.00"),
                booking_date=date(2026, 1, 20),
            )
        with self.assertRaises(ValidationError):
            self.ledger.post_entry(
                tenant=self.tenant,
                entry_type=LedgerEntry.EntryType.SOLL,
                amount=Decimal("0.00"),
                booking_date=date(2026, 1, 20),
            )


class PeriodLockTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.organization = self.property.organization
        self.tenant = create_tenant(create_unit(self.property))
        self.december = create_invoice(self.tenant, 2025, 12)
        self.january = create_invoice(self.tenant, 2026, 1)
        self.allocator = PaymentAllocator(actor="test")

    def test_lock_and_unlock(self):
        lock_period(self.organization, 2025, 12, locked_by="test", reason="Jahresabschluss")
        self.assertTrue(is_period_locked(self.organization.pk, 2025, 12))
        self.assertFalse(is_period_locked(self.organization.pk, 2026, 1))
        self.assertTrue(unlock_period(self.organization, 2025, 12))
        self.assertFalse(unlock_period(self.organization, 2025, 12))
        self.assertFalse(is_period_locked(self.organization.pk, 2025, 12))

    def test_locked_invoice_is_skipped_for_new_payments(self):
        lock_period(self.organization, 2025, 12)
        _payment, result = self.allocator.post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )
        self.december.refresh_from_db()

        self.assertEqual([line.invoice_id for line in result.plan.allocations], [self.january.pk])
        self.assertEqual(result.plan.unapplied, Decimal("100.00"))
        self.assertEqual(self.december.paid_amount, Decimal("0.00"))

    def test_payment_into_locked_month_is_rejected(self):
        lock_period(self.organization, 2025, 12)
        with self.assertRaises(PeriodLockedError):
            self.allocator.post_payment(
                tenant=self.tenant,
                amount=Decimal("100.00"),
                booking_date=date(2025, 12, 20),
            )
        self.assertFalse(Payment.objects.exists())

    def test_reallocation_touching_locked_invoice_is_rejected(self):
        payment, _result = self.allocator.post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )
        lock_period(self.organization, 2025, 12)

        with self.assertRaises(PeriodLockedError):
            self.allocator.allocate_payment(payment, invoice_ids=[self.january.pk])
        self.assertEqual(payment.allocations.count(), 2)

    def test_lock_period_command(self):
        out = StringIO()
        call_command("lock_period", organization=self.organization.pk, month="2025-12", reason="Abschluss", stdout=out)
        self.assertIn("Periode 12.2025 gesperrt.", out.getvalue())
        self.assertEqual(PeriodLock.objects.get().reason, "Abschluss")

        out = StringIO()
        call_command("lock_period", organization=self.organization.pk, month="2025-12", unlock=True, stdout=out)
        self.assertIn("entsperrt", out.getvalue())
        self.assertFalse(PeriodLock.objects.exists())

    def test_lock_period_command_rejects_bad_month(self):
        with self.assertRaises(CommandError):
            call_command("lock_period", organization=self.organization.pk, month="2025-13", stdout=StringIO())


class AuditChainTests(TestCase):
    def _write_records(self, count=3):
        return [
            record_audit(
                table_name="payments",
                record_id=index,
                action="create",
                new_data={"amount": Decimal("10.00") * index},
                actor="test",
                run_id="run-1",
            )
            for index in range(1, count + 1)
        ]

    def test_pure_chain_detects_tampering(self):
        contents = [{"a": 1}, {"a": 2}, {"a": 3}]
        hashes = []
        previous = "0"
        for content in contents:
            previous = compute_record_hash(previous, content)
            hashes.append(previous)

        self.assertTrue(verify_chain(contents, hashes).is_valid)
        result = verify_chain([{"a": 1}, {"a": 20}, {"a": 3}], hashes)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.first_invalid_index, 1)
        self.assertFalse(verify_chain(contents, hashes[:2]).is_valid)

    def test_stored_chain_is_linked(self):
        records = self._write_records()
        self.assertEqual(records[0].previous_hash, "0")
        self.assertEqual(records[1].previous_hash, records[0].hash)
        self.assertEqual([record.sequence for record in records], [1, 2, 3])

        result = verify_stored_chain()
        self.assertTrue(result.is_valid)
        self.assertEqual(result.checked, 3)

    def test_stored_chain_detects_modified_record(self):
        records = self._write_records()
        AuditRecord.objects.filter(pk=records[1].pk).update(new_data={"amount": "999.00"})

        result = verify_stored_chain()
        self.assertFalse(result.is_valid)
        self.assertEqual(result.first_invalid_index, 1)

    def test_verify_audit_chain_command(self):
        records = self._write_records(2)
        out = StringIO()
        call_command("verify_audit_chain", stdout=out)
        self.assertIn("checked: 2", out.getvalue())

        AuditRecord.objects.filter(pk=records[0].pk).update(actor="jemand")
        with self.assertRaises(CommandError):
            call_command("verify_audit_chain", stdout=StringIO())


class MonthlyInvoiceCommandTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.unit = create_unit(self.property)
        self.tenant = create_tenant(self.unit)
        create_tenant(None, last_name="Ohne Einheit")
        create_tenant(create_unit(self.property, "2"), last_name="Ausgezogen", is_active=False)

    def test_generates_invoice_lines_and_soll_entry(self):
        out = StringIO()
        call_command("generate_monthly_invoices", month="2026-01", stdout=out)

        invoice = MonthlyInvoice.objects.get()
        self.assertIn("1 Vorschreibungen für 01.2026 erstellt.", out.getvalue())
        self.assertEqual(invoice.tenant, self.tenant)
        self.assertEqual(invoice.gross_amount, Decimal("400.00"))
        self.assertEqual(invoice.due_date, date(2026, 1, 5))
        self.assertEqual(
            sorted(InvoiceLine.objects.filter(invoice=invoice).values_list("line_type", "amount")),
            [("bk", Decimal("55.00")), ("hk", Decimal("15.00")), ("hmz", Decimal("330.00"))],
        )
        soll = LedgerEntry.objects.get(invoice=invoice)
        self.assertEqual(soll.entry_type, LedgerEntry.EntryType.SOLL)
        self.assertEqual(soll.booking_date, date(2026, 1, 1))

    def test_second_run_is_idempotent(self):
        call_command("generate_monthly_invoices", month="2026-01", stdout=StringIO())
        out = StringIO()
        call_command("generate_monthly_invoices", month="2026-01", stdout=out)

        self.assertEqual(MonthlyInvoice.objects.count(), 1)
        self.assertEqual(LedgerEntry.objects.count(), 1)
        self.assertIn("skipped_existing: 1", out.getvalue())

    def test_locked_month_is_skipped(self):
        lock_period(self.property.organization, 2026, 1)
        out = StringIO()
        call_command("generate_monthly_invoices", month="2026-01", stdout=out)

        self.assertFalse(MonthlyInvoice.objects.exists())
        self.assertIn("skipped_locked: 1", out.getvalue())

    def test_invalid_month(self):
        with self.assertRaises(CommandError):
            call_command("generate_monthly_invoices", month="Jänner", stdout=StringIO())


class ApiViewTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.tenant = create_tenant(create_unit(self.property))
        self.december = create_invoice(self.tenant, 2025, 12)
        self.january = create_invoice(self.tenant, 2026, 1)

    def _post(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type="application/json")

    def test_payment_create_allocates(self):
        response = self._post(
            reverse("payment_create"),
            {"tenantId": self.tenant.pk, "amount": "500.00", "bookingDate": "2026-01-10"},
        )

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["unapplied"], "0.00")
        self.assertEqual(
            [(item["invoiceId"], item["amount"]) for item in data["allocations"]],
            [(self.december.pk, "400.00"), (self.january.pk, "100.00")],
        )

    def test_unknown_tenant_is_404(self):
        response = self._post(
            reverse("payment_create"),
            {"tenantId": 987654, "amount": "10.00", "bookingDate": "2026-01-10"},
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "not_found")

    def test_invalid_amount_is_400(self):
        response = self._post(
            reverse("payment_create"),
            {"tenantId": self.tenant.pk, "amount": "zehn", "bookingDate": "2026-01-10"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "validation_error")

    def test_non_finite_amount_is_400(self):
        response = self._post(
            reverse("payment_create"),
            {"tenantId": self.tenant.pk, "amount": "NaN", "bookingDate": "2026-01-10"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "validation_error")
        self.assertFalse(Payment.objects.exists())

    def test_locked_period_is_409(self):
        lock_period(self.property.organization, 2026, 1)
        response = self._post(
            reverse("payment_create"),
            {"tenantId": self.tenant.pk, "amount": "100.00", "bookingDate": "2026-01-10"},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "period_locked")
        self.assertFalse(Payment.objects.exists())

    def test_double_reverse_is_409(self):
        payment, _result = PaymentAllocator().post_payment(
            tenant=self.tenant,
            amount=Decimal("500.00"),
            booking_date=date(2026, 1, 10),
        )
        url = reverse("payment_reverse", args=[payment.pk])

        first = self._post(url, {"bookingDate": "2026-01-20"})
        second = self._post(url, {"bookingDate": "2026-01-21"})

        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["amount"], "500.00")
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["error"], "already_reversed")

    def test_manual_allocation_endpoint(self):
        payment = create_payment(self.tenant, Decimal("60.00"), date(2026, 1, 10))
        response = self._post(
            reverse("payment_allocate", args=[payment.pk]),
            {"mode": "waterfall", "invoiceIds": [self.january.pk]},
        )

        self.assertEqual(response.status_code, 200)
        allocation = response.json()["allocations"][0]
        self.assertEqual(allocation["operatingCosts"], "55.00")
        self.assertEqual(allocation["heating"], "5.00")
        self.assertEqual(PaymentAllocation.objects.get(payment=payment).source, PaymentAllocation.Source.MANUAL)

    def test_tenant_saldo(self):
        PaymentAllocator().post_payment(tenant=self.tenant, amount=Decimal("120.00"), booking_date=date(2026, 1, 10))
        response = self.client.get(reverse("tenant_saldo", args=[self.tenant.pk]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["saldo"], "-120.00")
        self.assertEqual(response.json()["entries"][0]["type"], "ist")

    def test_job_create_and_detail(self):
        response = self._post(reverse("job_create"), {"jobType": "dunning_run", "payload": {"today": "2026-03-01"}})
        self.assertEqual(response.status_code, 201)
        job_id = response.json()["id"]
        self.assertEqual(response.json()["jobType"], "dunning_run")

        detail = self.client.get(reverse("job_detail", args=[job_id]))
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["status"], "pending")
        self.assertEqual(detail.json()["payload"], {"today": "2026-03-01"})

    def test_unknown_job_type_is_400(self):
        response = self._post(reverse("job_create"), {"jobType": "kaffee_kochen"})
        self.assertEqual(response.status_code, 400)

    def test_exhausted_limiter_returns_503(self):
        limiter = ConcurrencyLimiter(1)
        view = PaymentCreateView.as_view(limiter=limiter)
        request = RequestFactory().post(
            "/api/payments/",
            data=json.dumps({"tenantId": self.tenant.pk, "amount": "10.00", "bookingDate": "2026-01-10"}),
            content_type="application/json",
        )

        with limiter.slot():
            response = view(request)

        self.assertEqual(response.status_code, 503)
        self.assertEqual(limiter.stats().rejected, 1)
        self.assertEqual(limiter.stats().active, 0)
        self.assertFalse(Payment.objects.exists())

    def test_limiter_slot_is_released_after_error(self):
        limiter = ConcurrencyLimiter(1)
        with self.assertRaises(ValueError):
            with limiter.slot():
                raise ValueError("boom")
        with limiter.slot():
            with self.assertRaises(CapacityExceeded):
                with limiter.slot():
                    pass
