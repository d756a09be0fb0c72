from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Iterator

from django.db.models import DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce

from ..models import InvoiceLine, MonthlyInvoice, Payment, PaymentAllocation
from .bulk_upsert import InvoiceLineRow
from .money import TOLERANCE, ZERO, exceeds_tolerance, quantize_cent


@dataclass(frozen=True, slots=True)
class Variance:
    key: str
    expected: Decimal
    actual: Decimal | None

    @property
    def difference(self) -> Decimal:
        return quantize_cent(self.expected - (self.actual if self.actual is not None else ZERO))

    def as_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "expected": str(self.expected),
            "actual": None if self.actual is None else str(self.actual),
            "difference": str(self.difference),
        }


@dataclass(slots=True)
class VarianceReport:
    checked: int = 0
    variances: list[Variance] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.variances


def _zero_decimal() -> Value:
    return Value(ZERO, output_field=DecimalField(max_digits=12, decimal_places=2))


def line_variances(baseline: Iterable[InvoiceLineRow], *, tolerance: Decimal = TOLERANCE) -> VarianceReport:
    """Vergleicht einen Trockenlauf (Soll-Zeilen) mit den gespeicherten Positionen."""
    expected = {row.key: row for row in baseline}
    report = VarianceReport(checked=len(expected))
    if not expected:
        return report

    persisted = {
        (line.invoice_id, line.unit_id, line.line_type, line.normalized_description): quantize_cent(line.amount)
        for line in InvoiceLine.objects.filter(invoice_id__in={key[0] for key in expected})
    }
    for key, row in expected.items():
        actual = persisted.get(key)
        if actual is None or exceeds_tolerance(row.amount - actual, tolerance):
            report.variances.append(
                Variance(
                    key=f"{key[0]}/{key[1] or '-'}/{key[2]}/{key[3]}",
                    expected=row.amount,
                    actual=actual,
                )
            )
    return report


def allocation_variances(
    invoices=None,
    *,
    exclude_source: str | None = None,
    tolerance: Decimal = TOLERANCE,
) -> VarianceReport:
    """paid_amount gegen Summe der Zuordnungen, optional ohne eine Quelle (z. B. 'seed')."""
    if invoices is None:
        invoices = MonthlyInvoice.objects.all()
    sources = [source for source in PaymentAllocation.Source.values if source != exclude_source]
    annotated = invoices.annotate(
        allocated=Coalesce(
            Sum("allocations__applied_amount", filter=Q(allocations__source__in=sources)),
            _zero_decimal(),
        )
    ).order_by("pk")

    report = VarianceReport()
    for invoice in annotated:
        report.checked += 1
        paid = quantize_cent(invoice.paid_amount)
        allocated = quantize_cent(invoice.allocated)
        if exceeds_tolerance(paid - allocated, tolerance):
            report.variances.append(Variance(key=f"invoice:{invoice.pk}", expected=paid, actual=allocated))
    return report


def payment_mismatches(*, tenant_id: int | None = None, batch_size: int = 500) -> Iterator[Payment]:
    """Zahlungen, bei denen Zuordnungen + Überzahlung nicht dem Betrag entsprechen.

    Der pk-Cursor liefert jede Zahlung höchstens einmal pro Lauf.
    """
    payments = Payment.objects.filter(reversed_at__isnull=True)
    if tenant_id is not None:
        payments = payments.filter(tenant_id=tenant_id)
    payments = payments.annotate(allocated=Coalesce(Sum("allocations__applied_amount"), _zero_decimal()))

    last_pk = 0
    while True:
        batch = list(payments.filter(pk__gt=last_pk).order_by("pk")[:batch_size])
        if not batch:
            return
        for payment in batch:
            booked = quantize_cent(payment.allocated) + quantize_cent(payment.unapplied_amount)
            if exceeds_tolerance(quantize_cent(payment.amount) - booked):
                yield payment
        last_pk = batch[-1].pk
