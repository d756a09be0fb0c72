from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from django.db import transaction
from django.db.models import DecimalField, F, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from ..exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from ..models import LedgerEntry, MonthlyInvoice, Payment, PaymentAllocation, Tenant, Unit
from .audit import record_audit
from .money import ZERO, quantize_cent, vat_from_gross
from .period_locks import assert_date_open, assert_period_open, is_period_locked, organization_id_for_tenant

logger = logging.getLogger(__name__)

# Reihenfolge der Tilgung innerhalb einer Vorschreibung: BK -> HK -> HMZ
CATEGORY_ORDER = ("operating_costs", "heating", "rent")
MODE_FIFO = "fifo"
MODE_WATERFALL = "waterfall"
OVERPAYMENT_NOTE_PREFIX = "Überzahlung:"


@dataclass(frozen=True, slots=True)
class CategoryDue:
    category: str
    gross: Decimal
    tax_rate: Decimal

    def __post_init__(self):
        if self.category not in CATEGORY_ORDER:
            raise ValidationError(f"Unbekannte Kategorie: {self.category}")
        object.__setattr__(self, "gross", quantize_cent(self.gross))
        object.__setattr__(self, "tax_rate", Decimal(self.tax_rate))
        if self.gross < ZERO:
            raise ValidationError(f"Negativer Sollbetrag für {self.category}.")


@dataclass(frozen=True, slots=True)
class InvoiceDue:
    invoice_id: int
    year: int
    month: int
    gross_amount: Decimal
    paid_amount: Decimal = ZERO
    categories: tuple[CategoryDue, ...] = ()
    category_paid: Mapping[str, Decimal] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "gross_amount", quantize_cent(self.gross_amount))
        object.__setattr__(self, "paid_amount", quantize_cent(self.paid_amount))
        object.__setattr__(self, "categories", tuple(self.categories))
        if not 1 <= int(self.month) <= 12:
            raise ValidationError(f"Ungültiger Monat {self.month} für Vorschreibung {self.invoice_id}.")
        if self.gross_amount < ZERO or self.paid_amount < ZERO:
            raise ValidationError(f"Negative Beträge in Vorschreibung {self.invoice_id}.")

    @property
    def due(self) -> Decimal:
        return max(quantize_cent(self.gross_amount - self.paid_amount), ZERO)

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (int(self.year), int(self.month), int(self.invoice_id))


@dataclass(frozen=True, slots=True)
class CategorySplit:
    category: str
    applied: Decimal
    vat: Decimal


@dataclass(frozen=True, slots=True)
class AllocationLine:
    invoice_id: int
    applied_amount: Decimal
    splits: tuple[CategorySplit, ...] = ()

    def amount_for(self, category: str) -> Decimal:
        return quantize_cent(sum((split.applied for split in self.splits if split.category == category), ZERO))

    @property
    def vat_amount(self) -> Decimal:
        return quantize_cent(sum((split.vat for split in self.splits), ZERO))


@dataclass(frozen=True, slots=True)
class AllocationPlan:
    amount: Decimal
    allocations: tuple[AllocationLine, ...]
    unapplied: Decimal

    @property
    def total_applied(self) -> Decimal:
        return quantize_cent(sum((line.applied_amount for line in self.allocations), ZERO))


def _validated_amount(amount: Decimal | str | int) -> Decimal:
    amount = quantize_cent(amount)
    if amount < ZERO:
        raise ValidationError(f"Zahlungsbetrag darf nicht negativ sein: {amount}")
    return amount


def split_by_category(applied: Decimal, invoice: InvoiceDue) -> tuple[CategorySplit, ...]:
    """Teilt einen Zahlbetrag nach BK -> HK -> HMZ auf und leitet die USt je Kategorie ab."""
    remaining = quantize_cent(applied)
    by_category = {due.category: due for due in invoice.categories}
    splits: list[CategorySplit] = []

    for category in CATEGORY_ORDER:
        due = by_category.get(category)
        if due is None or remaining <= ZERO:
            continue
        already_paid = quantize_cent(invoice.category_paid.get(category, ZERO))
        open_amount = max(quantize_cent(due.gross - already_paid), ZERO)
        take = min(remaining, open_amount)
        if take <= ZERO:
            continue
        splits.append(CategorySplit(category=category, applied=take, vat=vat_from_gross(take, due.tax_rate)))
        remaining = quantize_cent(remaining - take)

    if remaining > ZERO:
        # Kategorien decken das Brutto nicht vollständig ab: Rest geht auf den HMZ
        rent = by_category.get("rent")
        rate = rent.tax_rate if rent else ZERO
        merged = [split for split in splits if split.category != "rent"]
        previous_rent = next((split.applied for split in splits if split.category == "rent"), ZERO)
        rent_total = quantize_cent(previous_rent + remaining)
        merged.append(CategorySplit(category="rent", applied=rent_total, vat=vat_from_gross(rent_total, rate)))
        splits = merged

    return tuple(splits)


def allocate_waterfall(amount: Decimal | str | int, invoice: InvoiceDue) -> AllocationPlan:
    amount = _validated_amount(amount)
    applied = min(amount, invoice.due)
    allocations: tuple[AllocationLine, ...] = ()
    if applied > ZERO:
        allocations = (
            AllocationLine(
                invoice_id=invoice.invoice_id,
                applied_amount=applied,
                splits=split_by_category(applied, invoice),
            ),
        )
    return AllocationPlan(amount=amount, allocations=allocations, unapplied=quantize_cent(amount - applied))


def plan_fifo(amount: Decimal | str | int, invoices: Iterable[InvoiceDue]) -> AllocationPlan:
    amount = _validated_amount(amount)
    remaining = amount
    allocations: list[AllocationLine] = []

    for invoice in sorted(invoices, key=lambda item: item.sort_key):
        if remaining <= ZERO:
            break
        apply = min(remaining, invoice.due)
        if apply <= ZERO:
            continue
        allocations.append(
            AllocationLine(
                invoice_id=invoice.invoice_id,
                applied_amount=apply,
                splits=split_by_category(apply, invoice),
            )
        )
        remaining = quantize_cent(remaining - apply)

    return AllocationPlan(amount=amount, allocations=tuple(allocations), unapplied=remaining)


def allocate(amount: Decimal | str | int, invoices: Sequence[InvoiceDue], mode: str = MODE_FIFO) -> AllocationPlan:
    if mode == MODE_FIFO:
        return plan_fifo(amount, invoices)
    if mode == MODE_WATERFALL:
        if len(invoices) != 1:
            raise ValidationError("Kategorie-Aufteilung benötigt genau eine Vorschreibung.")
        return allocate_waterfall(amount, invoices[0])
    raise ValidationError(f"Unbekannter Zuordnungsmodus: {mode}")


@dataclass(slots=True)
class AllocationResult:
    payment_id: int
    plan: AllocationPlan
    touched_invoice_ids: list[int]
    changed: bool


def _allocation_signature(rows: Iterable[tuple[int, Decimal, Decimal, Decimal, Decimal]]) -> list[tuple]:
    return sorted((int(row[0]), *(quantize_cent(value) for value in row[1:])) for row in rows)


class PaymentAllocator:
    """Ordnet Zahlungen Monatsvorschreibungen zu und hält paid_amount/Status konsistent."""

    def __init__(self, *, actor: str = "system"):
        self.actor = actor

    def invoice_dues(
        self,
        invoices: Sequence[MonthlyInvoice],
        *,
        exclude_payment_id: int | None = None,
    ) -> list[InvoiceDue]:
        allocations = PaymentAllocation.objects.filter(invoice_id__in=[invoice.pk for invoice in invoices])
        if exclude_payment_id is not None:
            allocations = allocations.exclude(payment_id=exclude_payment_id)
        zero = Value(ZERO, output_field=DecimalField(max_digits=12, decimal_places=2))
        sums = {
            row["invoice_id"]: row
            for row in allocations.values("invoice_id").annotate(
                applied=Coalesce(Sum("applied_amount"), zero),
                operating_costs=Coalesce(Sum("operating_costs_amount"), zero),
                heating=Coalesce(Sum("heating_amount"), zero),
                rent=Coalesce(Sum("rent_amount"), zero),
            )
        }

        dues: list[InvoiceDue] = []
        for invoice in invoices:
            row = sums.get(invoice.pk, {})
            gross_by_category = invoice.category_gross()
            rates = {
                "operating_costs": invoice.operating_costs_tax_rate,
                "heating": invoice.heating_tax_rate,
                "rent": invoice.rent_tax_rate,
            }
            dues.append(
                InvoiceDue(
                    invoice_id=invoice.pk,
                    year=invoice.year,
                    month=invoice.month,
                    gross_amount=invoice.gross_amount,
                    paid_amount=row.get("applied", ZERO),
                    categories=tuple(
                        CategoryDue(category=category, gross=gross_by_category[category], tax_rate=rates[category])
                        for category in CATEGORY_ORDER
                        if gross_by_category[category] > ZERO
                    ),
                    category_paid={category: row.get(category, ZERO) for category in CATEGORY_ORDER},
                )
            )
        return dues

    @staticmethod
    def _organization_ids(invoices: Iterable[MonthlyInvoice]) -> dict[int, int]:
        unit_ids = {invoice.unit_id for invoice in invoices}
        return dict(Unit.objects.filter(pk__in=unit_ids).values_list("pk", "property__organization_id"))

    @transaction.atomic
    def allocate_payment(
        self,
        payment: Payment,
        *,
        mode: str = MODE_FIFO,
        source: str = PaymentAllocation.Source.FIFO,
        invoice_ids: Sequence[int] | None = None,
        run_id: str = "",
    ) -> AllocationResult:
        try:
            payment = Payment.objects.select_for_update().get(pk=payment.pk)
        except Payment.DoesNotExist as exc:
            raise NotFoundError(f"Zahlung {payment.pk} nicht gefunden.") from exc
        if payment.is_reversed:
            raise ValidationError(f"Zahlung {payment.pk} ist storniert und kann nicht zugeordnet werden.")
        if source not in PaymentAllocation.Source.values:
            raise ValidationError(f"Unbekannte Quelle: {source}")

        previous = list(payment.allocations.all())
        previous_invoice_ids = {allocation.invoice_id for allocation in previous}

        candidates = MonthlyInvoice.objects.select_for_update().filter(tenant_id=payment.tenant_id)
        if invoice_ids is not None:
            candidates = candidates.filter(pk__in=list(invoice_ids))
            found = set(candidates.values_list("pk", flat=True))
            missing = sorted(set(invoice_ids) - found)
            if missing:
                raise NotFoundError(f"Vorschreibung(en) {missing} nicht gefunden.", invoice_ids=missing)
        else:
            # offene Posten plus alles, was diese Zahlung bereits bedient hat
            candidates = candidates.filter(
                Q(status__in=MonthlyInvoice.OPEN_STATUSES) | Q(pk__in=previous_invoice_ids)
            )
        invoices = {invoice.pk: invoice for invoice in candidates.order_by("year", "month", "pk")}
        missing_previous = previous_invoice_ids - set(invoices)
        if missing_previous:
            for invoice in MonthlyInvoice.objects.select_for_update().filter(pk__in=missing_previous):
                invoices[invoice.pk] = invoice

        organization_ids = self._organization_ids(invoices.values())
        for invoice_id in previous_invoice_ids:
            invoice = invoices[invoice_id]
            assert_period_open(organization_ids.get(invoice.unit_id), invoice.year, invoice.month)

        allocatable = []
        for invoice in invoices.values():
            if invoice.status == MonthlyInvoice.Status.STORNIERT:
                continue
            if invoice.pk not in previous_invoice_ids and is_period_locked(
                organization_ids.get(invoice.unit_id), invoice.year, invoice.month
            ):
                logger.info("Vorschreibung %s liegt in gesperrter Periode, übersprungen.", invoice.pk)
                continue
            allocatable.append(invoice)

        dues = self.invoice_dues(allocatable, exclude_payment_id=payment.pk)
        plan = allocate(payment.amount, dues, mode)

        old_signature = _allocation_signature(
            (a.invoice_id, a.applied_amount, a.operating_costs_amount, a.heating_amount, a.rent_amount)
            for a in previous
        )
        new_signature = _allocation_signature(
            (
                line.invoice_id,
                line.applied_amount,
                line.amount_for("operating_costs"),
                line.amount_for("heating"),
                line.amount_for("rent"),
            )
            for line in plan.allocations
        )
        changed = old_signature != new_signature or quantize_cent(payment.unapplied_amount) != plan.unapplied

        if changed:
            # nur Zuordnungen dieser Zahlung ersetzen
            PaymentAllocation.objects.filter(payment_id=payment.pk).delete()
            PaymentAllocation.objects.bulk_create(
                [
                    PaymentAllocation(
                        payment=payment,
                        invoice_id=line.invoice_id,
                        applied_amount=line.applied_amount,
                        operating_costs_amount=line.amount_for("operating_costs"),
                        heating_amount=line.amount_for("heating"),
                        rent_amount=line.amount_for("rent"),
                        vat_amount=line.vat_amount,
                        source=source,
                    )
                    for line in plan.allocations
                ]
            )
            payment.unapplied_amount = plan.unapplied
            payment.notes = self._with_overpayment_note(payment.notes, plan.unapplied)
            payment.save(update_fields=["unapplied_amount", "notes"])

        touched_ids = sorted(previous_invoice_ids | {line.invoice_id for line in plan.allocations})
        for invoice_id in touched_ids:
            self.sync_invoice(invoices[invoice_id])

        if changed:
            record_audit(
                table_name="payment_allocations",
                record_id=payment.pk,
                action="allocate",
                old_data={
                    "allocations": [
                        {"invoiceId": a.invoice_id, "amount": a.applied_amount, "source": a.source} for a in previous
                    ],
                },
                new_data={
                    "mode": mode,
                    "source": source,
                    "allocations": [
                        {"invoiceId": line.invoice_id, "amount": line.applied_amount} for line in plan.allocations
                    ],
                    "unapplied": plan.unapplied,
                },
                actor=self.actor,
                run_id=run_id,
            )

        return AllocationResult(
            payment_id=payment.pk,
            plan=plan,
            touched_invoice_ids=touched_ids,
            changed=changed,
        )

    @transaction.atomic
    def release_allocations(self, payment: Payment, *, run_id: str = "") -> list[int]:
        allocations = list(PaymentAllocation.objects.filter(payment_id=payment.pk))
        invoice_ids = sorted({allocation.invoice_id for allocation in allocations})
        invoices = list(MonthlyInvoice.objects.select_for_update().filter(pk__in=invoice_ids))
        organization_ids = self._organization_ids(invoices)
        for invoice in invoices:
            assert_period_open(organization_ids.get(invoice.unit_id), invoice.year, invoice.month)

        PaymentAllocation.objects.filter(payment_id=payment.pk).delete()
        Payment.objects.filter(pk=payment.pk).update(unapplied_amount=ZERO)
        for invoice in invoices:
            self.sync_invoice(invoice)

        if allocations:
            record_audit(
                table_name="payment_allocations",
                record_id=payment.pk,
                action="release",
                old_data={
                    "allocations": [{"invoiceId": a.invoice_id, "amount": a.applied_amount} for a in allocations],
                },
                new_data={"allocations": []},
                actor=self.actor,
                run_id=run_id,
            )
        return invoice_ids

    def sync_invoice(self, invoice: MonthlyInvoice) -> bool:
        """Setzt paid_amount/Status aus der aktuellen Summe der Zuordnungen (optimistisch versioniert)."""
        paid = quantize_cent(
            PaymentAllocation.objects.filter(invoice_id=invoice.pk).aggregate(total=Sum("applied_amount"))["total"]
        )
        if invoice.status == MonthlyInvoice.Status.STORNIERT:
            status = invoice.status
        else:
            status = MonthlyInvoice.status_for(paid_amount=paid, gross_amount=invoice.gross_amount)
        if quantize_cent(invoice.paid_amount) == paid and invoice.status == status:
            return False

        updated = MonthlyInvoice.objects.filter(pk=invoice.pk, version=invoice.version).update(
            paid_amount=paid,
            status=status,
            version=F("version") + 1,
            updated_at=timezone.now(),
        )
        if updated != 1:
            raise ConcurrencyConflict(
                f"Vorschreibung {invoice.pk} wurde zwischenzeitlich geändert.",
                invoice_id=invoice.pk,
                expected_version=invoice.version,
            )
        invoice.paid_amount = paid
        invoice.status = status
        invoice.version += 1
        return True

    @staticmethod
    def _with_overpayment_note(notes: str, unapplied: Decimal) -> str:
        lines = [line for line in (notes or "").splitlines() if not line.startswith(OVERPAYMENT_NOTE_PREFIX)]
        if unapplied > ZERO:
            lines.append(f"{OVERPAYMENT_NOTE_PREFIX} {unapplied} EUR nicht zugeordnet")
        return "\n".join(lines)

    @transaction.atomic
    def post_payment(
        self,
        *,
        tenant: Tenant,
        amount: Decimal | str,
        booking_date: date,
        reference: str = "",
        payment_type: str = Payment.PaymentType.UEBERWEISUNG,
    ) -> tuple[Payment, AllocationResult]:
        amount = quantize_cent(amount)
        if amount <= ZERO:
            raise ValidationError(f"Zahlungsbetrag muss positiv sein: {amount}")
        assert_date_open(organization_id_for_tenant(tenant), booking_date)

        payment = Payment.objects.create(
            tenant=tenant,
            amount=amount,
            booking_date=booking_date,
            reference=reference,
            payment_type=payment_type,
        )
        LedgerEntry.objects.create(
            tenant=tenant,
            payment=payment,
            entry_type=LedgerEntry.EntryType.IST,
            amount=amount,
            booking_date=booking_date,
            text=reference or f"Zahlungseingang {booking_date.strftime('%d.%m.%Y')}",
        )
        record_audit(
            table_name="payments",
            record_id=payment.pk,
            action="create",
            new_data={"tenantId": tenant.pk, "amount": amount, "bookingDate": booking_date},
            actor=self.actor,
        )
        result = self.allocate_payment(payment)
        return payment, result
