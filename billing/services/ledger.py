from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Protocol

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..exceptions import AlreadyReversedError, NotFoundError, ValidationError
from ..models import LedgerEntry, MonthlyInvoice, Payment, Tenant
from .allocation import PaymentAllocator
from .audit import record_audit
from .money import ZERO, quantize_cent
from .period_locks import assert_date_open, organization_id_for_invoice, organization_id_for_tenant

logger = logging.getLogger(__name__)

DEBIT_TYPES = frozenset(LedgerEntry.DEBIT_TYPES)


class LedgerLike(Protocol):
    entry_type: str
    amount: Decimal


@dataclass(frozen=True, slots=True)
class LedgerLine:
    entry_type: str
    amount: Decimal

    def __post_init__(self):
        if self.entry_type not in LedgerEntry.EntryType.values:
            raise ValidationError(f"Unbekannter Buchungstyp: {self.entry_type}")
        object.__setattr__(self, "amount", quantize_cent(self.amount))


@dataclass(frozen=True, slots=True)
class StatementRow:
    entry: LedgerEntry
    signed_amount: Decimal
    saldo: Decimal


def signed_amount(entry_type: str, amount: Decimal) -> Decimal:
    amount = quantize_cent(amount)
    if entry_type in DEBIT_TYPES:
        return amount
    if entry_type == LedgerEntry.EntryType.IST:
        return -amount
    if entry_type == LedgerEntry.EntryType.STORNO:
        # Storno hebt einen Zahlungseingang auf, die Forderung lebt wieder auf
        return amount
    raise ValidationError(f"Unbekannter Buchungstyp: {entry_type}")


def compute_saldo(entries: Iterable[LedgerLike]) -> Decimal:
    """Saldo = Soll + Zinsen + Gebühren - Ist + Storno. Positiv heißt Rückstand."""
    return quantize_cent(sum((signed_amount(entry.entry_type, entry.amount) for entry in entries), ZERO))


class LedgerService:
    def __init__(self, *, actor: str = "system"):
        self.actor = actor

    def saldo(self, tenant: Tenant) -> Decimal:
        return compute_saldo(LedgerEntry.objects.filter(tenant=tenant).only("entry_type", "amount"))

    def statement(self, tenant: Tenant) -> list[StatementRow]:
        rows: list[StatementRow] = []
        running = ZERO
        for entry in LedgerEntry.objects.filter(tenant=tenant).order_by("booking_date", "pk"):
            amount = signed_amount(entry.entry_type, entry.amount)
            running = quantize_cent(running + amount)
            rows.append(StatementRow(entry=entry, signed_amount=amount, saldo=running))
        return rows

    @transaction.atomic
    def post_entry(
        self,
        *,
        tenant: Tenant,
        entry_type: str,
        amount: Decimal | str,
        booking_date: date,
        text: str = "",
        invoice: MonthlyInvoice | None = None,
        payment: Payment | None = None,
        run_id: str = "",
    ) -> LedgerEntry:
        if entry_type not in LedgerEntry.EntryType.values:
            raise ValidationError(f"Unbekannter Buchungstyp: {entry_type}")
        if entry_type == LedgerEntry.EntryType.STORNO:
            raise ValidationError("Stornobuchungen entstehen nur über die Stornierung einer Zahlung.")
        amount = quantize_cent(amount)
        if entry_type == LedgerEntry.EntryType.SOLL:
            # Guthaben aus Abrechnungen werden als negatives Soll gebucht
            if amount == ZERO:
                raise ValidationError("Sollbuchung mit Betrag 0 ist nicht zulässig.")
        elif amount <= ZERO:
            raise ValidationError(f"Betrag muss positiv sein: {amount}")

        if invoice is not None:
            organization_id = organization_id_for_invoice(invoice)
        else:
            organization_id = organization_id_for_tenant(tenant)
        assert_date_open(organization_id, booking_date)

        entry = LedgerEntry.objects.create(
            tenant=tenant,
            invoice=invoice,
            payment=payment,
            entry_type=entry_type,
            amount=amount,
            booking_date=booking_date,
            text=text[:255],
        )
        record_audit(
            table_name="ledger_entries",
            record_id=entry.pk,
            action="create",
            new_data={
                "tenantId": tenant.pk,
                "entryType": entry_type,
                "amount": amount,
                "bookingDate": booking_date,
                "invoiceId": invoice.pk if invoice else None,
            },
            actor=self.actor,
            run_id=run_id,
        )
        return entry

    @transaction.atomic
    def reverse(self, payment: Payment, *, booking_date: date | None = None, reason: str = "") -> LedgerEntry:
        try:
            payment = Payment.objects.select_for_update().select_related("tenant").get(pk=payment.pk)
        except Payment.DoesNotExist as exc:
            raise NotFoundError(f"Zahlung {payment.pk} nicht gefunden.") from exc

        ist_entry = (
            LedgerEntry.objects.filter(payment=payment, entry_type=LedgerEntry.EntryType.IST).order_by("pk").first()
        )
        if ist_entry is None:
            raise NotFoundError(f"Keine Ist-Buchung zu Zahlung {payment.pk}.", payment_id=payment.pk)
        if payment.is_reversed or LedgerEntry.objects.filter(
            payment=payment, entry_type=LedgerEntry.EntryType.STORNO
        ).exists():
            raise AlreadyReversedError(f"Zahlung {payment.pk} wurde bereits storniert.", payment_id=payment.pk)

        booking_date = booking_date or timezone.localdate()
        assert_date_open(organization_id_for_tenant(payment.tenant), booking_date)

        released = PaymentAllocator(actor=self.actor).release_allocations(payment)
        try:
            with transaction.atomic():
                storno = LedgerEntry.objects.create(
                    tenant=payment.tenant,
                    payment=payment,
                    entry_type=LedgerEntry.EntryType.STORNO,
                    amount=ist_entry.amount,
                    booking_date=booking_date,
                    text=(reason or f"Storno {ist_entry.text}")[:255],
                    reversal_of=ist_entry,
                )
        except IntegrityError as exc:
            raise AlreadyReversedError(f"Zahlung {payment.pk} wurde bereits storniert.", payment_id=payment.pk) from exc

        payment.reversed_at = timezone.now()
        payment.save(update_fields=["reversed_at"])
        record_audit(
            table_name="ledger_entries",
            record_id=storno.pk,
            action="storno",
            old_data={"istEntryId": ist_entry.pk, "amount": ist_entry.amount},
            new_data={
                "paymentId": payment.pk,
                "amount": storno.amount,
                "bookingDate": booking_date,
                "releasedInvoiceIds": released,
            },
            actor=self.actor,
        )
        logger.info("Zahlung %s storniert, %s Vorschreibung(en) wieder offen.", payment.pk, len(released))
        return storno
