from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from ..exceptions import ValidationError
from ..models import DunningCase, LedgerEntry, MonthlyInvoice, Organization
from .ledger import LedgerService
from .money import ZERO, quantize_cent, to_decimal

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 14
DAYS_PER_YEAR = Decimal("365")


@dataclass(frozen=True, slots=True)
class DunningLevel:
    level: int
    label: str
    min_days: int
    fee: Decimal
    charges_interest: bool


DUNNING_LEVELS = (
    DunningLevel(0, "Offen", 0, Decimal("0.00"), False),
    DunningLevel(1, "Zahlungserinnerung", 14, Decimal("0.00"), False),
    DunningLevel(2, "1. Mahnung", 30, Decimal("5.00"), True),
    DunningLevel(3, "2. Mahnung", 45, Decimal("10.00"), True),
)


def default_interest_rate() -> Decimal:
    return to_decimal(getattr(settings, "BILLING_DUNNING_INTEREST_RATE", "0.04"))


def get_level(days_overdue: int) -> DunningLevel:
    current = DUNNING_LEVELS[0]
    for level in DUNNING_LEVELS:
        if days_overdue >= level.min_days:
            current = level
    return current


def level_by_number(level: int) -> DunningLevel:
    for candidate in DUNNING_LEVELS:
        if candidate.level == level:
            return candidate
    raise ValidationError(f"Unbekannte Mahnstufe: {level}")


def fee_for_level(level: int) -> Decimal:
    return level_by_number(level).fee


def calculate_interest(amount: Decimal | str | int, days_overdue: int, rate: Decimal | None = None) -> Decimal:
    """Gesetzliche Verzugszinsen (4 % p. a.), innerhalb der Schonfrist keine Zinsen."""
    if days_overdue <= GRACE_PERIOD_DAYS:
        return ZERO
    principal = quantize_cent(amount)
    if principal <= ZERO:
        return ZERO
    rate = default_interest_rate() if rate is None else to_decimal(rate)
    return quantize_cent(principal * rate * Decimal(days_overdue) / DAYS_PER_YEAR)


def total_due(principal: Decimal, level: int, days_overdue: int) -> Decimal:
    interest = calculate_interest(principal, days_overdue) if level_by_number(level).charges_interest else ZERO
    return quantize_cent(quantize_cent(principal) + fee_for_level(level) + interest)


@dataclass(slots=True)
class DunningRunSummary:
    run_date: date
    processed: int = 0
    escalated: int = 0
    closed: int = 0
    failed: int = 0
    fees_posted: Decimal = ZERO
    interest_posted: Decimal = ZERO
    errors: list[dict[str, object]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "run_date": self.run_date.isoformat(),
            "processed": self.processed,
            "escalated": self.escalated,
            "closed": self.closed,
            "failed": self.failed,
            "fees_posted": str(self.fees_posted),
            "interest_posted": str(self.interest_posted),
            "errors": self.errors,
        }


class DunningService:
    def __init__(self, *, actor: str = "dunning"):
        self.actor = actor
        self.ledger = LedgerService(actor=actor)

    def run(self, *, organization: Organization | None = None, today: date | None = None) -> DunningRunSummary:
        today = today or timezone.localdate()
        summary = DunningRunSummary(run_date=today)

        invoices = MonthlyInvoice.objects.select_related("tenant", "unit", "unit__property").filter(
            status__in=MonthlyInvoice.OPEN_STATUSES,
            due_date__lt=today,
        )
        if organization is not None:
            invoices = invoices.filter(unit__property__organization=organization)

        for invoice in invoices.order_by("due_date", "pk"):
            try:
                with transaction.atomic():
                    escalated, fee_delta, interest_delta = self.process_invoice(invoice, today=today)
            except Exception as exc:
                logger.exception("Mahnlauf: Vorschreibung %s fehlgeschlagen.", invoice.pk)
                summary.failed += 1
                summary.errors.append({"invoice_id": invoice.pk, "error": str(exc)})
                continue
            summary.processed += 1
            summary.escalated += int(escalated)
            summary.fees_posted = quantize_cent(summary.fees_posted + fee_delta)
            summary.interest_posted = quantize_cent(summary.interest_posted + interest_delta)

        summary.closed = self.close_paid_cases(organization=organization)
        logger.info(
            "Mahnlauf %s: %s geprüft, %s eskaliert, %s geschlossen, %s Fehler.",
            today.isoformat(),
            summary.processed,
            summary.escalated,
            summary.closed,
            summary.failed,
        )
        return summary

    def process_invoice(self, invoice: MonthlyInvoice, *, today: date) -> tuple[bool, Decimal, Decimal]:
        if invoice.tenant_id is None:
            raise ValidationError(f"Vorschreibung {invoice.pk} hat keinen Mieter.", invoice_id=invoice.pk)

        days_overdue = max((today - invoice.due_date).days, 0)
        case, _created = DunningCase.objects.select_for_update().get_or_create(invoice=invoice)
        nominal = get_level(days_overdue)
        # Mahnstufen werden nie zurückgestuft
        new_level = level_by_number(max(case.level, nominal.level))
        escalated = new_level.level > case.level

        fee_target = new_level.fee
        interest_target = ZERO
        if new_level.charges_interest:
            interest_target = calculate_interest(invoice.outstanding_amount, days_overdue)

        fee_delta = self._sync_charge(
            invoice=invoice,
            entry_type=LedgerEntry.EntryType.FEE,
            target=fee_target,
            today=today,
            text=f"Mahngebühr {new_level.label} {invoice.month:02d}.{invoice.year}",
        )
        interest_delta = self._sync_charge(
            invoice=invoice,
            entry_type=LedgerEntry.EntryType.INTEREST,
            target=interest_target,
            today=today,
            text=f"Verzugszinsen {invoice.month:02d}.{invoice.year} ({days_overdue} Tage)",
        )

        case.level = new_level.level
        case.days_overdue = days_overdue
        case.fee = max(case.fee, fee_target)
        case.interest = max(case.interest, interest_target)
        case.last_checked_on = today
        case.closed_at = None
        case.save()
        return escalated, fee_delta, interest_delta

    def _sync_charge(
        self,
        *,
        invoice: MonthlyInvoice,
        entry_type: str,
        target: Decimal,
        today: date,
        text: str,
    ) -> Decimal:
        posted = quantize_cent(
            LedgerEntry.objects.filter(invoice=invoice, entry_type=entry_type).aggregate(total=Sum("amount"))["total"]
        )
        delta = quantize_cent(target - posted)
        if delta <= ZERO:
            return ZERO
        self.ledger.post_entry(
            tenant=invoice.tenant,
            invoice=invoice,
            entry_type=entry_type,
            amount=delta,
            booking_date=today,
            text=text,
        )
        return delta

    def close_paid_cases(self, *, organization: Organization | None = None) -> int:
        cases = DunningCase.objects.filter(
            closed_at__isnull=True,
            invoice__status__in=[MonthlyInvoice.Status.BEZAHLT, MonthlyInvoice.Status.STORNIERT],
        )
        if organization is not None:
            cases = cases.filter(invoice__unit__property__organization=organization)
        return cases.update(closed_at=timezone.now(), updated_at=timezone.now())
