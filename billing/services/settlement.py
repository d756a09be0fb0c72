from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Sequence

from django.db import transaction
from django.utils import timezone

from ..exceptions import DeadlineExceededError, NotFoundError, ValidationError
from ..models import DistributionEntry, Expense, LedgerEntry, MonthlyInvoice, Property, Settlement, Unit
from .audit import record_audit
from .ledger import LedgerService
from .money import CENT, ZERO, quantize_cent, sum_money, to_decimal
from .period_locks import assert_date_open

logger = logging.getLogger(__name__)

DISTRIBUTION_KEYS = tuple(Settlement.DistributionKey.values)


@dataclass(frozen=True, slots=True)
class DistributionUnit:
    unit_id: int
    area: Decimal = ZERO
    mea: Decimal = ZERO
    persons: int = 0
    is_vacant: bool = False
    tenant_id: int | None = None

    def __post_init__(self):
        object.__setattr__(self, "area", to_decimal(self.area))
        object.__setattr__(self, "mea", to_decimal(self.mea))
        if self.area < 0 or self.mea < 0 or int(self.persons) < 0:
            raise ValidationError(f"Negativer Verteilungswert bei Einheit {self.unit_id}.")

    def weight_for(self, key: str) -> Decimal:
        if key == Settlement.DistributionKey.AREA:
            return self.area
        if key == Settlement.DistributionKey.MEA:
            return self.mea
        if key == Settlement.DistributionKey.PERSON:
            return Decimal(int(self.persons))
        if key == Settlement.DistributionKey.FIXED:
            return Decimal("1")
        raise ValidationError(f"Unbekannter Verteilungsschlüssel: {key}")

    @property
    def charged_to(self) -> str:
        # Leerstand trägt der Eigentümer
        if self.is_vacant or self.tenant_id is None:
            return DistributionEntry.ChargedTo.OWNER
        return DistributionEntry.ChargedTo.TENANT


@dataclass(frozen=True, slots=True)
class DistributionShare:
    unit_id: int
    tenant_id: int | None
    weight: Decimal
    share: Decimal
    charged_to: str


def distribute(total: Decimal | str | int, units: Sequence[DistributionUnit], key: str) -> list[DistributionShare]:
    """Verteilt ``total`` nach Schlüssel. Die letzte gewichtete Einheit trägt die Rundungsdifferenz."""
    if key not in DISTRIBUTION_KEYS:
        raise ValidationError(f"Unbekannter Verteilungsschlüssel: {key}")
    total = quantize_cent(total)
    if total < ZERO:
        raise ValidationError(f"Kostensumme darf nicht negativ sein: {total}")
    if not units:
        raise ValidationError("Keine Einheiten für die Verteilung vorhanden.")

    weights = [unit.weight_for(key) for unit in units]
    total_weight = sum(weights, Decimal("0"))
    if total_weight <= 0:
        raise ValidationError(f"Summe der Gewichte für Schlüssel '{key}' ist 0.")

    shares = [
        (total * weight / total_weight).quantize(CENT, rounding=ROUND_HALF_UP) if weight > 0 else ZERO
        for weight in weights
    ]
    residual_index = max(index for index, weight in enumerate(weights) if weight > 0)
    others = sum_money(share for index, share in enumerate(shares) if index != residual_index)
    shares[residual_index] = quantize_cent(total - others)

    return [
        DistributionShare(
            unit_id=unit.unit_id,
            tenant_id=unit.tenant_id,
            weight=weight,
            share=share,
            charged_to=unit.charged_to,
        )
        for unit, weight, share in zip(units, weights, shares)
    ]


@dataclass(frozen=True, slots=True)
class SettlementDeadlines:
    year: int
    deadline: date
    expires_on: date


def settlement_deadlines(year: int) -> SettlementDeadlines:
    # § 21 Abs 3 MRG: Abrechnung bis 30.06. des Folgejahres
    # § 21 Abs 4 MRG: Nachforderungen verfallen nach drei Jahren
    return SettlementDeadlines(
        year=year,
        deadline=date(year + 1, 6, 30),
        expires_on=date(year + 4, 1, 1),
    )


def check_settlement_deadline(year: int, today: date, *, allow_late: bool = False) -> SettlementDeadlines:
    deadlines = settlement_deadlines(year)
    if today >= deadlines.expires_on:
        raise DeadlineExceededError(
            f"Abrechnung {year} ist verfristet (Ausschlussfrist seit {deadlines.expires_on:%d.%m.%Y}).",
            year=year,
            expires_on=deadlines.expires_on.isoformat(),
        )
    if today > deadlines.deadline and not allow_late:
        raise DeadlineExceededError(
            f"Abrechnungsfrist {deadlines.deadline:%d.%m.%Y} für {year} überschritten.",
            year=year,
            deadline=deadlines.deadline.isoformat(),
        )
    return deadlines


class SettlementService:
    def __init__(self, *, actor: str = "system"):
        self.actor = actor

    @staticmethod
    def distribution_units(property_obj: Property) -> list[DistributionUnit]:
        units: list[DistributionUnit] = []
        for unit in Unit.objects.filter(property=property_obj).prefetch_related("tenants").order_by("door_number", "pk"):
            tenant = next((tenant for tenant in unit.tenants.all() if tenant.is_active), None)
            units.append(
                DistributionUnit(
                    unit_id=unit.pk,
                    area=unit.usable_area,
                    mea=unit.mea_share,
                    persons=unit.person_count,
                    is_vacant=unit.is_vacant,
                    tenant_id=None if unit.is_vacant or tenant is None else tenant.pk,
                )
            )
        return units

    @staticmethod
    def allocable_total(property_obj: Property, year: int) -> Decimal:
        return sum_money(
            Expense.objects.filter(property=property_obj, date__year=year, is_allocable=True).values_list(
                "amount", flat=True
            )
        )

    @staticmethod
    def prepayments(tenant_id: int, unit_id: int, year: int) -> Decimal:
        invoices = MonthlyInvoice.objects.filter(tenant_id=tenant_id, unit_id=unit_id, year=year).exclude(
            status=MonthlyInvoice.Status.STORNIERT
        )
        total = ZERO
        for invoice in invoices:
            gross = invoice.category_gross()
            total = quantize_cent(total + gross["operating_costs"] + gross["heating"])
        return total

    @transaction.atomic
    def calculate(self, property_obj: Property, year: int, *, key: str | None = None) -> Settlement:
        settlement, _created = Settlement.objects.select_for_update().get_or_create(property=property_obj, year=year)
        if settlement.status == Settlement.Status.ABGESCHLOSSEN:
            raise ValidationError(f"Abrechnung {year} für {property_obj.name} ist bereits abgeschlossen.")
        if key:
            settlement.distribution_key = key

        total = self.allocable_total(property_obj, year)
        shares = distribute(total, self.distribution_units(property_obj), settlement.distribution_key)

        settlement.entries.all().delete()
        entries = []
        for share in shares:
            prepayments = ZERO
            difference = share.share
            if share.charged_to == DistributionEntry.ChargedTo.TENANT:
                prepayments = self.prepayments(share.tenant_id, share.unit_id, year)
                difference = quantize_cent(share.share - prepayments)
            entries.append(
                DistributionEntry(
                    settlement=settlement,
                    unit_id=share.unit_id,
                    tenant_id=share.tenant_id if share.charged_to == DistributionEntry.ChargedTo.TENANT else None,
                    weight=share.weight,
                    share=share.share,
                    charged_to=share.charged_to,
                    prepayments=prepayments,
                    difference=difference,
                )
            )
        DistributionEntry.objects.bulk_create(entries)

        settlement.total_expense = total
        settlement.tenant_total = sum_money(
            entry.share for entry in entries if entry.charged_to == DistributionEntry.ChargedTo.TENANT
        )
        settlement.owner_total = sum_money(
            entry.share for entry in entries if entry.charged_to == DistributionEntry.ChargedTo.OWNER
        )
        settlement.status = Settlement.Status.BERECHNET
        settlement.calculated_at = timezone.now()
        settlement.save()
        return settlement

    @transaction.atomic
    def finalize(
        self,
        settlement: Settlement,
        *,
        today: date | None = None,
        allow_late: bool = False,
    ) -> Settlement:
        today = today or timezone.localdate()
        try:
            settlement = Settlement.objects.select_for_update().select_related("property").get(pk=settlement.pk)
        except Settlement.DoesNotExist as exc:
            raise NotFoundError(f"Abrechnung {settlement.pk} nicht gefunden.") from exc
        if settlement.status != Settlement.Status.BERECHNET:
            raise ValidationError(f"Abrechnung {settlement.year} ist nicht im Status 'berechnet'.")

        check_settlement_deadline(settlement.year, today, allow_late=allow_late)
        assert_date_open(settlement.property.organization_id, today)

        ledger = LedgerService(actor=self.actor)
        booked = 0
        entries = settlement.entries.select_related("tenant").filter(
            charged_to=DistributionEntry.ChargedTo.TENANT,
            tenant__isnull=False,
        )
        for entry in entries:
            if entry.difference == ZERO:
                continue
            label = "Nachzahlung" if entry.difference > ZERO else "Guthaben"
            entry.ledger_entry = ledger.post_entry(
                tenant=entry.tenant,
                entry_type=LedgerEntry.EntryType.SOLL,
                amount=entry.difference,
                booking_date=today,
                text=f"BK-Abrechnung {settlement.year} {label}",
            )
            entry.save(update_fields=["ledger_entry"])
            booked += 1

        settlement.status = Settlement.Status.ABGESCHLOSSEN
        settlement.finalized_at = timezone.now()
        settlement.save(update_fields=["status", "finalized_at"])
        record_audit(
            table_name="settlements",
            record_id=settlement.pk,
            action="finalize",
            new_data={
                "year": settlement.year,
                "propertyId": settlement.property_id,
                "totalExpense": settlement.total_expense,
                "tenantTotal": settlement.tenant_total,
                "ownerTotal": settlement.owner_total,
                "bookedEntries": booked,
            },
            actor=self.actor,
        )
        logger.info("BK-Abrechnung %s/%s abgeschlossen, %s Buchungen.", settlement.property_id, settlement.year, booked)
        return settlement

    @staticmethod
    def pending_deadlines(today: date, *, within_days: int = 60) -> list[dict[str, object]]:
        """Offene Abrechnungen, deren Frist bald endet oder schon abgelaufen ist."""
        horizon = today + timedelta(days=within_days)
        warnings: list[dict[str, object]] = []
        for settlement in Settlement.objects.select_related("property").exclude(
            status=Settlement.Status.ABGESCHLOSSEN
        ):
            deadlines = settlement_deadlines(settlement.year)
            if deadlines.deadline > horizon:
                continue
            warnings.append(
                {
                    "settlement_id": settlement.pk,
                    "property": settlement.property.name,
                    "year": settlement.year,
                    "deadline": deadlines.deadline.isoformat(),
                    "overdue": today > deadlines.deadline,
                    "expired": today >= deadlines.expires_on,
                }
            )
        return warnings
