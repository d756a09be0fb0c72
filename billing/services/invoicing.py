from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date

from django.db import transaction

from ..models import InvoiceLine, LedgerEntry, MonthlyInvoice, Organization, Tenant
from .audit import record_audit
from .money import ZERO, gross_from_net, quantize_cent
from .period_locks import is_period_locked

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAY = 5
RENT_TAX_PERCENT = quantize_cent("10.00")
OPERATING_COSTS_TAX_PERCENT = quantize_cent("10.00")
HEATING_TAX_PERCENT = quantize_cent("20.00")


@dataclass(slots=True)
class InvoiceRunSummary:
    period: date
    created: int = 0
    skipped_existing: int = 0
    skipped_locked: int = 0
    skipped_zero: int = 0
    invoice_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "period": self.period.strftime("%Y-%m"),
            "created": self.created,
            "skipped_existing": self.skipped_existing,
            "skipped_locked": self.skipped_locked,
            "skipped_zero": self.skipped_zero,
        }


def parse_month(value: str | None, *, today: date | None = None) -> date:
    if not value:
        today = today or date.today()
        return date(today.year, today.month, 1)
    year_str, month_str = str(value).split("-")
    return date(int(year_str), int(month_str), 1)


def due_date_for(month_start: date, due_day: int = DEFAULT_DUE_DAY) -> date:
    last_day = monthrange(month_start.year, month_start.month)[1]
    return date(month_start.year, month_start.month, min(due_day, last_day))


def _components(tenant: Tenant):
    return [
        (InvoiceLine.LineType.BK, "Betriebskosten-Akonto", tenant.operating_costs_net, OPERATING_COSTS_TAX_PERCENT),
        (InvoiceLine.LineType.HK, "Heizkosten-Akonto", tenant.heating_costs_net, HEATING_TAX_PERCENT),
        (InvoiceLine.LineType.HMZ, "Hauptmietzins", tenant.net_rent, RENT_TAX_PERCENT),
    ]


@transaction.atomic
def generate_monthly_invoices(
    month_start: date,
    *,
    organization: Organization | None = None,
    actor: str = "system",
    run_id: str = "",
) -> InvoiceRunSummary:
    month_start = date(month_start.year, month_start.month, 1)
    summary = InvoiceRunSummary(period=month_start)

    tenants = Tenant.objects.select_related("unit", "unit__property").filter(is_active=True, unit__isnull=False)
    if organization is not None:
        tenants = tenants.filter(unit__property__organization=organization)
    tenants = list(tenants.order_by("pk"))

    existing = set(
        MonthlyInvoice.objects.filter(
            tenant_id__in=[tenant.pk for tenant in tenants],
            year=month_start.year,
            month=month_start.month,
        ).values_list("tenant_id", flat=True)
    )
    locked_cache: dict[int, bool] = {}

    for tenant in tenants:
        if tenant.pk in existing:
            summary.skipped_existing += 1
            continue
        organization_id = tenant.unit.property.organization_id
        if organization_id not in locked_cache:
            locked_cache[organization_id] = is_period_locked(organization_id, month_start.year, month_start.month)
        if locked_cache[organization_id]:
            summary.skipped_locked += 1
            continue

        invoice = MonthlyInvoice(
            tenant=tenant,
            unit=tenant.unit,
            year=month_start.year,
            month=month_start.month,
            due_date=due_date_for(month_start),
            rent_net=quantize_cent(tenant.net_rent),
            rent_tax_rate=RENT_TAX_PERCENT,
            operating_costs_net=quantize_cent(tenant.operating_costs_net),
            operating_costs_tax_rate=OPERATING_COSTS_TAX_PERCENT,
            heating_costs_net=quantize_cent(tenant.heating_costs_net),
            heating_tax_rate=HEATING_TAX_PERCENT,
        )
        if invoice.recalculate_gross() <= ZERO:
            summary.skipped_zero += 1
            continue
        invoice.save()
        existing.add(tenant.pk)

        InvoiceLine.objects.bulk_create(
            [
                InvoiceLine(
                    invoice=invoice,
                    unit=tenant.unit,
                    line_type=line_type,
                    description=f"{label} {month_start.strftime('%m.%Y')}",
                    normalized_description=InvoiceLine.normalize_description(
                        f"{label} {month_start.strftime('%m.%Y')}"
                    ),
                    amount=gross_from_net(net, tax_percent),
                    tax_rate=tax_percent,
                    meta={"net": quantize_cent(net)},
                )
                for line_type, label, net, tax_percent in _components(tenant)
                if quantize_cent(net) > ZERO
            ]
        )
        LedgerEntry.objects.create(
            tenant=tenant,
            invoice=invoice,
            entry_type=LedgerEntry.EntryType.SOLL,
            amount=invoice.gross_amount,
            booking_date=month_start,
            text=f"Vorschreibung {month_start.strftime('%m.%Y')}",
        )
        summary.created += 1
        summary.invoice_ids.append(invoice.pk)

    if summary.created:
        record_audit(
            table_name="monthly_invoices",
            record_id=month_start.strftime("%Y-%m"),
            action="billing_run",
            new_data={**summary.as_dict(), "invoiceIds": summary.invoice_ids},
            actor=actor,
            run_id=run_id,
        )
    logger.info(
        "Vorschreibungslauf %s: %s erstellt, %s vorhanden, %s gesperrt.",
        month_start.strftime("%m.%Y"),
        summary.created,
        summary.skipped_existing,
        summary.skipped_locked,
    )
    return summary
