from __future__ import annotations

from datetime import date

from django.utils import timezone

from ..exceptions import NotFoundError, ValidationError
from ..models import Job, MonthlyInvoice, Organization, Property, Tenant
from .bulk_upsert import BulkLineUpserter, rows_from_payload
from .dunning import DunningService
from .invoicing import generate_monthly_invoices, parse_month
from .ledger import LedgerService
from .money import ZERO, quantize_cent
from .settlement import SettlementService


def _organization(payload: dict) -> Organization | None:
    organization_id = payload.get("organizationId")
    if organization_id in (None, ""):
        return None
    try:
        return Organization.objects.get(pk=organization_id)
    except Organization.DoesNotExist as exc:
        raise NotFoundError(f"Hausverwaltung {organization_id} nicht gefunden.") from exc


def _date(payload: dict, key: str) -> date:
    raw = payload.get(key)
    if not raw:
        return timezone.localdate()
    try:
        return date.fromisoformat(str(raw))
    except ValueError as exc:
        raise ValidationError(f"Ungültiges Datum in '{key}': {raw}") from exc


def _tenants(payload: dict):
    tenants = Tenant.objects.select_related("unit", "unit__property").filter(is_active=True)
    organization = _organization(payload)
    if organization is not None:
        tenants = tenants.filter(unit__property__organization=organization)
    return tenants.order_by("last_name", "first_name", "pk")


def handle_billing_run(payload: dict) -> dict:
    try:
        month_start = parse_month(payload.get("month"), today=timezone.localdate())
    except ValueError as exc:
        raise ValidationError(f"Ungültiger Monat: {payload.get('month')}") from exc
    summary = generate_monthly_invoices(
        month_start,
        organization=_organization(payload),
        actor="job:billing_run",
        run_id=str(payload.get("runId") or ""),
    )
    return summary.as_dict()


def handle_settlement_calculation(payload: dict) -> dict:
    try:
        property_obj = Property.objects.get(pk=payload.get("propertyId"))
    except (Property.DoesNotExist, ValueError, TypeError) as exc:
        raise NotFoundError(f"Liegenschaft {payload.get('propertyId')} nicht gefunden.") from exc
    try:
        year = int(payload["year"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("Abrechnungsjahr fehlt oder ist ungültig.") from exc

    service = SettlementService(actor="job:settlement_calculation")
    settlement = service.calculate(property_obj, year, key=payload.get("key"))
    if payload.get("finalize"):
        settlement = service.finalize(settlement, allow_late=bool(payload.get("allowLate")))
    return {
        "settlement_id": settlement.pk,
        "status": settlement.status,
        "total_expense": str(settlement.total_expense),
        "tenant_total": str(settlement.tenant_total),
        "owner_total": str(settlement.owner_total),
    }


def handle_dunning_run(payload: dict) -> dict:
    summary = DunningService(actor="job:dunning_run").run(
        organization=_organization(payload),
        today=_date(payload, "today"),
    )
    return summary.as_dict()


def handle_report_generation(payload: dict) -> dict:
    ledger = LedgerService()
    today = _date(payload, "today")
    balances = []
    for tenant in _tenants(payload):
        balances.append(
            {
                "tenant_id": tenant.pk,
                "tenant": str(tenant),
                "unit": tenant.unit.name if tenant.unit_id else "",
                "saldo": str(ledger.saldo(tenant)),
            }
        )
    return {
        "generated_on": today.isoformat(),
        "balances": balances,
        "settlement_deadlines": SettlementService.pending_deadlines(today),
    }


def handle_sepa_export(payload: dict) -> dict:
    collection_date = _date(payload, "collectionDate")
    ledger = LedgerService()
    items = []
    skipped_without_iban = 0
    for tenant in _tenants(payload):
        open_amount = quantize_cent(
            sum(
                (
                    invoice.outstanding_amount
                    for invoice in MonthlyInvoice.objects.filter(
                        tenant=tenant,
                        status__in=MonthlyInvoice.OPEN_STATUSES,
                        due_date__lte=collection_date,
                    )
                ),
                ZERO,
            )
        )
        if open_amount <= ZERO:
            continue
        if not tenant.iban.strip():
            skipped_without_iban += 1
            continue
        items.append(
            {
                "tenant_id": tenant.pk,
                "name": str(tenant),
                "iban": tenant.iban.replace(" ", "").upper(),
                "amount": str(open_amount),
                "saldo": str(ledger.saldo(tenant)),
            }
        )
    return {
        "collection_date": collection_date.isoformat(),
        "items": items,
        "total": str(quantize_cent(sum((quantize_cent(item["amount"]) for item in items), ZERO))),
        "skipped_without_iban": skipped_without_iban,
    }


def handle_bulk_invoice_upsert(payload: dict) -> dict:
    rows = rows_from_payload(payload.get("rows") or [])
    summary = BulkLineUpserter(actor="job:bulk_invoice_upsert").upsert(
        rows,
        run_id=payload.get("runId"),
        dry_run=bool(payload.get("dryRun")),
    )
    return summary.as_dict()


DEFAULT_HANDLERS = {
    Job.JobType.BILLING_RUN: handle_billing_run,
    Job.JobType.SETTLEMENT_CALCULATION: handle_settlement_calculation,
    Job.JobType.DUNNING_RUN: handle_dunning_run,
    Job.JobType.REPORT_GENERATION: handle_report_generation,
    Job.JobType.SEPA_EXPORT: handle_sepa_export,
    Job.JobType.BULK_INVOICE_UPSERT: handle_bulk_invoice_upsert,
}
