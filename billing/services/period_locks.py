from __future__ import annotations

from datetime import date

from django.db import transaction

from ..exceptions import PeriodLockedError, ValidationError
from ..models import MonthlyInvoice, Organization, PeriodLock, Tenant


def _validate_period(year: int, month: int) -> None:
    if not 1 <= int(month) <= 12:
        raise ValidationError(f"Ungültiger Monat: {month}", year=year, month=month)
    if int(year) < 1900:
        raise ValidationError(f"Ungültiges Jahr: {year}", year=year, month=month)


def is_period_locked(organization_id: int | None, year: int, month: int) -> bool:
    if organization_id is None:
        return False
    return PeriodLock.objects.filter(organization_id=organization_id, year=year, month=month).exists()


def assert_period_open(organization_id: int | None, year: int, month: int) -> None:
    if is_period_locked(organization_id, year, month):
        raise PeriodLockedError(
            f"Periode {int(month):02d}.{year} ist gesperrt.",
            organization_id=organization_id,
            year=year,
            month=month,
        )


def organization_id_for_invoice(invoice: MonthlyInvoice) -> int | None:
    return invoice.unit.property.organization_id if invoice.unit_id else None


def organization_id_for_tenant(tenant: Tenant) -> int | None:
    if tenant.unit_id is None:
        return None
    return tenant.unit.property.organization_id


def assert_invoice_period_open(invoice: MonthlyInvoice) -> None:
    assert_period_open(organization_id_for_invoice(invoice), invoice.year, invoice.month)


def assert_date_open(organization_id: int | None, booking_date: date) -> None:
    assert_period_open(organization_id, booking_date.year, booking_date.month)


@transaction.atomic
def lock_period(
    organization: Organization,
    year: int,
    month: int,
    *,
    locked_by: str = "",
    reason: str = "",
) -> PeriodLock:
    _validate_period(year, month)
    lock, _created = PeriodLock.objects.get_or_create(
        organization=organization,
        year=year,
        month=month,
        defaults={"locked_by": locked_by, "reason": reason},
    )
    return lock


@transaction.atomic
def unlock_period(organization: Organization, year: int, month: int) -> bool:
    _validate_period(year, month)
    deleted, _details = PeriodLock.objects.filter(organization=organization, year=year, month=month).delete()
    return deleted > 0
