"""Kleine Fabrikfunktionen für Tests der Abrechnungslogik."""
from __future__ import annotations

from datetime import date
from decimal import Decimal

from .models import MonthlyInvoice, Organization, Payment, Property, Tenant, Unit


def create_property(name: str = "Testobjekt", organization: Organization | None = None) -> Property:
    if organization is None:
        organization = Organization.objects.create(name=f"HV {name}")
    return Property.objects.create(
        organization=organization,
        name=name,
        zip_code="1010",
        city="Wien",
        street_address="Teststraße 1",
    )


def create_unit(property_obj: Property, door_number: str = "1", **kwargs) -> Unit:
    kwargs.setdefault("name", f"Top {door_number}")
    kwargs.setdefault("usable_area", Decimal("50.00"))
    kwargs.setdefault("mea_share", Decimal("100.0000"))
    kwargs.setdefault("person_count", 1)
    return Unit.objects.create(property=property_obj, door_number=door_number, **kwargs)


def create_tenant(unit: Unit | None, last_name: str = "Muster", **kwargs) -> Tenant:
    kwargs.setdefault("first_name", "Max")
    kwargs.setdefault("net_rent", Decimal("300.00"))
    kwargs.setdefault("operating_costs_net", Decimal("50.00"))
    kwargs.setdefault("heating_costs_net", Decimal("12.50"))
    return Tenant.objects.create(unit=unit, last_name=last_name, **kwargs)


def create_invoice(
    tenant: Tenant | None,
    year: int,
    month: int,
    *,
    unit: Unit | None = None,
    rent_net: Decimal = Decimal("300.00"),
    operating_costs_net: Decimal = Decimal("50.00"),
    heating_costs_net: Decimal = Decimal("12.50"),
    **kwargs,
) -> MonthlyInvoice:
    """Standardwerte ergeben 330 + 55 + 15 = 400,00 brutto."""
    invoice = MonthlyInvoice(
        tenant=tenant,
        unit=unit or tenant.unit,
        year=year,
        month=month,
        due_date=kwargs.pop("due_date", date(year, month, 5)),
        rent_net=rent_net,
        operating_costs_net=operating_costs_net,
        heating_costs_net=heating_costs_net,
        **kwargs,
    )
    invoice.recalculate_gross()
    invoice.save()
    return invoice


def create_payment(tenant: Tenant, amount: Decimal, booking_date: date, **kwargs) -> Payment:
    return Payment.objects.create(tenant=tenant, amount=amount, booking_date=booking_date, **kwargs)
