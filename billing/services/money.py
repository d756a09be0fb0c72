from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
TOLERANCE = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Decimal | str | int | float | None) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        if isinstance(value, str):
            value = value.strip().replace(",", ".")
        try:
            # float über str, sonst landen Binärartefakte im Betrag
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"Kein gültiger Betrag: {value!r}") from exc
    # NaN und Infinity
    if not result.is_finite():
        raise ValueError(f"Kein gültiger Betrag: {value!r}")
    return result


def quantize_cent(value: Decimal | str | int | float | None) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Decimal | str | int | None]) -> Decimal:
    return sum((to_decimal(value) for value in values), ZERO).quantize(CENT, rounding=ROUND_HALF_UP)


def gross_from_net(net: Decimal, tax_percent: Decimal) -> Decimal:
    net = quantize_cent(net)
    return quantize_cent(net + (net * to_decimal(tax_percent) / HUNDRED))


def net_from_gross(gross: Decimal, tax_percent: Decimal) -> Decimal:
    gross = quantize_cent(gross)
    divisor = Decimal("1.00") + (to_decimal(tax_percent) / HUNDRED)
    if divisor <= 0:
        return gross
    return quantize_cent(gross / divisor)


def vat_from_gross(gross: Decimal, tax_percent: Decimal) -> Decimal:
    gross = quantize_cent(gross)
    return quantize_cent(gross - net_from_gross(gross, tax_percent))


def exceeds_tolerance(difference: Decimal, tolerance: Decimal = TOLERANCE) -> bool:
    return to_decimal(difference).copy_abs() > tolerance
