from __future__ import annotations

"""Trip price breakdown.

Pure arithmetic, no I/O. Days are counted over the half-open `[start, end)`
range with a minimum of one day; service fee is charged on the trip amount and
tax on trip amount plus service fee. All rounding is half-up to the cent.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Union

from rentals.config import SERVICE_FEE_PERCENT, TAX_RATE
from rentals.utils import round_money, to_decimal


Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class PriceBreakdown:
    number_of_days: int
    daily_rate: Decimal
    trip_amount: Decimal
    service_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    def as_floats(self) -> Dict[str, Any]:
        out = asdict(self)
        for key, value in out.items():
            if isinstance(value, Decimal):
                out[key] = float(value)
        return out


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def count_days(start: Union[date, datetime], end: Union[date, datetime]) -> int:
    return max((_as_date(end) - _as_date(start)).days, 1)


def quote(
    daily_rate: Number,
    start: Union[date, datetime],
    end: Union[date, datetime],
    *,
    service_fee_percent: Number = SERVICE_FEE_PERCENT,
    tax_rate: Number = TAX_RATE,
) -> PriceBreakdown:
    rate = round_money(daily_rate)
    if rate < 0:
        raise ValueError("daily_rate must be >= 0")

    days = count_days(start, end)
    trip_amount = round_money(rate * days)
    service_fee = round_money(trip_amount * to_decimal(service_fee_percent))
    tax_amount = round_money((trip_amount + service_fee) * to_decimal(tax_rate))
    total = round_money(trip_amount + service_fee + tax_amount)

    return PriceBreakdown(
        number_of_days=days,
        daily_rate=rate,
        trip_amount=trip_amount,
        service_fee=service_fee,
        tax_amount=tax_amount,
        total_amount=total,
    )
