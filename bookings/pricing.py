"""Booking price calculation.

All amounts are integer pence (the smallest unit of the booking currency).
The service fee is rounded half-up to a whole pence, which is rounding to two
decimal places in major units.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

DEFAULT_SERVICE_FEE_RATE = Decimal('0.15')


@dataclass(frozen=True)
class Pricing:
    base_price: int
    service_fee: int
    total_price: int
    days: int


def calculate(daily_price, days, service_fee_rate=DEFAULT_SERVICE_FEE_RATE):
    if daily_price <= 0:
        raise ValueError('daily_price must be positive')
    if days <= 0:
        raise ValueError('days must be positive')

    rate = Decimal(str(service_fee_rate))
    base_price = int(daily_price) * int(days)
    service_fee = int((Decimal(base_price) * rate).quantize(Decimal('1'), rounding=ROUND_HALF_UP))

    return Pricing(
        base_price=base_price,
        service_fee=service_fee,
        total_price=base_price + service_fee,
        days=int(days),
    )


def rental_days(start_date, end_date):
    """Whole days between two dates, rounding any part day up."""
    delta = end_date - start_date
    days = delta.days
    if delta.seconds or delta.microseconds:
        days += 1
    return days
