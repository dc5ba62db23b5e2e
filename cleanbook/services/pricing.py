from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from cleanbook.config import settings

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeSplit:
    total_cost: Decimal
    commission_rate: Decimal
    platform_fee: Decimal
    business_earnings: Decimal


def _as_amount(gross: Decimal | int | str) -> Decimal:
    amount = gross if isinstance(gross, Decimal) else Decimal(str(gross))
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def platform_fee(gross: Decimal | int | str, commission_rate: Decimal | None = None) -> Decimal:
    """Commission retained by the platform, rounded half-up to the penny."""
    rate = settings.PLATFORM_COMMISSION_RATE if commission_rate is None else commission_rate
    return (_as_amount(gross) * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def business_earnings(gross: Decimal | int | str, commission_rate: Decimal | None = None) -> Decimal:
    """What the business keeps. Always ``gross - platform_fee(gross)``."""
    return _as_amount(gross) - platform_fee(gross, commission_rate)


def split(gross: Decimal | int | str, commission_rate: Decimal | None = None) -> FeeSplit:
    """Full breakdown of a gross booking amount.

    The platform fee is computed first and the business receives the
    remainder, so ``platform_fee + business_earnings == total_cost`` holds
    exactly for every amount.

    Example: 85.00 at 15% -> fee 12.75, earnings 72.25.
    """
    rate = settings.PLATFORM_COMMISSION_RATE if commission_rate is None else commission_rate
    total = _as_amount(gross)
    fee = platform_fee(total, rate)
    return FeeSplit(
        total_cost=total,
        commission_rate=rate,
        platform_fee=fee,
        business_earnings=total - fee,
    )


def to_minor_units(amount: Decimal) -> int:
    """Convert pounds to pence for the payment processor."""
    return int((_as_amount(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(CENT)
