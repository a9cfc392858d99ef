from typing import Dict

SERVICE_FEE_RATE = 0.05
SERVICE_FEE_MIN = 50
PLATFORM_FEE_RATE = 0.02
PLATFORM_FEE_MIN = 25

EARNINGS_RATE = 0.07
EARNINGS_MIN = 50


def _round_half_up(value: float) -> int:
    # matches the rounding shown to users (Math.round), not banker's rounding
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def fee_breakdown(item_price: float) -> Dict[str, int]:
    price = max(0.0, float(item_price or 0))
    service_fee = max(SERVICE_FEE_MIN, price * SERVICE_FEE_RATE)
    platform_fee = max(PLATFORM_FEE_MIN, price * PLATFORM_FEE_RATE)
    total_fees = service_fee + platform_fee
    return {
        "service_fee": _round_half_up(service_fee),
        "platform_fee": _round_half_up(platform_fee),
        "total_fees": _round_half_up(total_fees),
        "estimated_total": _round_half_up(price + total_fees),
    }


def estimate_earnings(price) -> int:
    """Display-only pasabuyer earnings for a request's total price."""
    return max(EARNINGS_MIN, _round_half_up(float(price or 0) * EARNINGS_RATE))
