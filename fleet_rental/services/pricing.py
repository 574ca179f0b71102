import math

from fleet_rental.schemas import (
    ConfirmBookingRequest,
    PricingDetails,
    PricingSnapshot,
    RentalType,
)

HOUR_SEC = 3600
DAY_SEC = 24 * HOUR_SEC


def booked_duration(request: ConfirmBookingRequest) -> int:
    """Whole billing units covered by the booking, rounded up."""
    seconds = (request.end_at - request.start_at).total_seconds()
    unit = DAY_SEC if request.rental_type == RentalType.DAILY else HOUR_SEC
    return max(1, math.ceil(seconds / unit))


def build_pricing_snapshot(
    request: ConfirmBookingRequest, tax_rate: float = 0.0
) -> PricingSnapshot:
    """
    Freezes the booking's price terms. The result is stored once on the
    rental and only ever read afterwards; fees at return time are computed
    against it, never against current rates.
    """
    duration = booked_duration(request)

    if request.rental_type == RentalType.DAILY:
        raw_base = request.daily_rate * duration
        details = PricingDetails(
            raw_base=raw_base, rental_type=RentalType.DAILY, days=duration
        )
    else:
        raw_base = request.hourly_rate * duration
        details = PricingDetails(
            raw_base=raw_base, rental_type=RentalType.HOURLY, hours=duration
        )

    taxes = math.ceil((raw_base + request.insurance_price) * tax_rate)

    return PricingSnapshot(
        base_price=raw_base,
        hourly_rate=request.hourly_rate,
        daily_rate=request.daily_rate,
        deposit=request.deposit,
        insurance_price=request.insurance_price,
        taxes=taxes,
        total_price=raw_base + request.insurance_price + taxes,
        currency=request.currency,
        rental_type=request.rental_type,
        duration=duration,
        policy_version=request.policy_version,
        details=details,
    )


def late_rate_per_hour(snapshot: PricingSnapshot) -> int:
    if snapshot.hourly_rate:
        return snapshot.hourly_rate
    if snapshot.daily_rate:
        return math.ceil(snapshot.daily_rate / 24)
    return 0
