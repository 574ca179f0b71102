from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from fleet_rental.schemas import ConfirmBookingRequest, PricingSnapshot, RentalType
from fleet_rental.services.pricing import (
    booked_duration,
    build_pricing_snapshot,
    late_rate_per_hour,
)

START = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_request(**overrides) -> ConfirmBookingRequest:
    data = dict(
        booking_id="bk-1",
        customer_id="c1",
        vehicle_id="ev-1",
        station_id="st-1",
        start_at=START,
        end_at=START + timedelta(hours=4),
        hourly_rate=50_000,
        deposit=500_000,
    )
    data.update(overrides)
    return ConfirmBookingRequest(**data)


def test_hourly_snapshot():
    snapshot = build_pricing_snapshot(make_request())

    assert snapshot.rental_type == RentalType.HOURLY
    assert snapshot.duration == 4
    assert snapshot.base_price == 200_000
    assert snapshot.deposit == 500_000
    assert snapshot.total_price == 200_000
    assert snapshot.details.hours == 4
    assert snapshot.details.raw_base == 200_000


def test_partial_hour_rounds_up():
    request = make_request(end_at=START + timedelta(hours=2, minutes=10))
    assert booked_duration(request) == 3


def test_daily_snapshot_with_insurance_and_tax():
    request = make_request(
        rental_type="daily",
        hourly_rate=None,
        daily_rate=700_000,
        end_at=START + timedelta(days=2),
        insurance_price=100_000,
    )
    snapshot = build_pricing_snapshot(request, tax_rate=0.1)

    assert snapshot.duration == 2
    assert snapshot.base_price == 1_400_000
    assert snapshot.taxes == 150_000
    assert snapshot.total_price == 1_650_000
    assert snapshot.details.days == 2


def test_snapshot_is_frozen_and_serializes_by_alias():
    snapshot = build_pricing_snapshot(make_request())

    with pytest.raises(ValidationError):
        snapshot.base_price = 1

    stored = snapshot.model_dump(mode="json", by_alias=True)
    assert stored["details"]["rawBase"] == 200_000
    assert PricingSnapshot.model_validate(stored) == snapshot


def test_request_validation():
    with pytest.raises(ValidationError):
        make_request(end_at=START)

    with pytest.raises(ValidationError):
        make_request(rental_type="daily")

    with pytest.raises(ValidationError):
        make_request(deposit=-1)


def test_late_rate_per_hour():
    hourly = build_pricing_snapshot(make_request())
    assert late_rate_per_hour(hourly) == 50_000

    daily = build_pricing_snapshot(
        make_request(
            rental_type="daily",
            hourly_rate=None,
            daily_rate=240_000,
            end_at=START + timedelta(days=1),
        )
    )
    assert late_rate_per_hour(daily) == 10_000
