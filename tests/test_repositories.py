from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from fleet_rental.core.exceptions import IdempotencyKeyReusedException
from fleet_rental.db.models import Rental
from fleet_rental.db.repositories import (
    IdempotencyRepository,
    PaymentRepository,
    RentalRepository,
    TransitionRepository,
)

NOW = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)

SNAPSHOT = {
    "base_price": 200000,
    "hourly_rate": 50000,
    "deposit": 500000,
    "total_price": 200000,
    "currency": "VND",
    "rental_type": "hourly",
    "duration": 4,
    "policy_version": "v1",
    "details": {"rawBase": 200000, "rentalType": "hourly", "hours": 4},
}


def make_rental(
    rental_id, station_id="st-1", status="CONFIRMED", customer_id="c1", offset_h=0
):
    return Rental(
        id=rental_id,
        booking_id=f"bk-{rental_id}",
        customer_id=customer_id,
        vehicle_id="ev-1",
        station_id=station_id,
        status=status,
        version=0,
        start_at=NOW + timedelta(hours=offset_h),
        end_at=NOW + timedelta(hours=offset_h + 4),
        pricing_snapshot=SNAPSHOT,
        created_at=NOW,
        updated_at=NOW,
    )


def test_rental_roundtrip(db_session):
    repo = RentalRepository(db_session)
    repo.create_rental(make_rental("r1"))
    db_session.commit()

    rental = repo.get_by_booking_id("bk-r1")
    data = repo.to_rental_data(rental)

    assert data.id == "r1"
    assert data.pricing_snapshot.details.raw_base == 200000
    assert data.start_at.tzinfo is not None


def test_apply_transition_checks_status_and_version(db_session):
    repo = RentalRepository(db_session)
    repo.create_rental(make_rental("r1"))
    db_session.commit()

    assert repo.apply_transition("r1", "CONFIRMED", 0, "ONGOING", {"pickup": {"odo_km": 5}})
    db_session.commit()

    rental = repo.get_by_id("r1")
    assert rental.status == "ONGOING"
    assert rental.version == 1
    assert rental.pickup == {"odo_km": 5}

    # stale version and stale status both lose
    assert not repo.apply_transition("r1", "ONGOING", 0, "RETURN_PENDING")
    assert not repo.apply_transition("r1", "CONFIRMED", 1, "REJECTED")
    assert repo.get_by_id("r1").status == "ONGOING"


def test_apply_transition_never_writes_pricing_snapshot(db_session):
    repo = RentalRepository(db_session)
    repo.create_rental(make_rental("r1"))
    db_session.commit()

    with pytest.raises(ValueError):
        repo.apply_transition(
            "r1", "CONFIRMED", 0, "ONGOING", {"pricing_snapshot": {"base_price": 1}}
        )

    row = db_session.execute(
        text("SELECT version, status FROM rentals WHERE id = 'r1'")
    ).fetchone()
    assert row.version == 0
    assert row.status == "CONFIRMED"


def test_return_record_lives_in_return_column(db_session):
    repo = RentalRepository(db_session)
    repo.create_rental(make_rental("r1", status="ONGOING"))
    db_session.commit()

    repo.apply_transition(
        "r1", "ONGOING", 0, "RETURN_PENDING", {"return_record": {"soc": 0.4}}
    )
    db_session.commit()

    row = db_session.execute(
        text('SELECT "return" FROM rentals WHERE id = :id'), {"id": "r1"}
    ).fetchone()
    assert row is not None
    assert "0.4" in str(row[0])


def test_list_by_station_filters_and_paginates(db_session):
    repo = RentalRepository(db_session)
    for i in range(5):
        repo.create_rental(make_rental(f"r{i}", offset_h=i))
    repo.create_rental(make_rental("r-ongoing", status="ONGOING"))
    repo.create_rental(make_rental("r-other", station_id="st-2"))
    db_session.commit()

    items, total = repo.list_by_station("st-1", "CONFIRMED", page=1, limit=2)
    assert total == 5
    assert [r.id for r in items] == ["r4", "r3"]

    items, total = repo.list_by_station("st-1", "CONFIRMED", page=3, limit=2)
    assert [r.id for r in items] == ["r0"]

    _, total = repo.list_by_station("st-1")
    assert total == 6


def test_active_rental_for_customer(db_session):
    repo = RentalRepository(db_session)
    repo.create_rental(make_rental("r-done", status="COMPLETED", offset_h=10))
    repo.create_rental(make_rental("r-live", status="ONGOING"))
    db_session.commit()

    assert repo.get_active_for_customer("c1").id == "r-live"
    assert repo.get_active_for_customer("nobody") is None


def test_payment_totals_by_direction(db_session):
    repo = PaymentRepository(db_session)
    repo.create_payment("r1", "CASH-1", "CASH", "CHARGE", 90000, "partial", "s1")
    repo.create_payment("r1", "CASH-2", "CASH", "CHARGE", 10000, "SUCCESS", "s1")
    repo.create_payment("r2", "CASH-3", "CASH", "REFUND", 300000, "SUCCESS", "s1")
    db_session.commit()

    assert repo.get_total_collected("r1", "CHARGE") == 100000
    assert repo.get_total_collected("r1", "REFUND") == 0
    assert repo.get_by_transaction_ref("CASH-3").rental_id == "r2"
    assert sorted(p.transaction_ref for p in repo.get_payments("r1")) == [
        "CASH-1",
        "CASH-2",
    ]


def test_transition_log(db_session):
    repo = TransitionRepository(db_session)
    repo.record("r1", "CONFIRMED", "ONGOING", "ACCEPT_HANDOVER", "s1", "STAFF")
    repo.record("r1", "ONGOING", "RETURN_PENDING", "RECORD_RETURN", "s1", "STAFF")
    db_session.commit()

    assert [t.trigger for t in repo.list_for_rental("r1")] == [
        "ACCEPT_HANDOVER",
        "RECORD_RETURN",
    ]
    assert repo.visited_statuses("r1") == ["CONFIRMED", "ONGOING"]
    assert repo.visited_statuses("r2") == []


def test_idempotency_cache(db_session):
    repo = IdempotencyRepository(db_session)
    repo.create_idempotency_key("k1", "cash:r1", "s1", {"amount": 100, "at": NOW})
    db_session.commit()

    assert repo.get_cached_response("k1", "cash:r1") == {
        "amount": 100,
        "at": NOW.isoformat(),
    }
    assert repo.get_cached_response("k2", "cash:r1") is None

    with pytest.raises(IdempotencyKeyReusedException):
        repo.get_cached_response("k1", "cash:r2")
