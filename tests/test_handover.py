import pytest
from conftest import booking_request, pickup_photos
from sqlalchemy import select

from fleet_rental.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InsufficientEvidenceError,
    PreconditionError,
    RejectReasonTooShortError,
    UpstreamError,
    ValidationError,
    VehicleUnavailableError,
)
from fleet_rental.db.models import Rental, RentalTransition
from fleet_rental.schemas import (
    AcceptHandoverRequest,
    CancelRentalRequest,
    EvidencePhase,
    RejectHandoverRequest,
    RentalStatus,
    ReturnRequest,
)


def accept(rental_id, photos=None, **kwargs):
    return AcceptHandoverRequest(
        action="accept",
        photos=pickup_photos(rental_id) if photos is None else photos,
        **kwargs,
    )


def test_confirm_booking_creates_confirmed_rental(confirmed_rental):
    assert confirmed_rental.status == RentalStatus.CONFIRMED
    assert confirmed_rental.version == 0
    assert confirmed_rental.pricing_snapshot.base_price == 200_000
    assert confirmed_rental.pricing_snapshot.deposit == 500_000
    assert confirmed_rental.pickup is None


def test_duplicate_booking_is_conflict(rental_service, confirmed_rental, system_actor):
    with pytest.raises(ConflictError):
        rental_service.confirm_booking(booking_request(), system_actor)


def test_only_booking_system_confirms(rental_service, staff_actor):
    with pytest.raises(ForbiddenError):
        rental_service.confirm_booking(booking_request("bk-2"), staff_actor)


def test_accept_handover(rental_service, db_session, confirmed_rental, staff_actor):
    result = rental_service.accept_handover(
        confirmed_rental.id, accept(confirmed_rental.id, odo_km=1200, soc=0.9), staff_actor
    )
    db_session.commit()

    rental = result.rental
    assert rental.status == RentalStatus.ONGOING
    assert rental.version == 1
    assert rental.pickup.staff_id == staff_actor.actor_id
    assert rental.pickup.odo_km == 1200
    assert len(rental.pickup.photos) == 3
    assert [p.phase for p in result.photos] == [EvidencePhase.PICKUP] * 3


def test_accept_with_two_photos_fails_and_stays_confirmed(
    rental_service, db_session, confirmed_rental, staff_actor
):
    photos = pickup_photos(confirmed_rental.id, count=2)

    with pytest.raises(InsufficientEvidenceError) as exc_info:
        rental_service.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id, photos), staff_actor
        )
    db_session.rollback()

    assert "3 pickup photos" in exc_info.value.message
    rental = rental_service.get_rental(confirmed_rental.id, staff_actor)
    assert rental.status == RentalStatus.CONFIRMED
    assert rental.version == 0


def test_accept_counts_previously_uploaded_photos(
    rental_service, db_session, confirmed_rental, staff_actor
):
    for i in range(2):
        rental_service.evidence_service.upload_photo(
            confirmed_rental.id,
            EvidencePhase.PICKUP,
            b"jpeg-bytes",
            f"front-{i}.jpg",
            "image/jpeg",
            f"ref-{i}",
            staff_actor,
        )
    db_session.commit()

    result = rental_service.accept_handover(
        confirmed_rental.id,
        accept(confirmed_rental.id, pickup_photos(confirmed_rental.id, count=1)),
        staff_actor,
    )

    assert result.rental.status == RentalStatus.ONGOING
    assert len(result.rental.pickup.photos) == 3


def test_duplicate_photo_urls_count_once(rental_service, confirmed_rental, staff_actor):
    url = pickup_photos(confirmed_rental.id, count=1)[0]

    with pytest.raises(InsufficientEvidenceError):
        rental_service.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id, [url, url, url]), staff_actor
        )


def test_accept_requires_available_vehicle(
    rental_service, confirmed_rental, staff_actor, external_client
):
    external_client.is_vehicle_available.return_value = False

    with pytest.raises(VehicleUnavailableError):
        rental_service.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id), staff_actor
        )


def test_directory_outage_fails_accept(
    rental_service, confirmed_rental, staff_actor, external_client
):
    external_client.is_vehicle_available.side_effect = UpstreamError("directory down")

    with pytest.raises(UpstreamError):
        rental_service.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id), staff_actor
        )


def test_customer_cannot_accept(rental_service, confirmed_rental, customer_actor):
    with pytest.raises(ForbiddenError):
        rental_service.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id), customer_actor
        )


def test_second_accept_is_conflict(rental_service, ongoing_rental, staff_actor):
    with pytest.raises(ConflictError):
        rental_service.accept_handover(
            ongoing_rental.id, accept(ongoing_rental.id), staff_actor
        )


def test_stale_version_is_conflict(rental_service, confirmed_rental, staff_actor):
    with pytest.raises(ConflictError):
        rental_service.accept_handover(
            confirmed_rental.id,
            accept(confirmed_rental.id),
            staff_actor,
            expected_version=5,
        )


@pytest.mark.concurrency
def test_concurrent_accepts_one_wins(
    build_service, session_factory, confirmed_rental, staff_actor, admin_actor
):
    first_session = session_factory()
    second_session = session_factory()
    try:
        first = build_service(first_session)
        second = build_service(second_session)

        # both callers read the rental at version 0
        first_session.get(Rental, confirmed_rental.id)
        second_session.get(Rental, confirmed_rental.id)

        first.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id), staff_actor, expected_version=0
        )
        first_session.commit()

        with pytest.raises(ConflictError):
            second.accept_handover(
                confirmed_rental.id,
                accept(confirmed_rental.id),
                admin_actor,
                expected_version=0,
            )
        second_session.rollback()
    finally:
        first_session.close()
        second_session.close()

    with session_factory() as session:
        transitions = (
            session.execute(
                select(RentalTransition).where(
                    RentalTransition.rental_id == confirmed_rental.id
                )
            )
            .scalars()
            .all()
        )
        rental = session.get(Rental, confirmed_rental.id)

    assert len(transitions) == 1
    assert transitions[0].actor_id == staff_actor.actor_id
    assert rental.status == RentalStatus.ONGOING.value
    assert rental.pickup["staff_id"] == staff_actor.actor_id
    assert rental.version == 1


def test_reject_handover(rental_service, db_session, confirmed_rental, staff_actor):
    result = rental_service.reject_handover(
        confirmed_rental.id,
        RejectHandoverRequest(
            action="reject",
            rejectReason="Cracked windshield",
            photos=[f"https://cdn.test/{confirmed_rental.id}/crack.jpg"],
        ),
        staff_actor,
    )
    db_session.commit()

    rental = result.rental
    assert rental.status == RentalStatus.REJECTED
    assert rental.pickup.rejected.reason == "Cracked windshield"
    assert rental.pickup.rejected.staff_id == staff_actor.actor_id
    assert rental.closed_at is not None
    assert [p.phase for p in result.photos] == [EvidencePhase.PICKUP_REJECT]

    # rejection is final
    with pytest.raises(ConflictError):
        rental_service.accept_handover(
            confirmed_rental.id, accept(confirmed_rental.id), staff_actor
        )


def test_short_reject_reason_fails(rental_service, confirmed_rental, staff_actor):
    with pytest.raises(RejectReasonTooShortError) as exc_info:
        rental_service.reject_handover(
            confirmed_rental.id,
            RejectHandoverRequest(action="reject", rejectReason=" bad  "),
            staff_actor,
        )

    assert "5 characters" in exc_info.value.message


def test_reason_of_exactly_five_characters_is_enough(
    rental_service, confirmed_rental, staff_actor
):
    result = rental_service.reject_handover(
        confirmed_rental.id,
        RejectHandoverRequest(action="reject", rejectReason="dirty"),
        staff_actor,
    )

    assert result.rental.status == RentalStatus.REJECTED


def test_process_handover_dispatches_on_action(
    rental_service, confirmed_rental, staff_actor
):
    result = rental_service.process_handover(
        confirmed_rental.id, accept(confirmed_rental.id), staff_actor
    )

    assert result.rental.status == RentalStatus.ONGOING


def test_pricing_snapshot_never_changes(
    rental_service, db_session, confirmed_rental, staff_actor
):
    before = confirmed_rental.pricing_snapshot
    result = rental_service.accept_handover(
        confirmed_rental.id, accept(confirmed_rental.id), staff_actor
    )
    db_session.commit()

    assert result.rental.pricing_snapshot == before


def test_customer_cancels_confirmed_rental(
    rental_service, confirmed_rental, customer_actor
):
    rental = rental_service.cancel_rental(
        confirmed_rental.id, CancelRentalRequest(reason="Plans changed"), customer_actor
    )

    assert rental.status == RentalStatus.CANCELLED
    assert rental.cancellation.actor_id == customer_actor.actor_id
    assert rental.closed_at is not None


def test_cancel_after_pickup_is_conflict(rental_service, ongoing_rental, customer_actor):
    with pytest.raises(ConflictError):
        rental_service.cancel_rental(
            ongoing_rental.id, CancelRentalRequest(), customer_actor
        )


def test_return_before_pickup_is_precondition_failure(
    rental_service, confirmed_rental, staff_actor
):
    with pytest.raises(PreconditionError):
        rental_service.record_return(
            confirmed_rental.id,
            ReturnRequest(photos=["https://cdn.test/r.jpg"], odo_km=1300, soc=0.5),
            staff_actor,
        )


def test_accept_cannot_borrow_photos_of_another_rental(
    rental_service, db_session, ongoing_rental, staff_actor, system_actor
):
    other = rental_service.confirm_booking(booking_request("bk-2"), system_actor)
    db_session.commit()

    with pytest.raises(ValidationError):
        rental_service.accept_handover(
            other.id, accept(other.id, ongoing_rental.pickup.photos), staff_actor
        )
    db_session.rollback()

    rental = rental_service.get_rental(other.id, staff_actor)
    assert rental.status == RentalStatus.CONFIRMED
    assert rental_service.evidence_service.list_photos(other.id) == []
