from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from loguru import logger
from sqlalchemy.orm import Session

from fleet_rental.api.dependencies import (
    get_actor,
    get_expected_version,
    get_idempotency_key,
    get_rental_service,
    get_session,
)
from fleet_rental.core.exceptions import (
    RentalCoreException,
    internal_error_exception,
    to_http_exception,
)
from fleet_rental.schemas import (
    ActorContext,
    ApiResponse,
    CancelRentalRequest,
    CashPaymentRequest,
    ConfirmBookingRequest,
    DisputeRequest,
    HandoverRequest,
    HandoverResult,
    PaymentData,
    PaymentResult,
    ProviderPaymentRequest,
    RentalData,
    RentalStatus,
    ResolveDisputeRequest,
    ReturnRequest,
    ReturnResult,
    SettlementSummary,
    TransitionData,
)
from fleet_rental.services.rental import RentalService

router = APIRouter()


@router.post("/rentals", response_model=ApiResponse[RentalData], status_code=201)
def confirm_booking(
    request: ConfirmBookingRequest,
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        rental = rental_service.confirm_booking(request, actor)
        session.commit()
        return ApiResponse(data=rental)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error confirming booking {request.booking_id}: {e}")
        raise internal_error_exception(str(e))


@router.get("/rentals", response_model=ApiResponse[List[RentalData]])
def list_my_rentals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        rentals, meta = rental_service.list_for_customer(actor, page, limit)
        return ApiResponse(data=rentals, meta=meta)
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error listing rentals of {actor.actor_id}: {e}")
        raise internal_error_exception(str(e))


@router.get("/rentals/active", response_model=ApiResponse[Optional[RentalData]])
def get_active_rental(
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        return ApiResponse(data=rental_service.get_active_rental(actor))
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error loading active rental of {actor.actor_id}: {e}")
        raise internal_error_exception(str(e))


@router.get(
    "/rentals/station/{station_id}", response_model=ApiResponse[List[RentalData]]
)
def list_station_rentals(
    station_id: str,
    status: Optional[RentalStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        rentals, meta = rental_service.list_by_station(
            station_id, status, page, limit, actor
        )
        return ApiResponse(data=rentals, meta=meta)
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error listing rentals of station {station_id}: {e}")
        raise internal_error_exception(str(e))


@router.get("/rentals/{rental_id}", response_model=ApiResponse[RentalData])
def get_rental(
    rental_id: str,
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        return ApiResponse(data=rental_service.get_rental(rental_id, actor))
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error loading rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.post("/rentals/{rental_id}/checkin", response_model=ApiResponse[HandoverResult])
def checkin(
    rental_id: str,
    payload: HandoverRequest = Body(...),
    actor: ActorContext = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        result = rental_service.process_handover(
            rental_id, payload, actor, expected_version
        )
        session.commit()
        return ApiResponse(data=result)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error processing handover of rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.post("/rentals/{rental_id}/cancel", response_model=ApiResponse[RentalData])
def cancel_rental(
    rental_id: str,
    request: Optional[CancelRentalRequest] = None,
    actor: ActorContext = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        rental = rental_service.cancel_rental(
            rental_id, request or CancelRentalRequest(), actor, expected_version
        )
        session.commit()
        return ApiResponse(data=rental)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error cancelling rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.post("/rentals/{rental_id}/return", response_model=ApiResponse[ReturnResult])
def record_return(
    rental_id: str,
    request: ReturnRequest,
    actor: ActorContext = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        result = rental_service.record_return(rental_id, request, actor, expected_version)
        session.commit()
        return ApiResponse(data=result)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error recording return of rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.post("/rentals/{rental_id}/dispute", response_model=ApiResponse[RentalData])
def flag_dispute(
    rental_id: str,
    request: DisputeRequest,
    actor: ActorContext = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        rental = rental_service.flag_dispute(rental_id, request, actor, expected_version)
        session.commit()
        return ApiResponse(data=rental)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error flagging dispute on rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.post("/rentals/{rental_id}/resolve", response_model=ApiResponse[RentalData])
def resolve_dispute(
    rental_id: str,
    request: ResolveDisputeRequest,
    actor: ActorContext = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        rental = rental_service.resolve_dispute(
            rental_id, request, actor, expected_version
        )
        session.commit()
        return ApiResponse(data=rental)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error resolving dispute on rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.get(
    "/rentals/{rental_id}/settlement", response_model=ApiResponse[SettlementSummary]
)
def get_settlement(
    rental_id: str,
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        return ApiResponse(data=rental_service.get_settlement(rental_id, actor))
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error computing settlement of rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.post(
    "/rentals/{rental_id}/payments/cash", response_model=ApiResponse[PaymentResult]
)
def settle_cash(
    rental_id: str,
    request: CashPaymentRequest,
    actor: ActorContext = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        result = rental_service.settle_cash(
            rental_id, request, actor, expected_version, idempotency_key
        )
        session.commit()
        return ApiResponse(data=result)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error settling rental {rental_id} in cash: {e}")
        raise internal_error_exception(str(e))


@router.post(
    "/rentals/{rental_id}/payments/provider", response_model=ApiResponse[PaymentResult]
)
def record_provider_payment(
    rental_id: str,
    request: ProviderPaymentRequest,
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
    session: Session = Depends(get_session),
):
    try:
        result = rental_service.record_provider_payment(rental_id, request, actor)
        session.commit()
        return ApiResponse(data=result)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(
            f"Error recording provider payment {request.transaction_ref}: {e}"
        )
        raise internal_error_exception(str(e))


@router.get(
    "/rentals/{rental_id}/payments", response_model=ApiResponse[List[PaymentData]]
)
def get_payments(
    rental_id: str,
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        return ApiResponse(data=rental_service.get_payments(rental_id, actor))
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error loading payments of rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.get(
    "/rentals/{rental_id}/transitions",
    response_model=ApiResponse[List[TransitionData]],
)
def get_transitions(
    rental_id: str,
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
):
    try:
        return ApiResponse(data=rental_service.get_transitions(rental_id, actor))
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error loading transitions of rental {rental_id}: {e}")
        raise internal_error_exception(str(e))
