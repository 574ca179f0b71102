from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from fleet_rental.clients.external import ExternalClient
from fleet_rental.config.settings import Settings
from fleet_rental.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InsufficientEvidenceError,
    RejectReasonTooShortError,
    RentalCoreException,
    RentalNotFoundException,
    ValidationError,
    VehicleUnavailableError,
)
from fleet_rental.core.utils import total_pages, utcnow, uuid4
from fleet_rental.db.models import Rental
from fleet_rental.db.repositories.idempotency import IdempotencyRepository
from fleet_rental.db.repositories.rental import RentalRepository
from fleet_rental.db.repositories.transition import TransitionRepository
from fleet_rental.monitoring.metrics import (
    SERVICE,
    handovers_total,
    record_transition,
    record_transition_failure,
)
from fleet_rental.schemas import (
    AcceptHandoverRequest,
    ActorContext,
    ActorRole,
    CancelRentalRequest,
    Cancellation,
    CashPaymentRequest,
    ConfirmBookingRequest,
    DisputeRecord,
    DisputeRequest,
    EvidencePhase,
    HandoverResult,
    ListMeta,
    PaymentData,
    PaymentResult,
    PickupRecord,
    PickupRejection,
    ProviderPaymentRequest,
    RejectHandoverRequest,
    RentalData,
    RentalStatus,
    ResolveDisputeRequest,
    ReturnRecord,
    ReturnRequest,
    ReturnResult,
    SettlementSummary,
    TransitionData,
)
from fleet_rental.services.charges import (
    calculate_charges,
    check_fee_justification,
    check_odometer,
)
from fleet_rental.services.evidence import EvidenceService
from fleet_rental.services.payment import PaymentService
from fleet_rental.services.pricing import build_pricing_snapshot
from fleet_rental.services.state_machine import (
    Trigger,
    authorize,
    check_version,
    next_status,
)

STAFF_ROLES = frozenset({ActorRole.STAFF, ActorRole.ADMIN})


def tracked(trigger: Trigger):
    """Counts rejected attempts per trigger; the exception still propagates."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except RentalCoreException as e:
                record_transition_failure(trigger.value, e.code)
                logger.warning(f"{trigger.value} rejected: {e.message}")
                raise

        return wrapper

    return decorator


class RentalService:
    def __init__(
        self,
        rental_repo: RentalRepository,
        transition_repo: TransitionRepository,
        idempotency_repo: IdempotencyRepository,
        evidence_service: EvidenceService,
        payment_service: PaymentService,
        external_client: ExternalClient,
        settings: Settings,
    ):
        self.rental_repo = rental_repo
        self.transition_repo = transition_repo
        self.idempotency_repo = idempotency_repo
        self.evidence_service = evidence_service
        self.payment_service = payment_service
        self.external_client = external_client
        self.settings = settings

    # --- internals ---

    def _load(self, rental_id: str) -> Rental:
        rental = self.rental_repo.get_by_id(rental_id)
        if not rental:
            logger.error(f"Rental {rental_id} not found")
            raise RentalNotFoundException(rental_id)
        return rental

    def _load_visible(self, rental_id: str, actor: ActorContext) -> Rental:
        rental = self._load(rental_id)
        if actor.role == ActorRole.CUSTOMER and rental.customer_id != actor.actor_id:
            raise ForbiddenError(f"Rental {rental_id} belongs to another customer")
        return rental

    def _visited(self, rental_id: str) -> List[RentalStatus]:
        return [
            RentalStatus(s) for s in self.transition_repo.visited_statuses(rental_id)
        ]

    def _begin(
        self,
        rental_id: str,
        trigger: Trigger,
        actor: ActorContext,
        expected_version: Optional[int],
    ) -> Tuple[Rental, RentalStatus]:
        authorize(trigger, actor)
        rental = self._load_visible(rental_id, actor)
        target = next_status(
            RentalStatus(rental.status), trigger, self._visited(rental_id)
        )
        check_version(rental.version, expected_version)
        return rental, target

    def _commit(
        self,
        rental: Rental,
        trigger: Trigger,
        target: RentalStatus,
        actor: ActorContext,
        values: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> RentalData:
        rental_id, from_status, version = rental.id, rental.status, rental.version

        if not self.rental_repo.apply_transition(
            rental_id, from_status, version, target.value, values
        ):
            raise ConflictError(
                f"Rental {rental_id} was changed by another request; "
                "re-fetch the rental and retry"
            )

        self.transition_repo.record(
            rental_id=rental_id,
            from_status=from_status,
            to_status=target.value,
            trigger=trigger.value,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            reason=reason,
        )
        record_transition(trigger.value, target.value)
        return self.rental_repo.to_rental_data(self._load(rental_id))

    # --- queries ---

    def get_rental(self, rental_id: str, actor: ActorContext) -> RentalData:
        return self.rental_repo.to_rental_data(self._load_visible(rental_id, actor))

    def list_by_station(
        self,
        station_id: str,
        status: Optional[RentalStatus],
        page: int,
        limit: int,
        actor: ActorContext,
    ) -> Tuple[List[RentalData], ListMeta]:
        if actor.role not in STAFF_ROLES:
            raise ForbiddenError("Only station staff may list station rentals")

        rentals, total = self.rental_repo.list_by_station(
            station_id, status.value if status else None, page, limit
        )
        logger.info(
            f"Station {station_id}: {total} rentals with status "
            f"{status.value if status else 'ANY'}"
        )
        return (
            [self.rental_repo.to_rental_data(r) for r in rentals],
            ListMeta(total=total, page=page, limit=limit, total_pages=total_pages(total, limit)),
        )

    def list_for_customer(
        self, actor: ActorContext, page: int, limit: int
    ) -> Tuple[List[RentalData], ListMeta]:
        rentals, total = self.rental_repo.list_by_customer(actor.actor_id, page, limit)
        return (
            [self.rental_repo.to_rental_data(r) for r in rentals],
            ListMeta(total=total, page=page, limit=limit, total_pages=total_pages(total, limit)),
        )

    def get_active_rental(self, actor: ActorContext) -> Optional[RentalData]:
        rental = self.rental_repo.get_active_for_customer(actor.actor_id)
        return self.rental_repo.to_rental_data(rental) if rental else None

    def get_transitions(self, rental_id: str, actor: ActorContext) -> List[TransitionData]:
        self._load_visible(rental_id, actor)
        return [
            TransitionData.model_validate(t)
            for t in self.transition_repo.list_for_rental(rental_id)
        ]

    def get_settlement(self, rental_id: str, actor: ActorContext) -> SettlementSummary:
        rental = self._load_visible(rental_id, actor)
        return self.payment_service.summarize(self.rental_repo.to_rental_data(rental))

    def get_payments(self, rental_id: str, actor: ActorContext) -> List[PaymentData]:
        self._load_visible(rental_id, actor)
        return self.payment_service.get_payment_history(rental_id)

    # --- booking confirmation ---

    def confirm_booking(
        self, request: ConfirmBookingRequest, actor: ActorContext
    ) -> RentalData:
        if actor.role not in (ActorRole.SYSTEM, ActorRole.ADMIN):
            raise ForbiddenError("Rentals are opened by the booking system only")

        existing = self.rental_repo.get_by_booking_id(request.booking_id)
        if existing:
            raise ConflictError(
                f"Booking {request.booking_id} already has rental {existing.id}"
            )

        snapshot = build_pricing_snapshot(request, self.settings.tax_rate)
        now = utcnow()
        rental = Rental(
            id=uuid4(),
            booking_id=request.booking_id,
            customer_id=request.customer_id,
            vehicle_id=request.vehicle_id,
            station_id=request.station_id,
            status=RentalStatus.CONFIRMED.value,
            version=0,
            start_at=request.start_at,
            end_at=request.end_at,
            pricing_snapshot=snapshot.model_dump(mode="json", by_alias=True),
            created_at=now,
            updated_at=now,
        )
        self.rental_repo.create_rental(rental)

        logger.info(
            f"Rental {rental.id} confirmed for booking {request.booking_id}: "
            f"base={snapshot.base_price}, deposit={snapshot.deposit} {snapshot.currency}"
        )
        return self.rental_repo.to_rental_data(rental)

    # --- handover ---

    def process_handover(
        self,
        rental_id: str,
        payload: AcceptHandoverRequest | RejectHandoverRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> HandoverResult:
        if isinstance(payload, AcceptHandoverRequest):
            return self.accept_handover(rental_id, payload, actor, expected_version)
        return self.reject_handover(rental_id, payload, actor, expected_version)

    @tracked(Trigger.ACCEPT_HANDOVER)
    def accept_handover(
        self,
        rental_id: str,
        request: AcceptHandoverRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> HandoverResult:
        logger.info(f"Accepting handover of rental {rental_id} by {actor.actor_id}")
        rental, target = self._begin(
            rental_id, Trigger.ACCEPT_HANDOVER, actor, expected_version
        )

        urls = self.evidence_service.collect_urls(
            rental_id, EvidencePhase.PICKUP, request.photos
        )
        required = self.settings.min_pickup_photos
        if len(urls) < required:
            raise InsufficientEvidenceError(
                f"At least {required} pickup photos required, got {len(urls)}"
            )

        if not self.external_client.is_vehicle_available(
            rental.station_id, rental.vehicle_id
        ):
            raise VehicleUnavailableError(
                f"Vehicle {rental.vehicle_id} is not available at station "
                f"{rental.station_id}"
            )

        self.evidence_service.attach_urls(
            rental_id, EvidencePhase.PICKUP, request.photos, actor
        )
        pickup = PickupRecord(
            at=utcnow(),
            staff_id=actor.actor_id,
            odo_km=request.odo_km,
            soc=request.soc,
            notes=request.notes,
            photos=urls,
        )
        data = self._commit(
            rental,
            Trigger.ACCEPT_HANDOVER,
            target,
            actor,
            {"pickup": pickup.model_dump(mode="json")},
        )
        handovers_total.labels(service=SERVICE, action="accept").inc()

        logger.info(f"Rental {rental_id} handed over, now {data.status.value}")
        return HandoverResult(
            rental=data,
            photos=self.evidence_service.list_photos(rental_id, EvidencePhase.PICKUP),
            message="Vehicle handed over to the customer",
        )

    @tracked(Trigger.REJECT_HANDOVER)
    def reject_handover(
        self,
        rental_id: str,
        request: RejectHandoverRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> HandoverResult:
        logger.info(f"Rejecting handover of rental {rental_id} by {actor.actor_id}")
        rental, target = self._begin(
            rental_id, Trigger.REJECT_HANDOVER, actor, expected_version
        )

        reason = request.reject_reason.strip()
        min_len = self.settings.min_reject_reason_len
        if len(reason) < min_len:
            raise RejectReasonTooShortError(
                f"Reject reason must be at least {min_len} characters long"
            )

        self.evidence_service.attach_urls(
            rental_id, EvidencePhase.PICKUP_REJECT, request.photos, actor
        )
        now = utcnow()
        pickup = PickupRecord(
            odo_km=request.odo_km,
            soc=request.soc,
            notes=request.notes,
            rejected=PickupRejection(
                at=now,
                reason=reason,
                photos=self.evidence_service.collect_urls(
                    rental_id, EvidencePhase.PICKUP_REJECT
                ),
                staff_id=actor.actor_id,
            ),
        )
        data = self._commit(
            rental,
            Trigger.REJECT_HANDOVER,
            target,
            actor,
            {"pickup": pickup.model_dump(mode="json"), "closed_at": now},
            reason=reason,
        )
        handovers_total.labels(service=SERVICE, action="reject").inc()

        logger.info(f"Rental {rental_id} rejected at handover: {reason}")
        return HandoverResult(
            rental=data,
            photos=self.evidence_service.list_photos(
                rental_id, EvidencePhase.PICKUP_REJECT
            ),
            message="Handover rejected",
        )

    @tracked(Trigger.CANCEL)
    def cancel_rental(
        self,
        rental_id: str,
        request: CancelRentalRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> RentalData:
        rental, target = self._begin(rental_id, Trigger.CANCEL, actor, expected_version)

        now = utcnow()
        cancellation = Cancellation(at=now, actor_id=actor.actor_id, reason=request.reason)
        data = self._commit(
            rental,
            Trigger.CANCEL,
            target,
            actor,
            {"cancellation": cancellation.model_dump(mode="json"), "closed_at": now},
            reason=request.reason,
        )
        logger.info(f"Rental {rental_id} cancelled by {actor.role.value} {actor.actor_id}")
        return data

    # --- return & settlement ---

    @tracked(Trigger.RECORD_RETURN)
    def record_return(
        self,
        rental_id: str,
        request: ReturnRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> ReturnResult:
        logger.info(f"Recording return of rental {rental_id} by {actor.actor_id}")
        rental, target = self._begin(
            rental_id, Trigger.RECORD_RETURN, actor, expected_version
        )
        current = self.rental_repo.to_rental_data(rental)

        check_odometer(current.pickup, request.odo_km)
        check_fee_justification(request.extra_fees)

        urls = self.evidence_service.collect_urls(
            rental_id, EvidencePhase.RETURN, request.photos
        )
        required = self.settings.min_return_photos
        if len(urls) < required:
            raise InsufficientEvidenceError(
                f"At least {required} return photos required, got {len(urls)}"
            )
        self.evidence_service.attach_urls(
            rental_id, EvidencePhase.RETURN, request.photos, actor
        )

        return_record = ReturnRecord(
            at=utcnow(),
            staff_id=actor.actor_id,
            odo_km=request.odo_km,
            soc=request.soc,
            notes=request.notes,
            photos=urls,
            fees=request.extra_fees,
        )
        policy = self.external_client.get_fee_policy(
            current.pricing_snapshot.policy_version
        )
        charges = calculate_charges(
            current.pricing_snapshot,
            current.pickup,
            return_record,
            current.end_at,
            policy,
        )

        data = self._commit(
            rental,
            Trigger.RECORD_RETURN,
            target,
            actor,
            {
                "return_record": return_record.model_dump(mode="json"),
                "charges": charges.model_dump(mode="json"),
            },
        )
        summary = self.payment_service.summarize(data)

        if summary.needs_payment:
            message = f"Customer owes {summary.amount_due}"
        elif summary.needs_refund:
            message = f"Refund {summary.refund_amount} to the customer"
        else:
            message = "Charges match the deposit"

        logger.info(
            f"Rental {rental_id} returned: total={charges.total}, "
            f"deposit={summary.deposit_paid}, final={summary.final_amount}"
        )
        return ReturnResult(
            rental=data,
            photos=self.evidence_service.list_photos(rental_id, EvidencePhase.RETURN),
            payment=summary,
            message=message,
        )

    @tracked(Trigger.FLAG_DISPUTE)
    def flag_dispute(
        self,
        rental_id: str,
        request: DisputeRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> RentalData:
        rental, target = self._begin(
            rental_id, Trigger.FLAG_DISPUTE, actor, expected_version
        )

        note = request.note.strip()
        if not note:
            raise ValidationError("A dispute needs an annotation describing the anomaly")

        dispute = DisputeRecord(flagged_at=utcnow(), flagged_by=actor.actor_id, note=note)
        data = self._commit(
            rental,
            Trigger.FLAG_DISPUTE,
            target,
            actor,
            {"dispute": dispute.model_dump(mode="json")},
            reason=note,
        )
        logger.info(f"Rental {rental_id} disputed by {actor.actor_id}: {note}")
        return data

    def resolve_dispute(
        self,
        rental_id: str,
        request: ResolveDisputeRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
    ) -> RentalData:
        trigger = (
            Trigger.RESOLVE_COMPLETE
            if request.decision == RentalStatus.COMPLETED.value
            else Trigger.RESOLVE_REJECT
        )
        return self._resolve_dispute(rental_id, request, actor, expected_version, trigger)

    def _resolve_dispute(
        self,
        rental_id: str,
        request: ResolveDisputeRequest,
        actor: ActorContext,
        expected_version: Optional[int],
        trigger: Trigger,
    ) -> RentalData:
        try:
            rental, target = self._begin(rental_id, trigger, actor, expected_version)

            note = request.note.strip()
            if not note:
                raise ValidationError("A dispute resolution needs a note")

            now = utcnow()
            dispute = DisputeRecord.model_validate(rental.dispute)
            dispute.resolved_at = now
            dispute.resolved_by = actor.actor_id
            dispute.decision = target
            dispute.resolution_note = note
            data = self._commit(
                rental,
                trigger,
                target,
                actor,
                {"dispute": dispute.model_dump(mode="json"), "closed_at": now},
                reason=note,
            )
        except RentalCoreException as e:
            record_transition_failure(trigger.value, e.code)
            raise

        logger.info(f"Dispute on rental {rental_id} resolved as {target.value}")
        return data

    @tracked(Trigger.SETTLE)
    def settle_cash(
        self,
        rental_id: str,
        request: CashPaymentRequest,
        actor: ActorContext,
        expected_version: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        logger.info(
            f"Cash settlement of {request.amount} for rental {rental_id} "
            f"by {actor.actor_id}"
        )
        if actor.role not in STAFF_ROLES:
            raise ForbiddenError("Cash settlements are recorded by station staff")

        scope = f"cash:{rental_id}"
        if idempotency_key:
            cached = self.idempotency_repo.get_cached_response(idempotency_key, scope)
            if cached:
                logger.info(f"Returning cached settlement for key {idempotency_key}")
                return PaymentResult.model_validate(cached)

        rental, target = self._begin(rental_id, Trigger.SETTLE, actor, expected_version)
        current = self.rental_repo.to_rental_data(rental)

        payment, summary = self.payment_service.settle_cash(
            current, request.amount, request.note, actor.actor_id
        )
        result = self._apply_settlement(rental, target, actor, payment, summary)

        if idempotency_key:
            self.idempotency_repo.create_idempotency_key(
                key=idempotency_key,
                scope=scope,
                actor_id=actor.actor_id,
                response_data=result.model_dump(mode="json", by_alias=True),
            )
        return result

    @tracked(Trigger.SETTLE)
    def record_provider_payment(
        self,
        rental_id: str,
        request: ProviderPaymentRequest,
        actor: ActorContext,
    ) -> PaymentResult:
        if actor.role != ActorRole.SYSTEM:
            raise ForbiddenError("Provider payments are confirmed by the payment system")

        rental = self._load(rental_id)
        # a repeated confirmation is answered even after the rental completed
        replay = self.payment_service.find_payment(request.transaction_ref) is not None
        if not replay:
            target = next_status(
                RentalStatus(rental.status), Trigger.SETTLE, self._visited(rental_id)
            )

        current = self.rental_repo.to_rental_data(rental)
        payment, summary, created = self.payment_service.record_provider_payment(
            current, request.transaction_ref, request.amount, actor.actor_id
        )
        if not created:
            return PaymentResult(
                rental=current,
                payment=payment,
                settlement=summary,
                message="Payment already recorded",
            )
        return self._apply_settlement(rental, target, actor, payment, summary)

    def _apply_settlement(
        self,
        rental: Rental,
        target: RentalStatus,
        actor: ActorContext,
        payment: PaymentData,
        summary: SettlementSummary,
    ) -> PaymentResult:
        if summary.settled:
            data = self._commit(
                rental,
                Trigger.SETTLE,
                target,
                actor,
                {"closed_at": utcnow()},
                reason=payment.transaction_ref,
            )
            message = "Rental settled and completed"
        else:
            # partial payment: status stays, version still moves so that a
            # concurrent payment based on the old balance loses
            rental_id, status, version = rental.id, rental.status, rental.version
            if not self.rental_repo.apply_transition(rental_id, status, version, status):
                raise ConflictError(
                    f"Rental {rental_id} was changed by another request; "
                    "re-fetch the rental and retry"
                )
            data = self.rental_repo.to_rental_data(self._load(rental_id))
            message = f"Partial payment recorded, {summary.outstanding} outstanding"

        logger.info(
            f"Rental {rental.id}: {payment.method.value} {payment.direction.value} "
            f"{payment.amount} ({payment.status.value}), outstanding {summary.outstanding}"
        )
        return PaymentResult(
            rental=data, payment=payment, settlement=summary, message=message
        )
