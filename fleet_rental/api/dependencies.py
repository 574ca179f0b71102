from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from fleet_rental.clients.external import ExternalClient
from fleet_rental.config.settings import Settings
from fleet_rental.core.exceptions import missing_actor_exception
from fleet_rental.db.database import get_sessionmaker
from fleet_rental.db.repositories.evidence import EvidenceRepository
from fleet_rental.db.repositories.idempotency import IdempotencyRepository
from fleet_rental.db.repositories.payment import PaymentRepository
from fleet_rental.db.repositories.rental import RentalRepository
from fleet_rental.db.repositories.transition import TransitionRepository
from fleet_rental.schemas import ActorContext, ActorRole
from fleet_rental.services.evidence import EvidenceService
from fleet_rental.services.payment import PaymentService
from fleet_rental.services.rental import RentalService


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def get_session(settings: Settings = Depends(get_settings)) -> Session:
    sessionmaker = get_sessionmaker(settings)
    session = sessionmaker()
    try:
        yield session
    finally:
        session.close()


def get_external_client(request: Request) -> ExternalClient:
    return request.app.state.external_client


def get_rental_repository(session: Session = Depends(get_session)) -> RentalRepository:
    return RentalRepository(session)


def get_evidence_repository(
    session: Session = Depends(get_session),
) -> EvidenceRepository:
    return EvidenceRepository(session)


def get_payment_repository(session: Session = Depends(get_session)) -> PaymentRepository:
    return PaymentRepository(session)


def get_transition_repository(
    session: Session = Depends(get_session),
) -> TransitionRepository:
    return TransitionRepository(session)


def get_idempotency_repository(
    session: Session = Depends(get_session),
) -> IdempotencyRepository:
    return IdempotencyRepository(session)


def get_evidence_service(
    evidence_repo: EvidenceRepository = Depends(get_evidence_repository),
    rental_repo: RentalRepository = Depends(get_rental_repository),
    external_client: ExternalClient = Depends(get_external_client),
) -> EvidenceService:
    return EvidenceService(evidence_repo, rental_repo, external_client)


def get_payment_service(
    payment_repo: PaymentRepository = Depends(get_payment_repository),
    settings: Settings = Depends(get_settings),
) -> PaymentService:
    return PaymentService(payment_repo, settings)


def get_rental_service(
    rental_repo: RentalRepository = Depends(get_rental_repository),
    transition_repo: TransitionRepository = Depends(get_transition_repository),
    idempotency_repo: IdempotencyRepository = Depends(get_idempotency_repository),
    evidence_service: EvidenceService = Depends(get_evidence_service),
    payment_service: PaymentService = Depends(get_payment_service),
    external_client: ExternalClient = Depends(get_external_client),
    settings: Settings = Depends(get_settings),
) -> RentalService:
    return RentalService(
        rental_repo,
        transition_repo,
        idempotency_repo,
        evidence_service,
        payment_service,
        external_client,
        settings,
    )


def get_actor(
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
) -> ActorContext:
    if not actor_id or not actor_role:
        raise missing_actor_exception()
    try:
        role = ActorRole(actor_role.upper())
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "validation_error",
                "message": f"Unknown actor role {actor_role}",
            },
        )
    return ActorContext(actor_id=actor_id, role=role)


def get_expected_version(
    if_match: Optional[str] = Header(None, alias="If-Match"),
) -> Optional[int]:
    if if_match is None:
        return None
    value = if_match.strip().strip('"')
    if value.startswith("W/"):
        value = value[2:].strip('"')
    if not value.isdigit():
        raise HTTPException(
            status_code=422,
            detail={
                "code": "validation_error",
                "message": "If-Match must carry the rental version number",
            },
        )
    return int(value)


def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
    return idempotency_key or None
