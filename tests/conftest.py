from datetime import datetime, timedelta, timezone
from typing import Generator
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fleet_rental.clients.external import FeePolicy, StoredObject
from fleet_rental.config.settings import Settings
from fleet_rental.db.models import Base
from fleet_rental.db.repositories import (
    EvidenceRepository,
    IdempotencyRepository,
    PaymentRepository,
    RentalRepository,
    TransitionRepository,
)
from fleet_rental.schemas import (
    AcceptHandoverRequest,
    ActorContext,
    ActorRole,
    ConfirmBookingRequest,
)
from fleet_rental.services.evidence import EvidenceService
from fleet_rental.services.payment import PaymentService
from fleet_rental.services.rental import RentalService

DEPOSIT = 500_000
BASE_PRICE = 200_000  # 4 hours at 50_000


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        recharge_fee_per_percent=0,
        late_grace_min=0,
        late_fee_unit_min=60,
        late_fee_multiplier=1.0,
    )


@pytest.fixture
def db_engine():
    # TestClient runs sync endpoints in a worker thread; share one connection
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        bind=db_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def external_client(settings):
    client = Mock()
    client.is_vehicle_available.return_value = True
    client.get_fee_policy.side_effect = lambda version: FeePolicy.from_settings(
        settings, version
    )
    client.upload_photo.side_effect = lambda content, filename, content_type, reference: (
        StoredObject(url=f"https://storage.test/{reference}", reference=reference)
    )
    client.get_circuit_breaker_stats.return_value = {}
    return client


@pytest.fixture
def build_service(settings, external_client):
    def _build(session: Session) -> RentalService:
        rental_repo = RentalRepository(session)
        evidence_service = EvidenceService(
            EvidenceRepository(session), rental_repo, external_client
        )
        payment_service = PaymentService(PaymentRepository(session), settings)
        return RentalService(
            rental_repo,
            TransitionRepository(session),
            IdempotencyRepository(session),
            evidence_service,
            payment_service,
            external_client,
            settings,
        )

    return _build


@pytest.fixture
def rental_service(build_service, db_session) -> RentalService:
    return build_service(db_session)


@pytest.fixture
def system_actor() -> ActorContext:
    return ActorContext.system()


@pytest.fixture
def staff_actor() -> ActorContext:
    return ActorContext(actor_id="staff-1", role=ActorRole.STAFF)


@pytest.fixture
def admin_actor() -> ActorContext:
    return ActorContext(actor_id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def customer_actor() -> ActorContext:
    return ActorContext(actor_id="customer-1", role=ActorRole.CUSTOMER)


def booking_request(booking_id: str = "bk-1", **overrides) -> ConfirmBookingRequest:
    start = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=1)
    data = dict(
        booking_id=booking_id,
        customer_id="customer-1",
        vehicle_id="ev-42",
        station_id="st-1",
        start_at=start,
        end_at=start + timedelta(hours=4),
        rental_type="hourly",
        hourly_rate=50_000,
        deposit=DEPOSIT,
        policy_version="v1",
    )
    data.update(overrides)
    return ConfirmBookingRequest(**data)


def pickup_photos(rental_id: str, count: int = 3):
    return [f"https://cdn.test/{rental_id}/pickup-{i}.jpg" for i in range(count)]


def return_photos(rental_id: str, count: int = 1):
    return [f"https://cdn.test/{rental_id}/return-{i}.jpg" for i in range(count)]


@pytest.fixture
def confirmed_rental(rental_service, db_session, system_actor):
    rental = rental_service.confirm_booking(booking_request(), system_actor)
    db_session.commit()
    return rental


@pytest.fixture
def ongoing_rental(rental_service, db_session, confirmed_rental, staff_actor):
    result = rental_service.accept_handover(
        confirmed_rental.id,
        AcceptHandoverRequest(
            action="accept",
            photos=pickup_photos(confirmed_rental.id),
            odo_km=1200,
            soc=0.9,
        ),
        staff_actor,
    )
    db_session.commit()
    return result.rental


@pytest.fixture
def api_client(db_engine, session_factory, settings, external_client):
    from fleet_rental.api.dependencies import (
        get_external_client,
        get_session,
        get_settings,
    )
    from fleet_rental.main import app

    def _get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_external_client] = lambda: external_client

    yield TestClient(app)

    app.dependency_overrides.clear()


def headers_for(actor: ActorContext, **extra) -> dict:
    return {"X-Actor-Id": actor.actor_id, "X-Actor-Role": actor.role.value, **extra}


def pytest_configure(config):
    config.addinivalue_line("markers", "api: mark test as HTTP API test")
    config.addinivalue_line("markers", "settlement: mark test as settlement-related")
    config.addinivalue_line("markers", "concurrency: mark test as concurrency-related")
