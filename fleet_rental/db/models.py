from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Rental(Base):
    __tablename__ = "rentals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), unique=True)
    customer_id: Mapped[str] = mapped_column(String(64), index=True)
    vehicle_id: Mapped[str] = mapped_column(String(64))
    station_id: Mapped[str] = mapped_column(String(64))
    # CONFIRMED / ONGOING / RETURN_PENDING / COMPLETED / REJECTED / CANCELLED / DISPUTED
    status: Mapped[str] = mapped_column(String(16))
    version: Mapped[int] = mapped_column(Integer, default=0)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # write-once, never part of a transition UPDATE
    pricing_snapshot: Mapped[dict] = mapped_column(JSON)
    pickup: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    return_record: Mapped[Optional[dict]] = mapped_column(
        "return", JSON, nullable=True
    )
    charges: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    cancellation: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    dispute: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


Index("ix_rentals_station_status", Rental.station_id, Rental.status)


class EvidencePhoto(Base):
    __tablename__ = "evidence_photos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rental_id: Mapped[str] = mapped_column(String(64), index=True)
    phase: Mapped[str] = mapped_column(String(16))  # PICKUP / PICKUP_REJECT / RETURN
    url: Mapped[str] = mapped_column(String(1024))
    reference: Mapped[str] = mapped_column(String(128))
    taken_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    uploaded_by: Mapped[str] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("rental_id", "reference", name="uq_evidence_reference"),
        UniqueConstraint("url", name="uq_evidence_url"),
    )


class RentalTransition(Base):
    __tablename__ = "rental_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rental_id: Mapped[str] = mapped_column(String(64), index=True)
    from_status: Mapped[str] = mapped_column(String(16))
    to_status: Mapped[str] = mapped_column(String(16))
    trigger: Mapped[str] = mapped_column(String(32))
    actor_id: Mapped[str] = mapped_column(String(64))
    actor_role: Mapped[str] = mapped_column(String(16))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rental_id: Mapped[str] = mapped_column(String(64), index=True)
    transaction_ref: Mapped[str] = mapped_column(String(128), unique=True)
    method: Mapped[str] = mapped_column(String(16))  # CASH / PROVIDER
    direction: Mapped[str] = mapped_column(String(16))  # CHARGE / REFUND
    amount: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16))  # SUCCESS / partial
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64))
    actor_id: Mapped[str] = mapped_column(String(64))
    response_json: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    __table_args__ = (UniqueConstraint("key", name="uq_idem_key"),)
