from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from fleet_rental.core.utils import ensure_utc, utcnow
from fleet_rental.db.models import Rental
from fleet_rental.schemas import (
    Cancellation,
    Charges,
    DisputeRecord,
    PickupRecord,
    PricingSnapshot,
    RentalData,
    RentalStatus,
    ReturnRecord,
)

ACTIVE_STATUSES = (
    RentalStatus.CONFIRMED.value,
    RentalStatus.ONGOING.value,
    RentalStatus.RETURN_PENDING.value,
)

# columns a transition is allowed to write besides status/version/updated_at
TRANSITION_COLUMNS = frozenset(
    {"pickup", "return_record", "charges", "cancellation", "dispute", "closed_at"}
)


class RentalRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, rental_id: str) -> Optional[Rental]:
        return self.session.get(Rental, rental_id)

    def get_by_booking_id(self, booking_id: str) -> Optional[Rental]:
        return self.session.execute(
            select(Rental).where(Rental.booking_id == booking_id)
        ).scalar_one_or_none()

    def create_rental(self, rental: Rental) -> None:
        self.session.add(rental)
        self.session.flush()

    def list_by_station(
        self,
        station_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Rental], int]:
        conditions = [Rental.station_id == station_id]
        if status:
            conditions.append(Rental.status == status)
        return self._paginate(conditions, page, limit)

    def list_by_customer(
        self, customer_id: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[Rental], int]:
        return self._paginate([Rental.customer_id == customer_id], page, limit)

    def get_active_for_customer(self, customer_id: str) -> Optional[Rental]:
        return (
            self.session.execute(
                select(Rental)
                .where(
                    Rental.customer_id == customer_id,
                    Rental.status.in_(ACTIVE_STATUSES),
                )
                .order_by(Rental.start_at.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )

    def _paginate(self, conditions, page: int, limit: int) -> Tuple[List[Rental], int]:
        total = self.session.execute(
            select(func.count()).select_from(Rental).where(*conditions)
        ).scalar_one()
        items = (
            self.session.execute(
                select(Rental)
                .where(*conditions)
                .order_by(Rental.start_at.desc(), Rental.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(items), int(total)

    def apply_transition(
        self,
        rental_id: str,
        from_status: str,
        expected_version: int,
        to_status: str,
        values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Commits a status change only if the row still has the status and
        version the caller validated against. Returns False when another
        writer got there first; nothing is written in that case.
        """
        values = values or {}
        unknown = set(values) - TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Transition may not write columns: {sorted(unknown)}")

        # pending evidence rows must hit the database in the same transaction
        self.session.flush()

        result = self.session.execute(
            update(Rental)
            .where(
                Rental.id == rental_id,
                Rental.status == from_status,
                Rental.version == expected_version,
            )
            .values(
                {
                    Rental.status: to_status,
                    Rental.version: expected_version + 1,
                    Rental.updated_at: utcnow(),
                    **{getattr(Rental, key): value for key, value in values.items()},
                }
            )
            .execution_options(synchronize_session=False)
        )

        updated = result.rowcount > 0
        if updated:
            self.session.get(Rental, rental_id, populate_existing=True)
            logger.info(
                f"Rental {rental_id}: {from_status} -> {to_status} "
                f"(version {expected_version} -> {expected_version + 1})"
            )
        else:
            logger.warning(
                f"Rental {rental_id}: transition {from_status} -> {to_status} "
                f"lost the race at version {expected_version}"
            )
        return updated

    def to_rental_data(self, rental: Rental) -> RentalData:
        return RentalData(
            id=rental.id,
            booking_id=rental.booking_id,
            customer_id=rental.customer_id,
            vehicle_id=rental.vehicle_id,
            station_id=rental.station_id,
            status=RentalStatus(rental.status),
            version=rental.version,
            start_at=ensure_utc(rental.start_at),
            end_at=ensure_utc(rental.end_at),
            pricing_snapshot=PricingSnapshot.model_validate(rental.pricing_snapshot),
            pickup=PickupRecord.model_validate(rental.pickup) if rental.pickup else None,
            return_record=(
                ReturnRecord.model_validate(rental.return_record)
                if rental.return_record
                else None
            ),
            charges=Charges.model_validate(rental.charges) if rental.charges else None,
            cancellation=(
                Cancellation.model_validate(rental.cancellation)
                if rental.cancellation
                else None
            ),
            dispute=(
                DisputeRecord.model_validate(rental.dispute) if rental.dispute else None
            ),
            created_at=ensure_utc(rental.created_at),
            updated_at=ensure_utc(rental.updated_at),
            closed_at=ensure_utc(rental.closed_at),
        )


__all__ = ["RentalRepository", "ACTIVE_STATUSES"]
