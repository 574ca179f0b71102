from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_rental.core.utils import utcnow
from fleet_rental.db.models import RentalTransition


class TransitionRepository:
    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        rental_id: str,
        from_status: str,
        to_status: str,
        trigger: str,
        actor_id: str,
        actor_role: str,
        reason: Optional[str] = None,
    ) -> RentalTransition:
        transition = RentalTransition(
            rental_id=rental_id,
            from_status=from_status,
            to_status=to_status,
            trigger=trigger,
            actor_id=actor_id,
            actor_role=actor_role,
            reason=reason,
            created_at=utcnow(),
        )
        self.session.add(transition)
        self.session.flush()
        return transition

    def visited_statuses(self, rental_id: str) -> List[str]:
        """Statuses the rental has left, oldest first."""
        return list(
            self.session.execute(
                select(RentalTransition.from_status)
                .where(RentalTransition.rental_id == rental_id)
                .order_by(RentalTransition.id)
            )
            .scalars()
            .all()
        )

    def list_for_rental(self, rental_id: str) -> List[RentalTransition]:
        return list(
            self.session.execute(
                select(RentalTransition)
                .where(RentalTransition.rental_id == rental_id)
                .order_by(RentalTransition.id)
            )
            .scalars()
            .all()
        )


__all__ = ["TransitionRepository"]
