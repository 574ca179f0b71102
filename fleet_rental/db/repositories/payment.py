from typing import List, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fleet_rental.core.utils import uuid4, utcnow
from fleet_rental.db.models import Payment


class PaymentRepository:
    def __init__(self, session: Session):
        self.session = session

    def create_payment(
        self,
        rental_id: str,
        transaction_ref: str,
        method: str,
        direction: str,
        amount: int,
        status: str,
        actor_id: str,
        note: Optional[str] = None,
    ) -> Payment:
        payment = Payment(
            id=uuid4(),
            rental_id=rental_id,
            transaction_ref=transaction_ref,
            method=method,
            direction=direction,
            amount=amount,
            status=status,
            note=note,
            actor_id=actor_id,
            created_at=utcnow(),
        )
        self.session.add(payment)
        self.session.flush()

        logger.info(
            f"Payment {status}: rental={rental_id}, method={method}, "
            f"direction={direction}, amount={amount}, ref={transaction_ref}"
        )
        return payment

    def get_by_transaction_ref(self, transaction_ref: str) -> Optional[Payment]:
        return self.session.execute(
            select(Payment).where(Payment.transaction_ref == transaction_ref)
        ).scalar_one_or_none()

    def get_total_collected(self, rental_id: str, direction: str) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.rental_id == rental_id,
                Payment.direction == direction,
            )
        ).scalar()
        return int(total or 0)

    def has_payments(self, rental_id: str) -> bool:
        return (
            self.session.execute(
                select(Payment.id).where(Payment.rental_id == rental_id).limit(1)
            ).first()
            is not None
        )

    def get_payments(self, rental_id: str) -> List[Payment]:
        return list(
            self.session.execute(
                select(Payment)
                .where(Payment.rental_id == rental_id)
                .order_by(Payment.created_at, Payment.id)
            )
            .scalars()
            .all()
        )


__all__ = ["PaymentRepository"]
