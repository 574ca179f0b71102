from typing import List, Optional, Tuple

from loguru import logger

from fleet_rental.config.settings import Settings
from fleet_rental.core.exceptions import ChargesUndefinedError, ConflictError, PaymentMismatchError
from fleet_rental.core.utils import transaction_ref
from fleet_rental.db.repositories.payment import PaymentRepository
from fleet_rental.monitoring.metrics import record_payment
from fleet_rental.schemas import (
    PaymentData,
    PaymentDirection,
    PaymentMethod,
    PaymentStatus,
    RentalData,
    SettlementSummary,
)


def settlement_delta(total_charges: int, deposit: int) -> int:
    """Positive: the customer owes this much. Negative: the customer is owed it."""
    return total_charges - deposit


class PaymentService:
    def __init__(self, payment_repo: PaymentRepository, settings: Settings):
        self.payment_repo = payment_repo
        self.allow_partial_cash = settings.allow_partial_cash

    def summarize(self, rental: RentalData) -> SettlementSummary:
        if rental.charges is None:
            raise ChargesUndefinedError(
                f"Rental {rental.id} has no charges yet; record the vehicle return first"
            )

        deposit = rental.pricing_snapshot.deposit
        final_amount = settlement_delta(rental.charges.total, deposit)
        collected = self.payment_repo.get_total_collected(
            rental.id, PaymentDirection.CHARGE.value
        )
        refunded = self.payment_repo.get_total_collected(
            rental.id, PaymentDirection.REFUND.value
        )

        amount_due = max(final_amount, 0)
        refund_amount = max(-final_amount, 0)
        if final_amount > 0:
            outstanding = amount_due - collected
        elif final_amount < 0:
            outstanding = refund_amount - refunded
        else:
            outstanding = 0

        return SettlementSummary(
            rental_id=rental.id,
            total_charges=rental.charges.total,
            deposit_paid=deposit,
            final_amount=final_amount,
            needs_payment=final_amount > 0,
            needs_refund=final_amount < 0,
            amount_due=amount_due,
            refund_amount=refund_amount,
            collected=collected,
            refunded=refunded,
            outstanding=max(outstanding, 0),
            settled=outstanding <= 0
            and self.payment_repo.has_payments(rental.id),
        )

    def settle_cash(
        self, rental: RentalData, amount: int, note: Optional[str], actor_id: str
    ) -> Tuple[PaymentData, SettlementSummary]:
        summary = self.summarize(rental)

        if summary.needs_payment:
            outstanding = summary.outstanding
            if amount <= 0:
                raise PaymentMismatchError(
                    f"Cash amount must be positive; customer owes {outstanding}"
                )
            if amount > outstanding:
                raise PaymentMismatchError(
                    f"Cash amount {amount} exceeds the outstanding {outstanding}; "
                    "change is not given, collect the exact amount"
                )
            if amount < outstanding and not self.allow_partial_cash:
                raise PaymentMismatchError(
                    f"Cash amount {amount} does not match the outstanding {outstanding}"
                )
            direction = PaymentDirection.CHARGE
            status = (
                PaymentStatus.SUCCESS if amount == outstanding else PaymentStatus.PARTIAL
            )
        elif summary.needs_refund:
            if amount != summary.outstanding:
                raise PaymentMismatchError(
                    f"Refund amount {amount} does not match the refund due "
                    f"{summary.outstanding}"
                )
            direction = PaymentDirection.REFUND
            status = PaymentStatus.SUCCESS
        else:
            if amount != 0:
                raise PaymentMismatchError(
                    f"Charges equal the deposit; cash amount must be 0, got {amount}"
                )
            direction = PaymentDirection.CHARGE
            status = PaymentStatus.SUCCESS

        payment = self.payment_repo.create_payment(
            rental_id=rental.id,
            transaction_ref=transaction_ref("CASH"),
            method=PaymentMethod.CASH.value,
            direction=direction.value,
            amount=amount,
            status=status.value,
            actor_id=actor_id,
            note=note,
        )
        record_payment(PaymentMethod.CASH.value, direction.value, status.value, amount)

        return PaymentData.model_validate(payment), self.summarize(rental)

    def record_provider_payment(
        self, rental: RentalData, provider_ref: str, amount: int, actor_id: str
    ) -> Tuple[PaymentData, SettlementSummary, bool]:
        """
        Applies a gateway-confirmed payment. Returns (payment, summary, created);
        a repeated confirmation with the same reference is answered with the
        original record and created=False.
        """
        existing = self.payment_repo.get_by_transaction_ref(provider_ref)
        if existing:
            if existing.rental_id != rental.id:
                raise ConflictError(
                    f"Transaction {provider_ref} belongs to another rental"
                )
            logger.info(f"Provider payment {provider_ref} already recorded")
            return PaymentData.model_validate(existing), self.summarize(rental), False

        summary = self.summarize(rental)
        if amount != summary.outstanding:
            raise PaymentMismatchError(
                f"Provider amount {amount} does not match the outstanding "
                f"{summary.outstanding}"
            )
        direction = (
            PaymentDirection.REFUND if summary.needs_refund else PaymentDirection.CHARGE
        )

        payment = self.payment_repo.create_payment(
            rental_id=rental.id,
            transaction_ref=provider_ref,
            method=PaymentMethod.PROVIDER.value,
            direction=direction.value,
            amount=amount,
            status=PaymentStatus.SUCCESS.value,
            actor_id=actor_id,
        )
        record_payment(
            PaymentMethod.PROVIDER.value,
            direction.value,
            PaymentStatus.SUCCESS.value,
            amount,
        )
        return PaymentData.model_validate(payment), self.summarize(rental), True

    def find_payment(self, provider_ref: str) -> Optional[PaymentData]:
        payment = self.payment_repo.get_by_transaction_ref(provider_ref)
        return PaymentData.model_validate(payment) if payment else None

    def get_payment_history(self, rental_id: str) -> List[PaymentData]:
        return [
            PaymentData.model_validate(p) for p in self.payment_repo.get_payments(rental_id)
        ]
