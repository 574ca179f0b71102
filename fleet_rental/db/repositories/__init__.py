from .evidence import EvidenceRepository
from .idempotency import IdempotencyRepository
from .payment import PaymentRepository
from .rental import RentalRepository
from .transition import TransitionRepository

__all__ = [
    "RentalRepository",
    "EvidenceRepository",
    "PaymentRepository",
    "TransitionRepository",
    "IdempotencyRepository",
]
