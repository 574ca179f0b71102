from .database import get_engine, get_sessionmaker
from .models import Base, EvidencePhoto, IdempotencyKey, Payment, Rental, RentalTransition

__all__ = [
    "Base",
    "Rental",
    "EvidencePhoto",
    "RentalTransition",
    "Payment",
    "IdempotencyKey",
    "get_sessionmaker",
    "get_engine",
]
