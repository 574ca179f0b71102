from datetime import datetime
from typing import Iterable, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet_rental.core.utils import uuid4
from fleet_rental.db.models import EvidencePhoto


class EvidenceRepository:
    """Append-only: rows are added, never updated or deleted."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_reference(self, rental_id: str, reference: str) -> Optional[EvidencePhoto]:
        return self.session.execute(
            select(EvidencePhoto).where(
                EvidencePhoto.rental_id == rental_id,
                EvidencePhoto.reference == reference,
            )
        ).scalar_one_or_none()

    def get_by_url(self, url: str) -> Optional[EvidencePhoto]:
        # urls are unique across rentals
        return self.session.execute(
            select(EvidencePhoto).where(EvidencePhoto.url == url)
        ).scalar_one_or_none()

    def add_photo(
        self,
        rental_id: str,
        phase: str,
        url: str,
        reference: str,
        uploaded_by: str,
        taken_at: datetime,
    ) -> EvidencePhoto:
        photo = EvidencePhoto(
            id=uuid4(),
            rental_id=rental_id,
            phase=phase,
            url=url,
            reference=reference,
            uploaded_by=uploaded_by,
            taken_at=taken_at,
        )
        self.session.add(photo)
        self.session.flush()
        logger.debug(f"Evidence {photo.id} ({phase}) attached to rental {rental_id}")
        return photo

    def list_for_rental(
        self, rental_id: str, phases: Optional[Iterable[str]] = None
    ) -> List[EvidencePhoto]:
        query = select(EvidencePhoto).where(EvidencePhoto.rental_id == rental_id)
        if phases is not None:
            query = query.where(EvidencePhoto.phase.in_(list(phases)))
        return list(
            self.session.execute(
                query.order_by(EvidencePhoto.taken_at, EvidencePhoto.id)
            )
            .scalars()
            .all()
        )

    def distinct_urls(self, rental_id: str, phase: str) -> List[str]:
        urls: List[str] = []
        for photo in self.list_for_rental(rental_id, [phase]):
            if photo.url not in urls:
                urls.append(photo.url)
        return urls


__all__ = ["EvidenceRepository"]
