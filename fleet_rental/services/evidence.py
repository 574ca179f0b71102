import hashlib
from typing import Iterable, List, Optional

from loguru import logger

from fleet_rental.clients.external import ExternalClient
from fleet_rental.core.exceptions import (
    ForbiddenError,
    PreconditionError,
    RentalNotFoundException,
    ValidationError,
)
from fleet_rental.core.utils import utcnow
from fleet_rental.db.models import EvidencePhoto
from fleet_rental.db.repositories.evidence import EvidenceRepository
from fleet_rental.db.repositories.rental import RentalRepository
from fleet_rental.monitoring.metrics import SERVICE, evidence_uploads_total
from fleet_rental.schemas import (
    ActorContext,
    ActorRole,
    EvidencePhase,
    EvidencePhotoData,
    RentalStatus,
)
from fleet_rental.services.state_machine import is_terminal

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic"})


def url_reference(url: str) -> str:
    return "url-" + hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]


class EvidenceService:
    def __init__(
        self,
        evidence_repo: EvidenceRepository,
        rental_repo: RentalRepository,
        external_client: ExternalClient,
    ):
        self.evidence_repo = evidence_repo
        self.rental_repo = rental_repo
        self.external_client = external_client

    def upload_photo(
        self,
        rental_id: str,
        phase: EvidencePhase,
        content: bytes,
        filename: str,
        content_type: str,
        reference: str,
        actor: ActorContext,
    ) -> EvidencePhotoData:
        """
        Stores one photo and ties it to the rental. Repeating the call with
        the same reference returns the first result without uploading again,
        so callers may retry freely.
        """
        if actor.role not in (ActorRole.STAFF, ActorRole.ADMIN):
            raise ForbiddenError("Evidence photos are taken by station staff")

        existing = self.evidence_repo.get_by_reference(rental_id, reference)
        if existing and existing.phase != phase.value:
            raise ValidationError(
                f"Reference {reference} already holds {existing.phase} evidence "
                f"of rental {rental_id}; use a new reference for {phase.value}"
            )
        if existing:
            logger.info(f"Evidence {reference} already attached to rental {rental_id}")
            return EvidencePhotoData.model_validate(existing)

        rental = self.rental_repo.get_by_id(rental_id)
        if not rental:
            raise RentalNotFoundException(rental_id)
        if is_terminal(RentalStatus(rental.status)):
            raise PreconditionError(
                f"Rental {rental_id} is {rental.status}; no more evidence can be attached"
            )
        if not content:
            raise ValidationError("Photo file is empty")
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"Unsupported photo type {content_type}; "
                f"expected one of {', '.join(sorted(ALLOWED_CONTENT_TYPES))}"
            )

        stored = self.external_client.upload_photo(
            content=content,
            filename=filename,
            content_type=content_type,
            reference=f"{rental_id}/{phase.value.lower()}/{reference}",
        )
        photo = self.evidence_repo.add_photo(
            rental_id=rental_id,
            phase=phase.value,
            url=stored.url,
            reference=reference,
            uploaded_by=actor.actor_id,
            taken_at=utcnow(),
        )
        evidence_uploads_total.labels(service=SERVICE, phase=phase.value).inc()
        logger.info(f"Evidence {photo.id} ({phase.value}) uploaded for rental {rental_id}")
        return EvidencePhotoData.model_validate(photo)

    def _owned_photo(self, rental_id: str, url: str) -> Optional[EvidencePhoto]:
        photo = self.evidence_repo.get_by_url(url)
        if photo is not None and photo.rental_id != rental_id:
            raise ValidationError(
                f"Photo {url} is already evidence of rental {photo.rental_id}"
            )
        return photo

    def attach_urls(
        self,
        rental_id: str,
        phase: EvidencePhase,
        urls: Iterable[str],
        actor: ActorContext,
    ) -> List[EvidencePhoto]:
        """Registers photos already held by storage, keyed by their url."""
        attached: List[EvidencePhoto] = []
        for url in urls:
            url = url.strip()
            if not url:
                continue
            reference = url_reference(url)
            photo = self.evidence_repo.get_by_reference(
                rental_id, reference
            ) or self._owned_photo(rental_id, url)
            if photo is None:
                photo = self.evidence_repo.add_photo(
                    rental_id=rental_id,
                    phase=phase.value,
                    url=url,
                    reference=reference,
                    uploaded_by=actor.actor_id,
                    taken_at=utcnow(),
                )
                evidence_uploads_total.labels(service=SERVICE, phase=phase.value).inc()
            elif photo.phase != phase.value:
                raise ValidationError(
                    f"Photo {url} is already recorded as {photo.phase} evidence"
                )
            attached.append(photo)
        return attached

    def collect_urls(
        self, rental_id: str, phase: EvidencePhase, extra_urls: Iterable[str] = ()
    ) -> List[str]:
        """Distinct urls for a phase: already attached plus those in the request."""
        urls = self.evidence_repo.distinct_urls(rental_id, phase.value)
        for url in extra_urls:
            url = url.strip()
            if url and url not in urls:
                self._owned_photo(rental_id, url)
                urls.append(url)
        return urls

    def list_photos(
        self, rental_id: str, phase: Optional[EvidencePhase] = None
    ) -> List[EvidencePhotoData]:
        if not self.rental_repo.get_by_id(rental_id):
            raise RentalNotFoundException(rental_id)
        phases = [phase.value] if phase else None
        return [
            EvidencePhotoData.model_validate(p)
            for p in self.evidence_repo.list_for_rental(rental_id, phases)
        ]
