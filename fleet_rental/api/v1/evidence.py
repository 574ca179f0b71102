import hashlib
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from loguru import logger
from sqlalchemy.orm import Session

from fleet_rental.api.dependencies import (
    get_actor,
    get_evidence_service,
    get_idempotency_key,
    get_rental_service,
    get_session,
)
from fleet_rental.core.exceptions import (
    RentalCoreException,
    internal_error_exception,
    to_http_exception,
)
from fleet_rental.schemas import (
    ActorContext,
    ApiResponse,
    EvidencePhase,
    EvidencePhotoData,
)
from fleet_rental.services.evidence import EvidenceService
from fleet_rental.services.rental import RentalService

router = APIRouter()


@router.post(
    "/rentals/{rental_id}/evidence",
    response_model=ApiResponse[EvidencePhotoData],
    status_code=201,
)
def upload_evidence(
    rental_id: str,
    phase: EvidencePhase = Form(...),
    file: UploadFile = File(...),
    reference: Optional[str] = Form(None),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    actor: ActorContext = Depends(get_actor),
    evidence_service: EvidenceService = Depends(get_evidence_service),
    session: Session = Depends(get_session),
):
    content = file.file.read()
    # without a client reference the content hash keeps retries idempotent
    reference = (
        idempotency_key
        or reference
        or "sha-" + hashlib.sha256(content).hexdigest()[:32]
    )
    try:
        photo = evidence_service.upload_photo(
            rental_id=rental_id,
            phase=phase,
            content=content,
            filename=file.filename or "photo",
            content_type=file.content_type or "application/octet-stream",
            reference=reference,
            actor=actor,
        )
        session.commit()
        return ApiResponse(data=photo)
    except RentalCoreException as e:
        session.rollback()
        raise to_http_exception(e)
    except Exception as e:
        session.rollback()
        logger.exception(f"Error uploading evidence for rental {rental_id}: {e}")
        raise internal_error_exception(str(e))


@router.get(
    "/rentals/{rental_id}/evidence",
    response_model=ApiResponse[List[EvidencePhotoData]],
)
def list_evidence(
    rental_id: str,
    phase: Optional[EvidencePhase] = Query(None),
    actor: ActorContext = Depends(get_actor),
    rental_service: RentalService = Depends(get_rental_service),
    evidence_service: EvidenceService = Depends(get_evidence_service),
):
    try:
        rental_service.get_rental(rental_id, actor)
        return ApiResponse(data=evidence_service.list_photos(rental_id, phase))
    except RentalCoreException as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.exception(f"Error listing evidence of rental {rental_id}: {e}")
        raise internal_error_exception(str(e))
