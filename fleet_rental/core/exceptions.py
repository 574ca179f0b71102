from fastapi import HTTPException


class RentalCoreException(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class RentalNotFoundException(RentalCoreException):
    status_code = 404
    code = "rental_not_found"

    def __init__(self, rental_id: str):
        super().__init__(f"Rental {rental_id} not found")
        self.rental_id = rental_id


class ValidationError(RentalCoreException):
    status_code = 422
    code = "validation_error"


class InsufficientEvidenceError(ValidationError):
    code = "insufficient_evidence"


class RejectReasonTooShortError(ValidationError):
    code = "reject_reason_too_short"


class OdometerRegressionError(ValidationError):
    code = "odometer_regression"


class FeeJustificationError(ValidationError):
    code = "fee_justification_required"


class PaymentMismatchError(ValidationError):
    code = "payment_amount_mismatch"


class ConflictError(RentalCoreException):
    status_code = 409
    code = "conflict"


class PreconditionError(RentalCoreException):
    status_code = 412
    code = "precondition_failed"


class VehicleUnavailableError(PreconditionError):
    code = "vehicle_unavailable"


class ChargesUndefinedError(PreconditionError):
    code = "charges_undefined"


class ForbiddenError(RentalCoreException):
    status_code = 403
    code = "forbidden"


class UpstreamError(RentalCoreException):
    status_code = 503
    code = "upstream_unavailable"


class IdempotencyKeyReusedException(ConflictError):
    code = "idempotency_key_reused"


def to_http_exception(exc: RentalCoreException) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message},
    )


def rental_not_found_exception(rental_id: str) -> HTTPException:
    return to_http_exception(RentalNotFoundException(rental_id))


def internal_error_exception(message: str) -> HTTPException:
    return HTTPException(
        status_code=500, detail={"code": "internal_error", "message": message}
    )


def missing_actor_exception() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={
            "code": "unauthenticated",
            "message": "X-Actor-Id and X-Actor-Role headers are required",
        },
    )
