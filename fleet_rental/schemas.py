from datetime import datetime
from enum import Enum
from typing import Annotated, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

T = TypeVar("T")


class RentalStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    ONGOING = "ONGOING"
    RETURN_PENDING = "RETURN_PENDING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class EvidencePhase(str, Enum):
    PICKUP = "PICKUP"
    PICKUP_REJECT = "PICKUP_REJECT"
    RETURN = "RETURN"


class ActorRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class RentalType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"


class FeeType(str, Enum):
    DAMAGE = "DAMAGE"
    CLEANING = "CLEANING"
    LATE = "LATE"
    OTHER = "OTHER"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    PROVIDER = "PROVIDER"


class PaymentDirection(str, Enum):
    CHARGE = "CHARGE"
    REFUND = "REFUND"


class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "partial"


class ActorContext(BaseModel):
    """Who is calling: resolved by the auth gateway, passed into every call."""

    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: ActorRole

    @classmethod
    def system(cls) -> "ActorContext":
        return cls(actor_id="system", role=ActorRole.SYSTEM)


# --- Persisted sub-records ---


class PricingDetails(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    raw_base: int = Field(alias="rawBase")
    rental_type: RentalType = Field(alias="rentalType")
    hours: Optional[int] = None
    days: Optional[int] = None


class PricingSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_price: int
    hourly_rate: Optional[int] = None
    daily_rate: Optional[int] = None
    deposit: int
    insurance_price: int = 0
    taxes: int = 0
    total_price: int
    currency: str = "VND"
    rental_type: RentalType
    duration: int  # hours for hourly rentals, days for daily ones
    policy_version: str
    details: PricingDetails


class PickupRejection(BaseModel):
    at: datetime
    reason: str
    photos: List[str] = Field(default_factory=list)
    staff_id: str


class PickupRecord(BaseModel):
    at: Optional[datetime] = None
    staff_id: Optional[str] = None
    odo_km: Optional[float] = None
    soc: Optional[float] = None
    notes: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    rejected: Optional[PickupRejection] = None


class ExtraFee(BaseModel):
    type: FeeType
    amount: int = Field(ge=0)
    description: str = ""


class ReturnRecord(BaseModel):
    at: datetime
    staff_id: str
    odo_km: float
    soc: float
    notes: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    fees: List[ExtraFee] = Field(default_factory=list)


class Charges(BaseModel):
    rental_fee: int = 0
    cleaning_fee: int = 0
    damage_fee: int = 0
    late_fee: int = 0
    other_fees: int = 0
    extra_fees: int = 0
    total: int = 0


class Cancellation(BaseModel):
    at: datetime
    actor_id: str
    reason: Optional[str] = None


class DisputeRecord(BaseModel):
    flagged_at: datetime
    flagged_by: str
    note: str
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    decision: Optional[RentalStatus] = None
    resolution_note: Optional[str] = None


# --- Requests ---


class ConfirmBookingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    booking_id: str
    customer_id: str
    vehicle_id: str
    station_id: str
    start_at: datetime
    end_at: datetime
    rental_type: RentalType = RentalType.HOURLY
    hourly_rate: Optional[int] = Field(None, ge=0)
    daily_rate: Optional[int] = Field(None, ge=0)
    deposit: int = Field(ge=0)
    insurance_price: int = Field(0, ge=0)
    currency: str = "VND"
    policy_version: str = "v1"

    @model_validator(mode="after")
    def _check_period_and_rate(self) -> "ConfirmBookingRequest":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        if self.rental_type == RentalType.HOURLY and self.hourly_rate is None:
            raise ValueError("hourly_rate is required for hourly rentals")
        if self.rental_type == RentalType.DAILY and self.daily_rate is None:
            raise ValueError("daily_rate is required for daily rentals")
        return self


class AcceptHandoverRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: Literal["accept"]
    photos: List[str] = Field(default_factory=list)
    odo_km: Optional[float] = Field(None, ge=0)
    soc: Optional[float] = Field(None, ge=0.0, le=1.0)
    notes: Optional[str] = None


class RejectHandoverRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    action: Literal["reject"]
    reject_reason: str = Field(alias="rejectReason")
    photos: List[str] = Field(default_factory=list)
    odo_km: Optional[float] = Field(None, ge=0)
    soc: Optional[float] = Field(None, ge=0.0, le=1.0)
    notes: Optional[str] = None


HandoverRequest = Annotated[
    Union[AcceptHandoverRequest, RejectHandoverRequest],
    Field(discriminator="action"),
]


class CancelRentalRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    photos: List[str] = Field(default_factory=list)
    odo_km: float = Field(ge=0)
    soc: float = Field(ge=0.0, le=1.0)
    notes: Optional[str] = None
    extra_fees: List[ExtraFee] = Field(default_factory=list, alias="extraFees")


class DisputeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    note: str


class ResolveDisputeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    decision: Literal["COMPLETED", "REJECTED"]
    note: str


class CashPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: int = Field(ge=0)
    note: Optional[str] = None


class ProviderPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_ref: str
    amount: int = Field(ge=0)


# --- Responses ---


class RentalData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    booking_id: str
    customer_id: str
    vehicle_id: str
    station_id: str
    status: RentalStatus
    version: int
    start_at: datetime
    end_at: datetime
    pricing_snapshot: PricingSnapshot
    pickup: Optional[PickupRecord] = None
    return_record: Optional[ReturnRecord] = Field(None, alias="return")
    charges: Optional[Charges] = None
    cancellation: Optional[Cancellation] = None
    dispute: Optional[DisputeRecord] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None


class EvidencePhotoData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rental_id: str
    phase: EvidencePhase
    url: str
    reference: str
    taken_at: datetime
    uploaded_by: str


class PaymentData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rental_id: str
    transaction_ref: str
    method: PaymentMethod
    direction: PaymentDirection
    amount: int
    status: PaymentStatus
    note: Optional[str] = None
    actor_id: str
    created_at: datetime


class TransitionData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rental_id: str
    from_status: RentalStatus
    to_status: RentalStatus
    trigger: str
    actor_id: str
    actor_role: ActorRole
    reason: Optional[str] = None
    created_at: datetime


class SettlementSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rental_id: str
    total_charges: int = Field(alias="totalCharges")
    deposit_paid: int = Field(alias="depositPaid")
    final_amount: int = Field(alias="finalAmount")
    needs_payment: bool = Field(alias="needsPayment")
    needs_refund: bool = Field(alias="needsRefund")
    amount_due: int = Field(0, alias="amountDue")
    refund_amount: int = Field(0, alias="refundAmount")
    collected: int = 0
    refunded: int = 0
    outstanding: int = 0
    settled: bool = False  # nothing outstanding and at least one payment recorded


class HandoverResult(BaseModel):
    rental: RentalData
    photos: List[EvidencePhotoData]
    message: str


class ReturnResult(BaseModel):
    rental: RentalData
    photos: List[EvidencePhotoData]
    payment: SettlementSummary
    message: str


class PaymentResult(BaseModel):
    rental: RentalData
    payment: PaymentData
    settlement: SettlementSummary
    message: str


class ListMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    page: int
    limit: int
    total_pages: int = Field(alias="totalPages")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    meta: Optional[ListMeta] = None


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorBody


class HealthResponse(BaseModel):
    ok: bool = True
