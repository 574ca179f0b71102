import math
from datetime import datetime
from typing import Iterable, Optional

from fleet_rental.clients.external import FeePolicy
from fleet_rental.core.exceptions import (
    ChargesUndefinedError,
    FeeJustificationError,
    OdometerRegressionError,
)
from fleet_rental.core.utils import ensure_utc
from fleet_rental.schemas import (
    Charges,
    ExtraFee,
    FeeType,
    PickupRecord,
    PricingSnapshot,
    ReturnRecord,
)
from fleet_rental.services.pricing import late_rate_per_hour


def check_odometer(pickup: Optional[PickupRecord], odo_km: Optional[float]) -> None:
    if pickup is None or pickup.odo_km is None or odo_km is None:
        return
    if odo_km < pickup.odo_km:
        raise OdometerRegressionError(
            f"Return odometer {odo_km} km is below pickup odometer "
            f"{pickup.odo_km} km"
        )


def check_fee_justification(fees: Iterable[ExtraFee]) -> None:
    for fee in fees:
        if fee.amount > 0 and not fee.description.strip():
            raise FeeJustificationError(
                f"{fee.type.value} fee of {fee.amount} requires a description"
            )


def overdue_fee(
    snapshot: PricingSnapshot,
    end_at: datetime,
    returned_at: datetime,
    policy: FeePolicy,
) -> int:
    overage_sec = (
        ensure_utc(returned_at) - ensure_utc(end_at)
    ).total_seconds() - policy.late_grace_min * 60
    if overage_sec <= 0:
        return 0

    unit_sec = max(1, policy.late_fee_unit_min) * 60
    units = math.ceil(overage_sec / unit_sec)
    hours_billed = units * unit_sec / 3600
    return math.ceil(
        hours_billed * late_rate_per_hour(snapshot) * policy.late_fee_multiplier
    )


def recharge_fee(
    pickup: Optional[PickupRecord], return_record: ReturnRecord, policy: FeePolicy
) -> int:
    if pickup is None or pickup.soc is None or policy.recharge_fee_per_percent <= 0:
        return 0
    shortfall_pct = math.floor(round((pickup.soc - return_record.soc) * 100, 6))
    return max(0, shortfall_pct) * policy.recharge_fee_per_percent


def calculate_charges(
    snapshot: PricingSnapshot,
    pickup: Optional[PickupRecord],
    return_record: Optional[ReturnRecord],
    end_at: datetime,
    policy: FeePolicy,
) -> Charges:
    if return_record is None:
        raise ChargesUndefinedError(
            "Charges cannot be computed before the vehicle return is recorded"
        )
    check_odometer(pickup, return_record.odo_km)
    check_fee_justification(return_record.fees)

    staff_fees = {fee_type: 0 for fee_type in FeeType}
    for fee in return_record.fees:
        staff_fees[fee.type] += fee.amount

    charges = Charges(
        rental_fee=snapshot.base_price,
        cleaning_fee=staff_fees[FeeType.CLEANING],
        damage_fee=staff_fees[FeeType.DAMAGE],
        late_fee=overdue_fee(snapshot, end_at, return_record.at, policy)
        + staff_fees[FeeType.LATE],
        other_fees=staff_fees[FeeType.OTHER],
        extra_fees=recharge_fee(pickup, return_record, policy),
    )
    charges.total = (
        charges.rental_fee
        + charges.late_fee
        + charges.damage_fee
        + charges.cleaning_fee
        + charges.other_fees
        + charges.extra_fees
    )
    return charges
