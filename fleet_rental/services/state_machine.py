"""
Rental lifecycle transition table.

    CONFIRMED --ACCEPT_HANDOVER--> ONGOING --RECORD_RETURN--> RETURN_PENDING --SETTLE--> COMPLETED
        |                                                          |
        +--REJECT_HANDOVER--> REJECTED                             +--FLAG_DISPUTE--> DISPUTED
        +--CANCEL-----------> CANCELLED                                                 |
                                               COMPLETED <--RESOLVE_COMPLETE------------+
                                               REJECTED  <--RESOLVE_REJECT--------------+

Transitions only move forward. A trigger fired at a rental that already left
the trigger's source state is a conflict (someone else decided first). A
trigger fired at a rental that never passed through the source state, either
not yet or because it ended on another path, is a precondition failure.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Set, Tuple

from fleet_rental.core.exceptions import ConflictError, ForbiddenError, PreconditionError
from fleet_rental.schemas import ActorContext, ActorRole, RentalStatus


class Trigger(str, Enum):
    ACCEPT_HANDOVER = "ACCEPT_HANDOVER"
    REJECT_HANDOVER = "REJECT_HANDOVER"
    CANCEL = "CANCEL"
    RECORD_RETURN = "RECORD_RETURN"
    SETTLE = "SETTLE"
    FLAG_DISPUTE = "FLAG_DISPUTE"
    RESOLVE_COMPLETE = "RESOLVE_COMPLETE"
    RESOLVE_REJECT = "RESOLVE_REJECT"


TRANSITIONS: Dict[Trigger, Tuple[RentalStatus, RentalStatus]] = {
    Trigger.ACCEPT_HANDOVER: (RentalStatus.CONFIRMED, RentalStatus.ONGOING),
    Trigger.REJECT_HANDOVER: (RentalStatus.CONFIRMED, RentalStatus.REJECTED),
    Trigger.CANCEL: (RentalStatus.CONFIRMED, RentalStatus.CANCELLED),
    Trigger.RECORD_RETURN: (RentalStatus.ONGOING, RentalStatus.RETURN_PENDING),
    Trigger.SETTLE: (RentalStatus.RETURN_PENDING, RentalStatus.COMPLETED),
    Trigger.FLAG_DISPUTE: (RentalStatus.RETURN_PENDING, RentalStatus.DISPUTED),
    Trigger.RESOLVE_COMPLETE: (RentalStatus.DISPUTED, RentalStatus.COMPLETED),
    Trigger.RESOLVE_REJECT: (RentalStatus.DISPUTED, RentalStatus.REJECTED),
}

_STAFF = frozenset({ActorRole.STAFF, ActorRole.ADMIN})

ALLOWED_ROLES: Dict[Trigger, FrozenSet[ActorRole]] = {
    Trigger.ACCEPT_HANDOVER: _STAFF,
    Trigger.REJECT_HANDOVER: _STAFF,
    Trigger.CANCEL: frozenset({ActorRole.CUSTOMER, ActorRole.SYSTEM, ActorRole.ADMIN}),
    Trigger.RECORD_RETURN: _STAFF,
    Trigger.SETTLE: frozenset({ActorRole.STAFF, ActorRole.ADMIN, ActorRole.SYSTEM}),
    Trigger.FLAG_DISPUTE: _STAFF,
    Trigger.RESOLVE_COMPLETE: frozenset({ActorRole.ADMIN}),
    Trigger.RESOLVE_REJECT: frozenset({ActorRole.ADMIN}),
}

TERMINAL_STATUSES = frozenset(
    {RentalStatus.COMPLETED, RentalStatus.REJECTED, RentalStatus.CANCELLED}
)

INITIAL_STATUS = RentalStatus.CONFIRMED

_LABELS: Dict[Trigger, str] = {
    Trigger.ACCEPT_HANDOVER: "accept handover",
    Trigger.REJECT_HANDOVER: "reject handover",
    Trigger.CANCEL: "cancel",
    Trigger.RECORD_RETURN: "record a return",
    Trigger.SETTLE: "settle",
    Trigger.FLAG_DISPUTE: "flag a dispute",
    Trigger.RESOLVE_COMPLETE: "resolve a dispute",
    Trigger.RESOLVE_REJECT: "resolve a dispute",
}


def is_terminal(status: RentalStatus) -> bool:
    return status in TERMINAL_STATUSES


def authorize(trigger: Trigger, actor: ActorContext) -> None:
    if actor.role not in ALLOWED_ROLES[trigger]:
        allowed = ", ".join(sorted(role.value for role in ALLOWED_ROLES[trigger]))
        raise ForbiddenError(
            f"Role {actor.role.value} may not {_LABELS[trigger]}; allowed: {allowed}"
        )


def reachable_from(status: RentalStatus) -> Set[RentalStatus]:
    reached: Set[RentalStatus] = set()
    pending = [status]
    while pending:
        current = pending.pop()
        for source, target in TRANSITIONS.values():
            if source == current and target not in reached:
                reached.add(target)
                pending.append(target)
    return reached


def next_status(
    current: RentalStatus,
    trigger: Trigger,
    visited: Optional[Iterable[RentalStatus]] = None,
) -> RentalStatus:
    """
    Target status of firing trigger at current. visited holds the statuses
    the rental has been in before; without it any status reachable from the
    trigger's source counts as having passed through it.
    """
    source, target = TRANSITIONS[trigger]
    if current == source:
        return target

    label = _LABELS[trigger]
    if visited is None:
        left_source = current in reachable_from(source)
    else:
        left_source = source == INITIAL_STATUS or source in set(visited)

    if left_source:
        raise ConflictError(
            f"Cannot {label}: rental already moved from {source.value} "
            f"to {current.value}"
        )
    raise PreconditionError(
        f"Cannot {label}: rental must be {source.value} but is {current.value}"
    )


def check_version(actual: int, expected: int | None) -> None:
    if expected is not None and actual != expected:
        raise ConflictError(
            f"Rental version is {actual}, request was based on version {expected}; "
            "re-fetch the rental and retry"
        )
