"""Visit status machine.

Stored statuses and the transitions allowed between them, plus the derived
display status shown to staff. Only four things move a stored status:

- an entity status change (suspension or ban cascades to pending visits)
- the recalculation engine re-deriving approved/unapproved
- explicit cancellation
- sign-in and sign-out, which never change ``status`` but are witnessed by
  ``sign_in_time`` and ``sign_out_time``
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from vms.core.errors import StateConflictError
from vms.models.visit import DisplayStatus, Visit, VisitStatus
from vms.services.quota import QuotaCheck

logger = logging.getLogger(__name__)


class TransitionCause(str, Enum):
    ENTITY_STATUS = "entity_status"
    RECALCULATION = "recalculation"
    CANCELLATION = "cancellation"


ALLOWED_TRANSITIONS: Dict[VisitStatus, FrozenSet[VisitStatus]] = {
    VisitStatus.APPROVED: frozenset({
        VisitStatus.UNAPPROVED, VisitStatus.CANCELLED, VisitStatus.SUSPENDED, VisitStatus.BANNED,
    }),
    VisitStatus.UNAPPROVED: frozenset({
        VisitStatus.APPROVED, VisitStatus.CANCELLED, VisitStatus.SUSPENDED, VisitStatus.BANNED,
    }),
    VisitStatus.SUSPENDED: frozenset({
        VisitStatus.APPROVED, VisitStatus.UNAPPROVED, VisitStatus.CANCELLED, VisitStatus.BANNED,
    }),
    VisitStatus.BANNED: frozenset({
        VisitStatus.APPROVED, VisitStatus.UNAPPROVED, VisitStatus.CANCELLED, VisitStatus.SUSPENDED,
    }),
    VisitStatus.CANCELLED: frozenset(),
}

# Statuses a visit only ever receives from its owning entity.
ENTITY_DRIVEN = frozenset({VisitStatus.SUSPENDED, VisitStatus.BANNED})

# Stored statuses the display status reports as-is.
PASS_THROUGH = frozenset({VisitStatus.UNAPPROVED, VisitStatus.SUSPENDED, VisitStatus.BANNED})


@dataclass(frozen=True)
class StatusChange:
    """One stored-status delta, as collected in a recalculation change-set."""

    visit_id: int
    entity_id: int
    host_id: Optional[int]
    visit_date: date
    old_status: VisitStatus
    new_status: VisitStatus
    cause: TransitionCause
    reasons: Tuple[str, ...] = ()


def initial_status(check: QuotaCheck) -> VisitStatus:
    """Approved unless a limit is already at or over capacity."""
    return VisitStatus.APPROVED if check.within_limits else VisitStatus.UNAPPROVED


def can_transition(old: VisitStatus, new: VisitStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


def apply_transition(
    visit: Visit,
    new_status: VisitStatus,
    cause: TransitionCause,
    reasons: Tuple[str, ...] = (),
) -> Optional[StatusChange]:
    """Move ``visit`` to ``new_status``. Returns the change, or None when nothing changed."""
    old_status = VisitStatus(visit.status)
    if old_status == new_status:
        return None
    if visit.sign_out_time is not None:
        raise StateConflictError(f"Visit {visit.id} is completed and can no longer change status")
    if not can_transition(old_status, new_status):
        raise StateConflictError(
            f"Visit {visit.id} cannot move from {old_status.value} to {new_status.value}"
        )
    if new_status in ENTITY_DRIVEN and cause != TransitionCause.ENTITY_STATUS:
        raise StateConflictError(
            f"Visit {visit.id} can only become {new_status.value} through its visitor's status"
        )

    visit.status = new_status.value
    return StatusChange(
        visit_id=visit.id,
        entity_id=visit.entity_id,
        host_id=visit.host_id,
        visit_date=visit.visit_date,
        old_status=old_status,
        new_status=new_status,
        cause=cause,
        reasons=tuple(reasons),
    )


def derive_display_status(
    visit_date: date,
    sign_in_time: Optional[datetime],
    sign_out_time: Optional[datetime],
    stored_status: str,
    today: date,
) -> DisplayStatus:
    """Display status for a visit as of ``today``. Never persisted."""
    stored = VisitStatus(stored_status)
    if stored == VisitStatus.CANCELLED:
        return DisplayStatus.CANCELLED
    if stored in PASS_THROUGH:
        return DisplayStatus(stored.value)

    if visit_date > today:
        return DisplayStatus.SCHEDULED
    if visit_date < today:
        return DisplayStatus.COMPLETED if sign_in_time else DisplayStatus.MISSED
    if not sign_in_time:
        return DisplayStatus.PENDING
    if not sign_out_time:
        return DisplayStatus.ACTIVE
    return DisplayStatus.COMPLETED


def display_status(visit: Visit, today: date) -> DisplayStatus:
    return derive_display_status(
        visit.visit_date, visit.sign_in_time, visit.sign_out_time, visit.status, today
    )


def ensure_can_sign_in(visit: Visit, today: date) -> None:
    if visit.sign_in_time is not None:
        raise StateConflictError("Visitor already signed in")
    if visit.status != VisitStatus.APPROVED:
        raise StateConflictError(f"Visit is not approved for today (status: {visit.status})")
    if visit.visit_date != today:
        raise StateConflictError("Visit is not approved for today; sign-in is only allowed on the visit date")


def ensure_can_sign_out(visit: Visit) -> None:
    if visit.sign_in_time is None:
        raise StateConflictError("Visitor is not signed in")
    if visit.sign_out_time is not None:
        raise StateConflictError("Visitor already signed out")


def ensure_can_cancel(visit: Visit) -> None:
    if visit.status == VisitStatus.CANCELLED:
        raise StateConflictError("Visit is already cancelled")
    if visit.sign_in_time is not None:
        raise StateConflictError("Visit has already started and cannot be cancelled")
