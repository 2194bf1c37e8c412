"""Quota calculator.

Pure functions over visit histories. Nothing here reads the database or the
clock: callers pass the visits and "today" in. A visit only needs the
attributes ``id``, ``visit_date``, ``status``, ``visit_purpose``,
``sign_in_time``, ``courtesy`` and ``host_id``.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

from vms.core.policy import EntityPolicy
from vms.models.visit import VisitStatus

MONTHLY = "monthly"
YEARLY = "yearly"
HOST_DAILY = "host_daily"

_LIMIT_LABELS = {
    MONTHLY: "Monthly visit limit",
    YEARLY: "Yearly visit limit",
    HOST_DAILY: "Host daily guest limit",
}


def month_key(day: date) -> str:
    return day.strftime("%Y-%m")


def year_key(day: date) -> str:
    return day.strftime("%Y")


@dataclass(frozen=True)
class LimitBreach:
    limit: str
    allowed: int
    count: int

    @property
    def reason(self) -> str:
        return f"{_LIMIT_LABELS[self.limit]} of {self.allowed} reached ({self.count} visits)"


@dataclass
class QuotaCheck:
    """Counts for a candidate visit and the limits it would break.

    A breach is not an error: the visit is still created, in the
    unapproved state.
    """

    monthly_count: Optional[int] = None
    yearly_count: Optional[int] = None
    host_daily_count: Optional[int] = None
    breaches: List[LimitBreach] = field(default_factory=list)

    @property
    def within_limits(self) -> bool:
        return not self.breaches

    @property
    def host_capacity_exceeded(self) -> bool:
        return any(b.limit == HOST_DAILY for b in self.breaches)

    @property
    def reasons(self) -> List[str]:
        return [b.reason for b in self.breaches]


def is_missed(visit, today: date) -> bool:
    return visit.visit_date < today and visit.sign_in_time is None


def is_counted(visit, today: date, policy: EntityPolicy) -> bool:
    """Whether a stored visit occupies a slot in its period.

    Future and today's visits count while approved; past visits count only
    when attended. Missed visits free their slot.
    """
    if visit.status == VisitStatus.CANCELLED:
        return False
    if not policy.counts_purpose(visit.visit_purpose):
        return False
    if visit.visit_date >= today:
        return visit.status == VisitStatus.APPROVED
    return visit.sign_in_time is not None


def monthly_count(history: Iterable, day: date, today: date, policy: EntityPolicy) -> int:
    key = month_key(day)
    return sum(1 for v in history if month_key(v.visit_date) == key and is_counted(v, today, policy))


def yearly_count(history: Iterable, day: date, today: date, policy: EntityPolicy) -> int:
    key = year_key(day)
    return sum(1 for v in history if year_key(v.visit_date) == key and is_counted(v, today, policy))


def _holds_host_slot(visit, today: date) -> bool:
    return (
        visit.status != VisitStatus.CANCELLED
        and not visit.courtesy
        and visit.host_id is not None
        and not is_missed(visit, today)
    )


def host_day_count(host_visits: Iterable, day: date, today: date) -> int:
    """Non-courtesy visits already booked against a host on ``day``."""
    return sum(1 for v in host_visits if v.visit_date == day and _holds_host_slot(v, today))


def host_day_ranks(host_visits: Iterable, today: date) -> Dict[int, int]:
    """Position of each visit within its (host, day), by insertion order.

    A visit is within the host's capacity when its rank is at most the
    host daily limit. Cancelled, courtesy and missed visits take no slot.
    """
    buckets = defaultdict(list)
    for visit in host_visits:
        if _holds_host_slot(visit, today):
            buckets[(visit.host_id, visit.visit_date)].append(visit)

    ranks: Dict[int, int] = {}
    for visits in buckets.values():
        for position, visit in enumerate(sorted(visits, key=lambda v: v.id), start=1):
            ranks[visit.id] = position
    return ranks


def check_candidate(
    policy: EntityPolicy,
    *,
    purpose: Optional[str] = None,
    monthly: Optional[int] = None,
    yearly: Optional[int] = None,
    host_daily: Optional[int] = None,
    host_limit: Optional[int] = None,
) -> QuotaCheck:
    """Evaluate a prospective visit against already-counted totals.

    The counts exclude the candidate; it would be visit number ``count + 1``.
    Visits with an exempt purpose are never held to the period limits.
    """
    check = QuotaCheck(monthly_count=monthly, yearly_count=yearly, host_daily_count=host_daily)
    counted = policy.counts_purpose(purpose)

    if counted and policy.monthly_limit is not None and monthly is not None:
        if monthly + 1 > policy.monthly_limit:
            check.breaches.append(LimitBreach(MONTHLY, policy.monthly_limit, monthly + 1))

    if counted and policy.yearly_limit is not None and yearly is not None:
        if yearly + 1 > policy.yearly_limit:
            check.breaches.append(LimitBreach(YEARLY, policy.yearly_limit, yearly + 1))

    if host_limit is not None and host_daily is not None:
        if host_daily + 1 > host_limit:
            check.breaches.append(LimitBreach(HOST_DAILY, host_limit, host_daily + 1))

    return check
