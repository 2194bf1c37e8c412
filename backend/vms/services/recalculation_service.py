"""Recalculation engine.

Re-derives every pending visit's status, and the owning entity's quota
suspension, from persisted visit rows. Each run replays one entity's whole
history in date order, so running it twice with no writes in between changes
nothing the second time. Only that entity's rows are written.

Promotion order when a slot frees up follows the replay order: earliest
visit_date first, then earliest registration.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from vms.core.cache import VisitCountCache
from vms.core.clock import Clock
from vms.core.config import settings
from vms.core.errors import NotFoundError
from vms.core.policy import ENTITY_POLICIES, EntityPolicy, policy_for
from vms.models.entity import Entity, EntityStatus, EntityType, StatusSource
from vms.models.visit import Visit, VisitStatus
from vms.services.notification_service import Notifier
from vms.services.quota import (
    HOST_DAILY, MONTHLY, YEARLY, LimitBreach, host_day_ranks, month_key, year_key,
)
from vms.services.visit_status import StatusChange, TransitionCause, apply_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verdict:
    status: VisitStatus
    cause: TransitionCause = TransitionCause.RECALCULATION
    reasons: Tuple[str, ...] = ()
    limits: Tuple[str, ...] = ()

    @property
    def host_limited(self) -> bool:
        return HOST_DAILY in self.limits


@dataclass
class ReplayResult:
    verdicts: List[Verdict]
    year_counts: Dict[str, int]
    month_counts: Dict[str, int]


@dataclass
class EntityStatusChange:
    entity_id: int
    old_status: str
    new_status: str


@dataclass
class RecalculationResult:
    entity_id: int
    changes: List[StatusChange] = field(default_factory=list)
    entity_change: Optional[EntityStatusChange] = None
    host_alerts: List[Tuple[int, date]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes) or self.entity_change is not None


@dataclass
class BulkRecalculationResult:
    entities: int = 0
    changes: int = 0
    entity_status_changes: int = 0
    failures: int = 0


def replay_history(
    visits: Sequence[Visit],
    today: date,
    policy: EntityPolicy,
    host_ranks: Optional[Dict[int, int]] = None,
    host_limit: Optional[int] = None,
    blocked_status: Optional[VisitStatus] = None,
) -> ReplayResult:
    """Single left-to-right pass over an entity's non-cancelled visits.

    ``visits`` must be ordered by visit_date, then id. Attended visits keep their
    status and hold their slot. Missed visits keep their status and hold no
    slot. Every pending visit (today or later, not signed in) is re-derived:
    the entity's block status if it is banned or admin-suspended, otherwise
    approved when one more counted visit stays within every limit. Unapproved
    and blocked visits take no slot, so the returned counts match what
    registration counts.
    """
    host_ranks = host_ranks or {}
    months: Dict[str, int] = defaultdict(int)
    years: Dict[str, int] = defaultdict(int)
    verdicts: List[Verdict] = []

    for visit in visits:
        mk, yk = month_key(visit.visit_date), year_key(visit.visit_date)
        counted = policy.counts_purpose(visit.visit_purpose)

        if visit.sign_in_time is not None:
            if counted:
                months[mk] += 1
                years[yk] += 1
            verdicts.append(Verdict(VisitStatus(visit.status)))
            continue

        if visit.visit_date < today:
            verdicts.append(Verdict(VisitStatus(visit.status)))
            continue

        if blocked_status is not None:
            verdicts.append(Verdict(blocked_status, TransitionCause.ENTITY_STATUS))
            continue

        # Only approved and attended visits occupy a period slot.
        breaches: List[LimitBreach] = []
        if counted:
            if policy.monthly_limit is not None and months[mk] + 1 > policy.monthly_limit:
                breaches.append(LimitBreach(MONTHLY, policy.monthly_limit, months[mk] + 1))
            if policy.yearly_limit is not None and years[yk] + 1 > policy.yearly_limit:
                breaches.append(LimitBreach(YEARLY, policy.yearly_limit, years[yk] + 1))

        rank = host_ranks.get(visit.id)
        if host_limit is not None and rank is not None and rank > host_limit:
            breaches.append(LimitBreach(HOST_DAILY, host_limit, rank))

        if counted and not breaches:
            months[mk] += 1
            years[yk] += 1

        status = VisitStatus.UNAPPROVED if breaches else VisitStatus.APPROVED
        verdicts.append(Verdict(
            status,
            reasons=tuple(b.reason for b in breaches),
            limits=tuple(b.limit for b in breaches),
        ))

    return ReplayResult(verdicts=verdicts, year_counts=dict(years), month_counts=dict(months))


class RecalculationEngine:
    """Reconciles stored visit and entity statuses with the visit history."""

    def __init__(
        self,
        db: Session,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        cache: Optional[VisitCountCache] = None,
        policies: Optional[Dict[EntityType, EntityPolicy]] = None,
        host_daily_limit: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.cache = cache
        self.policies = policies or ENTITY_POLICIES
        self.host_daily_limit = host_daily_limit or settings.host_daily_limit

    # ------------------------------------------------------------------
    # Per entity
    # ------------------------------------------------------------------

    def recalculate_entity(self, entity_id: int) -> RecalculationResult:
        entity = self.db.get(Entity, entity_id)
        if entity is None:
            raise NotFoundError(f"Visitor {entity_id} not found")

        policy = policy_for(entity.entity_type, self.policies)
        today = self.clock.today()
        visits = self._load_visits(entity.id)
        host_ranks = self._host_ranks(visits, today) if policy.host_capacity_applies else {}

        replay = replay_history(
            visits,
            today,
            policy,
            host_ranks=host_ranks,
            host_limit=self.host_daily_limit if policy.host_capacity_applies else None,
            blocked_status=self._blocked_visit_status(entity),
        )

        result = RecalculationResult(entity_id=entity.id)
        for visit, verdict in zip(visits, replay.verdicts):
            change = apply_transition(visit, verdict.status, verdict.cause, verdict.reasons)
            if change is None:
                continue
            result.changes.append(change)
            if change.new_status == VisitStatus.UNAPPROVED and verdict.host_limited and visit.host_id:
                result.host_alerts.append((visit.host_id, visit.visit_date))

        result.entity_change = self._evaluate_entity(entity, policy, replay, today)

        if result.changed:
            self.db.commit()
            if self.cache is not None:
                self.cache.invalidate_entity(entity.id)

        for change in result.changes:
            logger.info(
                f"Visit {change.visit_id} for entity {entity.id} on {change.visit_date}: "
                f"{change.old_status.value} -> {change.new_status.value} ({change.cause.value})"
            )
        if result.entity_change:
            logger.info(
                f"Entity {entity.id} status {result.entity_change.old_status} -> "
                f"{result.entity_change.new_status}"
            )

        self._notify(entity, result)
        return result

    def _load_visits(self, entity_id: int) -> List[Visit]:
        stmt = (
            select(Visit)
            .where(Visit.entity_id == entity_id, Visit.status != VisitStatus.CANCELLED.value)
            .order_by(Visit.visit_date, Visit.id)
        )
        return list(self.db.scalars(stmt))

    def _host_ranks(self, visits: List[Visit], today: date) -> Dict[int, int]:
        slots = {
            (v.host_id, v.visit_date)
            for v in visits
            if v.host_id is not None and not v.courtesy and v.visit_date >= today and v.sign_in_time is None
        }
        if not slots:
            return {}
        host_ids = {host_id for host_id, _ in slots}
        dates = {day for _, day in slots}
        stmt = select(Visit).where(
            Visit.host_id.in_(host_ids),
            Visit.visit_date.in_(dates),
            Visit.status != VisitStatus.CANCELLED.value,
        )
        host_visits = [v for v in self.db.scalars(stmt) if (v.host_id, v.visit_date) in slots]
        return host_day_ranks(host_visits, today)

    @staticmethod
    def _blocked_visit_status(entity: Entity) -> Optional[VisitStatus]:
        if entity.status == EntityStatus.BANNED:
            return VisitStatus.BANNED
        if entity.status == EntityStatus.SUSPENDED and entity.status_source == StatusSource.ADMIN:
            return VisitStatus.SUSPENDED
        return None

    def _evaluate_entity(
        self, entity: Entity, policy: EntityPolicy, replay: ReplayResult, today: date
    ) -> Optional[EntityStatusChange]:
        """Suspend at the yearly limit; lift a quota suspension once back under it."""
        if policy.yearly_limit is None:
            return None
        count = replay.year_counts.get(year_key(today), 0)
        old_status = entity.status

        if entity.status == EntityStatus.ACTIVE and count >= policy.yearly_limit:
            entity.status = EntityStatus.SUSPENDED.value
            entity.status_source = StatusSource.SYSTEM.value
        elif (
            entity.status == EntityStatus.SUSPENDED
            and entity.status_source == StatusSource.SYSTEM
            and count < policy.yearly_limit
        ):
            entity.status = EntityStatus.ACTIVE.value
            entity.status_source = None
        else:
            return None
        return EntityStatusChange(entity.id, old_status, entity.status)

    def _notify(self, entity: Entity, result: RecalculationResult):
        if self.notifier is None:
            return
        if result.entity_change:
            self.notifier.entity_status_changed(
                entity,
                result.entity_change.old_status,
                result.entity_change.new_status,
                quota=True,
            )
        for change in result.changes:
            self.notifier.visit_status_changed(entity, change.visit_date, change.new_status)
        for host_id, day in sorted(set(result.host_alerts)):
            host = self.db.get(Entity, host_id)
            if host is not None:
                self.notifier.host_capacity_reached(host, day, self.pending_for_host(host_id, day))

    # ------------------------------------------------------------------
    # Host days and bulk runs
    # ------------------------------------------------------------------

    def pending_for_host(self, host_id: int, day: date) -> int:
        stmt = select(Visit.id).where(
            Visit.host_id == host_id,
            Visit.visit_date == day,
            Visit.courtesy.is_(False),
            Visit.status == VisitStatus.UNAPPROVED.value,
        )
        return len(list(self.db.scalars(stmt)))

    def recalculate_host_day(self, host_id: int, day: date) -> List[RecalculationResult]:
        """Re-evaluate every visitor booked under ``host_id`` on ``day``."""
        stmt = (
            select(Visit.entity_id)
            .where(
                Visit.host_id == host_id,
                Visit.visit_date == day,
                Visit.status != VisitStatus.CANCELLED.value,
            )
            .distinct()
        )
        entity_ids = sorted(self.db.scalars(stmt))
        return [self.recalculate_entity(entity_id) for entity_id in entity_ids]

    def recalculate_all(self) -> BulkRecalculationResult:
        """Recalculate every entity that holds visits or a non-active status.

        Each entity is committed on its own; one failure does not stop the run.
        """
        with_visits = select(Visit.entity_id).distinct()
        not_active = select(Entity.id).where(Entity.status != EntityStatus.ACTIVE.value)
        entity_ids = sorted(set(self.db.scalars(with_visits)) | set(self.db.scalars(not_active)))

        summary = BulkRecalculationResult()
        for entity_id in entity_ids:
            try:
                result = self.recalculate_entity(entity_id)
            except Exception as e:
                self.db.rollback()
                summary.failures += 1
                logger.error(f"Recalculation failed for entity {entity_id}: {e}")
                continue
            summary.entities += 1
            summary.changes += len(result.changes)
            if result.entity_change:
                summary.entity_status_changes += 1

        logger.info(
            f"Bulk recalculation: {summary.entities} entities, {summary.changes} visit changes, "
            f"{summary.entity_status_changes} entity status changes, {summary.failures} failures"
        )
        return summary
