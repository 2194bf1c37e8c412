"""Sign-in, sign-out and the end-of-day sign-out sweep."""

import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from vms.core.cache import VisitCountCache
from vms.core.clock import Clock
from vms.core.errors import EntityBlockedError, NotFoundError, ValidationError
from vms.core.policy import ENTITY_POLICIES, CapabilityPolicy, EntityPolicy, Permission, policy_for
from vms.models.entity import Entity, EntityType
from vms.models.visit import Visit, VisitStatus
from vms.services.notification_service import Notifier
from vms.services.registration_service import MIN_ID_NUMBER_LENGTH
from vms.services.visit_status import ensure_can_sign_in, ensure_can_sign_out

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59)


def sign_out_time_for(visit: Visit, at: datetime) -> datetime:
    """Sign-out at ``at``, but always at least one second after sign-in."""
    return max(at, visit.sign_in_time + timedelta(seconds=1))


class AttendanceService:
    """Records arrivals and departures against approved visits."""

    def __init__(
        self,
        db: Session,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        cache: Optional[VisitCountCache] = None,
        policies: Optional[Dict[EntityType, EntityPolicy]] = None,
        capabilities: Optional[CapabilityPolicy] = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.cache = cache
        self.policies = policies or ENTITY_POLICIES
        self.capabilities = capabilities or CapabilityPolicy.from_settings()

    def _get_visit(self, visit_id: int) -> Visit:
        visit = self.db.get(Visit, visit_id)
        if visit is None:
            raise NotFoundError(f"Visit {visit_id} not found")
        return visit

    def sign_in(
        self,
        visit_id: int,
        actor_role: str,
        id_number: Optional[str] = None,
        visit_purpose: Optional[str] = None,
    ) -> Visit:
        self.capabilities.require(actor_role, Permission.SIGN_IN)
        visit = self._get_visit(visit_id)
        entity = visit.entity
        policy = policy_for(entity.entity_type, self.policies)

        if policy.blocks_sign_in(entity):
            raise EntityBlockedError(entity.id, entity.status, "sign in")
        ensure_can_sign_in(visit, self.clock.today())

        errors = []
        if id_number is not None:
            errors.extend(self._check_id_number(entity, id_number.strip()))
        if visit_purpose and policy.allowed_purposes is not None:
            if visit_purpose not in policy.allowed_purposes:
                errors.append(f"Invalid visit purpose: {visit_purpose}")
        if errors:
            raise ValidationError(errors)

        if id_number and not entity.id_number:
            entity.id_number = id_number.strip()
        if visit_purpose:
            visit.visit_purpose = visit_purpose
        visit.sign_in_time = self.clock.now()
        self.db.commit()
        if self.cache is not None:
            self.cache.invalidate_entity(entity.id)

        logger.info(f"Visit {visit.id}: entity {entity.id} signed in at {visit.sign_in_time}")
        if self.notifier is not None:
            self.notifier.signed_in(entity, visit)
        return visit

    def _check_id_number(self, entity: Entity, id_number: str) -> list:
        if len(id_number) < MIN_ID_NUMBER_LENGTH:
            return [f"ID number must be at least {MIN_ID_NUMBER_LENGTH} characters"]
        if entity.id_number:
            if entity.id_number != id_number:
                return ["ID number does not match the registered visitor"]
            return []
        taken = self.db.scalar(
            select(Entity.id).where(
                Entity.entity_type == entity.entity_type,
                Entity.id_number == id_number,
                Entity.id != entity.id,
            )
        )
        if taken is not None:
            return ["ID number is already registered to another visitor"]
        return []

    def sign_out(self, visit_id: int, actor_role: str) -> Visit:
        self.capabilities.require(actor_role, Permission.SIGN_OUT)
        visit = self._get_visit(visit_id)
        ensure_can_sign_out(visit)

        visit.sign_out_time = sign_out_time_for(visit, self.clock.now())
        self.db.commit()

        logger.info(f"Visit {visit.id}: entity {visit.entity_id} signed out at {visit.sign_out_time}")
        if self.notifier is not None:
            self.notifier.signed_out(visit.entity, visit)
        return visit

    def sign_out_open_visits(self, before: Optional[date] = None) -> int:
        """Close every visit still signed in from an earlier day at 23:59:59 of its date."""
        before = before or self.clock.today()
        stmt = select(Visit).where(
            Visit.sign_in_time.is_not(None),
            Visit.sign_out_time.is_(None),
            Visit.visit_date < before,
            Visit.status != VisitStatus.CANCELLED.value,
        )
        visits = list(self.db.scalars(stmt))
        for visit in visits:
            visit.sign_out_time = sign_out_time_for(visit, datetime.combine(visit.visit_date, END_OF_DAY))
        if visits:
            self.db.commit()
            logger.info(f"End-of-day sweep signed out {len(visits)} visits dated before {before}")
        return len(visits)
