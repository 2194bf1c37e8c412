"""Visit workflow.

Explicit orchestration of the visit operations. Each step commits before the
next starts: the business operation, then recalculation of the affected
entity (and host day), then notification dispatch through ``dispatch()``,
which callers run after the response or job has finished.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from vms.core.cache import VisitCountCache
from vms.core.clock import Clock
from vms.core.config import settings
from vms.core.policy import ENTITY_POLICIES, CapabilityPolicy, EntityPolicy, Permission
from vms.models.entity import Entity, EntityStatus, EntityType
from vms.models.visit import Visit
from vms.schemas.visit import VisitRegistration
from vms.services.attendance_service import AttendanceService
from vms.services.entity_service import EntityService
from vms.services.notification_service import DispatchResult, Notifier
from vms.services.recalculation_service import (
    BulkRecalculationResult,
    RecalculationEngine,
    RecalculationResult,
)
from vms.services.registration_service import RegistrationResult, RegistrationService

logger = logging.getLogger(__name__)


class VisitWorkflow:
    def __init__(
        self,
        db: Session,
        clock: Clock,
        notifier: Notifier,
        cache: Optional[VisitCountCache] = None,
        policies: Optional[Dict[EntityType, EntityPolicy]] = None,
        capabilities: Optional[CapabilityPolicy] = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.cache = cache or VisitCountCache(settings.count_cache_ttl_seconds)
        self.capabilities = capabilities or CapabilityPolicy.from_settings()
        policies = policies or ENTITY_POLICIES

        self.registration = RegistrationService(
            db, clock, notifier, self.cache, policies, self.capabilities
        )
        self.attendance = AttendanceService(db, clock, notifier, self.cache, policies, self.capabilities)
        self.entities = EntityService(db, clock, notifier, self.cache, self.capabilities)
        self.engine = RecalculationEngine(db, clock, notifier, self.cache, policies)

    def register_visit(self, request: VisitRegistration, actor_role: str) -> RegistrationResult:
        result = self.registration.register(request, actor_role)
        self.engine.recalculate_entity(result.entity.id)
        self.db.refresh(result.visit)
        return result

    def cancel_visit(self, visit_id: int, actor_role: str) -> Visit:
        change = self.registration.cancel(visit_id, actor_role)
        self.engine.recalculate_entity(change.entity_id)
        if change.host_id is not None:
            self.engine.recalculate_host_day(change.host_id, change.visit_date)
        return self.db.get(Visit, visit_id)

    def sign_in(
        self,
        visit_id: int,
        actor_role: str,
        id_number: Optional[str] = None,
        visit_purpose: Optional[str] = None,
    ) -> Visit:
        visit = self.attendance.sign_in(visit_id, actor_role, id_number, visit_purpose)
        self.engine.recalculate_entity(visit.entity_id)
        return visit

    def sign_out(self, visit_id: int, actor_role: str) -> Visit:
        return self.attendance.sign_out(visit_id, actor_role)

    def set_entity_status(self, entity_id: int, status: EntityStatus, actor_role: str) -> Entity:
        entity, _ = self.entities.set_status(entity_id, status, actor_role)
        self.engine.recalculate_entity(entity.id)
        self.db.refresh(entity)
        return entity

    def recalculate_entity(self, entity_id: int, actor_role: str) -> RecalculationResult:
        self.capabilities.require(actor_role, Permission.RECALCULATION_RUN)
        return self.engine.recalculate_entity(entity_id)

    def recalculate_all(self, actor_role: str) -> BulkRecalculationResult:
        self.capabilities.require(actor_role, Permission.RECALCULATION_RUN)
        return self.engine.recalculate_all()

    def sign_out_sweep(self, actor_role: str) -> int:
        self.capabilities.require(actor_role, Permission.RECALCULATION_RUN)
        return self.attendance.sign_out_open_visits()

    def dispatch(self) -> List[DispatchResult]:
        return self.notifier.flush()
