"""Entity administration: create, update, status changes and deletion."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vms.core.cache import VisitCountCache
from vms.core.clock import Clock
from vms.core.errors import NotFoundError, ReferentialIntegrityError, ValidationError
from vms.core.policy import CapabilityPolicy, Permission
from vms.models.entity import Entity, EntityStatus, StatusSource
from vms.models.visit import Visit
from vms.schemas.entity import EntityCreate, EntityUpdate
from vms.services.notification_service import Notifier
from vms.services.visit_status import display_status

logger = logging.getLogger(__name__)


class EntityService:
    def __init__(
        self,
        db: Session,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        cache: Optional[VisitCountCache] = None,
        capabilities: Optional[CapabilityPolicy] = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.cache = cache
        self.capabilities = capabilities or CapabilityPolicy.from_settings()

    def get_entity(self, entity_id: int, actor_role: str) -> Entity:
        self.capabilities.require(actor_role, Permission.ENTITY_VIEW)
        return self._get(entity_id)

    def _get(self, entity_id: int) -> Entity:
        entity = self.db.get(Entity, entity_id)
        if entity is None:
            raise NotFoundError(f"Visitor {entity_id} not found")
        return entity

    def create_entity(self, data: EntityCreate, actor_role: str) -> Entity:
        self.capabilities.require(actor_role, Permission.ENTITY_MANAGE)
        entity = Entity(
            entity_type=data.entity_type.value,
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            phone_number=data.phone_number.strip(),
            email=data.email,
            id_number=data.id_number,
            status=EntityStatus.ACTIVE.value,
            receive_sms=data.receive_sms,
            receive_email=data.receive_email,
        )
        self.db.add(entity)
        self._commit_unique()
        self.db.refresh(entity)
        logger.info(f"Created {entity.entity_type} {entity.id} by {actor_role}")
        return entity

    def update_entity(self, entity_id: int, data: EntityUpdate, actor_role: str) -> Entity:
        self.capabilities.require(actor_role, Permission.ENTITY_MANAGE)
        entity = self._get(entity_id)
        for field_name, value in data.model_dump(exclude_unset=True).items():
            setattr(entity, field_name, value)
        self._commit_unique()
        self.db.refresh(entity)
        return entity

    def _commit_unique(self):
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("A visitor with this phone number or ID number already exists")

    def set_status(self, entity_id: int, status: EntityStatus, actor_role: str) -> Tuple[Entity, str]:
        """Explicit admin status change. Returns the entity and its previous status.

        The visit cascade is applied by recalculating the entity afterwards.
        """
        self.capabilities.require(actor_role, Permission.ENTITY_MANAGE)
        entity = self._get(entity_id)
        old_status = entity.status
        if old_status == status and entity.status_source in (StatusSource.ADMIN, None):
            return entity, old_status

        entity.status = status.value
        entity.status_source = None if status == EntityStatus.ACTIVE else StatusSource.ADMIN.value
        self.db.commit()
        if self.cache is not None:
            self.cache.invalidate_entity(entity.id)

        logger.info(f"Entity {entity.id} status {old_status} -> {entity.status} by {actor_role}")
        if self.notifier is not None and old_status != entity.status:
            self.notifier.entity_status_changed(entity, old_status, entity.status)
        return entity, old_status

    def delete_entity(self, entity_id: int, actor_role: str) -> None:
        self.capabilities.require(actor_role, Permission.ENTITY_MANAGE)
        entity = self._get(entity_id)
        visit_count = self.db.scalar(
            select(func.count(Visit.id)).where(
                (Visit.entity_id == entity.id) | (Visit.host_id == entity.id)
            )
        )
        if visit_count:
            raise ReferentialIntegrityError(
                f"Visitor {entity.id} has {visit_count} visit records and cannot be deleted"
            )
        self.db.delete(entity)
        self.db.commit()
        logger.info(f"Deleted entity {entity_id} by {actor_role}")

    def list_visits(self, entity_id: int, actor_role: str) -> List[dict]:
        """Visits with their display status as of today."""
        self.capabilities.require(actor_role, Permission.VISIT_VIEW)
        self._get(entity_id)
        today = self.clock.today()
        stmt = select(Visit).where(Visit.entity_id == entity_id).order_by(Visit.visit_date, Visit.id)
        return [
            {"visit": visit, "display_status": display_status(visit, today)}
            for visit in self.db.scalars(stmt)
        ]
