"""Visit registration and cancellation."""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Tuple

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vms.core.cache import CountKey, VisitCountCache
from vms.core.clock import Clock
from vms.core.config import settings
from vms.core.errors import (
    DuplicateVisitError,
    EntityBlockedError,
    NotFoundError,
    ValidationError,
)
from vms.core.policy import (
    ENTITY_POLICIES,
    CapabilityPolicy,
    EntityPolicy,
    Permission,
    policy_for,
)
from vms.models.entity import Entity, EntityStatus, EntityType
from vms.models.visit import Visit, VisitStatus
from vms.schemas.visit import VisitRegistration
from vms.services import quota
from vms.services.notification_service import Notifier, clean_phone_number
from vms.services.visit_status import (
    StatusChange,
    TransitionCause,
    apply_transition,
    ensure_can_cancel,
    initial_status,
)

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)

MIN_ID_NUMBER_LENGTH = 5


@dataclass
class RegistrationResult:
    visit: Visit
    entity: Entity
    quota: quota.QuotaCheck
    entity_created: bool = False

    @property
    def capacity_pending(self) -> bool:
        return self.visit.status != VisitStatus.APPROVED


def validate_identity(
    first_name: Optional[str],
    last_name: Optional[str],
    phone_number: Optional[str],
    email: Optional[str] = None,
    id_number: Optional[str] = None,
) -> List[str]:
    """Return every problem with the identity fields, not just the first."""
    errors = []
    if not (first_name or "").strip():
        errors.append("First name is required")
    if not (last_name or "").strip():
        errors.append("Last name is required")
    if not (phone_number or "").strip():
        errors.append("Phone number is required")
    else:
        digits = clean_phone_number(phone_number)
        if not 9 <= len(digits) <= 15:
            errors.append("Phone number is invalid")
    if email:
        try:
            _email_adapter.validate_python(email)
        except PydanticValidationError:
            errors.append("Email address is invalid")
    if id_number is not None and len(id_number.strip()) < MIN_ID_NUMBER_LENGTH:
        errors.append(f"ID number must be at least {MIN_ID_NUMBER_LENGTH} characters")
    return errors


class RegistrationService:
    """Admits visit requests and cancels visits."""

    def __init__(
        self,
        db: Session,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        cache: Optional[VisitCountCache] = None,
        policies: Optional[Dict[EntityType, EntityPolicy]] = None,
        capabilities: Optional[CapabilityPolicy] = None,
        host_daily_limit: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier
        self.cache = cache or VisitCountCache(settings.count_cache_ttl_seconds)
        self.policies = policies or ENTITY_POLICIES
        self.capabilities = capabilities or CapabilityPolicy.from_settings()
        self.host_daily_limit = host_daily_limit or settings.host_daily_limit

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, request: VisitRegistration, actor_role: str) -> RegistrationResult:
        policy = policy_for(request.entity_type, self.policies)
        courtesy = request.courtesy

        self.capabilities.require(actor_role, Permission.register_for(request.entity_type))
        if request.courtesy:
            self.capabilities.require(actor_role, Permission.REGISTER_COURTESY)

        entity = self._existing_entity(request)
        host = self._validate(request, policy, entity)

        entity_created = False
        if entity is None:
            entity, entity_created = self._create_entity(request)

        if not entity_created:
            if self._find_duplicate(entity.id, request.host_id, request.visit_date):
                raise DuplicateVisitError(entity.id, request.visit_date)
            if policy.blocks_registration(entity):
                raise EntityBlockedError(entity.id, entity.status, "register a visit")

        check = self._check_quota(entity, policy, request, courtesy)
        visit = Visit(
            entity_id=entity.id,
            host_id=request.host_id,
            visit_date=request.visit_date,
            visit_purpose=request.visit_purpose,
            courtesy=courtesy,
            status=initial_status(check).value,
            registered_by_role=actor_role,
        )
        self.db.add(visit)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise self._integrity_error(e, entity.id, request.visit_date)

        self.db.refresh(visit)
        self._invalidate(entity.id, request.host_id)

        logger.info(
            f"Registered visit {visit.id} for {entity.entity_type} {entity.id} on {visit.visit_date} "
            f"by {actor_role}: {visit.status}"
            + (f" ({'; '.join(check.reasons)})" if check.reasons else "")
        )

        if self.notifier is not None:
            self.notifier.registration_outcome(entity, visit, host)
            if check.host_capacity_exceeded and host is not None:
                pending = self._host_pending(host.id, visit.visit_date)
                self.notifier.host_capacity_reached(host, visit.visit_date, pending)

        return RegistrationResult(visit=visit, entity=entity, quota=check, entity_created=entity_created)

    def _existing_entity(self, request: VisitRegistration) -> Optional[Entity]:
        if request.entity_id is not None:
            entity = self.db.get(Entity, request.entity_id)
            if entity is None:
                raise NotFoundError(f"Visitor {request.entity_id} not found")
            if entity.entity_type != request.entity_type:
                raise ValidationError(
                    f"Visitor {entity.id} is a {entity.entity_type}, not a {request.entity_type.value}"
                )
            return entity
        return self._match_entity(request)

    def _match_entity(self, request: VisitRegistration) -> Optional[Entity]:
        """Find a returning visitor of the requested type by ID number, then phone."""
        entity_type = request.entity_type.value
        if request.id_number:
            entity = self.db.scalar(
                select(Entity).where(
                    Entity.entity_type == entity_type, Entity.id_number == request.id_number.strip()
                )
            )
            if entity is not None:
                return entity
        if request.phone_number:
            entity = self.db.scalar(
                select(Entity).where(
                    Entity.entity_type == entity_type,
                    Entity.phone_number == request.phone_number.strip(),
                )
            )
            if entity is not None:
                if request.id_number and entity.id_number and entity.id_number != request.id_number.strip():
                    raise ValidationError("Phone number is registered to another visitor")
                return entity
        return None

    def _validate(
        self, request: VisitRegistration, policy: EntityPolicy, entity: Optional[Entity]
    ) -> Optional[Entity]:
        errors: List[str] = []
        if entity is None:
            errors.extend(validate_identity(
                request.first_name,
                request.last_name,
                request.phone_number,
                request.email,
                request.id_number,
            ))

        if request.visit_date is None:
            errors.append("Visit date is required")
        elif request.visit_date < self.clock.today():
            errors.append("Visit date cannot be in the past")

        if request.visit_purpose and policy.allowed_purposes is not None:
            if request.visit_purpose not in policy.allowed_purposes:
                errors.append(f"Invalid visit purpose: {request.visit_purpose}")

        host = None
        if request.host_id is None:
            if policy.requires_host and not request.courtesy:
                errors.append("A host is required unless the visit is a courtesy visit")
        else:
            host = self.db.get(Entity, request.host_id)
            if host is None:
                errors.append(f"Host {request.host_id} not found")
            elif not policy_for(host.entity_type, self.policies).can_host:
                errors.append(f"A {host.entity_type} cannot host visits")
            elif host.status == EntityStatus.BANNED:
                errors.append("Host is banned and cannot receive visitors")
            elif entity is not None and host.id == entity.id:
                errors.append("A visitor cannot host their own visit")

        if errors:
            raise ValidationError(errors)
        return host

    def _find_duplicate(self, entity_id: int, host_id: Optional[int], visit_date: date) -> Optional[Visit]:
        stmt = select(Visit).where(
            Visit.entity_id == entity_id,
            Visit.visit_date == visit_date,
            Visit.status != VisitStatus.CANCELLED.value,
            func.coalesce(Visit.host_id, 0) == (host_id or 0),
        )
        return self.db.scalar(stmt)

    def _create_entity(self, request: VisitRegistration) -> Tuple[Entity, bool]:
        """Create the visitor, or return the one a concurrent registration just created.

        Returns the entity and whether this call created it.
        """
        entity = Entity(
            entity_type=request.entity_type.value,
            first_name=request.first_name.strip(),
            last_name=request.last_name.strip(),
            phone_number=request.phone_number.strip(),
            email=request.email or None,
            id_number=request.id_number.strip() if request.id_number else None,
            status=EntityStatus.ACTIVE.value,
            receive_sms=request.receive_sms,
            receive_email=request.receive_email,
        )
        self.db.add(entity)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self._match_entity(request)
            if existing is None:
                raise ValidationError("A visitor with this phone number or ID number already exists")
            logger.info(f"Registration matched {existing.entity_type} {existing.id} created concurrently")
            return existing, False
        return entity, True

    def _check_quota(
        self, entity: Entity, policy: EntityPolicy, request: VisitRegistration, courtesy: bool
    ) -> quota.QuotaCheck:
        today = self.clock.today()
        day = request.visit_date
        monthly = yearly = host_daily = None

        if policy.has_quota and entity.id is not None:
            history = self._history(entity.id)
            if policy.monthly_limit is not None:
                monthly = self.cache.get_or_compute(
                    CountKey.month(entity.id, day),
                    lambda: quota.monthly_count(history, day, today, policy),
                )
            if policy.yearly_limit is not None:
                yearly = self.cache.get_or_compute(
                    CountKey.year(entity.id, day),
                    lambda: quota.yearly_count(history, day, today, policy),
                )

        host_limit = None
        if policy.host_capacity_applies and not courtesy and request.host_id is not None:
            host_limit = self.host_daily_limit
            host_daily = self.cache.get_or_compute(
                CountKey.host_day(request.host_id, day),
                lambda: quota.host_day_count(self._host_visits(request.host_id, day), day, today),
            )

        return quota.check_candidate(
            policy,
            purpose=request.visit_purpose,
            monthly=monthly,
            yearly=yearly,
            host_daily=host_daily,
            host_limit=host_limit,
        )

    def _history(self, entity_id: int) -> List[Visit]:
        stmt = (
            select(Visit)
            .where(Visit.entity_id == entity_id, Visit.status != VisitStatus.CANCELLED.value)
            .order_by(Visit.visit_date, Visit.id)
        )
        return list(self.db.scalars(stmt))

    def _host_visits(self, host_id: int, day: date) -> List[Visit]:
        stmt = select(Visit).where(Visit.host_id == host_id, Visit.visit_date == day)
        return list(self.db.scalars(stmt))

    def _host_pending(self, host_id: int, day: date) -> int:
        return sum(
            1 for v in self._host_visits(host_id, day)
            if v.status == VisitStatus.UNAPPROVED and not v.courtesy
        )

    def _integrity_error(self, error: IntegrityError, entity_id: int, visit_date: date) -> Exception:
        message = str(error.orig)
        if "entities" in message or "uq_entity" in message:
            return ValidationError("A visitor with this phone number or ID number already exists")
        logger.warning(f"Concurrent registration rejected for entity {entity_id} on {visit_date}")
        return DuplicateVisitError(entity_id, visit_date)

    def _invalidate(self, entity_id: int, host_id: Optional[int]):
        self.cache.invalidate_entity(entity_id)
        if host_id is not None:
            self.cache.invalidate_entity(host_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, visit_id: int, actor_role: str) -> StatusChange:
        self.capabilities.require(actor_role, Permission.VISIT_CANCEL)
        visit = self.db.get(Visit, visit_id)
        if visit is None:
            raise NotFoundError(f"Visit {visit_id} not found")

        ensure_can_cancel(visit)
        change = apply_transition(visit, VisitStatus.CANCELLED, TransitionCause.CANCELLATION)
        visit.cancelled_at = self.clock.now()
        self.db.commit()
        self._invalidate(visit.entity_id, visit.host_id)

        logger.info(f"Visit {visit.id} cancelled by {actor_role} (was {change.old_status.value})")
        if self.notifier is not None:
            self.notifier.visit_status_changed(visit.entity, visit.visit_date, VisitStatus.CANCELLED)
        return change
