"""SQLAlchemy models."""

from vms.models.entity import Entity, EntityStatus, EntityType, StatusSource
from vms.models.visit import DisplayStatus, Visit, VisitPurpose, VisitStatus
from vms.models.notification import NotificationLog

__all__ = [
    "Entity",
    "EntityStatus",
    "EntityType",
    "StatusSource",
    "Visit",
    "VisitStatus",
    "VisitPurpose",
    "DisplayStatus",
    "NotificationLog",
]
