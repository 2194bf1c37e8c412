"""Visitable parties: guests, members, employees, suppliers and reciprocating members."""

from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vms.db.base import Base, TimestampMixin


class EntityType(str, Enum):
    GUEST = "guest"
    MEMBER = "member"
    EMPLOYEE = "employee"
    SUPPLIER = "supplier"
    ACCOMMODATION_GUEST = "accommodation_guest"
    RECIPROCATING_MEMBER = "reciprocating_member"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class StatusSource(str, Enum):
    """Who put an entity into its current non-active status."""
    ADMIN = "admin"
    SYSTEM = "system"


class Entity(Base, TimestampMixin):
    """A person who can hold visits, or host them."""

    __tablename__ = "entities"
    __table_args__ = (
        UniqueConstraint("entity_type", "phone_number", name="uq_entity_type_phone"),
        UniqueConstraint("entity_type", "id_number", name="uq_entity_type_id_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    entity_type: Mapped[str] = mapped_column(String(30), index=True)
    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100))
    phone_number: Mapped[str] = mapped_column(String(20), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    id_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=EntityStatus.ACTIVE.value)
    status_source: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    receive_sms: Mapped[bool] = mapped_column(Boolean, default=True)
    receive_email: Mapped[bool] = mapped_column(Boolean, default=False)

    visits: Mapped[List["Visit"]] = relationship(
        "Visit",
        back_populates="entity",
        foreign_keys="Visit.entity_id",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_admin_blocked(self) -> bool:
        """Banned, or suspended by an administrator rather than by the quota engine."""
        if self.status == EntityStatus.BANNED:
            return True
        return self.status == EntityStatus.SUSPENDED and self.status_source == StatusSource.ADMIN

    def __repr__(self) -> str:
        return f"<Entity {self.id} {self.entity_type} {self.status}>"
