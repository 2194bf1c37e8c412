"""Visit records."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, String, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vms.db.base import Base, TimestampMixin


class VisitStatus(str, Enum):
    APPROVED = "approved"
    UNAPPROVED = "unapproved"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    BANNED = "banned"


class DisplayStatus(str, Enum):
    """Read-side status computed from the stored fields and today's date."""
    SCHEDULED = "scheduled"
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    MISSED = "missed"
    UNAPPROVED = "unapproved"
    SUSPENDED = "suspended"
    BANNED = "banned"
    CANCELLED = "cancelled"


class VisitPurpose(str, Enum):
    CASUAL_VISIT = "casual_visit"
    GOLF_TOURNAMENT = "golf_tournament"


class Visit(Base, TimestampMixin):
    """One visit by an entity on a calendar date, optionally under a host."""

    __tablename__ = "visits"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("entities.id", ondelete="RESTRICT"), index=True
    )
    host_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("entities.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    visit_date: Mapped[date] = mapped_column(Date, index=True)
    visit_purpose: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    courtesy: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[str] = mapped_column(String(20), default=VisitStatus.APPROVED.value, index=True)
    sign_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sign_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    registered_by_role: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    entity: Mapped["Entity"] = relationship(
        "Entity", back_populates="visits", foreign_keys=[entity_id]
    )
    host: Mapped[Optional["Entity"]] = relationship("Entity", foreign_keys=[host_id])

    def __repr__(self) -> str:
        return f"<Visit {self.id} entity={self.entity_id} {self.visit_date} {self.status}>"


# At most one non-cancelled visit per (entity, host, date). Courtesy visits
# have no host, so the host column is coalesced to keep them unique too.
Index(
    "uq_visits_open_slot",
    Visit.entity_id,
    func.coalesce(Visit.host_id, 0),
    Visit.visit_date,
    unique=True,
    sqlite_where=text("status != 'cancelled'"),
    postgresql_where=text("status != 'cancelled'"),
)
