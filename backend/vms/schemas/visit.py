"""Visit registration, attendance and status schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from vms.models.entity import EntityType
from vms.models.visit import DisplayStatus, VisitStatus


class VisitRegistration(BaseModel):
    """Register a visit for an existing entity (``entity_id``) or a new one.

    Identity fields are checked by the registration service rather than by
    pydantic, so that every problem is reported together.
    """
    entity_type: EntityType
    entity_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    id_number: Optional[str] = None
    receive_sms: bool = True
    receive_email: bool = False
    host_id: Optional[int] = None
    visit_date: Optional[date] = None
    visit_purpose: Optional[str] = None
    courtesy: bool = False


class SignInRequest(BaseModel):
    id_number: Optional[str] = None
    visit_purpose: Optional[str] = None


class VisitResponse(BaseModel):
    id: int
    entity_id: int
    host_id: Optional[int] = None
    visit_date: date
    visit_purpose: Optional[str] = None
    courtesy: bool
    status: VisitStatus
    display_status: Optional[DisplayStatus] = None
    sign_in_time: Optional[datetime] = None
    sign_out_time: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class QuotaSummary(BaseModel):
    monthly_count: Optional[int] = None
    yearly_count: Optional[int] = None
    host_daily_count: Optional[int] = None
    reasons: List[str] = Field(default_factory=list)


class RegistrationResponse(BaseModel):
    visit: VisitResponse
    entity_id: int
    entity_created: bool
    capacity_pending: bool
    quota: QuotaSummary


class StatusChangeResponse(BaseModel):
    visit_id: int
    old_status: VisitStatus
    new_status: VisitStatus
    cause: str
    reasons: List[str] = Field(default_factory=list)


class RecalculationResponse(BaseModel):
    entity_id: int
    changes: List[StatusChangeResponse]
    entity_old_status: Optional[str] = None
    entity_new_status: Optional[str] = None


class BulkRecalculationResponse(BaseModel):
    entities: int
    changes: int
    entity_status_changes: int
    failures: int


class SweepResponse(BaseModel):
    signed_out: int
