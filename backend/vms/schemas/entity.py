"""Entity schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from vms.models.entity import EntityStatus, EntityType


class EntityBase(BaseModel):
    """Base entity schema."""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone_number: str = Field(..., min_length=9, max_length=20)
    email: Optional[EmailStr] = None
    id_number: Optional[str] = Field(None, min_length=5, max_length=30)
    receive_sms: bool = True
    receive_email: bool = False


class EntityCreate(EntityBase):
    entity_type: EntityType


class EntityUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone_number: Optional[str] = Field(None, min_length=9, max_length=20)
    email: Optional[EmailStr] = None
    id_number: Optional[str] = Field(None, min_length=5, max_length=30)
    receive_sms: Optional[bool] = None
    receive_email: Optional[bool] = None


class EntityStatusUpdate(BaseModel):
    status: EntityStatus


class EntityResponse(BaseModel):
    id: int
    entity_type: EntityType
    first_name: str
    last_name: str
    phone_number: str
    email: Optional[str] = None
    id_number: Optional[str] = None
    status: EntityStatus
    status_source: Optional[str] = None
    receive_sms: bool
    receive_email: bool
    created_at: datetime

    model_config = {"from_attributes": True}
