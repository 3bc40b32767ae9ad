from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.contact import ContactMessageStatus
from app.models.user import UserRole
from app.schemas.admin_common import AdminPaginationMeta


class ContactAssigneeRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str | None = None
    role: UserRole


class ContactMessageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    message: str = Field(min_length=1, max_length=10_000)
    terms_agreed: bool = False


class ContactStatusUpdate(BaseModel):
    status: ContactMessageStatus


class ContactAssign(BaseModel):
    assignee_id: UUID | None = None


class ContactRespond(BaseModel):
    message: str = Field(min_length=1, max_length=10_000)


class ContactMessageResponseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    responder_user_id: UUID | None = None
    message: str
    created_at: datetime


class ContactMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    message: str
    status: ContactMessageStatus
    assignee: ContactAssigneeRef | None = None
    created_at: datetime
    updated_at: datetime
    responses: list[ContactMessageResponseRead] = Field(default_factory=list)


class ContactMessageListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    status: ContactMessageStatus
    assignee: ContactAssigneeRef | None = None
    created_at: datetime


class ContactMessageListResponse(BaseModel):
    items: list[ContactMessageListItem]
    meta: AdminPaginationMeta
