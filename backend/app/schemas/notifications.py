from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.notification import NOTIFICATION_TEMPLATE_NAME_MAX_LENGTH, NotificationChannel


class NotificationTemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=NOTIFICATION_TEMPLATE_NAME_MAX_LENGTH)
    subject: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1, max_length=50_000)
    channel: NotificationChannel = NotificationChannel.email


class NotificationTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=NOTIFICATION_TEMPLATE_NAME_MAX_LENGTH)
    subject: str | None = Field(default=None, min_length=1, max_length=255)
    body: str | None = Field(default=None, min_length=1, max_length=50_000)
    channel: NotificationChannel | None = None
    is_active: bool | None = None


class NotificationTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    subject: str
    body: str
    channel: NotificationChannel
    is_active: bool
    created_by_user_id: UUID | None = None
    updated_by_user_id: UUID | None = None
    created_at: datetime
    updated_at: datetime


class NotificationTemplateVersionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: UUID
    previous_subject: str
    previous_body: str
    updated_by_user_id: UUID | None = None
    created_at: datetime


class NotificationTemplatePreviewRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)


class NotificationTemplatePreview(BaseModel):
    subject: str
    body: str
