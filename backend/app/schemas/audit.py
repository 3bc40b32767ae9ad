from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.schemas.admin_common import AdminPaginationMeta


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity: str
    action: str
    entity_id: UUID | None = None
    performed_by: UUID | None = None
    details: dict[str, Any] | None = None
    created_at: datetime
    chain_hash: str | None = None


class AuditLogListResponse(BaseModel):
    items: list[AuditLogRead]
    meta: AdminPaginationMeta


class AuditPurgeResponse(BaseModel):
    deleted: int


class AuditChainVerifyResponse(BaseModel):
    ok: bool
    checked: int
    broken_id: UUID | None = None
