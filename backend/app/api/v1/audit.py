from __future__ import annotations

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import AuditPolicy
from app.core.dependencies import get_audit_policy, require_admin
from app.db.session import get_session
from app.models.user import User
from app.schemas.admin_common import AdminPaginationMeta
from app.schemas.audit import AuditChainVerifyResponse, AuditLogListResponse, AuditLogRead, AuditPurgeResponse
from app.services import audit as audit_service

router = APIRouter(prefix="/audit", tags=["audit"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
AdminDep = Annotated[User, Depends(require_admin)]


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    session: SessionDep,
    _: AdminDep,
    action: str | None = Query(default=None, max_length=120),
    entity: str | None = Query(default=None, max_length=120),
    entity_id: UUID | None = Query(default=None),
    performed_by: UUID | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
) -> AuditLogListResponse:
    rows, total_items = await audit_service.list_audit_logs(
        session,
        action=action,
        entity=entity,
        entity_id=entity_id,
        performed_by=performed_by,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return AuditLogListResponse(
        items=[AuditLogRead.model_validate(r) for r in rows],
        meta=AdminPaginationMeta.build(total_items=total_items, page=page, limit=limit),
    )


@router.get("/verify", response_model=AuditChainVerifyResponse)
async def verify_audit_chain(
    session: SessionDep,
    _: AdminDep,
    policy: Annotated[AuditPolicy, Depends(get_audit_policy)],
) -> AuditChainVerifyResponse:
    report = await audit_service.verify_audit_chain(session, policy=policy)
    return AuditChainVerifyResponse(ok=report.ok, checked=report.checked, broken_id=report.broken_id)


@router.get("/{audit_id}", response_model=AuditLogRead)
async def get_audit_log(audit_id: UUID, session: SessionDep, _: AdminDep) -> AuditLogRead:
    record = await audit_service.get_audit_log(session, audit_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit log not found")
    return AuditLogRead.model_validate(record)


@router.delete("", response_model=AuditPurgeResponse)
async def purge_audit_logs(
    session: SessionDep,
    _: AdminDep,
    older_than: datetime = Query(...),
) -> AuditPurgeResponse:
    deleted = await audit_service.purge_audit_logs(session, older_than=older_than)
    return AuditPurgeResponse(deleted=deleted)
