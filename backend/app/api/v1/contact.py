from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import AuditPolicy, ContactPolicy
from app.core.dependencies import get_audit_policy, get_contact_policy, require_support_staff
from app.db.session import get_session
from app.models.contact import ContactMessage, ContactMessageStatus
from app.models.user import User
from app.schemas.admin_common import AdminPaginationMeta
from app.schemas.contact import (
    ContactAssign,
    ContactMessageCreate,
    ContactMessageListItem,
    ContactMessageListResponse,
    ContactMessageRead,
    ContactRespond,
    ContactStatusUpdate,
)
from app.services import audit as audit_service
from app.services import contact as contact_service
from app.services import email as email_service

router = APIRouter(prefix="/contact", tags=["contact"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
SupportStaffDep = Annotated[User, Depends(require_support_staff)]
ContactPolicyDep = Annotated[ContactPolicy, Depends(get_contact_policy)]
AuditPolicyDep = Annotated[AuditPolicy, Depends(get_audit_policy)]


async def _audit(
    session: AsyncSession,
    *,
    action: str,
    record_id: UUID,
    actor: User,
    policy: AuditPolicy,
    details: dict[str, Any] | None = None,
) -> None:
    await audit_service.record_audit_event(
        session,
        entity="contact_message",
        action=action,
        entity_id=record_id,
        performed_by=actor.id,
        details=details,
        policy=policy,
    )


@router.post("", response_model=ContactMessageRead, status_code=status.HTTP_201_CREATED)
async def submit_contact_message(
    payload: ContactMessageCreate,
    background_tasks: BackgroundTasks,
    session: SessionDep,
    policy: ContactPolicyDep,
) -> ContactMessageRead:
    record = await contact_service.create_contact_message(
        session,
        name=payload.name,
        email=str(payload.email),
        message=payload.message,
        terms_agreed=payload.terms_agreed,
    )
    metrics.record_contact_message()
    if policy.email.enabled:
        if policy.support_email:
            background_tasks.add_task(
                email_service.send_contact_support_notification,
                policy.email,
                policy.support_email,
                name=record.name,
                from_email=record.email,
                message=record.message,
            )
        background_tasks.add_task(email_service.send_contact_acknowledgment, policy.email, record.email, name=record.name)
    return ContactMessageRead.model_validate(record)


@router.get("/admin", response_model=ContactMessageListResponse)
async def admin_list_contact_messages(
    session: SessionDep,
    _: SupportStaffDep,
    q: str | None = Query(default=None, max_length=200),
    status_filter: ContactMessageStatus | None = Query(default=None, alias="status"),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
) -> ContactMessageListResponse:
    rows, total_items = await contact_service.list_contact_messages(
        session,
        q=q,
        status_filter=status_filter,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return ContactMessageListResponse(
        items=[ContactMessageListItem.model_validate(r) for r in rows],
        meta=AdminPaginationMeta.build(total_items=total_items, page=page, limit=limit),
    )


@router.get("/admin/{message_id}", response_model=ContactMessageRead)
async def admin_get_contact_message(message_id: UUID, session: SessionDep, _: SupportStaffDep) -> ContactMessageRead:
    record = await contact_service.get_contact_message(session, message_id)
    if record is None:
        raise contact_service.contact_not_found()
    return ContactMessageRead.model_validate(record)


@router.patch("/admin/{message_id}/status", response_model=ContactMessageRead)
async def admin_update_contact_status(
    message_id: UUID,
    payload: ContactStatusUpdate,
    background_tasks: BackgroundTasks,
    session: SessionDep,
    staff: SupportStaffDep,
    policy: ContactPolicyDep,
    audit_policy: AuditPolicyDep,
) -> ContactMessageRead:
    record, previous = await contact_service.update_contact_status(session, message_id, status_value=payload.status)
    read = ContactMessageRead.model_validate(record)
    await _audit(
        session,
        action="update_status",
        record_id=record.id,
        actor=staff,
        policy=audit_policy,
        details={"from": previous.value, "to": payload.status.value},
    )
    if policy.email.enabled and previous != payload.status:
        background_tasks.add_task(
            email_service.send_contact_status_update,
            policy.email,
            read.email,
            name=read.name,
            status=payload.status.value,
        )
    return read


@router.post("/admin/{message_id}/assign", response_model=ContactMessageRead)
async def admin_assign_contact_message(
    message_id: UUID,
    payload: ContactAssign,
    session: SessionDep,
    staff: SupportStaffDep,
    audit_policy: AuditPolicyDep,
) -> ContactMessageRead:
    record = await contact_service.assign_contact_message(session, message_id, assignee_id=payload.assignee_id)
    read = ContactMessageRead.model_validate(record)
    await _audit(
        session,
        action="assign",
        record_id=record.id,
        actor=staff,
        policy=audit_policy,
        details={"assignee_id": payload.assignee_id},
    )
    return read


@router.post("/admin/{message_id}/respond", response_model=ContactMessageRead)
async def admin_respond_contact_message(
    message_id: UUID,
    payload: ContactRespond,
    background_tasks: BackgroundTasks,
    session: SessionDep,
    staff: SupportStaffDep,
    policy: ContactPolicyDep,
    audit_policy: AuditPolicyDep,
) -> ContactMessageRead:
    record, response = await contact_service.respond_to_contact_message(
        session, message_id, message=payload.message, actor=staff
    )
    read = ContactMessageRead.model_validate(record)
    await _audit(
        session,
        action="respond",
        record_id=record.id,
        actor=staff,
        policy=audit_policy,
        details={"response_id": response.id},
    )
    if policy.email.enabled:
        background_tasks.add_task(
            email_service.send_contact_response,
            policy.email,
            read.email,
            name=read.name,
            response=payload.message.strip(),
        )
    return read


def _summary(record: ContactMessage) -> dict[str, Any]:
    return {"email": record.email, "status": record.status.value}


@router.delete("/admin/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_contact_message(
    message_id: UUID,
    session: SessionDep,
    staff: SupportStaffDep,
    audit_policy: AuditPolicyDep,
) -> Response:
    record = await contact_service.soft_delete_contact_message(session, message_id)
    await _audit(session, action="delete", record_id=message_id, actor=staff, policy=audit_policy, details=_summary(record))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/admin/{message_id}/restore", response_model=ContactMessageRead)
async def admin_restore_contact_message(
    message_id: UUID,
    session: SessionDep,
    staff: SupportStaffDep,
    audit_policy: AuditPolicyDep,
) -> ContactMessageRead:
    record = await contact_service.restore_contact_message(session, message_id)
    read = ContactMessageRead.model_validate(record)
    await _audit(session, action="restore", record_id=message_id, actor=staff, policy=audit_policy)
    return read


@router.delete("/admin/{message_id}/permanent", status_code=status.HTTP_204_NO_CONTENT)
async def admin_permanently_delete_contact_message(
    message_id: UUID,
    session: SessionDep,
    staff: SupportStaffDep,
    audit_policy: AuditPolicyDep,
) -> Response:
    await contact_service.permanently_delete_contact_message(session, message_id)
    await _audit(session, action="permanent_delete", record_id=message_id, actor=staff, policy=audit_policy)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
