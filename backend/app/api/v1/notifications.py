from __future__ import annotations

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import AuditPolicy
from app.core.dependencies import get_audit_policy, require_admin
from app.db.session import get_session
from app.models.notification import NotificationChannel
from app.models.user import User
from app.schemas.notifications import (
    NotificationTemplateCreate,
    NotificationTemplatePreview,
    NotificationTemplatePreviewRequest,
    NotificationTemplateRead,
    NotificationTemplateUpdate,
    NotificationTemplateVersionRead,
)
from app.services import audit as audit_service
from app.services import notifications as notifications_service

router = APIRouter(prefix="/notifications/admin/templates", tags=["notifications"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
AdminDep = Annotated[User, Depends(require_admin)]
AuditPolicyDep = Annotated[AuditPolicy, Depends(get_audit_policy)]


async def _audit(
    session: AsyncSession,
    *,
    action: str,
    template_id: UUID,
    actor: User,
    policy: AuditPolicy,
    details: dict[str, Any] | None = None,
) -> None:
    await audit_service.record_audit_event(
        session,
        entity="notification_template",
        action=action,
        entity_id=template_id,
        performed_by=actor.id,
        details=details,
        policy=policy,
    )


@router.get("", response_model=list[NotificationTemplateRead])
async def admin_list_templates(
    session: SessionDep,
    _: AdminDep,
    channel: NotificationChannel | None = Query(default=None),
    include_inactive: bool = Query(default=False),
) -> list[NotificationTemplateRead]:
    rows = await notifications_service.list_templates(session, channel=channel, include_inactive=include_inactive)
    return [NotificationTemplateRead.model_validate(r) for r in rows]


@router.post("", response_model=NotificationTemplateRead, status_code=status.HTTP_201_CREATED)
async def admin_create_template(
    payload: NotificationTemplateCreate,
    session: SessionDep,
    admin: AdminDep,
    audit_policy: AuditPolicyDep,
) -> NotificationTemplateRead:
    template = await notifications_service.create_template(
        session,
        name=payload.name,
        subject=payload.subject,
        body=payload.body,
        channel=payload.channel,
        actor=admin,
    )
    read = NotificationTemplateRead.model_validate(template)
    await _audit(
        session,
        action="create",
        template_id=read.id,
        actor=admin,
        policy=audit_policy,
        details={"name": read.name, "channel": read.channel.value},
    )
    return read


@router.get("/{template_id}", response_model=NotificationTemplateRead)
async def admin_get_template(template_id: UUID, session: SessionDep, _: AdminDep) -> NotificationTemplateRead:
    template = await notifications_service.get_template(session, template_id)
    if template is None:
        raise notifications_service.template_not_found()
    return NotificationTemplateRead.model_validate(template)


@router.patch("/{template_id}", response_model=NotificationTemplateRead)
async def admin_update_template(
    template_id: UUID,
    payload: NotificationTemplateUpdate,
    session: SessionDep,
    admin: AdminDep,
    audit_policy: AuditPolicyDep,
) -> NotificationTemplateRead:
    template, changed = await notifications_service.update_template(
        session, template_id, payload.model_dump(exclude_unset=True), actor=admin
    )
    read = NotificationTemplateRead.model_validate(template)
    if changed:
        await _audit(
            session,
            action="update",
            template_id=read.id,
            actor=admin,
            policy=audit_policy,
            details={"name": read.name, "changes": changed},
        )
    return read


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_template(
    template_id: UUID,
    session: SessionDep,
    admin: AdminDep,
    audit_policy: AuditPolicyDep,
) -> Response:
    template = await notifications_service.deactivate_template(session, template_id, actor=admin)
    name = template.name
    await _audit(
        session, action="delete", template_id=template_id, actor=admin, policy=audit_policy, details={"name": name}
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{template_id}/versions", response_model=list[NotificationTemplateVersionRead])
async def admin_list_template_versions(
    template_id: UUID, session: SessionDep, _: AdminDep
) -> list[NotificationTemplateVersionRead]:
    rows = await notifications_service.list_template_versions(session, template_id)
    return [NotificationTemplateVersionRead.model_validate(r) for r in rows]


@router.post("/{template_id}/versions/{version_id}/restore", response_model=NotificationTemplateRead)
async def admin_restore_template_version(
    template_id: UUID,
    version_id: UUID,
    session: SessionDep,
    admin: AdminDep,
    audit_policy: AuditPolicyDep,
) -> NotificationTemplateRead:
    template = await notifications_service.restore_template_version(session, template_id, version_id, actor=admin)
    read = NotificationTemplateRead.model_validate(template)
    await _audit(
        session,
        action="restore_version",
        template_id=template_id,
        actor=admin,
        policy=audit_policy,
        details={"version_id": version_id},
    )
    return read


@router.post("/{template_id}/preview", response_model=NotificationTemplatePreview)
async def admin_preview_template(
    template_id: UUID,
    payload: NotificationTemplatePreviewRequest,
    session: SessionDep,
    _: AdminDep,
) -> NotificationTemplatePreview:
    template = await notifications_service.get_template(session, template_id)
    if template is None:
        raise notifications_service.template_not_found()
    subject, body = notifications_service.render_preview(template, payload.variables)
    return NotificationTemplatePreview(subject=subject, body=body)
