from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import HTTPException, status
from jinja2 import StrictUndefined, TemplateError, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification import (
    NOTIFICATION_TEMPLATE_NAME_MAX_LENGTH,
    NotificationChannel,
    NotificationTemplate,
    NotificationTemplateVersion,
)
from app.models.user import User

logger = logging.getLogger(__name__)

# Template bodies are written by staff, so they render in a sandbox and every variable must be supplied.
_sandbox = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined)


def template_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification template not found")


def _duplicate_name() -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Notification template name already exists")


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Template name is required")
    if len(cleaned) > NOTIFICATION_TEMPLATE_NAME_MAX_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Template name too long")
    return cleaned


def _check_syntax(field: str, source: str) -> str:
    cleaned = (source or "").strip()
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Template {field} is required")
    try:
        _sandbox.parse(cleaned)
    except TemplateSyntaxError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Template {field} is not valid: {exc.message}"
        ) from exc
    return cleaned


async def _name_taken(session: AsyncSession, name: str, *, exclude_id: UUID | None = None) -> bool:
    stmt = select(NotificationTemplate.id).where(NotificationTemplate.name == name)
    if exclude_id is not None:
        stmt = stmt.where(NotificationTemplate.id != exclude_id)
    return (await session.execute(stmt.limit(1))).scalar_one_or_none() is not None


async def _commit(session: AsyncSession, template: NotificationTemplate) -> NotificationTemplate:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise _duplicate_name() from exc
    return await _require_template(session, template.id)


async def get_template(session: AsyncSession, template_id: UUID) -> NotificationTemplate | None:
    stmt = (
        select(NotificationTemplate)
        .where(NotificationTemplate.id == template_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _require_template(session: AsyncSession, template_id: UUID) -> NotificationTemplate:
    template = await get_template(session, template_id)
    if template is None:
        raise template_not_found()
    return template


async def list_templates(
    session: AsyncSession,
    *,
    channel: NotificationChannel | None = None,
    include_inactive: bool = False,
) -> list[NotificationTemplate]:
    stmt = select(NotificationTemplate).order_by(NotificationTemplate.name)
    if not include_inactive:
        stmt = stmt.where(NotificationTemplate.is_active.is_(True))
    if channel is not None:
        stmt = stmt.where(NotificationTemplate.channel == channel)
    return list((await session.execute(stmt)).scalars().all())


async def create_template(
    session: AsyncSession,
    *,
    name: str,
    subject: str,
    body: str,
    channel: NotificationChannel,
    actor: User,
) -> NotificationTemplate:
    cleaned_name = _clean_name(name)
    if await _name_taken(session, cleaned_name):
        raise _duplicate_name()
    template = NotificationTemplate(
        name=cleaned_name,
        subject=_check_syntax("subject", subject),
        body=_check_syntax("body", body),
        channel=NotificationChannel(channel),
        is_active=True,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    session.add(template)
    return await _commit(session, template)


def _snapshot(template: NotificationTemplate, actor: User) -> NotificationTemplateVersion:
    return NotificationTemplateVersion(
        template_id=template.id,
        previous_subject=template.subject,
        previous_body=template.body,
        updated_by_user_id=actor.id,
    )


async def update_template(
    session: AsyncSession,
    template_id: UUID,
    changes: dict[str, Any],
    *,
    actor: User,
) -> tuple[NotificationTemplate, list[str]]:
    """Apply ``changes`` and return the template with the names of the fields that changed.

    The previous subject and body are kept as a version whenever either of them changes.
    """
    template = await _require_template(session, template_id)
    changes = {key: value for key, value in changes.items() if value is not None}

    if "name" in changes:
        changes["name"] = _clean_name(changes["name"])
        if changes["name"] != template.name and await _name_taken(session, changes["name"], exclude_id=template.id):
            raise _duplicate_name()
    for field in ("subject", "body"):
        if field in changes:
            changes[field] = _check_syntax(field, changes[field])
    if "channel" in changes:
        changes["channel"] = NotificationChannel(changes["channel"])

    changed = [field for field in ("name", "subject", "body", "channel", "is_active") if field in changes]
    changed = [field for field in changed if getattr(template, field) != changes[field]]
    if not changed:
        return template, []

    if "subject" in changed or "body" in changed:
        session.add(_snapshot(template, actor))
    for field in changed:
        setattr(template, field, changes[field])
    template.updated_by_user_id = actor.id
    session.add(template)
    return await _commit(session, template), changed


async def deactivate_template(session: AsyncSession, template_id: UUID, *, actor: User) -> NotificationTemplate:
    template = await _require_template(session, template_id)
    template.is_active = False
    template.updated_by_user_id = actor.id
    session.add(template)
    return await _commit(session, template)


async def list_template_versions(session: AsyncSession, template_id: UUID) -> list[NotificationTemplateVersion]:
    await _require_template(session, template_id)
    stmt = (
        select(NotificationTemplateVersion)
        .where(NotificationTemplateVersion.template_id == template_id)
        .order_by(NotificationTemplateVersion.created_at.desc(), NotificationTemplateVersion.id)
    )
    return list((await session.execute(stmt)).scalars().all())


async def restore_template_version(
    session: AsyncSession,
    template_id: UUID,
    version_id: UUID,
    *,
    actor: User,
) -> NotificationTemplate:
    template = await _require_template(session, template_id)
    version = (
        await session.execute(
            select(NotificationTemplateVersion).where(
                NotificationTemplateVersion.id == version_id,
                NotificationTemplateVersion.template_id == template_id,
            )
        )
    ).scalar_one_or_none()
    if version is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template version not found")

    session.add(_snapshot(template, actor))
    template.subject = version.previous_subject
    template.body = version.previous_body
    template.updated_by_user_id = actor.id
    session.add(template)
    return await _commit(session, template)


def render_preview(template: NotificationTemplate, variables: dict[str, Any] | None = None) -> tuple[str, str]:
    """Render subject and body with ``variables``; a missing variable is a 400."""
    ctx = dict(variables or {})
    try:
        subject = _sandbox.from_string(template.subject).render(**ctx)
        body = _sandbox.from_string(template.body).render(**ctx)
    except TemplateError as exc:
        logger.info("Notification template render failed", extra={"template_id": str(template.id), "error": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Template render failed: {exc}") from exc
    return subject, body
