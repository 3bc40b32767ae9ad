from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.contact import ContactMessage, ContactMessageResponse, ContactMessageStatus
from app.models.user import User, UserRole

MIN_RESPONSE_LENGTH = 10
MAX_MESSAGE_LENGTH = 10_000

_ASSIGNABLE_ROLES = (UserRole.admin, UserRole.support)


def contact_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact message not found")


def _validate_message(message: str) -> str:
    cleaned = (message or "").strip()
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is required")
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message too long")
    return cleaned


async def create_contact_message(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    message: str,
    terms_agreed: bool,
) -> ContactMessage:
    if not terms_agreed:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You must agree to the terms")
    record = ContactMessage(
        name=(name or "").strip()[:255],
        email=(email or "").strip()[:255],
        message=_validate_message(message),
        terms_agreed=True,
        status=ContactMessageStatus.new,
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def _load(session: AsyncSession, message_id: UUID, *, include_deleted: bool = False) -> ContactMessage | None:
    stmt = select(ContactMessage).where(ContactMessage.id == message_id).execution_options(populate_existing=True)
    if not include_deleted:
        stmt = stmt.where(ContactMessage.deleted.is_(False))
    return (await session.execute(stmt)).unique().scalar_one_or_none()


async def get_contact_message(session: AsyncSession, message_id: UUID) -> ContactMessage | None:
    return await _load(session, message_id)


async def _require_message(session: AsyncSession, message_id: UUID, *, include_deleted: bool = False) -> ContactMessage:
    record = await _load(session, message_id, include_deleted=include_deleted)
    if record is None:
        raise contact_not_found()
    return record


def _apply_search_filter(stmt, *, query: str | None):
    if not query or not query.strip():
        return stmt
    like = f"%{query.strip().lower()}%"
    return stmt.where(
        func.lower(ContactMessage.email).like(like)
        | func.lower(ContactMessage.name).like(like)
        | func.lower(ContactMessage.message).like(like)
    )


async def list_contact_messages(
    session: AsyncSession,
    *,
    q: str | None = None,
    status_filter: ContactMessageStatus | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[ContactMessage], int]:
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 25)))
    offset = (page - 1) * limit

    stmt = select(ContactMessage).where(ContactMessage.deleted.is_(False))
    stmt = _apply_search_filter(stmt, query=q)
    if status_filter is not None:
        stmt = stmt.where(ContactMessage.status == status_filter)
    if date_from is not None:
        stmt = stmt.where(ContactMessage.created_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(ContactMessage.created_at <= date_to)

    total = await session.scalar(stmt.with_only_columns(func.count(ContactMessage.id)).order_by(None))
    rows = (
        await session.execute(
            stmt.order_by(ContactMessage.created_at.desc(), ContactMessage.id.desc()).limit(limit).offset(offset)
        )
    ).unique().scalars().all()
    return list(rows), int(total or 0)


async def update_contact_status(
    session: AsyncSession, message_id: UUID, *, status_value: ContactMessageStatus
) -> tuple[ContactMessage, ContactMessageStatus]:
    """Set the workflow status; returns the record and its previous status."""
    record = await _require_message(session, message_id)
    previous = record.status
    record.status = status_value
    session.add(record)
    await session.commit()
    return await _require_message(session, message_id), previous


async def _resolve_assignee(session: AsyncSession, assignee_id: UUID | None) -> User | None:
    if assignee_id is None:
        return None
    target = await session.get(User, assignee_id)
    if not target:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Assignee not found")
    if target.role not in _ASSIGNABLE_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid assignee")
    return target


async def assign_contact_message(
    session: AsyncSession, message_id: UUID, *, assignee_id: UUID | None
) -> ContactMessage:
    record = await _require_message(session, message_id)
    target = await _resolve_assignee(session, assignee_id)
    record.assignee_user_id = target.id if target else None
    session.add(record)
    await session.commit()
    return await _require_message(session, message_id)


async def respond_to_contact_message(
    session: AsyncSession, message_id: UUID, *, message: str, actor: User
) -> tuple[ContactMessage, ContactMessageResponse]:
    record = await _require_message(session, message_id)
    cleaned = _validate_message(message)
    if len(cleaned) < MIN_RESPONSE_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Response must be at least {MIN_RESPONSE_LENGTH} characters",
        )
    response = ContactMessageResponse(contact_message_id=record.id, responder_user_id=actor.id, message=cleaned)
    session.add(response)
    if record.status == ContactMessageStatus.new:
        record.status = ContactMessageStatus.in_progress
        session.add(record)
    await session.commit()
    await session.refresh(response)
    return await _require_message(session, message_id), response


async def soft_delete_contact_message(session: AsyncSession, message_id: UUID) -> ContactMessage:
    record = await _require_message(session, message_id)
    record.deleted = True
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def restore_contact_message(session: AsyncSession, message_id: UUID) -> ContactMessage:
    record = await _require_message(session, message_id, include_deleted=True)
    if not record.deleted:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Contact message is not deleted")
    record.deleted = False
    session.add(record)
    await session.commit()
    return await _require_message(session, message_id)


async def permanently_delete_contact_message(session: AsyncSession, message_id: UUID) -> None:
    record = await _require_message(session, message_id, include_deleted=True)
    await session.delete(record)
    await session.commit()
