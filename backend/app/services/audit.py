from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import AuditPolicy
from app.models.audit import AdminAuditLog, AuditChainState

logger = logging.getLogger(__name__)

ADMIN_CHAIN = "admin"


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _json_safe_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    if details is None:
        return None
    return json.loads(json.dumps(details, ensure_ascii=False, default=str))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _hash_bytes(secret: str, prev_hash: str, material: str) -> str:
    hasher = hashlib.sha256()
    hasher.update(secret.encode("utf-8"))
    hasher.update(b"\n")
    hasher.update((prev_hash or "").encode("utf-8"))
    hasher.update(b"\n")
    hasher.update(material.encode("utf-8"))
    return hasher.hexdigest()


def _chain_payload(audit: AdminAuditLog) -> dict[str, Any]:
    return {
        "id": str(audit.id),
        "created_at": _as_utc(audit.created_at).isoformat(),
        "entity": audit.entity,
        "action": audit.action,
        "entity_id": str(audit.entity_id) if audit.entity_id else None,
        "performed_by": str(audit.performed_by) if audit.performed_by else None,
        "details": audit.details,
    }


async def _locked_chain_state(session: AsyncSession, entity: str) -> AuditChainState:
    state = (
        await session.execute(
            select(AuditChainState)
            .where(AuditChainState.entity == entity)
            .with_for_update()
        )
    ).scalar_one_or_none()
    if state is not None:
        return state
    state = AuditChainState(entity=entity, tail_hash=None)
    session.add(state)
    await session.flush()
    return state


async def add_admin_audit_log(
    session: AsyncSession,
    *,
    entity: str,
    action: str,
    entity_id: UUID | None,
    performed_by: UUID | None,
    details: dict[str, Any] | None = None,
    policy: AuditPolicy | None = None,
) -> AdminAuditLog:
    policy = policy or AuditPolicy()
    audit = AdminAuditLog(
        id=uuid.uuid4(),
        entity=entity,
        action=action,
        entity_id=entity_id,
        performed_by=performed_by,
        details=_json_safe_details(details),
    )
    if policy.hash_chain_enabled:
        audit.created_at = datetime.now(timezone.utc)
        state = await _locked_chain_state(session, ADMIN_CHAIN)
        prev = state.tail_hash
        digest = _hash_bytes(policy.hash_chain_secret, prev or "", _canonical_json(_chain_payload(audit)))
        state.tail_hash = digest
        session.add(state)
        audit.chain_prev_hash = prev
        audit.chain_hash = digest
    session.add(audit)
    return audit


async def record_audit_event(
    session: AsyncSession,
    *,
    entity: str,
    action: str,
    entity_id: UUID | None,
    performed_by: UUID | None,
    details: dict[str, Any] | None = None,
    policy: AuditPolicy | None = None,
) -> AdminAuditLog | None:
    """Persist an audit row after an admin mutation has already been committed.

    A failure here is logged and reported as None; it never undoes the mutation
    being audited.
    """
    try:
        audit = await add_admin_audit_log(
            session,
            entity=entity,
            action=action,
            entity_id=entity_id,
            performed_by=performed_by,
            details=details,
            policy=policy,
        )
        await session.commit()
        await session.refresh(audit)
        return audit
    except Exception:
        await session.rollback()
        metrics.record_audit_failure()
        logger.exception(
            "Audit log write failed",
            extra={"audit_entity": entity, "audit_action": action, "entity_id": str(entity_id) if entity_id else None},
        )
        return None


async def list_audit_logs(
    session: AsyncSession,
    *,
    action: str | None = None,
    entity: str | None = None,
    entity_id: UUID | None = None,
    performed_by: UUID | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[AdminAuditLog], int]:
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 25)))
    offset = (page - 1) * limit

    stmt = select(AdminAuditLog)
    if action:
        stmt = stmt.where(AdminAuditLog.action == action.strip())
    if entity:
        stmt = stmt.where(AdminAuditLog.entity == entity.strip())
    if entity_id is not None:
        stmt = stmt.where(AdminAuditLog.entity_id == entity_id)
    if performed_by is not None:
        stmt = stmt.where(AdminAuditLog.performed_by == performed_by)
    if date_from is not None:
        stmt = stmt.where(AdminAuditLog.created_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(AdminAuditLog.created_at <= date_to)

    total = await session.scalar(stmt.with_only_columns(func.count(AdminAuditLog.id)).order_by(None))
    rows = (
        await session.execute(stmt.order_by(AdminAuditLog.created_at.desc()).limit(limit).offset(offset))
    ).scalars().all()
    return list(rows), int(total or 0)


async def get_audit_log(session: AsyncSession, audit_id: UUID) -> AdminAuditLog | None:
    return await session.get(AdminAuditLog, audit_id)


async def purge_audit_logs(session: AsyncSession, *, older_than: datetime) -> int:
    result = await session.execute(delete(AdminAuditLog).where(AdminAuditLog.created_at < older_than))
    await session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("Purged audit logs", extra={"deleted": deleted, "older_than": older_than.isoformat()})
    return deleted


@dataclass(frozen=True)
class AuditChainReport:
    ok: bool
    checked: int
    broken_id: UUID | None = None


async def verify_audit_chain(session: AsyncSession, *, policy: AuditPolicy) -> AuditChainReport:
    rows = (
        await session.execute(
            select(AdminAuditLog)
            .where(AdminAuditLog.chain_hash.is_not(None))
            .order_by(AdminAuditLog.created_at, AdminAuditLog.id)
        )
    ).scalars().all()
    by_prev: dict[str | None, AdminAuditLog] = {row.chain_prev_hash: row for row in rows}
    hashes = {row.chain_hash for row in rows}
    state = (
        await session.execute(select(AuditChainState).where(AuditChainState.entity == ADMIN_CHAIN))
    ).scalar_one_or_none()

    checked = 0
    visited: set[UUID] = set()
    # Purges drop the oldest rows, so the walk starts at the oldest surviving link.
    current = next((row for row in rows if row.chain_prev_hash not in hashes), None)
    prev: str | None = current.chain_prev_hash if current is not None else None
    while current is not None and current.id not in visited:
        expected = _hash_bytes(policy.hash_chain_secret, prev or "", _canonical_json(_chain_payload(current)))
        if expected != current.chain_hash:
            return AuditChainReport(ok=False, checked=checked, broken_id=current.id)
        checked += 1
        visited.add(current.id)
        prev = current.chain_hash
        current = by_prev.get(prev)

    tail = state.tail_hash if state else None
    if checked != len(rows) or (rows and prev != tail):
        dangling = next((row for row in rows if row.id not in visited), None)
        return AuditChainReport(ok=False, checked=checked, broken_id=dangling.id if dangling else None)
    return AuditChainReport(ok=True, checked=checked)
