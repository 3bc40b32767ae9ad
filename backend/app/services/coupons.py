from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import CouponPolicy
from app.models.coupon import (
    COUPON_CODE_MAX_LENGTH,
    Coupon,
    CouponDiscountType,
    CouponScope,
    CouponScopeEntityType,
)

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")
_ZERO = Decimal("0.00")
# Largest order total accepted for redemption; anything above is treated as malformed input.
MAX_ORDER_TOTAL = Decimal("9999999999.99")
_EDITABLE_FIELDS = ("discount", "discount_type", "expiration_date", "max_uses", "used_count", "is_active")


class CouponErrorKind(str, enum.Enum):
    invalid_order_total = "invalid_order_total"
    coupon_not_found = "coupon_not_found"
    coupon_inactive = "coupon_inactive"
    coupon_expired = "coupon_expired"
    usage_limit_reached = "usage_limit_reached"
    duplicate_code = "duplicate_code"
    concurrency_conflict = "concurrency_conflict"
    invalid_coupon = "invalid_coupon"


class CouponError(Exception):
    kind: CouponErrorKind = CouponErrorKind.invalid_coupon
    default_detail = "Invalid coupon"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class CouponNotFound(CouponError):
    kind = CouponErrorKind.coupon_not_found
    default_detail = "Coupon not found"


class DuplicateCouponCode(CouponError):
    kind = CouponErrorKind.duplicate_code
    default_detail = "Coupon code already exists"


class CouponUsageConflict(CouponError):
    kind = CouponErrorKind.concurrency_conflict
    default_detail = "Coupon usage changed concurrently"


class InvalidCouponChange(CouponError):
    kind = CouponErrorKind.invalid_coupon


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def coerce_order_total(value: Any) -> Decimal | None:
    """Return the order total as a Decimal, or None when it is not a positive number up to ``MAX_ORDER_TOTAL``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        total = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not total.is_finite() or total <= 0 or total > MAX_ORDER_TOTAL:
        return None
    return total


def is_expired(coupon: Coupon, *, now: datetime | None = None) -> bool:
    return _as_utc(coupon.expiration_date) < (now or _now())


def remaining_uses(coupon: Coupon) -> int | None:
    if coupon.max_uses is None:
        return None
    return max(0, int(coupon.max_uses) - int(coupon.used_count or 0))


# ---------------------------------------------------------------------------
# Redemption evaluator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CouponEvaluation:
    success: bool
    discount_amount: Decimal = _ZERO
    reason: CouponErrorKind | None = None
    coupon: Coupon | None = None

    @classmethod
    def reject(cls, reason: CouponErrorKind, *, coupon: Coupon | None = None) -> "CouponEvaluation":
        return cls(success=False, discount_amount=_ZERO, reason=reason, coupon=coupon)


def compute_discount(coupon: Coupon, order_total: Decimal) -> Decimal:
    magnitude = max(Decimal(coupon.discount or 0), _ZERO)
    if coupon.discount_type == CouponDiscountType.percentage:
        raw = magnitude / Decimal("100") * order_total
    else:
        raw = magnitude
    return max(quantize_money(min(raw, order_total)), _ZERO)


def evaluate_coupon(coupon: Coupon | None, order_total: Any, *, now: datetime | None = None) -> CouponEvaluation:
    """Decide whether ``coupon`` applies to ``order_total`` and compute the discount.

    Checks run in a fixed order and stop at the first failure: order total,
    existence, active flag, expiration, usage cap. Nothing is written.
    """
    total = coerce_order_total(order_total)
    if total is None:
        return CouponEvaluation.reject(CouponErrorKind.invalid_order_total, coupon=coupon)
    if coupon is None:
        return CouponEvaluation.reject(CouponErrorKind.coupon_not_found)
    if not coupon.is_active:
        return CouponEvaluation.reject(CouponErrorKind.coupon_inactive, coupon=coupon)
    if is_expired(coupon, now=now):
        return CouponEvaluation.reject(CouponErrorKind.coupon_expired, coupon=coupon)
    if coupon.max_uses is not None and int(coupon.used_count or 0) >= int(coupon.max_uses):
        return CouponEvaluation.reject(CouponErrorKind.usage_limit_reached, coupon=coupon)
    return CouponEvaluation(success=True, discount_amount=compute_discount(coupon, total), coupon=coupon)


# ---------------------------------------------------------------------------
# Coupon record store
# ---------------------------------------------------------------------------


async def get_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon | None:
    result = await session.execute(
        select(Coupon).where(Coupon.id == coupon_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_coupon_by_code(session: AsyncSession, code: str | None) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    result = await session.execute(
        select(Coupon).where(Coupon.code == cleaned).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_coupons(
    session: AsyncSession,
    *,
    expired: bool | None = None,
    active: bool | None = None,
    q: str | None = None,
    now: datetime | None = None,
) -> list[Coupon]:
    moment = now or _now()
    stmt = select(Coupon)
    if expired is True:
        stmt = stmt.where(Coupon.expiration_date < moment)
    elif expired is False:
        stmt = stmt.where(Coupon.expiration_date >= moment)
    if active is not None:
        stmt = stmt.where(Coupon.is_active.is_(active))
    if q and q.strip():
        stmt = stmt.where(Coupon.code.like(f"%{normalize_code(q)}%"))
    result = await session.execute(stmt.order_by(Coupon.created_at.desc(), Coupon.code))
    return list(result.scalars().all())


async def increment_coupon_usage(session: AsyncSession, coupon_id: UUID, *, expected_used_count: int) -> Coupon:
    """Advance ``used_count`` by one if it still equals ``expected_used_count``.

    The check and the write are a single UPDATE statement, so two callers that
    read the same count cannot both succeed. The cap is re-checked in the same
    statement.
    """
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.used_count == expected_used_count,
            or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        await session.rollback()
        raise CouponUsageConflict()
    await session.commit()
    coupon = await get_coupon(session, coupon_id)
    if coupon is None:
        raise CouponNotFound()
    return coupon


def _validate_code(code: str) -> None:
    if not code:
        raise InvalidCouponChange("Coupon code is required")
    if len(code) > COUPON_CODE_MAX_LENGTH:
        raise InvalidCouponChange(f"Coupon code cannot exceed {COUPON_CODE_MAX_LENGTH} characters")


def _validate_expiration(expiration_date: datetime | None, *, now: datetime | None = None) -> None:
    if expiration_date is None:
        raise InvalidCouponChange("Expiration date is required")
    if _as_utc(expiration_date) <= (now or _now()):
        raise InvalidCouponChange("Expiration date must be in the future")


def _validate_discount(discount: Decimal | None, discount_type: CouponDiscountType | str) -> None:
    if discount is None or Decimal(discount) < 0:
        raise InvalidCouponChange("Discount cannot be negative")
    if CouponDiscountType(discount_type) == CouponDiscountType.percentage and Decimal(discount) > 100:
        raise InvalidCouponChange("Percentage discount cannot exceed 100")


def _validate_usage(*, max_uses: int | None, used_count: int) -> None:
    if max_uses is not None and int(max_uses) < 1:
        raise InvalidCouponChange("Max uses must be at least 1 if specified")
    if int(used_count) < 0:
        raise InvalidCouponChange("Used count cannot be negative")
    if max_uses is not None and int(used_count) > int(max_uses):
        raise InvalidCouponChange("Used count cannot exceed max uses")


async def _code_taken(session: AsyncSession, code: str, *, exclude_id: UUID | None = None) -> bool:
    stmt = select(Coupon.id).where(Coupon.code == code)
    if exclude_id is not None:
        stmt = stmt.where(Coupon.id != exclude_id)
    return (await session.execute(stmt.limit(1))).scalar_one_or_none() is not None


def _dedupe(ids: Iterable[UUID] | None) -> list[UUID]:
    seen: list[UUID] = []
    for value in ids or []:
        if value not in seen:
            seen.append(value)
    return seen


def _sync_scopes(coupon: Coupon, entity_type: CouponScopeEntityType, ids: Iterable[UUID] | None) -> None:
    wanted = _dedupe(ids)
    kept: list[CouponScope] = []
    existing: dict[UUID, CouponScope] = {}
    for scope in coupon.scopes:
        if scope.entity_type != entity_type:
            kept.append(scope)
        else:
            existing[scope.entity_id] = scope
    for entity_id in wanted:
        kept.append(existing.get(entity_id) or CouponScope(entity_type=entity_type, entity_id=entity_id))
    coupon.scopes = kept


async def _commit_coupon(session: AsyncSession, coupon: Coupon) -> Coupon:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateCouponCode() from exc
    await session.refresh(coupon)
    return coupon


async def create_coupon(
    session: AsyncSession,
    *,
    code: str,
    discount: Decimal,
    discount_type: CouponDiscountType,
    expiration_date: datetime,
    max_uses: int | None = None,
    is_active: bool = True,
    applicable_products: Iterable[UUID] | None = None,
    applicable_categories: Iterable[UUID] | None = None,
    now: datetime | None = None,
) -> Coupon:
    cleaned = normalize_code(code)
    _validate_code(cleaned)
    _validate_discount(discount, discount_type)
    _validate_expiration(expiration_date, now=now)
    _validate_usage(max_uses=max_uses, used_count=0)
    if await _code_taken(session, cleaned):
        raise DuplicateCouponCode()

    coupon = Coupon(
        code=cleaned,
        discount=Decimal(discount),
        discount_type=CouponDiscountType(discount_type),
        expiration_date=expiration_date,
        max_uses=max_uses,
        used_count=0,
        is_active=is_active,
        scopes=[],
    )
    _sync_scopes(coupon, CouponScopeEntityType.product, applicable_products)
    _sync_scopes(coupon, CouponScopeEntityType.category, applicable_categories)
    session.add(coupon)
    return await _commit_coupon(session, coupon)


async def update_coupon(
    session: AsyncSession,
    coupon_id: UUID,
    changes: dict[str, Any],
    *,
    now: datetime | None = None,
) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    if coupon is None:
        raise CouponNotFound()

    changes = {key: value for key, value in changes.items() if value is not None or key == "max_uses"}
    if "code" in changes:
        changes["code"] = normalize_code(changes["code"])
        _validate_code(changes["code"])
        if changes["code"] != coupon.code and await _code_taken(session, changes["code"], exclude_id=coupon.id):
            raise DuplicateCouponCode()
    if "discount" in changes or "discount_type" in changes:
        _validate_discount(
            changes.get("discount", coupon.discount),
            changes.get("discount_type", coupon.discount_type),
        )
    if "expiration_date" in changes:
        _validate_expiration(changes["expiration_date"], now=now)
    _validate_usage(
        max_uses=changes.get("max_uses", coupon.max_uses),
        used_count=changes.get("used_count", coupon.used_count),
    )

    if "code" in changes:
        coupon.code = changes["code"]
    for attr in _EDITABLE_FIELDS:
        if attr in changes:
            setattr(coupon, attr, changes[attr])
    if "applicable_products" in changes:
        _sync_scopes(coupon, CouponScopeEntityType.product, changes["applicable_products"])
    if "applicable_categories" in changes:
        _sync_scopes(coupon, CouponScopeEntityType.category, changes["applicable_categories"])

    session.add(coupon)
    return await _commit_coupon(session, coupon)


async def set_coupon_active(session: AsyncSession, coupon_id: UUID, is_active: bool) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    if coupon is None:
        raise CouponNotFound()
    coupon.is_active = bool(is_active)
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    return coupon


# ---------------------------------------------------------------------------
# Redemption orchestration
# ---------------------------------------------------------------------------


async def apply_coupon(
    session: AsyncSession,
    *,
    code: str,
    order_total: Any,
    policy: CouponPolicy | None = None,
    now: datetime | None = None,
) -> CouponEvaluation:
    """Validate ``code`` against ``order_total`` and record one redemption.

    A conflicting concurrent redemption makes the loop re-read the coupon and
    evaluate again, at most ``policy.max_attempts`` times.
    """
    policy = policy or CouponPolicy()
    cleaned = normalize_code(code)
    if coerce_order_total(order_total) is None:
        metrics.record_coupon_rejected(CouponErrorKind.invalid_order_total.value)
        return CouponEvaluation.reject(CouponErrorKind.invalid_order_total)

    for attempt in range(1, policy.max_attempts + 1):
        coupon = await get_coupon_by_code(session, cleaned)
        evaluation = evaluate_coupon(coupon, order_total, now=now)
        if not evaluation.success or coupon is None:
            reason = evaluation.reason or CouponErrorKind.coupon_not_found
            metrics.record_coupon_rejected(reason.value)
            logger.info("Coupon rejected", extra={"coupon_code": cleaned, "reason": reason.value, "attempt": attempt})
            return evaluation

        try:
            updated = await increment_coupon_usage(session, coupon.id, expected_used_count=int(coupon.used_count or 0))
        except CouponUsageConflict:
            metrics.record_coupon_conflict()
            logger.warning("Coupon usage conflict", extra={"coupon_code": cleaned, "attempt": attempt})
            continue

        metrics.record_coupon_redeemed()
        logger.info(
            "Coupon redeemed",
            extra={
                "coupon_code": cleaned,
                "discount_amount": str(evaluation.discount_amount),
                "used_count": updated.used_count,
            },
        )
        return replace(evaluation, coupon=updated)

    metrics.record_coupon_rejected(CouponErrorKind.concurrency_conflict.value)
    logger.warning("Coupon redemption gave up after %s attempts", policy.max_attempts, extra={"coupon_code": cleaned})
    return CouponEvaluation.reject(CouponErrorKind.concurrency_conflict)
