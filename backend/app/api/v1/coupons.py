from __future__ import annotations

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import AuditPolicy, CouponPolicy
from app.core.dependencies import get_audit_policy, get_coupon_policy, get_current_user, require_coupon_manager
from app.db.session import get_session
from app.models.coupon import Coupon
from app.models.user import User
from app.schemas.coupons import CouponApplyRequest, CouponApplyResponse, CouponCreate, CouponRead, CouponUpdate
from app.services import audit as audit_service
from app.services import coupons as coupons_service
from app.services.coupons import CouponErrorKind

router = APIRouter(prefix="/coupons", tags=["coupons"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]
CouponManagerDep = Annotated[User, Depends(require_coupon_manager)]
CouponPolicyDep = Annotated[CouponPolicy, Depends(get_coupon_policy)]
AuditPolicyDep = Annotated[AuditPolicy, Depends(get_audit_policy)]
OptionalFlagQuery = Annotated[bool | None, Query()]
SearchQuery = Annotated[str | None, Query(max_length=64)]

REJECTION_STATUS: dict[CouponErrorKind, int] = {
    CouponErrorKind.invalid_order_total: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CouponErrorKind.coupon_not_found: status.HTTP_404_NOT_FOUND,
    CouponErrorKind.coupon_inactive: status.HTTP_400_BAD_REQUEST,
    CouponErrorKind.coupon_expired: status.HTTP_400_BAD_REQUEST,
    CouponErrorKind.usage_limit_reached: status.HTTP_400_BAD_REQUEST,
    CouponErrorKind.duplicate_code: status.HTTP_409_CONFLICT,
    CouponErrorKind.concurrency_conflict: status.HTTP_409_CONFLICT,
    CouponErrorKind.invalid_coupon: status.HTTP_400_BAD_REQUEST,
}

_REJECTION_DETAIL: dict[CouponErrorKind, str] = {
    CouponErrorKind.invalid_order_total: "Order total must be a positive number",
    CouponErrorKind.coupon_not_found: "Coupon not found",
    CouponErrorKind.coupon_inactive: "Coupon is not active",
    CouponErrorKind.coupon_expired: "Coupon has expired",
    CouponErrorKind.usage_limit_reached: "Coupon usage limit reached",
    CouponErrorKind.concurrency_conflict: "Coupon is busy, please try again",
}


def status_for(kind: CouponErrorKind) -> int:
    return REJECTION_STATUS.get(kind, status.HTTP_400_BAD_REQUEST)


def _to_coupon_read(coupon: Coupon) -> CouponRead:
    return CouponRead.model_validate(coupon, from_attributes=True).model_copy(
        update={
            "is_expired": coupons_service.is_expired(coupon),
            "remaining_uses": coupons_service.remaining_uses(coupon),
        }
    )


def _audit_details(coupon: Coupon, **extra: Any) -> dict[str, Any]:
    details: dict[str, Any] = {"code": coupon.code}
    details.update(extra)
    return details


async def _require_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = await coupons_service.get_coupon(session, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return coupon


@router.post("/apply", response_model=CouponApplyResponse)
async def apply_coupon(
    payload: CouponApplyRequest,
    session: SessionDep,
    _: CurrentUserDep,
    policy: CouponPolicyDep,
) -> Any:
    result = await coupons_service.apply_coupon(
        session, code=payload.code, order_total=payload.order_total, policy=policy
    )
    if not result.success:
        reason = result.reason or CouponErrorKind.invalid_coupon
        body = CouponApplyResponse(success=False, reason=reason, detail=_REJECTION_DETAIL.get(reason))
        return JSONResponse(status_code=status_for(reason), content=jsonable_encoder(body.model_dump()))

    total = coupons_service.coerce_order_total(payload.order_total)
    coupon = result.coupon
    return CouponApplyResponse(
        success=True,
        code=coupon.code if coupon else coupons_service.normalize_code(payload.code),
        discount_amount=result.discount_amount,
        final_total=coupons_service.quantize_money(total - result.discount_amount),
        remaining_uses=coupons_service.remaining_uses(coupon) if coupon else None,
        currency=policy.currency,
    )


@router.post("/admin", status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(
    payload: CouponCreate,
    session: SessionDep,
    admin: CouponManagerDep,
    audit_policy: AuditPolicyDep,
) -> CouponRead:
    coupon = await coupons_service.create_coupon(
        session,
        code=payload.code,
        discount=payload.discount,
        discount_type=payload.discount_type,
        expiration_date=payload.expiration_date,
        max_uses=payload.max_uses,
        is_active=payload.is_active,
        applicable_products=payload.applicable_products,
        applicable_categories=payload.applicable_categories,
    )
    read = _to_coupon_read(coupon)
    await audit_service.record_audit_event(
        session,
        entity="coupon",
        action="create",
        entity_id=coupon.id,
        performed_by=admin.id,
        details=_audit_details(coupon, discount=read.discount, discount_type=read.discount_type.value),
        policy=audit_policy,
    )
    return read


@router.get("/admin")
async def admin_list_coupons(
    session: SessionDep,
    _: CouponManagerDep,
    expired: OptionalFlagQuery = None,
    active: OptionalFlagQuery = None,
    q: SearchQuery = None,
) -> list[CouponRead]:
    rows = await coupons_service.list_coupons(session, expired=expired, active=active, q=q)
    return [_to_coupon_read(c) for c in rows]


@router.get("/admin/{coupon_id}")
async def admin_get_coupon(coupon_id: UUID, session: SessionDep, _: CouponManagerDep) -> CouponRead:
    return _to_coupon_read(await _require_coupon(session, coupon_id))


@router.patch("/admin/{coupon_id}")
async def admin_update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    session: SessionDep,
    admin: CouponManagerDep,
    audit_policy: AuditPolicyDep,
) -> CouponRead:
    changes = payload.model_dump(exclude_unset=True)
    coupon = await coupons_service.update_coupon(session, coupon_id, changes)
    read = _to_coupon_read(coupon)
    await audit_service.record_audit_event(
        session,
        entity="coupon",
        action="update",
        entity_id=coupon.id,
        performed_by=admin.id,
        details=_audit_details(coupon, changes=sorted(changes)),
        policy=audit_policy,
    )
    return read


async def _set_active(
    session: AsyncSession, coupon_id: UUID, *, is_active: bool, admin: User, audit_policy: AuditPolicy, action: str
) -> Coupon:
    coupon = await coupons_service.set_coupon_active(session, coupon_id, is_active)
    await audit_service.record_audit_event(
        session,
        entity="coupon",
        action=action,
        entity_id=coupon.id,
        performed_by=admin.id,
        details=_audit_details(coupon, is_active=is_active),
        policy=audit_policy,
    )
    return coupon


@router.post("/admin/{coupon_id}/activate")
async def admin_activate_coupon(
    coupon_id: UUID, session: SessionDep, admin: CouponManagerDep, audit_policy: AuditPolicyDep
) -> CouponRead:
    await _set_active(session, coupon_id, is_active=True, admin=admin, audit_policy=audit_policy, action="activate")
    return _to_coupon_read(await _require_coupon(session, coupon_id))


@router.post("/admin/{coupon_id}/deactivate")
async def admin_deactivate_coupon(
    coupon_id: UUID, session: SessionDep, admin: CouponManagerDep, audit_policy: AuditPolicyDep
) -> CouponRead:
    await _set_active(session, coupon_id, is_active=False, admin=admin, audit_policy=audit_policy, action="deactivate")
    return _to_coupon_read(await _require_coupon(session, coupon_id))


@router.delete("/admin/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(
    coupon_id: UUID, session: SessionDep, admin: CouponManagerDep, audit_policy: AuditPolicyDep
) -> Response:
    await _set_active(session, coupon_id, is_active=False, admin=admin, audit_policy=audit_policy, action="delete")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
