import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core import metrics
from app.core.config import CouponPolicy
from app.db.base import Base
from app.models.coupon import CouponDiscountType
from app.services import coupons as coupons_service
from app.services.coupons import (
    CouponErrorKind,
    CouponNotFound,
    CouponUsageConflict,
    DuplicateCouponCode,
    InvalidCouponChange,
)


async def _session_factory() -> async_sessionmaker:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


def _future(days: int = 30) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


async def _create(session, **overrides):
    params = {
        "code": "SAVE10",
        "discount": Decimal("10"),
        "discount_type": CouponDiscountType.percentage,
        "expiration_date": _future(),
    }
    params.update(overrides)
    return await coupons_service.create_coupon(session, **params)


@pytest.mark.anyio
async def test_create_coupon_normalizes_code_and_starts_unused() -> None:
    SessionLocal = await _session_factory()
    product_id = uuid.uuid4()
    category_id = uuid.uuid4()
    async with SessionLocal() as session:
        coupon = await _create(
            session,
            code="  save10 ",
            max_uses=5,
            applicable_products=[product_id, product_id],
            applicable_categories=[category_id],
        )

        assert coupon.code == "SAVE10"
        assert coupon.used_count == 0
        assert coupon.is_active is True
        assert coupon.applicable_products == [product_id]
        assert coupon.applicable_categories == [category_id]

        fetched = await coupons_service.get_coupon_by_code(session, "save10")
        assert fetched is not None
        assert fetched.id == coupon.id


@pytest.mark.anyio
async def test_create_coupon_rejects_duplicate_code_case_insensitively() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        await _create(session, code="WELCOME")
        with pytest.raises(DuplicateCouponCode) as exc:
            await _create(session, code="welcome")
        assert exc.value.kind == CouponErrorKind.duplicate_code


@pytest.mark.anyio
async def test_create_coupon_validates_record_rules() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        with pytest.raises(InvalidCouponChange):
            await _create(session, expiration_date=datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(InvalidCouponChange):
            await _create(session, max_uses=0)
        with pytest.raises(InvalidCouponChange):
            await _create(session, discount=Decimal("-1"))
        with pytest.raises(InvalidCouponChange):
            await _create(session, code="X" * 16)
        with pytest.raises(InvalidCouponChange):
            await _create(session, code="   ")
        assert await coupons_service.list_coupons(session) == []


@pytest.mark.anyio
async def test_update_coupon_applies_changes_and_scopes() -> None:
    SessionLocal = await _session_factory()
    product_id = uuid.uuid4()
    async with SessionLocal() as session:
        coupon = await _create(session, max_uses=10)
        updated = await coupons_service.update_coupon(
            session,
            coupon.id,
            {
                "code": "save20",
                "discount": Decimal("20"),
                "used_count": 4,
                "applicable_products": [product_id],
            },
        )

        assert updated.code == "SAVE20"
        assert updated.discount == Decimal("20")
        assert updated.used_count == 4
        assert updated.applicable_products == [product_id]

        cleared = await coupons_service.update_coupon(session, coupon.id, {"applicable_products": []})
        assert cleared.applicable_products == []


@pytest.mark.anyio
async def test_update_coupon_errors() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        first = await _create(session, code="FIRST", max_uses=3)
        await _create(session, code="SECOND")

        with pytest.raises(CouponNotFound):
            await coupons_service.update_coupon(session, uuid.uuid4(), {"discount": Decimal("5")})
        with pytest.raises(DuplicateCouponCode):
            await coupons_service.update_coupon(session, first.id, {"code": "second"})
        with pytest.raises(InvalidCouponChange):
            await coupons_service.update_coupon(session, first.id, {"used_count": 4})
        with pytest.raises(InvalidCouponChange):
            await coupons_service.update_coupon(
                session, first.id, {"expiration_date": datetime.now(timezone.utc) - timedelta(days=1)}
            )

        unchanged = await coupons_service.get_coupon(session, first.id)
        assert unchanged is not None
        assert unchanged.code == "FIRST"
        assert unchanged.used_count == 0


@pytest.mark.anyio
async def test_update_coupon_can_remove_usage_cap() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        coupon = await _create(session, max_uses=1)
        updated = await coupons_service.update_coupon(session, coupon.id, {"max_uses": None})
        assert updated.max_uses is None


@pytest.mark.anyio
async def test_set_coupon_active_toggles_and_reports_missing() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        coupon = await _create(session)
        assert (await coupons_service.set_coupon_active(session, coupon.id, False)).is_active is False
        assert (await coupons_service.set_coupon_active(session, coupon.id, True)).is_active is True
        with pytest.raises(CouponNotFound):
            await coupons_service.set_coupon_active(session, uuid.uuid4(), False)


@pytest.mark.anyio
async def test_list_coupons_filters() -> None:
    SessionLocal = await _session_factory()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        await _create(session, code="LIVE")
        await _create(session, code="OLD", expiration_date=now - timedelta(days=1), now=now - timedelta(days=5))
        off = await _create(session, code="PAUSED")
        await coupons_service.set_coupon_active(session, off.id, False)

        expired = await coupons_service.list_coupons(session, expired=True, now=now)
        assert [c.code for c in expired] == ["OLD"]

        current = await coupons_service.list_coupons(session, expired=False, now=now)
        assert {c.code for c in current} == {"LIVE", "PAUSED"}

        inactive = await coupons_service.list_coupons(session, active=False)
        assert [c.code for c in inactive] == ["PAUSED"]

        searched = await coupons_service.list_coupons(session, q="li")
        assert [c.code for c in searched] == ["LIVE"]


@pytest.mark.anyio
async def test_increment_usage_is_conditional_on_expected_count() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        coupon = await _create(session, max_uses=2)
        coupon_id = coupon.id

        bumped = await coupons_service.increment_coupon_usage(session, coupon_id, expected_used_count=0)
        assert bumped.used_count == 1

        with pytest.raises(CouponUsageConflict):
            await coupons_service.increment_coupon_usage(session, coupon_id, expected_used_count=0)

        bumped = await coupons_service.increment_coupon_usage(session, coupon_id, expected_used_count=1)
        assert bumped.used_count == 2

        with pytest.raises(CouponUsageConflict):
            await coupons_service.increment_coupon_usage(session, coupon_id, expected_used_count=2)

        final = await coupons_service.get_coupon(session, coupon_id)
        assert final is not None
        assert final.used_count == 2


@pytest.mark.anyio
async def test_reads_do_not_change_usage() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        coupon = await _create(session, max_uses=3)
        for _ in range(3):
            fetched = await coupons_service.get_coupon_by_code(session, "SAVE10")
            assert fetched is not None
            assert fetched.used_count == 0
        assert await coupons_service.get_coupon_by_code(session, "") is None
        assert await coupons_service.get_coupon(session, coupon.id) is not None


@pytest.mark.anyio
async def test_apply_coupon_redeems_once_and_returns_discount() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        await _create(session, code="SAVE10", discount=Decimal("10"), max_uses=5)

        result = await coupons_service.apply_coupon(session, code="save10", order_total=Decimal("200"))

        assert result.success is True
        assert result.discount_amount == Decimal("20.00")
        assert result.coupon is not None
        assert result.coupon.used_count == 1
        assert coupons_service.remaining_uses(result.coupon) == 4
        assert metrics.snapshot()["coupons_redeemed"] == 1


@pytest.mark.anyio
async def test_apply_coupon_at_usage_cap_is_rejected_without_increment() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        coupon = await _create(session, max_uses=2)
        await coupons_service.update_coupon(session, coupon.id, {"used_count": 2})

        result = await coupons_service.apply_coupon(session, code="SAVE10", order_total=100)

        assert result.success is False
        assert result.reason == CouponErrorKind.usage_limit_reached
        stored = await coupons_service.get_coupon(session, coupon.id)
        assert stored is not None
        assert stored.used_count == 2
        assert metrics.snapshot()["coupons_rejected.usage_limit_reached"] == 1


@pytest.mark.anyio
async def test_apply_coupon_rejections() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        coupon = await _create(session, code="FIXED", discount=Decimal("500"), discount_type=CouponDiscountType.fixed)

        missing = await coupons_service.apply_coupon(session, code="NOPE", order_total=50)
        assert missing.reason == CouponErrorKind.coupon_not_found

        bad_total = await coupons_service.apply_coupon(session, code="FIXED", order_total=0)
        assert bad_total.reason == CouponErrorKind.invalid_order_total

        clamped = await coupons_service.apply_coupon(session, code="FIXED", order_total=Decimal("100"))
        assert clamped.success is True
        assert clamped.discount_amount == Decimal("100.00")

        await coupons_service.set_coupon_active(session, coupon.id, False)
        inactive = await coupons_service.apply_coupon(session, code="FIXED", order_total=100)
        assert inactive.reason == CouponErrorKind.coupon_inactive


@pytest.mark.anyio
async def test_apply_coupon_rejects_expired_coupon() -> None:
    SessionLocal = await _session_factory()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        await _create(session, code="GONE", expiration_date=now - timedelta(hours=1), now=now - timedelta(days=1))

        result = await coupons_service.apply_coupon(session, code="GONE", order_total=100)

        assert result.reason == CouponErrorKind.coupon_expired


@pytest.mark.anyio
async def test_apply_coupon_retries_after_conflict(monkeypatch: pytest.MonkeyPatch) -> None:
    SessionLocal = await _session_factory()
    real_increment = coupons_service.increment_coupon_usage
    calls: list[int] = []

    async def _flaky_increment(session, coupon_id, *, expected_used_count):
        calls.append(expected_used_count)
        if len(calls) == 1:
            raise CouponUsageConflict()
        return await real_increment(session, coupon_id, expected_used_count=expected_used_count)

    monkeypatch.setattr(coupons_service, "increment_coupon_usage", _flaky_increment)
    async with SessionLocal() as session:
        await _create(session, max_uses=3)

        result = await coupons_service.apply_coupon(session, code="SAVE10", order_total=50)

        assert result.success is True
        assert len(calls) == 2
        assert metrics.snapshot()["coupon_usage_conflicts"] == 1


@pytest.mark.anyio
async def test_apply_coupon_gives_up_after_max_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    SessionLocal = await _session_factory()
    attempts: list[int] = []

    async def _always_conflict(session, coupon_id, *, expected_used_count):
        attempts.append(expected_used_count)
        raise CouponUsageConflict()

    monkeypatch.setattr(coupons_service, "increment_coupon_usage", _always_conflict)
    async with SessionLocal() as session:
        await _create(session)

        result = await coupons_service.apply_coupon(
            session, code="SAVE10", order_total=50, policy=CouponPolicy(max_attempts=2)
        )

        assert result.success is False
        assert result.reason == CouponErrorKind.concurrency_conflict
        assert len(attempts) == 2


@pytest.mark.anyio
async def test_percentage_bound_applies_to_merged_update() -> None:
    SessionLocal = await _session_factory()
    async with SessionLocal() as session:
        fixed = await _create(session, code="BIGFIXED", discount=Decimal("500"), discount_type=CouponDiscountType.fixed)
        percent = await _create(session, code="PCT", discount=Decimal("10"))

        with pytest.raises(InvalidCouponChange):
            await _create(session, code="OVER", discount=Decimal("101"))
        with pytest.raises(InvalidCouponChange):
            await coupons_service.update_coupon(session, fixed.id, {"discount_type": CouponDiscountType.percentage})
        with pytest.raises(InvalidCouponChange):
            await coupons_service.update_coupon(session, percent.id, {"discount": Decimal("150")})

        stored = await coupons_service.get_coupon(session, fixed.id)
        assert stored is not None
        assert stored.discount_type == CouponDiscountType.fixed

        switched = await coupons_service.update_coupon(
            session, fixed.id, {"discount_type": CouponDiscountType.percentage, "discount": Decimal("50")}
        )
        assert switched.discount_type == CouponDiscountType.percentage
        assert switched.discount == Decimal("50")
