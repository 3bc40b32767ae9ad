from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.coupon import COUPON_CODE_MAX_LENGTH, CouponDiscountType
from app.services.coupons import CouponErrorKind


def _check_percentage(discount_type: CouponDiscountType | None, discount: Decimal | None) -> None:
    if discount_type == CouponDiscountType.percentage and discount is not None and discount > 100:
        raise ValueError("Percentage discount cannot exceed 100")


class CouponCreate(BaseModel):
    code: str = Field(min_length=1, max_length=COUPON_CODE_MAX_LENGTH)
    discount: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    discount_type: CouponDiscountType
    expiration_date: datetime
    max_uses: int | None = Field(default=None, ge=1)
    is_active: bool = True
    applicable_products: list[UUID] = Field(default_factory=list)
    applicable_categories: list[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def _percentage_bound(self) -> "CouponCreate":
        _check_percentage(self.discount_type, self.discount)
        return self


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, min_length=1, max_length=COUPON_CODE_MAX_LENGTH)
    discount: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    discount_type: CouponDiscountType | None = None
    expiration_date: datetime | None = None
    max_uses: int | None = Field(default=None, ge=1)
    used_count: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    applicable_products: list[UUID] | None = None
    applicable_categories: list[UUID] | None = None

    @model_validator(mode="after")
    def _percentage_bound(self) -> "CouponUpdate":
        _check_percentage(self.discount_type, self.discount)
        return self


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    discount: Decimal
    discount_type: CouponDiscountType
    expiration_date: datetime
    max_uses: int | None = None
    used_count: int
    is_active: bool
    is_expired: bool = False
    remaining_uses: int | None = None
    applicable_products: list[UUID] = Field(default_factory=list)
    applicable_categories: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class CouponApplyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    # Validated by the evaluator so a bad total is reported as invalid_order_total.
    order_total: Any = None


class CouponApplyResponse(BaseModel):
    success: bool
    code: str | None = None
    discount_amount: Decimal | None = None
    final_total: Decimal | None = None
    remaining_uses: int | None = None
    currency: str | None = None
    reason: CouponErrorKind | None = None
    detail: str | None = None
