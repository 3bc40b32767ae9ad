import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

COUPON_CODE_MAX_LENGTH = 15


class CouponDiscountType(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


class CouponScopeEntityType(str, enum.Enum):
    product = "product"
    category = "category"


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(COUPON_CODE_MAX_LENGTH), unique=True, nullable=False, index=True)
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_type: Mapped[CouponDiscountType] = mapped_column(
        Enum(CouponDiscountType, native_enum=False),
        nullable=False,
    )
    expiration_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    scopes: Mapped[list["CouponScope"]] = relationship(
        "CouponScope", back_populates="coupon", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def applicable_products(self) -> list[uuid.UUID]:
        return [s.entity_id for s in self.scopes if s.entity_type == CouponScopeEntityType.product]

    @property
    def applicable_categories(self) -> list[uuid.UUID]:
        return [s.entity_id for s in self.scopes if s.entity_type == CouponScopeEntityType.category]


class CouponScope(Base):
    __tablename__ = "coupon_scopes"
    __table_args__ = (UniqueConstraint("coupon_id", "entity_type", "entity_id", name="uq_coupon_scopes_coupon_type_entity"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[CouponScopeEntityType] = mapped_column(
        Enum(CouponScopeEntityType, native_enum=False),
        nullable=False,
    )
    # Products and categories live in the catalog service; only their ids are kept here.
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)

    coupon: Mapped[Coupon] = relationship("Coupon", back_populates="scopes")
