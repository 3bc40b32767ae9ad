from app.db.base import Base  # noqa: F401
from app.models.user import User, UserRole  # noqa: F401
from app.models.coupon import Coupon, CouponDiscountType, CouponScope, CouponScopeEntityType  # noqa: F401
from app.models.audit import AdminAuditLog, AuditChainState  # noqa: F401
from app.models.contact import ContactMessage, ContactMessageResponse, ContactMessageStatus  # noqa: F401
from app.models.notification import (  # noqa: F401
    NotificationChannel,
    NotificationTemplate,
    NotificationTemplateVersion,
)

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Coupon",
    "CouponDiscountType",
    "CouponScope",
    "CouponScopeEntityType",
    "AdminAuditLog",
    "AuditChainState",
    "ContactMessage",
    "ContactMessageResponse",
    "ContactMessageStatus",
    "NotificationChannel",
    "NotificationTemplate",
    "NotificationTemplateVersion",
]
