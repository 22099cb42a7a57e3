"""
Google Play domain models - Immutable dataclasses for purchase verification
and Real-Time Developer Notifications.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class GooglePlayPurchaseVerification:
    """Result of purchases.products.get."""

    order_id: str
    purchase_token: str
    product_id: str
    purchase_time_millis: int
    purchase_state: int  # 0: purchased, 1: canceled, 2: pending
    acknowledgement_state: int  # 0: not acknowledged, 1: acknowledged
    consumption_state: int  # 0: not consumed, 1: consumed
    purchase_type: int | None = None  # None: real, 0: test, 1: promo, 2: rewarded

    def is_valid(self) -> bool:
        """Purchased and not yet consumed: the only state that may be credited."""
        return self.purchase_state == 0 and self.consumption_state == 0

    def is_test_purchase(self) -> bool:
        """Check if this is a test purchase (license tester account)."""
        return self.purchase_type == 0


class NotificationKind(str, Enum):
    """Normalized Real-Time Developer Notification kinds."""

    PRODUCT_PURCHASED = "product_purchased"
    PRODUCT_CANCELED = "product_canceled"
    PURCHASE_VOIDED = "purchase_voided"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REVOKED = "subscription_revoked"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_OTHER = "subscription_other"
    TEST = "test"
    UNKNOWN = "unknown"

    @property
    def is_refund(self) -> bool:
        """Kinds that reverse a previously granted purchase."""
        return self in _REFUND_KINDS


_REFUND_KINDS = frozenset(
    {
        NotificationKind.PRODUCT_CANCELED,
        NotificationKind.PURCHASE_VOIDED,
        NotificationKind.SUBSCRIPTION_CANCELED,
        NotificationKind.SUBSCRIPTION_REVOKED,
        NotificationKind.SUBSCRIPTION_EXPIRED,
    }
)

# oneTimeProductNotification.notificationType
ONE_TIME_PRODUCT_TYPES: dict[int, NotificationKind] = {
    1: NotificationKind.PRODUCT_PURCHASED,
    2: NotificationKind.PRODUCT_CANCELED,
}

# subscriptionNotification.notificationType
SUBSCRIPTION_TYPES: dict[int, NotificationKind] = {
    3: NotificationKind.SUBSCRIPTION_CANCELED,
    12: NotificationKind.SUBSCRIPTION_REVOKED,
    13: NotificationKind.SUBSCRIPTION_EXPIRED,
}


@dataclass(frozen=True)
class ProviderNotification:
    """Decoded Real-Time Developer Notification."""

    message_id: str
    kind: NotificationKind
    package_name: str
    event_time_millis: int
    purchase_token: str | None = None
    product_id: str | None = None
    order_id: str | None = None
    raw_type: int | None = None

    @property
    def is_refund(self) -> bool:
        return self.kind.is_refund and bool(self.purchase_token)
