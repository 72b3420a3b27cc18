from .api import GatewayPayment, PayHereClient, map_gateway_status
from .signing import (
    PayHereNotification,
    build_checkout_payload,
    checkout_hash,
    format_amount,
    hash_secret,
    map_status_code,
    notification_signature,
    verify_notification,
)

__all__ = [
    "GatewayPayment",
    "PayHereClient",
    "PayHereNotification",
    "build_checkout_payload",
    "checkout_hash",
    "format_amount",
    "hash_secret",
    "map_gateway_status",
    "map_status_code",
    "notification_signature",
    "verify_notification",
]
