"""PayHere checkout signing and webhook verification.

PayHere authenticates both directions with upper-case hex MD5 digests over a
concatenation of the order fields and the (itself hashed) merchant secret::

    checkout: MD5(merchant_id + order_id + amount + currency + MD5(secret))
    notify:   MD5(merchant_id + order_id + payhere_amount + payhere_currency
                  + status_code + MD5(secret))

The secret never leaves the server.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional, Sequence

from ..config import PayHereConfig
from ..models.payment import PaymentStatus

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "2"
STATUS_PENDING = "0"
STATUS_CANCELLED = "-1"
STATUS_FAILED = "-2"
STATUS_CHARGEBACK = "-3"


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def hash_secret(secret: str) -> str:
    """Return the upper-case hex MD5 of the merchant secret."""

    return _md5_upper(secret)


def format_amount(amount: Any) -> str:
    """Format ``amount`` with exactly two decimals and no thousands separators."""

    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{value:.2f}"


def checkout_hash(
    merchant_id: str, order_id: str, amount: Any, currency: str, secret: str
) -> str:
    """Return the ``hash`` field of the checkout form."""

    return _md5_upper(
        f"{merchant_id}{order_id}{format_amount(amount)}{currency}{hash_secret(secret)}"
    )


def notification_signature(
    merchant_id: str,
    order_id: str,
    payhere_amount: str,
    payhere_currency: str,
    status_code: str,
    secret: str,
) -> str:
    """Return the ``md5sig`` PayHere computes for a notification.

    ``payhere_amount`` is used exactly as received; it is not re-formatted.
    """

    return _md5_upper(
        f"{merchant_id}{order_id}{payhere_amount}{payhere_currency}"
        f"{status_code}{hash_secret(secret)}"
    )


@dataclass
class PayHereNotification:
    """Server-to-server payment notification posted to ``notify_url``."""

    merchant_id: str
    order_id: str
    payhere_amount: str
    payhere_currency: str
    status_code: Optional[str]
    md5sig: str
    payment_id: Optional[str] = None
    method: Optional[str] = None
    status_message: Optional[str] = None
    card_holder_name: Optional[str] = None
    card_no: Optional[str] = None
    custom_1: Optional[str] = None
    custom_2: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "PayHereNotification":
        """Build a notification from the posted form fields.

        Missing optional fields become ``None``; missing signature inputs
        become empty strings so verification fails instead of raising.
        """

        def _get(key: str) -> Optional[str]:
            value = form.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        return cls(
            merchant_id=_get("merchant_id") or "",
            order_id=_get("order_id") or "",
            payhere_amount=_get("payhere_amount") or "",
            payhere_currency=_get("payhere_currency") or "",
            status_code=_get("status_code"),
            md5sig=_get("md5sig") or "",
            payment_id=_get("payment_id"),
            method=_get("method"),
            status_message=_get("status_message"),
            card_holder_name=_get("card_holder_name"),
            card_no=_get("card_no"),
            custom_1=_get("custom_1"),
            custom_2=_get("custom_2"),
            raw={key: form[key] for key in form.keys() if key != "md5sig"},
        )


def verify_notification(notification: PayHereNotification, secret: str) -> bool:
    """Recompute the notification signature and compare in constant time.

    Returns ``False`` for any mismatch, including a missing ``md5sig``.
    """

    if not notification.md5sig or not secret:
        return False
    expected = notification_signature(
        notification.merchant_id,
        notification.order_id,
        notification.payhere_amount,
        notification.payhere_currency,
        notification.status_code or "",
        secret,
    )
    return hmac.compare_digest(expected, notification.md5sig.upper())


def map_status_code(status_code: Optional[str]) -> str:
    """Map a PayHere ``status_code`` to a payment status.

    ``"0"`` (pending at the gateway) and a missing code keep the payment
    PENDING so reconciliation can query the gateway later.
    """

    if status_code is None or status_code == "" or status_code == STATUS_PENDING:
        return PaymentStatus.PENDING
    if status_code == STATUS_SUCCESS:
        return PaymentStatus.COMPLETED
    if status_code == STATUS_CANCELLED:
        return PaymentStatus.CANCELLED
    if status_code == STATUS_CHARGEBACK:
        return PaymentStatus.REFUNDED
    return PaymentStatus.FAILED


def build_checkout_payload(
    config: PayHereConfig,
    order_id: str,
    amount: Any,
    items: Sequence[str],
    customer: Mapping[str, Any],
    custom_1: Optional[str] = None,
    custom_2: Optional[str] = None,
) -> dict[str, str]:
    """Return the form fields the browser posts to the PayHere checkout page.

    Parameters
    ----------
    config : PayHereConfig
        Merchant id, currency and callback URLs.
    order_id : str
        Order id of the pending payment.
    amount : Any
        Order total; formatted with two decimals.
    items : Sequence[str]
        Human-readable item descriptions joined into ``items``.
    customer : Mapping[str, Any]
        ``first_name``, ``last_name``, ``email``, ``phone``, ``address``,
        ``city`` and ``country``.

    Returns
    -------
    dict[str, str]
        Payload including the signed ``hash``. The merchant secret is never
        part of it.
    """

    formatted = format_amount(amount)
    payload = {
        "merchant_id": config.merchant_id,
        "return_url": config.return_url,
        "cancel_url": config.cancel_url,
        "notify_url": config.notify_url,
        "order_id": order_id,
        "items": ", ".join(items)[:255],
        "currency": config.currency,
        "amount": formatted,
        "first_name": str(customer.get("first_name") or ""),
        "last_name": str(customer.get("last_name") or ""),
        "email": str(customer.get("email") or ""),
        "phone": str(customer.get("phone") or ""),
        "address": str(customer.get("address") or ""),
        "city": str(customer.get("city") or ""),
        "country": str(customer.get("country") or ""),
        "hash": checkout_hash(
            config.merchant_id,
            order_id,
            formatted,
            config.currency,
            config.merchant_secret,
        ),
    }
    if custom_1 is not None:
        payload["custom_1"] = custom_1
    if custom_2 is not None:
        payload["custom_2"] = custom_2
    logger.debug(f"Built checkout payload for order {order_id} amount {formatted}")
    return payload
