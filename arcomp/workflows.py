"""Checkout, gateway callback and admin payment workflows.

Each function works inside the caller's transaction and flushes; the caller
(HTTP handler, script) owns the commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import quote, urlencode

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import Actor
from .cart import get_current_cart, pending_checkout
from .config import PayHereConfig, Settings
from .errors import (
    ConsistencyError,
    ErrorCode,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .materializer import RegistrationMaterializer
from .models import (
    AuditLog,
    CartStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Registration,
    RegistrationCart,
    RegistrationCartItem,
    RegistrationStatus,
)
from .models.utils import generate_order_id
from .notifications import Notifier, notify_safely
from .payhere import (
    PayHereNotification,
    build_checkout_payload,
    format_amount,
    map_status_code,
    verify_notification,
)

logger = logging.getLogger(__name__)

REQUIRED_CUSTOMER_FIELDS = ("first_name", "last_name", "email", "country")
DEFAULT_REJECT_REASON = "Payment could not be verified"
DEFAULT_REVERT_REASON = "Admin reverted payment status"
ORDER_ID_ATTEMPTS = 5


@dataclass
class CheckoutResult:
    payment: Payment
    order_id: str
    amount: float
    payment_url: str = ""
    payment_data: Optional[dict[str, str]] = None
    registrations: list[Registration] = field(default_factory=list)
    message: str = ""


class NotificationOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DEFERRED = "deferred"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class NotificationResult:
    outcome: NotificationOutcome
    payment: Payment
    registrations: list[Registration] = field(default_factory=list)


def get_payment(session: Session, payment_id: int) -> Payment:
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _latest_active_cart(session: Session, user_id: int) -> Optional[RegistrationCart]:
    return session.scalar(
        select(RegistrationCart)
        .where(
            RegistrationCart.user_id == user_id,
            RegistrationCart.status == CartStatus.ACTIVE,
        )
        .order_by(RegistrationCart.created_at.desc(), RegistrationCart.id.desc())
        .limit(1)
    )


def checkout(
    session: Session,
    user_id: int,
    customer: Mapping[str, Any],
    *,
    method: str = PaymentMethod.PAYHERE,
    settings: Optional[Settings] = None,
    bank_slip_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """Create a PENDING payment for the user's cart.

    For ``PAYHERE`` the result carries the signed form payload the browser
    posts to the gateway; the cart stays ACTIVE, but locked, until the gateway
    confirms. Checking out the same cart again returns the open payment
    instead of creating a second one.
    For ``BANK_TRANSFER`` the cart is materialized straight away into PENDING
    registrations that await admin verification.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    user_id : int
        Cart owner.
    customer : Mapping[str, Any]
        Billing details; ``first_name``, ``last_name``, ``email`` and
        ``country`` are required.
    method : str, default: "PAYHERE"
        ``PAYHERE`` or ``BANK_TRANSFER``.
    settings : Settings, optional
        Gateway configuration and materialization timeout.
    bank_slip_url : str, optional
        Uploaded bank slip, stored in the payment metadata.

    Returns
    -------
    CheckoutResult
        Order id, amount, gateway URL and payload or pending registrations.

    Raises
    ------
    ValidationError
        If customer details are incomplete, the cart is empty or expired, or
        a bank transfer is requested while a card checkout is open.
    ConsistencyError
        If no unique order id could be allocated.
    """

    settings = settings or Settings()
    now = now or datetime.now(timezone.utc)
    if method not in PaymentMethod.ALL:
        raise ValidationError(f"Unsupported payment method: {method}")
    missing = [key for key in REQUIRED_CUSTOMER_FIELDS if not customer.get(key)]
    if missing:
        raise ValidationError(
            "Complete customer information is required", details={"missing": missing}
        )

    latest = _latest_active_cart(session, user_id)
    if latest is not None and latest.is_expired(now):
        raise ValidationError(
            "Cart has expired. Please add items again.", code=ErrorCode.CART_EXPIRED
        )
    cart = get_current_cart(session, user_id, now)
    if cart is None or not cart.items:
        raise ValidationError("Cart is empty", code=ErrorCode.CART_EMPTY)

    config = settings.payhere
    items = list(cart.items)
    item_ids = [item.id for item in items]
    total = float(sum(item.subtotal for item in items))

    open_payment = pending_checkout(session, cart)
    if open_payment is not None:
        if method != PaymentMethod.PAYHERE or open_payment.method != PaymentMethod.PAYHERE:
            raise ValidationError(
                f"Checkout {open_payment.order_id} is already awaiting payment for this cart",
                code=ErrorCode.CART_LOCKED,
                details={"order_id": open_payment.order_id},
            )
        if open_payment.snapshot_item_ids == item_ids and format_amount(
            open_payment.amount
        ) == format_amount(total):
            open_payment.customer_details = dict(customer)
            session.flush()
            logger.info(
                f"Checkout {open_payment.order_id} reused for cart {cart.id} of user {user_id}"
            )
            return _gateway_checkout(config, open_payment, items, customer)
        logger.warning(
            f"Open checkout {open_payment.order_id} no longer matches cart {cart.id}; "
            "starting a new one"
        )

    competition_ids: list[int] = []
    for item in items:
        if item.competition_id not in competition_ids:
            competition_ids.append(item.competition_id)

    metadata: dict[str, Any] = {
        "cart_id": cart.id,
        "item_ids": item_ids,
        "competition_ids": competition_ids,
    }
    if bank_slip_url:
        metadata["bank_slip_url"] = bank_slip_url

    payment = _insert_payment(
        session,
        now,
        user_id=user_id,
        competition_id=competition_ids[0],
        merchant_id=config.merchant_id,
        amount=total,
        currency=config.currency,
        method=method,
        status=PaymentStatus.PENDING,
        items=[
            {
                "id": item.id,
                "competition_title": item.competition.title,
                "registration_type": item.registration_type.name,
                "country": item.country,
                "member_count": len(item.members or []),
                "unit_price": item.unit_price,
                "subtotal": item.subtotal,
            }
            for item in items
        ],
        customer_details=dict(customer),
        payment_metadata=metadata,
        initiated_at=now,
    )
    logger.info(
        f"Checkout {payment.order_id} for user {user_id}: {len(items)} item(s), "
        f"{format_amount(total)} {payment.currency} via {method}"
    )

    if method == PaymentMethod.BANK_TRANSFER:
        materializer = RegistrationMaterializer(
            session, timeout_seconds=settings.materialization_timeout_seconds
        )
        result = materializer.materialize(payment, confirm=False, now=now)
        return CheckoutResult(
            payment=payment,
            order_id=payment.order_id,
            amount=total,
            registrations=result.registrations,
            message="Bank transfer details submitted. Awaiting verification.",
        )

    return _gateway_checkout(config, payment, items, customer)


def _insert_payment(session: Session, now: datetime, **fields: Any) -> Payment:
    """Insert a payment under a fresh order id, drawing again on a collision."""

    for attempt in range(1, ORDER_ID_ATTEMPTS + 1):
        payment = Payment(order_id=generate_order_id(session, now.year), **fields)
        try:
            with session.begin_nested():
                session.add(payment)
        except IntegrityError:
            if Payment.get_by_order_id(session, payment.order_id) is None:
                raise
            logger.warning(
                f"Order id {payment.order_id} taken by a concurrent checkout "
                f"(attempt {attempt}/{ORDER_ID_ATTEMPTS})"
            )
            continue
        return payment

    raise ConsistencyError(
        f"Unable to allocate a unique order id after {ORDER_ID_ATTEMPTS} attempts"
    )


def _gateway_checkout(
    config: PayHereConfig,
    payment: Payment,
    items: list[RegistrationCartItem],
    customer: Mapping[str, Any],
) -> CheckoutResult:
    descriptions = [
        f"{item.competition.title} - {item.registration_type.name}" for item in items
    ]
    payload = build_checkout_payload(
        config, payment.order_id, payment.amount, descriptions, customer
    )
    return CheckoutResult(
        payment=payment,
        order_id=payment.order_id,
        amount=payment.amount,
        payment_url=config.checkout_url,
        payment_data=payload,
        message="Redirecting to payment gateway",
    )


def _gateway_fields(notification: PayHereNotification) -> dict[str, Any]:
    return {
        "gateway_payment_id": notification.payment_id,
        "status_code": notification.status_code,
        "md5sig": notification.md5sig,
        "payment_method": notification.method,
        "card_holder_name": notification.card_holder_name,
        "card_no": notification.card_no,
        "response_data": notification.raw,
    }


def handle_payment_notification(
    session: Session,
    notification: PayHereNotification,
    *,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> NotificationResult:
    """Apply a verified PayHere notification to its payment.

    Replays are no-ops. A notification that fails signature verification
    changes nothing.

    Raises
    ------
    NotFoundError
        If the order id is unknown.
    ValidationError
        With code ``INVALID_SIGNATURE`` if the signature does not verify.
    """

    settings = settings or Settings()
    notifier = notifier or Notifier()
    now = now or datetime.now(timezone.utc)
    config = settings.payhere

    payment = Payment.get_by_order_id(session, notification.order_id)
    if payment is None:
        logger.warning(f"Notification for unknown order {notification.order_id!r}")
        raise NotFoundError("Payment not found")

    if notification.merchant_id != config.merchant_id or not verify_notification(
        notification, config.merchant_secret
    ):
        logger.warning(f"Rejected notification with invalid signature for {payment.order_id}")
        raise ValidationError("Invalid signature", code=ErrorCode.INVALID_SIGNATURE)

    target = map_status_code(notification.status_code)
    logger.info(
        f"Notification for {payment.order_id}: status_code={notification.status_code} "
        f"-> {target} (payment is {payment.status})"
    )

    if target == PaymentStatus.COMPLETED:
        return _apply_success(session, payment, notification, settings, notifier, now)
    if target == PaymentStatus.PENDING:
        if payment.status == PaymentStatus.PENDING:
            payment.status_code = notification.status_code
            payment.response_data = notification.raw
            session.flush()
        return NotificationResult(NotificationOutcome.DEFERRED, payment)
    if target == PaymentStatus.REFUNDED:
        return _apply_refund(session, payment, notification, now)
    return _apply_failure(session, payment, notification, target, notifier, now)


def _apply_success(
    session: Session,
    payment: Payment,
    notification: PayHereNotification,
    settings: Settings,
    notifier: Notifier,
    now: datetime,
) -> NotificationResult:
    materializer = RegistrationMaterializer(
        session, timeout_seconds=settings.materialization_timeout_seconds
    )
    if payment.status == PaymentStatus.COMPLETED:
        return NotificationResult(
            NotificationOutcome.DUPLICATE,
            payment,
            materializer.existing_registrations(payment),
        )
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        logger.warning(
            f"Ignoring success notification for {payment.order_id} in status {payment.status}"
        )
        return NotificationResult(NotificationOutcome.IGNORED, payment)

    if notification.payhere_amount != format_amount(payment.amount) or (
        notification.payhere_currency != payment.currency
    ):
        logger.error(
            f"Amount mismatch for {payment.order_id}: expected "
            f"{format_amount(payment.amount)} {payment.currency}, got "
            f"{notification.payhere_amount} {notification.payhere_currency}"
        )
        for key, value in _gateway_fields(notification).items():
            setattr(payment, key, value)
        payment.status = PaymentStatus.FAILED
        payment.error_message = "Amount or currency mismatch"
        session.flush()
        return NotificationResult(NotificationOutcome.FAILED, payment)

    try:
        result = materializer.materialize(
            payment, confirm=True, payment_updates=_gateway_fields(notification), now=now
        )
    except (ConsistencyError, ValidationError) as e:
        logger.error(f"Materialization of {payment.order_id} failed: {e}")
        payment.error_message = e.message
        session.flush()
        return NotificationResult(NotificationOutcome.DEFERRED, payment)

    if not result.created:
        return NotificationResult(NotificationOutcome.DUPLICATE, payment, result.registrations)

    notify_safely(notifier.registration_confirmed, payment, result.registrations)
    return NotificationResult(NotificationOutcome.COMPLETED, payment, result.registrations)


def _apply_refund(
    session: Session, payment: Payment, notification: PayHereNotification, now: datetime
) -> NotificationResult:
    if payment.status == PaymentStatus.REFUNDED:
        return NotificationResult(NotificationOutcome.DUPLICATE, payment)
    if payment.status not in (
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
    ):
        logger.warning(
            f"Ignoring charge-back for {payment.order_id} in status {payment.status}"
        )
        return NotificationResult(NotificationOutcome.IGNORED, payment)

    payment.status = PaymentStatus.REFUNDED
    payment.status_code = notification.status_code
    payment.refunded_at = now
    payment.response_data = notification.raw
    registrations = list(payment.registrations)
    for registration in registrations:
        registration.status = RegistrationStatus.REFUNDED
    session.flush()
    logger.warning(
        f"Payment {payment.order_id} charged back; {len(registrations)} registration(s) refunded"
    )
    return NotificationResult(NotificationOutcome.REFUNDED, payment, registrations)


def _apply_failure(
    session: Session,
    payment: Payment,
    notification: PayHereNotification,
    target: str,
    notifier: Notifier,
    now: datetime,
) -> NotificationResult:
    outcome = (
        NotificationOutcome.CANCELLED
        if target == PaymentStatus.CANCELLED
        else NotificationOutcome.FAILED
    )
    if payment.status == target:
        return NotificationResult(NotificationOutcome.DUPLICATE, payment)
    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        logger.warning(
            f"Ignoring {target} notification for {payment.order_id} in status {payment.status}"
        )
        return NotificationResult(NotificationOutcome.IGNORED, payment)

    for key, value in _gateway_fields(notification).items():
        setattr(payment, key, value)
    payment.status = target
    payment.error_message = notification.status_message
    if target == PaymentStatus.CANCELLED:
        payment.cancelled_at = now
    session.flush()

    if target == PaymentStatus.FAILED:
        notify_safely(
            notifier.payment_failed, payment, notification.status_message or "Payment failed"
        )
    return NotificationResult(outcome, payment)


def approve_payment(
    session: Session,
    actor: Actor,
    payment_id: int,
    *,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Admin approval of a PENDING payment (normally a bank transfer).

    Pending registrations are confirmed and receive display codes; a payment
    that was never materialized is materialized now.
    """

    admin_id = actor.require_admin()
    settings = settings or Settings()
    notifier = notifier or Notifier()
    now = now or datetime.now(timezone.utc)
    payment = get_payment(session, payment_id)
    if payment.status != PaymentStatus.PENDING:
        raise InvalidTransitionError(
            f"Only PENDING payments can be approved (payment is {payment.status})"
        )

    materializer = RegistrationMaterializer(
        session, timeout_seconds=settings.materialization_timeout_seconds
    )
    if materializer.is_materialized(payment):
        registrations = materializer.existing_registrations(payment)
        for registration in registrations:
            if registration.status == RegistrationStatus.PENDING:
                registration.confirm(session, now)
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = now
    else:
        registrations = materializer.materialize(payment, confirm=True, now=now).registrations

    payment.update_metadata(
        verified_by=admin_id, verified_at=now.isoformat(), action="APPROVED"
    )
    AuditLog.record(
        session,
        action="payment.approve",
        subject_table=Payment.__tablename__,
        subject_id=payment.id,
        actor_user_id=admin_id,
        details={"order_id": payment.order_id, "registrations": len(registrations)},
        occurred_at=now,
    )
    session.flush()
    logger.info(f"Admin {admin_id} approved payment {payment.order_id}")
    notify_safely(notifier.registration_confirmed, payment, registrations)
    return payment


def reject_payment(
    session: Session,
    actor: Actor,
    payment_id: int,
    reason: Optional[str] = None,
    *,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Admin rejection of a PENDING payment; its registrations are cancelled."""

    admin_id = actor.require_admin()
    notifier = notifier or Notifier()
    now = now or datetime.now(timezone.utc)
    payment = get_payment(session, payment_id)
    if payment.status != PaymentStatus.PENDING:
        raise InvalidTransitionError(
            f"Only PENDING payments can be rejected (payment is {payment.status})"
        )

    reason = (reason or "").strip() or DEFAULT_REJECT_REASON
    payment.status = PaymentStatus.FAILED
    payment.error_message = reason
    payment.update_metadata(
        verified_by=admin_id,
        verified_at=now.isoformat(),
        action="REJECTED",
        reject_reason=reason,
    )
    for registration in payment.registrations:
        registration.status = RegistrationStatus.CANCELLED
    AuditLog.record(
        session,
        action="payment.reject",
        subject_table=Payment.__tablename__,
        subject_id=payment.id,
        actor_user_id=admin_id,
        details={"order_id": payment.order_id, "reason": reason},
        occurred_at=now,
    )
    session.flush()
    logger.info(f"Admin {admin_id} rejected payment {payment.order_id}: {reason}")
    notify_safely(notifier.payment_failed, payment, reason)
    return payment


def verify_payment(
    session: Session,
    actor: Actor,
    payment_id: int,
    approve: bool,
    reason: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Payment:
    if approve:
        return approve_payment(
            session, actor, payment_id, settings=settings, notifier=notifier, now=now
        )
    return reject_payment(session, actor, payment_id, reason, notifier=notifier, now=now)


def revert_payment(
    session: Session,
    actor: Actor,
    payment_id: int,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Payment:
    """Move a COMPLETED or FAILED payment back to PENDING.

    The only path back to PENDING. Registrations return to PENDING (display
    codes are kept), the previous state is recorded in the payment metadata
    and the audit log, and the registrant is not notified.
    """

    admin_id = actor.require_admin()
    now = now or datetime.now(timezone.utc)
    payment = get_payment(session, payment_id)
    if payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
        raise InvalidTransitionError(
            "Payment cannot be reverted (must be COMPLETED or FAILED)"
        )

    previous = payment.status
    reason = (reason or "").strip() or DEFAULT_REVERT_REASON
    payment.status = PaymentStatus.PENDING
    payment.completed_at = None
    payment.update_metadata(
        reverted_by=admin_id,
        reverted_at=now.isoformat(),
        previous_status=previous,
        revert_reason=reason,
    )
    for registration in payment.registrations:
        registration.status = RegistrationStatus.PENDING
        registration.confirmed_at = None
    AuditLog.record(
        session,
        action="payment.revert",
        subject_table=Payment.__tablename__,
        subject_id=payment.id,
        actor_user_id=admin_id,
        details={
            "order_id": payment.order_id,
            "previous_status": previous,
            "reason": reason,
        },
        occurred_at=now,
    )
    session.flush()
    logger.warning(
        f"Admin {admin_id} reverted payment {payment.order_id} from {previous}: {reason}"
    )
    return payment


def payment_return_target(session: Session, order_id: str) -> str:
    """Return the page the browser lands on after the gateway redirect."""

    quoted = quote(order_id, safe="")
    payment = Payment.get_by_order_id(session, order_id)
    if payment is None:
        query = urlencode({"reason": "Payment not found", "orderId": order_id})
        return f"/competitions/payment/failed/{quoted}?{query}"
    if payment.status == PaymentStatus.COMPLETED:
        return f"/competitions/payment/success/{quoted}"
    if payment.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
        return f"/competitions/payment/processing/{quoted}"
    reason = payment.error_message or f"Payment {payment.status.lower()}"
    query = urlencode({"reason": reason, "orderId": order_id})
    return f"/competitions/payment/failed/{quoted}?{query}"
