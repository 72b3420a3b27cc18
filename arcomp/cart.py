"""Cart store: the user's single ACTIVE registration cart."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .db.utils import as_utc
from .errors import ConsistencyError, ErrorCode, NotFoundError, ValidationError
from .models import (
    CartStatus,
    Competition,
    ParticipantType,
    Payment,
    PaymentStatus,
    RegistrationCart,
    RegistrationCartItem,
    RegistrationType,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+\d{1,3}\d{9,14}$")
PHONE_STRIP_RE = re.compile(r"[\s\-()]")
# Carts never expire in practice when expiry is switched off.
DISABLED_EXPIRY = timedelta(days=3650)


@dataclass
class CartSelection:
    """A registration the user wants to add to their cart."""

    competition_id: int
    registration_type_id: int
    country: str
    members: Sequence[Mapping[str, Any]]
    participant_type: Optional[str] = None
    referral_source: Optional[str] = None
    team_name: Optional[str] = None
    company_name: Optional[str] = None
    agreed_to_terms: bool = False
    agreed_to_website_terms: bool = False
    agreed_to_privacy_policy: bool = False
    agreed_to_refund_policy: bool = False

    @property
    def all_agreements_accepted(self) -> bool:
        return (
            self.agreed_to_terms
            and self.agreed_to_website_terms
            and self.agreed_to_privacy_policy
            and self.agreed_to_refund_policy
        )


@dataclass
class CartSummary:
    cart_id: Optional[int]
    status: Optional[str]
    expires_at: Optional[datetime]
    item_count: int
    total: float
    items: list[dict[str, Any]] = field(default_factory=list)


def sanitize_input(value: str) -> str:
    """Trim whitespace and drop angle brackets."""

    return value.strip().replace("<", "").replace(">", "")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    """International format only, e.g. ``+94 77 123 4567``."""

    if not phone:
        return False
    return PHONE_RE.match(PHONE_STRIP_RE.sub("", phone)) is not None


def _blank(member: Mapping[str, Any], key: str) -> bool:
    value = member.get(key)
    return value is None or str(value).strip() == ""


def _check_phone(member: Mapping[str, Any], key: str, label: str, errors: list[str]) -> None:
    if _blank(member, key):
        errors.append(f"{label} is required")
    elif not is_valid_phone(str(member[key])):
        errors.append("Invalid phone number format (use format: +94771234567)")


def validate_member(member: Mapping[str, Any], participant_type: str) -> list[str]:
    """Return the list of problems with one roster entry (empty when valid)."""

    errors: list[str] = []
    name = member.get("name")
    if not name or len(str(name).strip()) < 2:
        errors.append("Name must be at least 2 characters")

    if participant_type == ParticipantType.KIDS:
        if not is_valid_email(member.get("parent_email")):
            errors.append("Valid parent/guardian email is required")
        _check_phone(member, "parent_phone", "Parent/guardian phone number", errors)
        if _blank(member, "parent_first_name"):
            errors.append("Parent/guardian first name is required")
        if _blank(member, "parent_last_name"):
            errors.append("Parent/guardian last name is required")
        if _blank(member, "date_of_birth"):
            errors.append("Child's date of birth is required")
        if _blank(member, "postal_address"):
            errors.append("Postal address is required for kids registrations")
    elif participant_type == ParticipantType.STUDENT:
        if not is_valid_email(member.get("student_email")):
            errors.append("Valid student email is required")
        _check_phone(member, "phone", "Phone number", errors)
        if _blank(member, "institution"):
            errors.append("Institution name is required for student registrations")
        if _blank(member, "course_of_study"):
            errors.append("Course of study is required for student registrations")
        if _blank(member, "date_of_birth"):
            errors.append("Date of birth is required for student registrations")
        if _blank(member, "id_card_url"):
            errors.append("Student ID card upload is required for student registrations")
    else:
        if not is_valid_email(member.get("email")):
            errors.append("Valid email is required")
        _check_phone(member, "phone", "Phone number", errors)

    return errors


def sanitize_member(member: Mapping[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in member.items():
        if value is None:
            continue
        cleaned[key] = sanitize_input(value) if isinstance(value, str) else value
    return cleaned


def cart_expiry(settings: Settings, now: Optional[datetime] = None) -> datetime:
    now = as_utc(now or datetime.now(timezone.utc))
    if settings.cart_expiry_disabled:
        return now + DISABLED_EXPIRY
    return now + timedelta(minutes=settings.cart_expiry_minutes)


def _active_carts(session: Session, user_id: int) -> list[RegistrationCart]:
    return list(
        session.scalars(
            select(RegistrationCart)
            .where(
                RegistrationCart.user_id == user_id,
                RegistrationCart.status == CartStatus.ACTIVE,
            )
            .order_by(RegistrationCart.created_at.desc(), RegistrationCart.id.desc())
        )
    )


def get_current_cart(
    session: Session, user_id: int, now: Optional[datetime] = None
) -> Optional[RegistrationCart]:
    """Return the user's live ACTIVE cart, or ``None``.

    Expired carts are moved to EXPIRED on the way. If legacy data holds more
    than one live ACTIVE cart, the newest wins and the rest are ABANDONED.
    """

    now = now or datetime.now(timezone.utc)
    live: list[RegistrationCart] = []
    changed = False
    for cart in _active_carts(session, user_id):
        if cart.expire(now):
            logger.info(f"Cart {cart.id} of user {user_id} expired")
            changed = True
        else:
            live.append(cart)

    for stale in live[1:]:
        stale.status = CartStatus.ABANDONED
        changed = True
        logger.warning(
            f"User {user_id} had duplicate ACTIVE cart {stale.id}; "
            f"kept cart {live[0].id}"
        )

    if changed:
        session.flush()
    return live[0] if live else None


def _create_cart(
    session: Session, user_id: int, settings: Settings, now: datetime
) -> RegistrationCart:
    cart = RegistrationCart(
        user_id=user_id,
        status=CartStatus.ACTIVE,
        expires_at=cart_expiry(settings, now),
    )
    try:
        with session.begin_nested():
            session.add(cart)
    except IntegrityError:
        # Another request created the user's ACTIVE cart first
        logger.info(f"Concurrent cart creation for user {user_id}; using the existing cart")
        existing = get_current_cart(session, user_id, now)
        if existing is None:
            raise ConsistencyError(
                f"User {user_id} has an ACTIVE cart that could not be read back"
            )
        return existing
    logger.info(f"Created cart {cart.id} for user {user_id}")
    return cart


def get_or_create_cart(
    session: Session,
    user_id: int,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> RegistrationCart:
    settings = settings or Settings()
    now = now or datetime.now(timezone.utc)
    cart = get_current_cart(session, user_id, now)
    if cart is None:
        cart = _create_cart(session, user_id, settings, now)
    return cart


def pending_checkout(session: Session, cart: RegistrationCart) -> Optional[Payment]:
    """Return the newest unresolved payment whose snapshot covers ``cart``."""

    open_payments = session.scalars(
        select(Payment)
        .where(
            Payment.user_id == cart.user_id,
            Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)),
        )
        .order_by(Payment.id.desc())
    )
    for payment in open_payments:
        if payment.snapshot_cart_id == cart.id:
            return payment
    return None


def _require_unlocked(session: Session, cart: RegistrationCart) -> None:
    # the materializer reads these exact rows once the gateway confirms
    payment = pending_checkout(session, cart)
    if payment is not None:
        logger.info(f"Cart {cart.id} is locked by checkout {payment.order_id}")
        raise ValidationError(
            f"Checkout {payment.order_id} is awaiting payment. The cart can change "
            "again once that payment is cancelled or the cart expires.",
            code=ErrorCode.CART_LOCKED,
            details={"order_id": payment.order_id},
        )


def _validate_selection(
    session: Session, selection: CartSelection, now: datetime
) -> tuple[Competition, RegistrationType, str]:
    competition = session.get(Competition, selection.competition_id)
    if competition is None:
        raise NotFoundError("Competition not found")
    if competition.registration_closed(now):
        raise ValidationError("Registration deadline has passed")

    reg_type = session.get(RegistrationType, selection.registration_type_id)
    if (
        reg_type is None
        or reg_type.competition_id != competition.id
        or not reg_type.is_active
    ):
        raise NotFoundError("Registration type not available")

    participant_type = selection.participant_type or reg_type.type
    if participant_type not in ParticipantType.ALL:
        raise ValidationError(f"Unknown participant type: {participant_type}")

    if not selection.country or not selection.country.strip():
        raise ValidationError("Country is required")
    if not selection.members:
        raise ValidationError("At least one member is required")
    if len(selection.members) > reg_type.max_members:
        raise ValidationError(
            f"Maximum {reg_type.max_members} member(s) allowed for this registration type"
        )
    for index, member in enumerate(selection.members, start=1):
        errors = validate_member(member, participant_type)
        if errors:
            raise ValidationError(
                f"Member {index}: {', '.join(errors)}",
                details={"member": index, "errors": errors},
            )
    if not selection.all_agreements_accepted:
        raise ValidationError("You must agree to all terms and conditions")

    return competition, reg_type, participant_type


def add_item(
    session: Session,
    user_id: int,
    selection: CartSelection,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> RegistrationCartItem:
    """Validate ``selection`` and append it to the user's ACTIVE cart.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session; the caller commits.
    user_id : int
        Owner of the cart.
    selection : CartSelection
        The registration to add.
    settings : Settings, optional
        Source of the cart expiry window.
    now : datetime, optional
        Clock override for tests.

    Returns
    -------
    RegistrationCartItem
        The flushed cart item.

    Raises
    ------
    ValidationError
        If the selection is incomplete, the deadline has passed, or the cart
        has an open checkout (code ``CART_LOCKED``).
    NotFoundError
        If the competition or registration type is unknown or inactive.
    """

    settings = settings or Settings()
    now = now or datetime.now(timezone.utc)
    _, reg_type, participant_type = _validate_selection(session, selection, now)

    cart = get_or_create_cart(session, user_id, settings, now)
    _require_unlocked(session, cart)
    unit_price = float(reg_type.fee)
    item = RegistrationCartItem(
        competition_id=selection.competition_id,
        registration_type_id=reg_type.id,
        participant_type=participant_type,
        country=sanitize_input(selection.country),
        referral_source=(
            sanitize_input(selection.referral_source) if selection.referral_source else None
        ),
        team_name=sanitize_input(selection.team_name) if selection.team_name else None,
        company_name=(
            sanitize_input(selection.company_name) if selection.company_name else None
        ),
        members=[sanitize_member(m) for m in selection.members],
        unit_price=unit_price,
        quantity=1,
        subtotal=unit_price * 1,
        agreed_to_terms=selection.agreed_to_terms,
        agreed_to_website_terms=selection.agreed_to_website_terms,
        agreed_to_privacy_policy=selection.agreed_to_privacy_policy,
        agreed_to_refund_policy=selection.agreed_to_refund_policy,
    )
    cart.items.append(item)
    cart.expires_at = cart_expiry(settings, now)
    session.flush()
    logger.info(
        f"Added item {item.id} (competition {item.competition_id}, "
        f"type {reg_type.type}) to cart {cart.id}"
    )
    return item


def remove_item(
    session: Session, user_id: int, item_id: int, now: Optional[datetime] = None
) -> None:
    """Delete ``item_id`` from the user's current cart, unless a checkout holds it."""

    cart = get_current_cart(session, user_id, now)
    item = session.get(RegistrationCartItem, item_id)
    if cart is None or item is None or item.cart_id != cart.id:
        raise NotFoundError("Cart item not found")
    _require_unlocked(session, cart)
    cart.items.remove(item)
    session.flush()
    logger.info(f"Removed item {item_id} from cart {cart.id}")


def summarize_cart(cart: Optional[RegistrationCart]) -> CartSummary:
    """Return item count, per-item lines and total for ``cart``."""

    if cart is None:
        return CartSummary(cart_id=None, status=None, expires_at=None, item_count=0, total=0.0)

    lines = []
    for item in cart.items:
        competition = item.competition
        reg_type = item.registration_type
        lines.append(
            {
                "item_id": item.id,
                "competition_id": item.competition_id,
                "competition_title": competition.title if competition else None,
                "registration_type": reg_type.type if reg_type else None,
                "registration_type_name": reg_type.name if reg_type else None,
                "participant_type": item.participant_type,
                "country": item.country,
                "member_count": len(item.members or []),
                "unit_price": item.unit_price,
                "subtotal": item.subtotal,
            }
        )
    return CartSummary(
        cart_id=cart.id,
        status=cart.status,
        expires_at=cart.expires_at,
        item_count=len(lines),
        total=cart.total,
        items=lines,
    )


def expire_stale_carts(session: Session, now: Optional[datetime] = None) -> int:
    """Move every ACTIVE cart past its expiry to EXPIRED. Returns the count."""

    now = now or datetime.now(timezone.utc)
    count = 0
    carts = session.scalars(
        select(RegistrationCart).where(RegistrationCart.status == CartStatus.ACTIVE)
    )
    for cart in carts:
        if cart.expire(now):
            count += 1
    if count:
        session.flush()
        logger.info(f"Expired {count} stale cart(s)")
    return count


def fix_duplicate_active_carts(session: Session) -> int:
    """Keep only the newest ACTIVE cart per user; abandon the rest.

    Only legacy data (written before the partial unique index existed) can
    trip this. Returns the number of carts abandoned.
    """

    user_ids = session.scalars(
        select(RegistrationCart.user_id)
        .where(RegistrationCart.status == CartStatus.ACTIVE)
        .group_by(RegistrationCart.user_id)
        .having(func.count(RegistrationCart.id) > 1)
    ).all()

    abandoned = 0
    for user_id in user_ids:
        carts = _active_carts(session, user_id)
        for stale in carts[1:]:
            stale.status = CartStatus.ABANDONED
            abandoned += 1
        logger.warning(
            f"User {user_id} had {len(carts)} ACTIVE carts; kept cart {carts[0].id}"
        )
    if abandoned:
        session.flush()
    return abandoned
