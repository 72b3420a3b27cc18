"""Code generators for registrations and payments."""

from __future__ import annotations

import re
import secrets

from sqlalchemy import func, select
from sqlalchemy.orm import Session

# No 0/O or 1/I/l.
REGISTRATION_NUMBER_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
REGISTRATION_NUMBER_LENGTH = 6
DISPLAY_CODE_ALPHABET = "2345679ABCDEFGHJKLMNPQRSTUVWXYZ"
DISPLAY_CODE_LENGTH = 6
DISPLAY_CODE_PREFIX = "ARC"
ORDER_ID_PREFIX = "ORDER-AC"


def generate_registration_number() -> str:
    """Return a random 6 character registration number."""

    return "".join(
        secrets.choice(REGISTRATION_NUMBER_ALPHABET)
        for _ in range(REGISTRATION_NUMBER_LENGTH)
    )


def generate_display_code(year: int) -> str:
    """Return a random public code such as ``ARC2025-7QX4KM``."""

    suffix = "".join(
        secrets.choice(DISPLAY_CODE_ALPHABET) for _ in range(DISPLAY_CODE_LENGTH)
    )
    return f"{DISPLAY_CODE_PREFIX}{year}-{suffix}"


def _registration_value_taken(session: Session, attr: str, candidate: str) -> bool:
    from .registration import Registration

    for obj in session.new:
        if isinstance(obj, Registration) and getattr(obj, attr, None) == candidate:
            return True
    column = getattr(Registration, attr)
    exists = session.scalar(select(Registration.id).where(column == candidate))
    return exists is not None


def generate_unique_registration_number(
    session: Session, max_attempts: int = 32
) -> str:
    """Return a registration number not used by any persisted or pending row.

    Raises
    ------
    RuntimeError
        If no free value was found within ``max_attempts`` tries.
    """

    for _ in range(max_attempts):
        candidate = generate_registration_number()
        if not _registration_value_taken(session, "registration_number", candidate):
            return candidate

    raise RuntimeError(
        "Unable to generate a unique registration number after multiple attempts"
    )


def generate_unique_display_code(
    session: Session, year: int, max_attempts: int = 32
) -> str:
    """Return a display code not used by any persisted or pending registration."""

    for _ in range(max_attempts):
        candidate = generate_display_code(year)
        if not _registration_value_taken(session, "display_code", candidate):
            return candidate

    raise RuntimeError(
        "Unable to generate a unique display code after multiple attempts"
    )


def generate_order_id(session: Session, year: int) -> str:
    """Return the next ``ORDER-AC{YEAR}-{SEQ:05d}`` order id candidate.

    The sequence follows the highest existing order id of the year (persisted
    or pending in ``session``). Two concurrent checkouts can draw the same
    candidate; the unique ``order_id`` constraint rejects the second insert
    and the caller draws again.
    """

    from .payment import Payment

    prefix = f"{ORDER_ID_PREFIX}{year}-"
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")

    # longest first so ORDER-AC2025-100000 sorts above ORDER-AC2025-99999
    latest = session.scalar(
        select(Payment.order_id)
        .where(Payment.order_id.like(f"{prefix}%"))
        .order_by(func.length(Payment.order_id).desc(), Payment.order_id.desc())
        .limit(1)
    )
    pending = [
        obj.order_id
        for obj in session.new
        if isinstance(obj, Payment) and obj.order_id is not None
    ]

    highest = 0
    for order_id in ([latest] if latest else []) + pending:
        match = pattern.match(order_id)
        if match:
            highest = max(highest, int(match.group(1)))

    return f"{prefix}{highest + 1:05d}"
