"""Turn a paid cart snapshot into registrations, exactly once per payment."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConsistencyError, MaterializationTimeout, ValidationError
from .models import (
    CartStatus,
    Payment,
    PaymentMaterialization,
    PaymentStatus,
    Registration,
    RegistrationCart,
    RegistrationCartItem,
    RegistrationStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class MaterializationResult:
    """Outcome of :meth:`RegistrationMaterializer.materialize`.

    Attributes
    ----------
    payment : Payment
        The payment that was materialized.
    registrations : list[Registration]
        Registrations belonging to the payment.
    created : bool
        ``False`` when the payment had already been materialized and nothing
        was written.
    """

    payment: Payment
    registrations: list[Registration]
    created: bool


class RegistrationMaterializer:
    """Creates the registrations of a payment from its cart snapshot.

    The snapshot (``cart_id`` and ``item_ids`` in the payment metadata) is the
    only input; the cart's current contents are never consulted. The items it
    names cannot change while the payment is open, because the cart store
    refuses edits to a cart with an unresolved checkout. All writes
    happen inside one savepoint: the idempotency marker first, then one
    registration per item, the cart status and the payment's terminal fields.
    Any failure rolls the savepoint back and leaves the payment PENDING.
    """

    def __init__(
        self,
        session: Session,
        *,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._timeout = timeout_seconds
        self._clock = clock

    def existing_registrations(self, payment: Payment) -> list[Registration]:
        return list(
            self._session.scalars(
                select(Registration)
                .where(Registration.payment_id == payment.id)
                .order_by(Registration.id)
            )
        )

    def is_materialized(self, payment: Payment) -> bool:
        marker = self._session.scalar(
            select(PaymentMaterialization.id).where(
                PaymentMaterialization.payment_id == payment.id
            )
        )
        return marker is not None or bool(self.existing_registrations(payment))

    def conflicting_payment_ids(self, payment: Payment) -> list[int]:
        """Other payments that already registered items of this snapshot."""

        item_ids = payment.snapshot_item_ids
        if not item_ids:
            return []
        return list(
            self._session.scalars(
                select(Registration.payment_id)
                .where(
                    Registration.source_item_id.in_(item_ids),
                    Registration.payment_id != payment.id,
                )
                .distinct()
                .order_by(Registration.payment_id)
            )
        )

    def _flag_for_refund(self, payment: Payment, conflicts: list[int]) -> ConsistencyError:
        payment.update_metadata(refund_required=True, conflicting_payment_ids=conflicts)
        self._session.flush()
        logger.error(
            f"Payment {payment.order_id} covers cart items already registered by "
            f"payment(s) {conflicts}; flagged for refund"
        )
        return ConsistencyError(
            f"Cart items of {payment.order_id} are already registered under another "
            "payment; the payment needs a refund",
            details={"refund_required": True, "conflicting_payment_ids": conflicts},
        )

    def _snapshot_items(self, payment: Payment) -> list[RegistrationCartItem]:
        item_ids = payment.snapshot_item_ids
        if not item_ids:
            raise ConsistencyError(
                f"Payment {payment.order_id} has no cart snapshot to materialize"
            )
        items = list(
            self._session.scalars(
                select(RegistrationCartItem)
                .where(RegistrationCartItem.id.in_(item_ids))
                .order_by(RegistrationCartItem.id)
            )
        )
        found = {item.id for item in items}
        missing = [i for i in item_ids if i not in found]
        if missing:
            raise ConsistencyError(
                f"Payment {payment.order_id} references missing cart items {missing}",
                details={"missing_item_ids": missing},
            )
        cart_id = payment.snapshot_cart_id
        if cart_id is not None and any(item.cart_id != cart_id for item in items):
            raise ConsistencyError(
                f"Payment {payment.order_id} snapshot items do not belong to cart {cart_id}"
            )
        return items

    def materialize(
        self,
        payment: Payment,
        *,
        confirm: bool = True,
        payment_updates: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> MaterializationResult:
        """Create the payment's registrations unless they already exist.

        Parameters
        ----------
        payment : Payment
            A persisted payment carrying a cart snapshot.
        confirm : bool, default: True
            ``True`` for a confirmed payment: registrations are CONFIRMED with
            a display code and the payment becomes COMPLETED. ``False`` (bank
            transfer) creates PENDING registrations and leaves the payment
            PENDING.
        payment_updates : Mapping[str, Any], optional
            Extra payment attributes (gateway id, card details, ...) applied
            in the same savepoint.
        now : datetime, optional
            Timestamp for ``confirmed_at``/``completed_at``.

        Returns
        -------
        MaterializationResult
            The registrations and whether this call created them.

        Raises
        ------
        ConsistencyError
            If snapshot items are missing, or already registered under another
            payment (the payment is then flagged ``refund_required``).
        ValidationError
            If an item's roster violates its registration type bounds.
        MaterializationTimeout
            If the deadline passed before all rows were written.
        """

        if payment.id is None:
            raise ValueError("Payment must be persisted before materialization")

        if self.is_materialized(payment):
            logger.info(f"Payment {payment.order_id} already materialized; skipping")
            return MaterializationResult(
                payment=payment,
                registrations=self.existing_registrations(payment),
                created=False,
            )

        conflicts = self.conflicting_payment_ids(payment)
        if conflicts:
            raise self._flag_for_refund(payment, conflicts)

        now = now or datetime.now(timezone.utc)
        deadline = self._clock() + self._timeout
        registrations: list[Registration] = []

        try:
            with self._session.begin_nested():
                self._session.add(PaymentMaterialization(payment_id=payment.id))
                self._session.flush()

                for item in self._snapshot_items(payment):
                    self._check_deadline(payment, deadline)
                    registrations.append(self._build_registration(payment, item, confirm, now))

                self._check_deadline(payment, deadline)
                cart_id = payment.snapshot_cart_id
                if cart_id is not None:
                    cart = self._session.get(RegistrationCart, cart_id)
                    if cart is not None:
                        cart.status = CartStatus.COMPLETED

                for key, value in (payment_updates or {}).items():
                    setattr(payment, key, value)
                if confirm:
                    payment.status = PaymentStatus.COMPLETED
                    payment.completed_at = payment.completed_at or now
                    payment.error_message = None
                self._session.flush()
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same payment
            winners = self.existing_registrations(payment)
            if not winners:
                conflicts = self.conflicting_payment_ids(payment)
                if conflicts:
                    raise self._flag_for_refund(payment, conflicts)
                raise
            logger.info(
                f"Payment {payment.order_id} materialized concurrently; "
                f"returning {len(winners)} existing registration(s)"
            )
            return MaterializationResult(payment=payment, registrations=winners, created=False)

        logger.info(
            f"Materialized payment {payment.order_id} into {len(registrations)} "
            f"registration(s) ({'confirmed' if confirm else 'pending'})"
        )
        return MaterializationResult(payment=payment, registrations=registrations, created=True)

    def _check_deadline(self, payment: Payment, deadline: float) -> None:
        if self._clock() > deadline:
            logger.error(
                f"Materialization of payment {payment.order_id} exceeded "
                f"{self._timeout}s; leaving it PENDING"
            )
            raise MaterializationTimeout(
                f"Materialization of {payment.order_id} timed out"
            )

    def _build_registration(
        self,
        payment: Payment,
        item: RegistrationCartItem,
        confirm: bool,
        now: datetime,
    ) -> Registration:
        members = list(item.members or [])
        max_members = item.registration_type.max_members
        if not members or len(members) > max_members:
            raise ValidationError(
                f"Cart item {item.id} has {len(members)} member(s); "
                f"allowed 1 to {max_members}"
            )

        # the code generators query; a pending row without its number must not flush
        with self._session.no_autoflush:
            registration = Registration(
                user_id=payment.user_id,
                competition_id=item.competition_id,
                registration_type_id=item.registration_type_id,
                payment_id=payment.id,
                source_item_id=item.id,
                status=RegistrationStatus.PENDING,
                participant_type=item.participant_type,
                country=item.country,
                referral_source=item.referral_source,
                team_name=item.team_name,
                company_name=item.company_name,
                members=members,
                amount_paid=item.subtotal,
                currency=payment.currency,
                registered_at=now,
            )
            registration.competition = item.competition
            registration.payment = payment
            self._session.add(registration)
            registration.ensure_registration_number(self._session)
            if confirm:
                registration.confirm(self._session, now)
        return registration
