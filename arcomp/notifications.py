"""Outbound notifications to registrants.

Delivery (email templates, SMTP) is owned by another service; workflows only
talk to a :class:`Notifier`. Notifications are best effort: a failing
notifier is logged and never undoes the change that triggered it.
"""

import logging
from typing import Any, Callable, Sequence

from .models import Payment, Registration, Submission

logger = logging.getLogger(__name__)


class Notifier:
    """Interface for registrant notifications. The default does nothing."""

    def registration_confirmed(
        self, payment: Payment, registrations: Sequence[Registration]
    ) -> None:
        pass

    def payment_failed(self, payment: Payment, reason: str) -> None:
        pass

    def submission_published(self, submission: Submission) -> None:
        pass


class LoggingNotifier(Notifier):
    """Notifier that only writes log lines; used when no mail service is wired."""

    def registration_confirmed(self, payment, registrations):
        numbers = ", ".join(r.registration_number or "?" for r in registrations)
        logger.info(
            f"Notify user {payment.user_id}: order {payment.order_id} confirmed "
            f"(registrations {numbers})"
        )

    def payment_failed(self, payment, reason):
        logger.info(
            f"Notify user {payment.user_id}: order {payment.order_id} failed ({reason})"
        )

    def submission_published(self, submission):
        logger.info(
            f"Notify user {submission.user_id}: submission "
            f"{submission.registration_number} published"
        )


def notify_safely(callback: Callable[..., Any], *args: Any) -> bool:
    """Invoke a notifier method, logging instead of raising on failure.

    Returns ``True`` when the notifier completed.
    """

    try:
        callback(*args)
    except Exception as e:
        logger.error(f"Notification {getattr(callback, '__name__', callback)} failed: {e}")
        return False
    return True


class NotificationOutbox(Notifier):
    """Queues notifier calls until the surrounding transaction has committed.

    Workflows receive the outbox in place of the real notifier. The caller
    sends the queue once the unit of work has committed; if the transaction
    rolls back the queue is simply dropped.
    """

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._queue: list[tuple[str, tuple[Any, ...]]] = []

    def __len__(self) -> int:
        return len(self._queue)

    def registration_confirmed(self, payment, registrations):
        self._queue.append(("registration_confirmed", (payment, list(registrations))))

    def payment_failed(self, payment, reason):
        self._queue.append(("payment_failed", (payment, reason)))

    def submission_published(self, submission):
        self._queue.append(("submission_published", (submission,)))

    def send(self) -> int:
        """Deliver every queued notification; returns how many succeeded."""

        queued, self._queue = self._queue, []
        delivered = 0
        for name, args in queued:
            if notify_safely(getattr(self._notifier, name), *args):
                delivered += 1
        if queued:
            logger.debug(f"Sent {delivered}/{len(queued)} queued notification(s)")
        return delivered

    def discard(self) -> None:
        if self._queue:
            logger.info(f"Dropped {len(self._queue)} notification(s) of a rolled back transaction")
        self._queue = []
