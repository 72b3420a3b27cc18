"""Scheduled clean-up: stuck payments, stale carts and duplicate carts.

Every pass is idempotent; running it twice in a row changes nothing the
second time.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .cart import expire_stale_carts, fix_duplicate_active_carts
from .config import Settings
from .db.utils import as_utc
from .errors import ConsistencyError, GatewayError, ValidationError
from .materializer import RegistrationMaterializer
from .models import AuditLog, Payment, PaymentMethod, PaymentStatus, RegistrationStatus
from .notifications import Notifier, notify_safely
from .payhere import GatewayPayment, PayHereClient, format_amount

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    examined: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    refunded: int = 0
    expired: int = 0
    unresolved: int = 0
    skipped: int = 0
    rematerialized: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _record(session: Session, payment: Payment, action: str, now: datetime, **details) -> None:
    AuditLog.record(
        session,
        action=action,
        subject_table=Payment.__tablename__,
        subject_id=payment.id,
        actor_type="system",
        details={"order_id": payment.order_id, **details},
        occurred_at=now,
    )


def _apply_gateway_result(
    session: Session,
    payment: Payment,
    gateway: GatewayPayment,
    materializer: RegistrationMaterializer,
    notifier: Notifier,
    report: ReconciliationReport,
    now: datetime,
) -> bool:
    """Apply a resolved gateway status. Returns ``False`` if still unresolved."""

    if gateway.outcome == "success":
        if gateway.amount is not None and format_amount(gateway.amount) != format_amount(
            payment.amount
        ):
            payment.status = PaymentStatus.FAILED
            payment.error_message = "Amount mismatch reported by gateway"
            report.failed += 1
            logger.error(
                f"Gateway amount {gateway.amount} differs from {payment.amount} "
                f"for {payment.order_id}"
            )
            _record(session, payment, "payment.reconcile.failed", now, reason="amount mismatch")
            return True
        result = materializer.materialize(
            payment,
            confirm=True,
            payment_updates={
                "gateway_payment_id": gateway.payment_id,
                "payment_method": gateway.method,
                "status_code": "2",
                "response_data": {"reconciled": gateway.raw},
            },
            now=now,
        )
        report.completed += 1
        _record(session, payment, "payment.reconcile.completed", now)
        if result.created:
            notify_safely(notifier.registration_confirmed, payment, result.registrations)
        return True

    if gateway.outcome == "refunded":
        payment.status = PaymentStatus.REFUNDED
        payment.refunded_at = now
        for registration in payment.registrations:
            registration.status = RegistrationStatus.REFUNDED
        report.refunded += 1
    elif gateway.outcome == "cancelled":
        payment.status = PaymentStatus.CANCELLED
        payment.cancelled_at = now
        report.cancelled += 1
    elif gateway.outcome == "failed":
        payment.status = PaymentStatus.FAILED
        payment.error_message = f"Gateway reported {gateway.status}"
        report.failed += 1
    else:
        return False

    payment.response_data = {"reconciled": gateway.raw}
    _record(session, payment, f"payment.reconcile.{gateway.outcome}", now)
    return True


def reconcile_pending_payments(
    session: Session,
    *,
    client: Optional[PayHereClient] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> ReconciliationReport:
    """Resolve gateway payments left PENDING and COMPLETED payments never materialized.

    A PENDING PayHere payment older than the minimum age is looked up at the
    gateway through ``client``; it is only completed when the gateway reports
    it received. Without a client, or when the gateway has no answer, the
    payment waits until it is older than ``payment_expire_after_days`` and is
    then EXPIRED. Bank transfers, payments an admin reverted and payments
    flagged ``refund_required`` are left to the admins.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session; the caller commits.
    client : PayHereClient, optional
        Merchant API client. Omit to only expire and re-materialize.
    settings : Settings, optional
        Age thresholds and materialization timeout.
    notifier : Notifier, optional
        Receives confirmations for payments completed here.

    Returns
    -------
    ReconciliationReport
        Counters per outcome.
    """

    settings = settings or Settings()
    notifier = notifier or Notifier()
    now = now or datetime.now(timezone.utc)
    report = ReconciliationReport()
    materializer = RegistrationMaterializer(
        session, timeout_seconds=settings.materialization_timeout_seconds
    )
    min_age_cutoff = now - timedelta(minutes=settings.reconcile_min_age_minutes)
    expire_cutoff = now - timedelta(days=settings.payment_expire_after_days)

    # Completed at the gateway but never turned into registrations
    completed = session.scalars(
        select(Payment)
        .where(Payment.status == PaymentStatus.COMPLETED)
        .order_by(Payment.id)
    ).all()
    for payment in completed:
        if materializer.is_materialized(payment):
            continue
        report.examined += 1
        try:
            result = materializer.materialize(payment, confirm=True, now=now)
        except (ConsistencyError, ValidationError) as e:
            report.errors += 1
            logger.error(f"Could not re-materialize {payment.order_id}: {e}")
            continue
        report.rematerialized += 1
        _record(session, payment, "payment.reconcile.rematerialized", now)
        notify_safely(notifier.registration_confirmed, payment, result.registrations)

    pending = session.scalars(
        select(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING,
            Payment.method == PaymentMethod.PAYHERE,
        )
        .order_by(Payment.id)
    ).all()
    for payment in pending:
        initiated = as_utc(payment.initiated_at)
        metadata = payment.payment_metadata or {}
        if initiated > min_age_cutoff or "reverted_by" in metadata:
            report.skipped += 1
            continue
        if metadata.get("refund_required"):
            logger.warning(f"Payment {payment.order_id} awaits an admin refund; skipping")
            report.skipped += 1
            continue
        report.examined += 1

        resolved = False
        if client is not None:
            try:
                gateway = client.retrieve_payment(payment.order_id)
                if gateway is not None:
                    resolved = _apply_gateway_result(
                        session, payment, gateway, materializer, notifier, report, now
                    )
            except (GatewayError, ConsistencyError, ValidationError) as e:
                report.errors += 1
                logger.error(f"Reconciliation of {payment.order_id} failed: {e}")
                continue

        if resolved:
            continue
        if initiated <= expire_cutoff:
            payment.status = PaymentStatus.EXPIRED
            payment.error_message = "Payment expired without confirmation"
            report.expired += 1
            _record(session, payment, "payment.reconcile.expired", now)
        else:
            report.unresolved += 1

    session.flush()
    logger.info(f"Payment reconciliation finished: {report.as_dict()}")
    return report


def run_reconciliation(
    session: Session,
    *,
    client: Optional[PayHereClient] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> dict[str, object]:
    """Run every corrective pass and return a summary."""

    now = now or datetime.now(timezone.utc)
    duplicates = fix_duplicate_active_carts(session)
    expired_carts = expire_stale_carts(session, now)
    report = reconcile_pending_payments(
        session, client=client, settings=settings, notifier=notifier, now=now
    )
    return {
        "duplicate_carts_abandoned": duplicates,
        "carts_expired": expired_carts,
        "payments": report.as_dict(),
    }
