import unittest
from datetime import timedelta

from sqlalchemy import select

from arcomp.errors import GatewayError
from arcomp.models import (
    AuditLog,
    CartStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Registration,
    RegistrationCart,
    RegistrationStatus,
)
from arcomp.reconcile import reconcile_pending_payments, run_reconciliation
from arcomp.workflows import checkout

from tests.factories import (
    CUSTOMER,
    NOW,
    CheckoutTestCase,
    FakeGateway,
    RecordingNotifier,
    minutes,
)


class ReconcileTestCase(CheckoutTestCase):
    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            self.fill_cart(session)
            result = checkout(session, self.user_id, CUSTOMER, settings=self.settings, now=NOW)
            self.payment_id = result.payment.id
            self.order_id = result.order_id

    def reconcile(self, session, client=None, after=minutes(20), notifier=None):
        return reconcile_pending_payments(
            session,
            client=client,
            settings=self.settings,
            notifier=notifier or RecordingNotifier(),
            now=NOW + after,
        )

    def registrations(self, session):
        return session.scalars(
            select(Registration).where(Registration.payment_id == self.payment_id)
        ).all()


class TestGatewayLookup(ReconcileTestCase):
    def test_young_payments_are_left_alone(self):
        gateway = FakeGateway("RECEIVED")
        with self.Session.begin() as session:
            report = self.reconcile(session, gateway, after=minutes(5))
            self.assertEqual(report.skipped, 1)
            self.assertEqual(gateway.calls, [])
            self.assertEqual(session.get(Payment, self.payment_id).status, PaymentStatus.PENDING)

    def test_received_payment_is_materialized_once(self):
        notifier = RecordingNotifier()
        gateway = FakeGateway("RECEIVED")
        with self.Session.begin() as session:
            report = self.reconcile(session, gateway, notifier=notifier)
            self.assertEqual(report.completed, 1)
            payment = session.get(Payment, self.payment_id)
            self.assertEqual(payment.status, PaymentStatus.COMPLETED)
            self.assertEqual(payment.gateway_payment_id, "320025071278")
            self.assertEqual(payment.payment_method, "VISA")
            registrations = self.registrations(session)
            self.assertEqual(len(registrations), 2)
            self.assertTrue(all(r.status == RegistrationStatus.CONFIRMED for r in registrations))
            cart = session.get(RegistrationCart, payment.snapshot_cart_id)
            self.assertEqual(cart.status, CartStatus.COMPLETED)
        self.assertEqual(len(notifier.confirmed), 1)

        with self.Session.begin() as session:
            again = self.reconcile(session, gateway, after=minutes(40), notifier=notifier)
            self.assertEqual(again.examined, 0)
            self.assertEqual(len(self.registrations(session)), 2)
        self.assertEqual(len(notifier.confirmed), 1)
        self.assertEqual(gateway.calls, [self.order_id])

    def test_gateway_amount_mismatch_fails_payment(self):
        with self.Session.begin() as session:
            report = self.reconcile(session, FakeGateway("RECEIVED", amount="50.00"))
            self.assertEqual(report.failed, 1)
            payment = session.get(Payment, self.payment_id)
            self.assertEqual(payment.status, PaymentStatus.FAILED)
            self.assertEqual(self.registrations(session), [])

    def test_terminal_gateway_outcomes(self):
        expected = {
            "CANCELED": PaymentStatus.CANCELLED,
            "FAILED": PaymentStatus.FAILED,
            "CHARGEBACK": PaymentStatus.REFUNDED,
        }
        for status, payment_status in expected.items():
            with self.subTest(status=status):
                with self.Session() as session:
                    self.reconcile(session, FakeGateway(status))
                    payment = session.get(Payment, self.payment_id)
                    self.assertEqual(payment.status, payment_status)
                    self.assertEqual(payment.response_data["reconciled"]["status"], status)
                    self.assertEqual(self.registrations(session), [])
                    session.rollback()

    def test_unanswered_lookup_waits_then_expires(self):
        gateway = FakeGateway(None)
        with self.Session.begin() as session:
            report = self.reconcile(session, gateway)
            self.assertEqual(report.unresolved, 1)
            self.assertEqual(session.get(Payment, self.payment_id).status, PaymentStatus.PENDING)

        with self.Session.begin() as session:
            report = self.reconcile(session, FakeGateway("PENDING"), after=timedelta(days=31))
            self.assertEqual(report.expired, 1)
            payment = session.get(Payment, self.payment_id)
            self.assertEqual(payment.status, PaymentStatus.EXPIRED)
            actions = session.scalars(select(AuditLog.action)).all()
            self.assertIn("payment.reconcile.expired", actions)

    def test_gateway_error_keeps_payment_pending(self):
        gateway = FakeGateway(error=GatewayError("PayHere request failed"))
        with self.Session.begin() as session:
            report = self.reconcile(session, gateway, after=timedelta(days=31))
            self.assertEqual(report.errors, 1)
            self.assertEqual(report.expired, 0)
            self.assertEqual(session.get(Payment, self.payment_id).status, PaymentStatus.PENDING)

    def test_without_client_only_expiry_applies(self):
        with self.Session.begin() as session:
            self.assertEqual(self.reconcile(session).unresolved, 1)
            self.assertEqual(self.reconcile(session, after=timedelta(days=31)).expired, 1)

    def test_reverted_payments_are_skipped(self):
        gateway = FakeGateway("RECEIVED")
        with self.Session.begin() as session:
            payment = session.get(Payment, self.payment_id)
            payment.update_metadata(reverted_by=1, previous_status=PaymentStatus.COMPLETED)
            report = self.reconcile(session, gateway, after=timedelta(days=31))
            self.assertEqual(report.skipped, 1)
            self.assertEqual(gateway.calls, [])
            self.assertEqual(payment.status, PaymentStatus.PENDING)


class TestRematerialize(ReconcileTestCase):
    def test_completed_payment_without_registrations(self):
        notifier = RecordingNotifier()
        with self.Session.begin() as session:
            payment = session.get(Payment, self.payment_id)
            payment.status = PaymentStatus.COMPLETED
            payment.completed_at = NOW
            report = self.reconcile(session, notifier=notifier)
            self.assertEqual(report.rematerialized, 1)
            self.assertEqual(len(self.registrations(session)), 2)
        self.assertEqual(len(notifier.confirmed), 1)

        with self.Session.begin() as session:
            self.assertEqual(self.reconcile(session).rematerialized, 0)

    def test_bank_transfers_wait_for_admins(self):
        with self.Session.begin() as session:
            session.get(Payment, self.payment_id).status = PaymentStatus.CANCELLED
            result = checkout(
                session,
                self.user_id,
                CUSTOMER,
                method=PaymentMethod.BANK_TRANSFER,
                settings=self.settings,
                now=NOW,
            )
            report = self.reconcile(session, FakeGateway("RECEIVED"), after=timedelta(days=40))
            self.assertEqual(report.examined, 0)
            self.assertEqual(result.payment.status, PaymentStatus.PENDING)


class TestRunReconciliation(ReconcileTestCase):
    def test_summary(self):
        with self.Session.begin() as session:
            summary = run_reconciliation(
                session,
                client=FakeGateway("RECEIVED"),
                settings=self.settings,
                notifier=RecordingNotifier(),
                now=NOW + minutes(20),
            )
        self.assertEqual(summary["duplicate_carts_abandoned"], 0)
        self.assertEqual(summary["carts_expired"], 0)
        self.assertEqual(summary["payments"]["completed"], 1)

    def test_stale_cart_is_expired(self):
        with self.Session.begin() as session:
            summary = run_reconciliation(
                session, settings=self.settings, now=NOW + timedelta(days=2)
            )
            self.assertEqual(summary["carts_expired"], 1)
            self.assertEqual(summary["payments"]["unresolved"], 1)
            carts = session.scalars(select(RegistrationCart)).all()
            self.assertEqual([c.status for c in carts], [CartStatus.EXPIRED])


if __name__ == "__main__":
    unittest.main()
