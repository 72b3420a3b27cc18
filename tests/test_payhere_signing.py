import hashlib
import unittest

from arcomp.config import PayHereConfig
from arcomp.models import PaymentStatus
from arcomp.payhere import (
    PayHereNotification,
    build_checkout_payload,
    checkout_hash,
    format_amount,
    hash_secret,
    map_status_code,
    verify_notification,
)

from tests.factories import MERCHANT_ID, MERCHANT_SECRET, signed_form


def _md5(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest().upper()


class TestFormatAmount(unittest.TestCase):
    def test_two_decimals_without_separators(self):
        self.assertEqual(format_amount(4000), "4000.00")
        self.assertEqual(format_amount(1234567.5), "1234567.50")
        self.assertEqual(format_amount("10.005"), "10.01")


class TestCheckoutHash(unittest.TestCase):
    def test_matches_gateway_formula(self):
        expected = _md5(f"{MERCHANT_ID}ORDER-AC2025-000014000.00LKR{_md5(MERCHANT_SECRET)}")
        self.assertEqual(
            checkout_hash(MERCHANT_ID, "ORDER-AC2025-00001", 4000, "LKR", MERCHANT_SECRET),
            expected,
        )
        self.assertEqual(hash_secret(MERCHANT_SECRET), _md5(MERCHANT_SECRET))

    def test_payload_is_signed_and_never_leaks_the_secret(self):
        config = PayHereConfig(
            merchant_id=MERCHANT_ID,
            merchant_secret=MERCHANT_SECRET,
            notify_url="https://arc.example.lk/notify",
        )
        payload = build_checkout_payload(
            config,
            "ORDER-AC2025-00001",
            4000,
            ["Innovative Design Challenge - Individual"],
            {"first_name": "Nimal", "last_name": "Perera", "email": "n@example.com"},
        )
        self.assertEqual(payload["amount"], "4000.00")
        self.assertEqual(payload["currency"], "LKR")
        self.assertEqual(payload["phone"], "")
        self.assertEqual(
            payload["hash"],
            checkout_hash(MERCHANT_ID, "ORDER-AC2025-00001", "4000.00", "LKR", MERCHANT_SECRET),
        )
        for value in payload.values():
            self.assertNotIn(MERCHANT_SECRET, value)
            self.assertNotIn(hash_secret(MERCHANT_SECRET), value)


class TestVerifyNotification(unittest.TestCase):
    def test_valid_signature(self):
        form = signed_form("ORDER-2025-00030", "4000.00", "2")
        notification = PayHereNotification.from_form(form)
        self.assertTrue(verify_notification(notification, MERCHANT_SECRET))
        self.assertNotIn("md5sig", notification.raw)

    def test_lowercase_signature_accepted(self):
        form = signed_form("ORDER-2025-00030", "4000.00", "2")
        form["md5sig"] = form["md5sig"].lower()
        self.assertTrue(
            verify_notification(PayHereNotification.from_form(form), MERCHANT_SECRET)
        )

    def test_single_character_change_rejected(self):
        form = signed_form("ORDER-2025-00030", "4000.00", "2")
        sig = form["md5sig"]
        form["md5sig"] = sig[:-1] + ("0" if sig[-1] != "0" else "1")
        self.assertFalse(
            verify_notification(PayHereNotification.from_form(form), MERCHANT_SECRET)
        )

    def test_tampered_amount_rejected(self):
        form = signed_form("ORDER-2025-00030", "4000.00", "2")
        form["payhere_amount"] = "40.00"
        self.assertFalse(
            verify_notification(PayHereNotification.from_form(form), MERCHANT_SECRET)
        )

    def test_missing_signature_or_secret_rejected(self):
        form = signed_form("ORDER-2025-00030", "4000.00", "2")
        del form["md5sig"]
        notification = PayHereNotification.from_form(form)
        self.assertEqual(notification.md5sig, "")
        self.assertFalse(verify_notification(notification, MERCHANT_SECRET))
        signed = PayHereNotification.from_form(signed_form("ORDER-1", "1.00", "2"))
        self.assertFalse(verify_notification(signed, ""))


class TestMapStatusCode(unittest.TestCase):
    def test_mapping(self):
        self.assertEqual(map_status_code("2"), PaymentStatus.COMPLETED)
        self.assertEqual(map_status_code("0"), PaymentStatus.PENDING)
        self.assertEqual(map_status_code(None), PaymentStatus.PENDING)
        self.assertEqual(map_status_code(""), PaymentStatus.PENDING)
        self.assertEqual(map_status_code("-1"), PaymentStatus.CANCELLED)
        self.assertEqual(map_status_code("-2"), PaymentStatus.FAILED)
        self.assertEqual(map_status_code("-3"), PaymentStatus.REFUNDED)
        self.assertEqual(map_status_code("7"), PaymentStatus.FAILED)


if __name__ == "__main__":
    unittest.main()
