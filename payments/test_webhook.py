import hashlib
import hmac
import json
import time
from decimal import Decimal

from django.conf import settings
from django.core import mail
from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, TestCase
from django.urls import reverse

from orders.models import Order, Product

from . import services
from .models import PaymentSession, WebhookLog
from .tests import ADDRESS, FakeGateway
from .utils import WebhookVerifier, parse_timestamp

SECRET = "test-webhook-secret"


class WebhookTestMixin:
    def setUp(self):
        Product.objects.create(sku="RING-01", name="Silver Ring", price=Decimal("500.00"), stock=10)
        self.order = services.create_order(
            items=[{"product_id": "RING-01", "quantity": 2}],
            shipping_address=ADDRESS,
            payment_method="gcash",
            customer_email="buyer@example.com",
        )
        self.ref = services.create_payment_session(self.order.order_id, "gcash", gateway=FakeGateway())["payment_ref"]
        self.url = reverse("payments:webhook")

    def signed(self, status="success", amount="1000.00", ref=None, timestamp=None, secret=SECRET):
        ref = ref or self.ref
        timestamp = timestamp if timestamp is not None else int(time.time())
        payload = {"ref": ref, "status": status, "timestamp": timestamp}
        if amount is not None:
            payload["amount"] = amount
        payload["signature"] = WebhookVerifier(secret).sign(ref, status, amount, timestamp)
        return payload

    def post(self, payload, **extra):
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json", **extra)

    def session_status(self):
        return PaymentSession.objects.get(payment_ref=self.ref).status


class PaymentWebhookTests(WebhookTestMixin, TestCase):
    def test_paid_webhook_confirms_order_and_sends_emails(self):
        with self.captureOnCommitCallbacks(execute=True):
            resp = self.post(self.signed())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "duplicate": False, "payment_ref": self.ref, "status": "paid"})
        self.assertEqual(self.session_status(), "paid")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.status, Order.STATUS_PROCESSING)
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(mail.outbox[0].to, ["buyer@example.com"])
        self.assertEqual(mail.outbox[1].to, ["ops@shop.test"])

        log = WebhookLog.objects.get(payment_ref=self.ref)
        self.assertEqual(log.event_type, "payment_paid")
        self.assertTrue(log.signature_valid)
        self.assertTrue(log.processed)
        self.assertEqual(log.raw_payload["ref"], self.ref)

    def test_failed_webhook_marks_payment_failed_only(self):
        resp = self.post(self.signed(status="failed", amount=None))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.session_status(), "failed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_FAILED)
        self.assertEqual(self.order.status, Order.STATUS_PENDING)
        # stock stays reserved for a retry
        self.assertEqual(Product.objects.get(sku="RING-01").stock, 8)

    def test_amount_mismatch_is_rejected(self):
        resp = self.post(self.signed(amount="1.00"))

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(resp.json()["error"], "amount_mismatch")
        self.assertEqual(self.session_status(), "pending")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)
        self.assertEqual(WebhookLog.objects.get(payment_ref=self.ref).event_type, "amount_mismatch")

    def test_bad_signature_is_rejected(self):
        payload = self.signed()
        payload["signature"] = "0" * 64
        resp = self.post(payload)

        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["error"], "invalid_signature")
        self.assertEqual(self.session_status(), "pending")
        log = WebhookLog.objects.get(payment_ref=self.ref)
        self.assertFalse(log.signature_valid)
        self.assertEqual(log.response_code, 401)

    def test_signature_from_other_secret_is_rejected(self):
        resp = self.post(self.signed(secret="someone-else"))
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.session_status(), "pending")

    def test_missing_signature_is_rejected(self):
        payload = self.signed()
        del payload["signature"]
        resp = self.post(payload)
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.session_status(), "pending")

    def test_tampered_status_breaks_signature(self):
        payload = self.signed(status="failed", amount=None)
        payload["status"] = "success"
        resp = self.post(payload)
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.session_status(), "pending")

    def test_redelivery_is_idempotent(self):
        payload = self.signed()
        with self.captureOnCommitCallbacks(execute=True):
            first = self.post(payload)
        with self.captureOnCommitCallbacks(execute=True):
            second = self.post(payload)

        self.assertFalse(first.json()["duplicate"])
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["success"])
        self.assertTrue(second.json()["duplicate"])
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(WebhookLog.objects.filter(payment_ref=self.ref, duplicate=True).count(), 1)

    def test_failure_after_payment_is_ignored(self):
        self.post(self.signed())
        resp = self.post(self.signed(status="failed", amount=None))

        self.assertTrue(resp.json()["duplicate"])
        self.assertEqual(resp.json()["status"], "paid")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.status, Order.STATUS_PROCESSING)

    def test_unknown_ref(self):
        resp = self.post(self.signed(ref="PAY-0-NOPE-0000"))
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(resp.json()["error"], "payment_not_found")

    def test_unknown_status(self):
        resp = self.post(self.signed(status="refunding"))
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(self.session_status(), "pending")

    def test_invalid_json(self):
        resp = self.client.post(self.url, data="not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(WebhookLog.objects.get().event_type, "invalid")

    def test_missing_ref(self):
        resp = self.post({"status": "success"})
        self.assertEqual(resp.status_code, 400)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(self.url).status_code, 405)

    def test_gateway_field_names_and_header_signature(self):
        ts = int(time.time() * 1000)
        sig = WebhookVerifier(SECRET).sign(self.ref, "COMPLETED", "1000.00", ts)
        resp = self.post(
            {
                "merchantpaymentreferences": self.ref,
                "transaction_status": "COMPLETED",
                "total_amount": "1000.00",
                "timestamp": ts,
                "reference_number": "TX1",
            },
            HTTP_X_WEBHOOK_SIGNATURE=sig,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.session_status(), "paid")
        self.assertEqual(WebhookLog.objects.get(payment_ref=self.ref).transaction_id, "TX1")

    def test_paid_orders_are_always_processing(self):
        self.post(self.signed())
        self.post(self.signed(status="failed", amount=None))
        for order in Order.objects.filter(payment_status=Order.PAYMENT_PAID):
            self.assertEqual(order.status, Order.STATUS_PROCESSING)
            self.assertIsNotNone(order.paid_at)


    def test_non_numeric_amounts_are_mismatches(self):
        for amount in ("sNaN", "NaN", "Infinity", "-Infinity", "abc"):
            with self.subTest(amount=amount):
                resp = self.post(self.signed(amount=amount))
                self.assertEqual(resp.status_code, 200)
                self.assertEqual(resp.json()["error"], "amount_mismatch")
                self.assertEqual(self.session_status(), "pending")


class PaymentCallbackTests(WebhookTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("payments:callback")

    def test_signed_callback_confirms_payment(self):
        with self.captureOnCommitCallbacks(execute=True):
            resp = self.post(self.signed())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "paid")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_PROCESSING)
        self.assertEqual(len(mail.outbox), 2)
        log = WebhookLog.objects.get(payment_ref=self.ref)
        self.assertEqual(log.source, "callback")
        self.assertEqual(log.event_type, "payment_paid")

    def test_bad_signature_is_rejected(self):
        payload = self.signed()
        payload["signature"] = "f" * 64
        resp = self.post(payload)

        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.session_status(), "pending")
        log = WebhookLog.objects.get(payment_ref=self.ref)
        self.assertEqual(log.source, "callback")
        self.assertEqual(log.response_code, 401)

    def test_pending_is_acknowledged(self):
        resp = self.post(self.signed(status="pending", amount=None))
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertEqual(self.session_status(), "pending")

    def test_callback_after_webhook_is_duplicate(self):
        payload = self.signed()
        self.client.post(reverse("payments:webhook"), data=json.dumps(payload), content_type="application/json")
        with self.captureOnCommitCallbacks(execute=True):
            resp = self.post(payload)

        self.assertTrue(resp.json()["duplicate"])
        self.assertEqual(len(mail.outbox), 0)
        self.assertEqual(
            list(WebhookLog.objects.order_by("created_at", "pk").values_list("source", "duplicate")),
            [("webhook", False), ("callback", True)],
        )

    def test_missing_fields(self):
        resp = self.post({"ref": self.ref})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(WebhookLog.objects.get().source, "callback")


class WebhookConfigurationTests(WebhookTestMixin, TestCase):
    def test_unsigned_mode_is_explicit_and_logged(self):
        conf = {**settings.PAYMENTS, "WEBHOOK_SECRET": None, "ALLOW_UNSIGNED_WEBHOOKS": True}
        with self.settings(PAYMENTS=conf):
            with self.assertLogs("payments.utils", "WARNING") as logs:
                resp = self.post({"ref": self.ref, "status": "success", "amount": "1000.00"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.session_status(), "paid")
        self.assertIn("unsigned mode", logs.output[0])

    def test_missing_secret_without_opt_in_fails_loudly(self):
        conf = {**settings.PAYMENTS, "WEBHOOK_SECRET": None, "ALLOW_UNSIGNED_WEBHOOKS": False}
        with self.settings(PAYMENTS=conf):
            with self.assertRaises(ImproperlyConfigured):
                services.get_verifier()
            resp = self.post({"ref": self.ref, "status": "success"})

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(self.session_status(), "pending")

    def test_stale_webhook_is_rejected_when_window_configured(self):
        conf = {**settings.PAYMENTS, "WEBHOOK_MAX_AGE_SECONDS": 300}
        with self.settings(PAYMENTS=conf):
            stale = self.post(self.signed(timestamp=int(time.time()) - 3600))
            self.assertEqual(stale.status_code, 401)
            self.assertEqual(stale.json()["error"], "stale_webhook")
            self.assertEqual(self.session_status(), "pending")

            fresh = self.post(self.signed())
        self.assertEqual(fresh.status_code, 200)
        self.assertEqual(self.session_status(), "paid")

    def test_old_timestamp_accepted_without_window(self):
        resp = self.post(self.signed(timestamp=1))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.session_status(), "paid")


class WebhookVerifierTests(SimpleTestCase):
    def test_message_format(self):
        self.assertEqual(
            WebhookVerifier.message("PAY-1", "success", "1000.00", 1700000000),
            b"PAY-1:success:1000.00:1700000000",
        )
        self.assertEqual(WebhookVerifier.message("PAY-1", "failed", None, None), b"PAY-1:failed::")

    def test_signature_is_hex_hmac_sha256(self):
        expected = hmac.new(b"k", b"PAY-1:success:1000.00:1", hashlib.sha256).hexdigest()
        self.assertEqual(WebhookVerifier("k").sign("PAY-1", "success", "1000.00", 1), expected)

    def test_verify_accepts_uppercase_hex(self):
        verifier = WebhookVerifier("k")
        payload = {"ref": "PAY-1", "status": "success", "amount": "5", "timestamp": "1"}
        sig = verifier.sign("PAY-1", "success", "5", "1").upper()
        self.assertTrue(verifier.verify(payload, sig))
        self.assertFalse(verifier.verify(payload, ""))

    def test_requires_secret_or_opt_in(self):
        with self.assertRaises(ImproperlyConfigured):
            WebhookVerifier(None)
        with self.assertRaises(ImproperlyConfigured):
            WebhookVerifier("")
        self.assertTrue(WebhookVerifier(None, allow_unsigned=True).unsigned)

    def test_freshness_window(self):
        verifier = WebhookVerifier("k", max_age=300, clock=lambda: 1_700_000_000)
        self.assertTrue(verifier.is_fresh(1_700_000_000 - 299))
        self.assertTrue(verifier.is_fresh(1_700_000_000 * 1000))
        self.assertTrue(verifier.is_fresh("2023-11-14T22:13:20Z"))
        self.assertFalse(verifier.is_fresh(1_700_000_000 - 301))
        self.assertFalse(verifier.is_fresh(None))
        self.assertFalse(verifier.is_fresh("yesterday"))

    def test_window_disabled_by_default(self):
        self.assertTrue(WebhookVerifier("k").is_fresh(None))

    def test_parse_timestamp(self):
        self.assertEqual(parse_timestamp("1700000000"), 1700000000.0)
        self.assertEqual(parse_timestamp(1700000000123), 1700000000.123)
        self.assertIsNone(parse_timestamp(""))
