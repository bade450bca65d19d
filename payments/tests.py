import time
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

import jwt
import requests
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase

from orders.models import Order, Product

from . import services
from .exceptions import (
    AlreadyPaidError,
    GatewayUnavailableError,
    OrderNotFoundError,
    PaymentNotFoundError,
    ValidationError,
)
from .integrations.directpay import DirectPayClient, validate_payment_amount
from .models import PaymentSession
from .poller import PaymentStatusPoller

ADDRESS = {"name": "Maria Santos", "line1": "45 Mabini St", "city": "Quezon City"}


class FakeGateway:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def create_session(self, *, order_id, amount, method, return_url, webhook_url=None):
        self.calls.append({"order_id": order_id, "amount": amount, "method": method, "webhook_url": webhook_url})
        if self.fail:
            raise GatewayUnavailableError("Gateway error 503")
        n = len(self.calls)
        return {
            "ref": f"PAY-TEST-{order_id}-{n}",
            "checkout_url": f"https://gateway.test/checkout/{n}",
            "amount": Decimal(str(amount)),
            "transaction_id": f"TX{n}",
            "expires_at": None,
            "raw": {"status": "success"},
        }


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def make_order(method="gcash", qty=2, price="500.00", sku="RING-01"):
    Product.objects.get_or_create(sku=sku, defaults={"name": "Silver Ring", "price": Decimal(price), "stock": 50})
    return services.create_order(
        items=[{"product_id": sku, "quantity": qty}],
        shipping_address=ADDRESS,
        payment_method=method,
        customer_email="buyer@example.com",
    )


class CreatePaymentSessionTests(TestCase):
    def setUp(self):
        self.order = make_order()
        self.gateway = FakeGateway()

    def test_session_is_pending_until_webhook(self):
        result = services.create_payment_session(self.order.order_id, "gcash", "qrph", gateway=self.gateway)

        self.assertTrue(result["success"])
        self.assertEqual(result["amount"], "1000.00")
        self.assertEqual(result["checkout_url"], "https://gateway.test/checkout/1")
        status = services.get_status(result["payment_ref"])
        self.assertEqual(status["status"], "pending")
        self.assertEqual(status["order_id"], self.order.order_id)
        self.assertEqual(self.gateway.calls[0]["amount"], Decimal("1000.00"))
        self.assertTrue(self.gateway.calls[0]["webhook_url"].endswith("/api/payments/webhook"))

    def test_gateway_down_leaves_order_placed(self):
        with self.assertRaises(GatewayUnavailableError):
            services.create_payment_session(self.order.order_id, "gcash", gateway=FakeGateway(fail=True))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_PENDING)
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)
        self.assertFalse(PaymentSession.objects.exists())

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFoundError):
            services.create_payment_session("MISSING", "gcash", gateway=self.gateway)

    def test_already_paid(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=Order.PAYMENT_PAID)
        with self.assertRaises(AlreadyPaidError):
            services.create_payment_session(self.order.order_id, "gcash", gateway=self.gateway)
        self.assertEqual(self.gateway.calls, [])

    def test_cod_never_gets_a_session(self):
        cod = make_order(method="cod", qty=1)
        with self.assertRaises(ValidationError):
            services.create_payment_session(cod.order_id, "gcash", gateway=self.gateway)
        with self.assertRaises(ValidationError):
            services.create_payment_session(self.order.order_id, "cod", gateway=self.gateway)
        self.assertFalse(PaymentSession.objects.filter(order=cod).exists())

    def test_amount_above_method_limit(self):
        big = make_order(qty=1, price="60000.00", sku="CROWN-01")
        with self.assertRaises(ValidationError):
            services.create_payment_session(big.order_id, "paymaya", gateway=self.gateway)

    def test_retry_after_failure_resets_order(self):
        first = services.create_payment_session(self.order.order_id, "gcash", gateway=self.gateway)
        services.apply_gateway_status(first["payment_ref"], "failed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_FAILED)

        second = services.create_payment_session(self.order.order_id, "card", gateway=self.gateway)
        self.order.refresh_from_db()
        self.assertNotEqual(first["payment_ref"], second["payment_ref"])
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)
        self.assertEqual(self.order.payment_method, "card")

    def test_late_failure_of_superseded_session_does_not_touch_order(self):
        first = services.create_payment_session(self.order.order_id, "gcash", gateway=self.gateway)
        services.create_payment_session(self.order.order_id, "gcash", gateway=self.gateway)

        services.apply_gateway_status(first["payment_ref"], "failed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_unknown_ref_status(self):
        with self.assertRaises(PaymentNotFoundError):
            services.get_status("PAY-NOPE")


class ApplyStatusTests(TestCase):
    def setUp(self):
        self.order = make_order()
        result = services.create_payment_session(self.order.order_id, "gcash", gateway=FakeGateway())
        self.ref = result["payment_ref"]

    def test_compare_and_set_applies_once(self):
        self.assertTrue(PaymentSession.objects.compare_and_set(self.ref, "pending", "paid"))
        self.assertFalse(PaymentSession.objects.compare_and_set(self.ref, "pending", "failed"))
        self.assertEqual(PaymentSession.objects.get(payment_ref=self.ref).status, "paid")

    def test_paid_moves_order_to_processing(self):
        result = services.apply_gateway_status(self.ref, "paid", "1000.00")

        self.assertFalse(result["duplicate"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.status, Order.STATUS_PROCESSING)
        self.assertIsNotNone(self.order.paid_at)

    def test_lost_race_is_a_noop(self):
        with patch.object(PaymentSession.objects, "compare_and_set", return_value=False):
            result = services.apply_gateway_status(self.ref, "paid")

        self.assertTrue(result["accepted"])
        self.assertTrue(result["duplicate"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)
        self.assertEqual(self.order.status, Order.STATUS_PENDING)

    def test_pending_status_is_acknowledged_without_change(self):
        result = services.apply_gateway_status(self.ref, "pending")
        self.assertFalse(result["duplicate"])
        self.assertEqual(services.get_status(self.ref)["status"], "pending")

    def test_poller_expires_while_server_stays_pending(self):
        now = [0.0]

        def wait(delay):
            now[0] += delay
            return False

        poller = PaymentStatusPoller(self.ref, services.get_status, clock=lambda: now[0], wait=wait)
        self.assertEqual(poller.run(), PaymentStatusPoller.EXPIRED)
        self.assertEqual(now[0], 30 * 60)
        self.assertEqual(services.get_status(self.ref)["status"], "pending")

        # the server still honours a late confirmation
        services.apply_gateway_status(self.ref, "paid")
        self.assertEqual(services.get_status(self.ref)["status"], "paid")


class PaymentApiTests(TestCase):
    def setUp(self):
        self.order = make_order()

    def _post(self, payload):
        return self.client.post("/api/payments/session", data=payload, content_type="application/json")

    def test_create_session_and_poll_status(self):
        with patch("payments.services.get_gateway", return_value=FakeGateway()):
            resp = self._post({"order_id": self.order.order_id, "payment_method": "gcash", "payment_type": "qrph"})

        self.assertEqual(resp.status_code, 200)
        ref = resp.json()["payment_ref"]
        status = self.client.get(resp.json()["status_url"])
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json(), {
            "payment_ref": ref, "status": "pending", "order_id": self.order.order_id, "amount": "1000.00",
        })

    def test_gateway_unavailable_response(self):
        with patch("payments.services.get_gateway", return_value=FakeGateway(fail=True)):
            resp = self._post({"order_id": self.order.order_id, "payment_method": "gcash"})

        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["error"], "gateway_unavailable")
        self.assertEqual(resp.json()["order_id"], self.order.order_id)
        self.assertIn("orders page", resp.json()["message"])

    def test_already_paid_response(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=Order.PAYMENT_PAID)
        resp = self._post({"order_id": self.order.order_id, "payment_method": "gcash"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "already_paid")

    def test_missing_fields(self):
        resp = self._post({"payment_method": "gcash"})
        self.assertEqual(resp.status_code, 400)

    def test_unknown_ref_status(self):
        resp = self.client.get("/api/payments/PAY-NOPE/status")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "payment_not_found")

    def test_methods_and_validation(self):
        methods = self.client.get("/api/payments/methods").json()["methods"]
        self.assertIn("gcash", [m["id"] for m in methods])

        ok = self.client.post(
            "/api/payments/validate", data={"amount": "150", "payment_method": "gcash"},
            content_type="application/json",
        )
        self.assertEqual(ok.json(), {"valid": True, "amount": "150.00", "payment_method": "gcash"})
        low = self.client.post(
            "/api/payments/validate", data={"amount": "50", "payment_method": "gcash"},
            content_type="application/json",
        )
        self.assertEqual(low.status_code, 400)


class DirectPayClientTests(SimpleTestCase):
    def setUp(self):
        self.token = jwt.encode({"exp": int(time.time()) + 3600}, "k" * 32, algorithm="HS256")
        self.http = Mock()
        self.http.get.return_value = FakeResponse(data={"csrf_token": "csrf"})
        self.client_ = DirectPayClient("https://gateway.test/api/", "user", "pass", timeout=5, http=self.http)

    def _login_ok(self):
        return FakeResponse(data={"status": "success", "data": {"token": self.token}})

    def test_create_session(self):
        self.http.post.side_effect = [
            self._login_ok(),
            FakeResponse(data={"status": "success", "transactionId": "T-9", "link": "https://pay.test/x"}),
        ]
        result = self.client_.create_session(
            order_id="ORD1", amount=Decimal("1000"), method="gcash", return_url="https://shop.test/payment-status"
        )

        self.assertTrue(result["ref"].startswith("PAY-"))
        self.assertIn("ORD1", result["ref"])
        self.assertEqual(result["checkout_url"], "https://pay.test/x")
        self.assertEqual(result["amount"], Decimal("1000.00"))
        self.assertEqual(result["transaction_id"], "T-9")

        pay_call = self.http.post.call_args_list[1]
        self.assertEqual(pay_call.args[0], "https://gateway.test/api/pay_cashin")
        self.assertEqual(pay_call.kwargs["json"]["amount"], 1000.0)
        self.assertEqual(pay_call.kwargs["json"]["merchantpaymentreferences"], result["ref"])
        self.assertEqual(pay_call.kwargs["headers"]["Authorization"], f"Bearer {self.token}")
        self.assertEqual(pay_call.kwargs["timeout"], 5)

    def test_login_token_is_reused(self):
        ok = FakeResponse(data={"status": "success", "transactionId": "T", "link": "https://pay.test/x"})
        self.http.post.side_effect = [self._login_ok(), ok, ok]
        for _ in range(2):
            self.client_.create_session(order_id="ORD1", amount="500", method="gcash", return_url="https://s/r")
        self.assertEqual(self.http.get.call_count, 1)
        self.assertEqual(self.http.post.call_count, 3)

    def test_transport_error_is_gateway_unavailable(self):
        self.http.post.side_effect = [self._login_ok(), requests.ConnectionError("down")]
        with self.assertRaises(GatewayUnavailableError):
            self.client_.create_session(order_id="ORD1", amount="500", method="gcash", return_url="https://s/r")

    def test_rejected_login_is_gateway_unavailable(self):
        self.http.post.return_value = FakeResponse(data={"status": "error", "message": "bad creds"})
        with self.assertRaises(GatewayUnavailableError):
            self.client_.login()

    def test_error_status_is_gateway_unavailable(self):
        self.http.post.side_effect = [self._login_ok(), FakeResponse(500, text="boom")]
        with self.assertRaises(GatewayUnavailableError):
            self.client_.create_session(order_id="ORD1", amount="500", method="gcash", return_url="https://s/r")

    def test_echoed_amount_must_match(self):
        self.http.post.side_effect = [
            self._login_ok(),
            FakeResponse(data={"status": "success", "link": "https://pay.test/x", "amount": "499.00"}),
        ]
        with self.assertRaises(GatewayUnavailableError):
            self.client_.create_session(order_id="ORD1", amount="500", method="gcash", return_url="https://s/r")

    def test_missing_credentials(self):
        client = DirectPayClient("https://gateway.test/api", "", "", http=self.http)
        with self.assertRaises(GatewayUnavailableError):
            client.login()
        self.http.get.assert_not_called()

    def test_check_status_maps_gateway_statuses(self):
        self.http.post.return_value = self._login_ok()
        self.http.get.side_effect = [
            FakeResponse(data={"csrf_token": "csrf"}),
            FakeResponse(data={"success": True, "reference_number": "T-9",
                               "transaction_status": "COMPLETED", "total_amount": "1000.00"}),
        ]
        result = self.client_.check_status("T-9")
        self.assertEqual(result["status"], "paid")
        self.assertEqual(result["amount"], "1000.00")

    def test_non_jwt_token_falls_back_to_fixed_ttl(self):
        expiry = DirectPayClient._token_expiry_of("opaque-token")
        self.assertGreater(expiry, time.time() + 22 * 3600)

    def test_method_limits(self):
        validate_payment_amount("100", "gcash")
        with self.assertRaises(ValidationError):
            validate_payment_amount("99.99", "gcash")
        with self.assertRaises(ValidationError):
            validate_payment_amount("50001", "grabpay")
        with self.assertRaises(ValidationError):
            validate_payment_amount("500", "cod")


class ReconcilePaymentsCommandTests(TestCase):
    def test_applies_gateway_result(self):
        order = make_order()
        ref = services.create_payment_session(order.order_id, "gcash", gateway=FakeGateway())["payment_ref"]
        gateway = Mock()
        gateway.check_status.return_value = {"status": "paid", "amount": "1000.00", "raw": {"success": True}}

        out = StringIO()
        with patch("payments.management.commands.reconcile_payments.get_gateway", return_value=gateway):
            call_command("reconcile_payments", "--older-than-minutes", "0", "--sleep", "0", stdout=out)

        gateway.check_status.assert_called_once_with("TX1")
        self.assertIn(f"{ref} -> paid", out.getvalue())
        order.refresh_from_db()
        self.assertEqual(order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(order.status, Order.STATUS_PROCESSING)

    def test_nothing_to_do(self):
        out = StringIO()
        call_command("reconcile_payments", stdout=out)
        self.assertIn("No pending payments", out.getvalue())
