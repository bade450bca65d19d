import json
from decimal import Decimal

from django.conf import settings
from django.core import mail
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from payments import services
from payments.exceptions import EmptyCartError, OutOfStockError, ValidationError
from payments.models import PaymentSession

from .models import Order, Product
from .services import generate_order_id, shipping_fee_for

ADDRESS = {"name": "Juan Dela Cruz", "line1": "123 Rizal St", "city": "Makati", "postal_code": "1200"}


def fifty_off(code, subtotal):
    return Decimal("50") if code == "SAVE50" else Decimal("0")


class ShippingFeeTests(SimpleTestCase):
    def test_flat_fee_below_threshold(self):
        self.assertEqual(shipping_fee_for(Decimal("999.99")), Decimal("99.00"))

    def test_free_at_threshold(self):
        self.assertEqual(shipping_fee_for(Decimal("1000.00")), Decimal("0.00"))

    def test_order_id_is_short_alnum(self):
        oid = generate_order_id()
        self.assertLessEqual(len(oid), 20)
        self.assertTrue(oid.isalnum())


class CreateOrderTests(TestCase):
    def setUp(self):
        self.ring = Product.objects.create(sku="RING-01", name="Silver Ring", price=Decimal("500.00"), stock=5)

    def _create(self, method="gcash", qty=2, **kwargs):
        return services.create_order(
            items=[{"product_id": "RING-01", "quantity": qty}],
            shipping_address=ADDRESS,
            payment_method=method,
            customer_email="buyer@example.com",
            **kwargs,
        )

    def test_total_includes_free_shipping_at_threshold(self):
        order = self._create(qty=2)

        self.assertEqual(order.subtotal, Decimal("1000.00"))
        self.assertEqual(order.shipping_fee, Decimal("0.00"))
        self.assertEqual(order.total, Decimal("1000.00"))
        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertEqual(order.payment_status, Order.PAYMENT_PENDING)
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.stock, 3)

    def test_flat_shipping_below_threshold(self):
        order = self._create(qty=1)
        self.assertEqual(order.total, Decimal("599.00"))

    def test_empty_cart_rejected(self):
        with self.assertRaises(EmptyCartError):
            services.create_order(items=[], shipping_address=ADDRESS, payment_method="gcash")

    def test_missing_address_rejected(self):
        with self.assertRaises(ValidationError):
            services.create_order(
                items=[{"product_id": "RING-01", "quantity": 1}], shipping_address={}, payment_method="gcash"
            )

    def test_fractional_quantity_rejected(self):
        with self.assertRaises(ValidationError):
            self._create(qty=2.7)
        self.assertFalse(Order.objects.exists())
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.stock, 5)

    def test_non_integer_quantities_rejected(self):
        for qty in (True, "2.5", "two", None, [2]):
            with self.subTest(qty=qty), self.assertRaises(ValidationError):
                self._create(qty=qty)

    def test_whole_number_quantity_forms_accepted(self):
        order = self._create(qty=2.0)
        self.assertEqual(order.items[0]["quantity"], 2)
        order = self._create(qty="1")
        self.assertEqual(order.items[0]["quantity"], 1)

    def test_unknown_payment_method_rejected(self):
        with self.assertRaises(ValidationError):
            self._create(method="bitcoin")

    def test_out_of_stock_names_item_and_keeps_stock(self):
        with self.assertRaises(OutOfStockError) as cm:
            self._create(qty=6)

        self.assertEqual(cm.exception.item, "RING-01")
        self.assertEqual(cm.exception.available, 5)
        self.assertFalse(Order.objects.exists())
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.stock, 5)

    def test_inactive_product_is_out_of_stock(self):
        self.ring.is_active = False
        self.ring.save()
        with self.assertRaises(OutOfStockError):
            self._create(qty=1)

    def test_items_are_price_snapshots(self):
        order = self._create(qty=1)
        self.ring.price = Decimal("900.00")
        self.ring.save()

        order.refresh_from_db()
        self.assertEqual(order.items[0]["unit_price"], "500.00")
        self.assertEqual(order.total, Decimal("599.00"))

    def test_sale_price_is_used(self):
        self.ring.sale_price = Decimal("450.00")
        self.ring.save()
        order = self._create(qty=1)
        self.assertEqual(order.subtotal, Decimal("450.00"))

    def test_cod_order_is_processing_without_payment_session(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self._create(method="cod", qty=1)

        self.assertEqual(order.status, Order.STATUS_PROCESSING)
        self.assertEqual(order.payment_status, Order.PAYMENT_PENDING)
        self.assertFalse(PaymentSession.objects.filter(order=order).exists())
        self.assertEqual(len(mail.outbox), 2)
        self.assertIn(order.order_id, mail.outbox[0].subject)

    def test_coupon_discount_from_validator(self):
        store = {**settings.STOREFRONT, "COUPON_VALIDATOR": "orders.tests.fifty_off"}
        with self.settings(STOREFRONT=store):
            order = self._create(qty=1, coupon_code="SAVE50")

        self.assertEqual(order.discount, Decimal("50.00"))
        self.assertEqual(order.total, Decimal("549.00"))

    def test_coupon_ignored_without_validator(self):
        order = self._create(qty=1, coupon_code="SAVE50")
        self.assertEqual(order.discount, Decimal("0.00"))


@override_settings(EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend')
class OrderApiTests(TestCase):
    def setUp(self):
        Product.objects.create(sku="NECK-01", name="Pearl Necklace", price=Decimal("1200.00"), stock=1)

    def _post(self, payload):
        return self.client.post(reverse("orders:create"), data=json.dumps(payload), content_type="application/json")

    def test_create_and_read_order(self):
        resp = self._post({
            "items": [{"product_id": "NECK-01", "quantity": 1}],
            "shipping_address": ADDRESS,
            "payment_method": "gcash",
        })
        self.assertEqual(resp.status_code, 201)
        order_id = resp.json()["order_id"]
        self.assertEqual(resp.json()["total"], "1200.00")

        detail = self.client.get(reverse("orders:detail", kwargs={"order_id": order_id}))
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["status"], "pending")
        self.assertEqual(detail.json()["payment_status"], "pending")
        self.assertIsNone(detail.json()["payment_ref"])

    def test_out_of_stock_response(self):
        resp = self._post({
            "items": [{"product_id": "NECK-01", "quantity": 2}],
            "shipping_address": ADDRESS,
            "payment_method": "cod",
        })
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "out_of_stock")
        self.assertEqual(resp.json()["item"], "NECK-01")

    def test_empty_cart_response(self):
        resp = self._post({"items": [], "shipping_address": ADDRESS, "payment_method": "cod"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "empty_cart")

    def test_invalid_json(self):
        resp = self.client.post(reverse("orders:create"), data="{nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_unknown_order(self):
        resp = self.client.get(reverse("orders:detail", kwargs={"order_id": "NOPE"}))
        self.assertEqual(resp.status_code, 404)
