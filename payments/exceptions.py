"""Checkout and payment errors.

Each error carries a machine-readable ``kind`` and the HTTP status the JSON
views answer with, so views translate them in one place.
"""


class CheckoutError(Exception):
    kind = "checkout_error"
    status_code = 400


class ValidationError(CheckoutError):
    kind = "validation_error"


class EmptyCartError(ValidationError):
    kind = "empty_cart"

    def __init__(self, message="Cart is empty"):
        super().__init__(message)


class OutOfStockError(CheckoutError):
    kind = "out_of_stock"
    status_code = 409

    def __init__(self, item, available=0):
        self.item = item
        self.available = available
        super().__init__(f"Insufficient stock for {item} (available: {available})")


class NotFoundError(CheckoutError):
    kind = "not_found"
    status_code = 404


class OrderNotFoundError(NotFoundError):
    kind = "order_not_found"


class PaymentNotFoundError(NotFoundError):
    kind = "payment_not_found"


class AlreadyPaidError(CheckoutError):
    kind = "already_paid"
    status_code = 409

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is already paid")


class GatewayUnavailableError(CheckoutError):
    kind = "gateway_unavailable"
    status_code = 502


class InvalidSignatureError(CheckoutError):
    kind = "invalid_signature"
    status_code = 401


class StaleWebhookError(InvalidSignatureError):
    kind = "stale_webhook"


class AmountMismatchError(CheckoutError):
    kind = "amount_mismatch"
    status_code = 422

    def __init__(self, payment_ref, expected, received):
        self.payment_ref = payment_ref
        self.expected = expected
        self.received = received
        super().__init__(f"Amount mismatch for {payment_ref}: expected {expected}, got {received}")
