# payments/services.py
import logging
from collections import OrderedDict
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.urls import reverse
from django.utils import timezone

from orders.models import Order, Product
from orders.services import compute_totals, generate_order_id, to_money

from .emails import send_order_confirmation
from .exceptions import (
    AlreadyPaidError,
    AmountMismatchError,
    EmptyCartError,
    GatewayUnavailableError,
    InvalidSignatureError,
    OrderNotFoundError,
    OutOfStockError,
    PaymentNotFoundError,
    StaleWebhookError,
    ValidationError,
)
from .integrations.directpay import SUPPORTED_METHODS, DirectPayClient, validate_payment_amount
from .models import PaymentSession
from .utils import WebhookVerifier

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"success", "successful", "completed", "paid", "charged"}
FAILED_STATUSES = {"failed", "cancelled", "canceled", "expired"}
PENDING_STATUSES = {"pending", "processing"}

_gateway = None


def get_gateway() -> DirectPayClient:
    # one client per process so the login token is reused
    global _gateway
    if _gateway is None:
        _gateway = DirectPayClient.from_settings()
    return _gateway


def get_verifier() -> WebhookVerifier:
    return WebhookVerifier.from_settings()


def normalize_status(raw) -> str:
    status = str(raw or "").strip().lower()
    if status in SUCCESS_STATUSES:
        return PaymentSession.PAID
    if status in FAILED_STATUSES:
        return PaymentSession.FAILED
    if status in PENDING_STATUSES:
        return PaymentSession.PENDING
    raise ValidationError(f"Unknown payment status: {raw!r}")


def _has_address(address) -> bool:
    if isinstance(address, dict):
        return any(str(v).strip() for v in address.values() if v is not None)
    return bool(str(address or "").strip())


def _parse_quantity(raw) -> Optional[int]:
    """Exact integer quantity, or None; 2.7 and True are not quantities."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


def _collect_quantities(items) -> "OrderedDict[str, int]":
    quantities = OrderedDict()
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each item must be an object")
        sku = str(item.get("product_id") or item.get("sku") or "").strip()
        if not sku:
            raise ValidationError("Each item needs a product_id")
        qty = _parse_quantity(item.get("quantity", 1))
        if qty is None:
            raise ValidationError(f"Invalid quantity for {sku}")
        if qty <= 0:
            raise ValidationError(f"Quantity for {sku} must be > 0")
        quantities[sku] = quantities.get(sku, 0) + qty
    return quantities


def create_order(*, items, shipping_address, payment_method, customer_id="", customer_email="", coupon_code="") -> Order:
    """Turn a cart snapshot into an order.

    Stock is re-checked under row locks and decremented in the same
    transaction; unit prices are taken from the catalogue at this moment.
    COD orders go straight to ``processing`` and never get a payment session.
    """
    if not items:
        raise EmptyCartError()
    if not _has_address(shipping_address):
        raise ValidationError("Shipping address required")
    method = str(payment_method or "").strip().lower()
    if method not in dict(Order.PAYMENT_METHOD_CHOICES):
        raise ValidationError(f"Unsupported payment method: {payment_method!r}")

    quantities = _collect_quantities(items)
    is_cod = method == Order.COD

    with transaction.atomic():
        products = {p.sku: p for p in Product.objects.select_for_update().filter(sku__in=list(quantities))}
        lines = []
        for sku, qty in quantities.items():
            product = products.get(sku)
            if product is None or not product.is_active:
                raise OutOfStockError(sku, 0)
            if product.stock < qty:
                raise OutOfStockError(sku, product.stock)
            unit_price = to_money(product.effective_price)
            lines.append({
                "product_id": sku,
                "name": product.name,
                "quantity": qty,
                "unit_price": str(unit_price),
                "line_total": str(unit_price * qty),
            })

        totals = compute_totals(lines, coupon_code)
        order = Order.objects.create(
            order_id=generate_order_id(),
            customer_id=customer_id or "",
            customer_email=customer_email or "",
            items=lines,
            shipping_address=shipping_address,
            payment_method=method,
            status=Order.STATUS_PROCESSING if is_cod else Order.STATUS_PENDING,
            payment_status=Order.PAYMENT_PENDING,
            coupon_code=coupon_code or "",
            currency=getattr(settings, "STOREFRONT", {}).get("CURRENCY", "PHP"),
            **totals,
        )
        for sku, qty in quantities.items():
            Product.objects.filter(pk=products[sku].pk).update(stock=F("stock") - qty)

        if is_cod:
            transaction.on_commit(lambda: send_order_confirmation(order.pk))

    logger.info(
        "Order %s created: method=%s items=%d total=%s", order.order_id, method, len(lines), order.total
    )
    return order


def create_payment_session(order_id, payment_method, payment_type="", *, gateway=None) -> dict:
    """Open a gateway checkout for an unpaid online order.

    Gateway failures raise ``GatewayUnavailableError`` and leave the order
    placed and unpaid so the customer can pay later from the orders page.
    """
    method = str(payment_method or "").strip().lower()
    if method == Order.COD:
        raise ValidationError("Cash on delivery orders are paid on delivery")
    if method not in SUPPORTED_METHODS:
        raise ValidationError(f"Unsupported payment method: {payment_method!r}")

    order = Order.objects.filter(order_id=order_id).first()
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    if order.is_paid:
        raise AlreadyPaidError(order.order_id)
    if order.is_cod:
        raise ValidationError("Cash on delivery orders are paid on delivery")
    if order.status == Order.STATUS_CANCELLED:
        raise ValidationError(f"Order {order.order_id} is cancelled")
    validate_payment_amount(order.total, method)

    conf = settings.PAYMENTS
    base = conf["APP_BASE_URL"].rstrip("/")
    gateway = gateway or get_gateway()
    try:
        result = gateway.create_session(
            order_id=order.order_id,
            amount=order.total,
            method=method,
            return_url=f"{base}{conf.get('RETURN_PATH', '/payment-status')}",
            webhook_url=f"{base}{reverse('payments:webhook')}",
        )
    except GatewayUnavailableError:
        logger.warning("Payment session unavailable for order %s; order left unpaid", order.order_id)
        raise

    with transaction.atomic():
        session = PaymentSession.objects.create(
            payment_ref=result["ref"],
            order=order,
            payment_method=method,
            payment_type=payment_type or SUPPORTED_METHODS[method]["type"],
            amount=order.total,
            checkout_url=result["checkout_url"],
            transaction_id=result.get("transaction_id", ""),
            expires_at=result.get("expires_at"),
            gateway_meta=result.get("raw") or {},
        )
        # the order follows its newest session
        Order.objects.filter(pk=order.pk, payment_status=Order.PAYMENT_FAILED).update(
            payment_status=Order.PAYMENT_PENDING, updated_at=timezone.now()
        )
        if order.payment_method != method:
            Order.objects.filter(pk=order.pk).update(payment_method=method, updated_at=timezone.now())

    logger.info("Payment session %s created for order %s (%s)", session.payment_ref, order.order_id, method)
    return {
        "success": True,
        "payment_ref": session.payment_ref,
        "checkout_url": session.checkout_url,
        "amount": str(session.amount),
        "order_id": order.order_id,
        "payment_method": method,
        "payment_type": session.payment_type,
        "status": session.status,
        "status_url": reverse("payments:status", kwargs={"payment_ref": session.payment_ref}),
        "expires_at": session.expires_at.isoformat() if session.expires_at else None,
    }


def _result(session, *, accepted=True, duplicate=False, status=None) -> dict:
    return {
        "accepted": accepted,
        "duplicate": duplicate,
        "payment_ref": session.payment_ref,
        "order_id": session.order.order_id,
        "status": status or session.status,
    }


def _check_amount(session, amount) -> None:
    if amount is None or amount == "":
        return
    try:
        received = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise AmountMismatchError(session.payment_ref, session.amount, amount)
    # NaN/sNaN/Infinity never match and sNaN raises on comparison
    if not received.is_finite() or received != session.amount:
        raise AmountMismatchError(session.payment_ref, session.amount, amount)


def _apply_status(payment_ref, new_status, amount=None, meta=None) -> dict:
    session = PaymentSession.objects.select_related("order").filter(payment_ref=payment_ref).first()
    if session is None:
        raise PaymentNotFoundError(f"Unknown payment reference {payment_ref}")

    if session.is_terminal:
        logger.info("Payment %s already %s; ignoring redelivery", payment_ref, session.status)
        return _result(session, duplicate=True)
    if new_status == PaymentSession.PENDING:
        return _result(session)

    _check_amount(session, amount)

    now = timezone.now()
    order = session.order
    with transaction.atomic():
        won = PaymentSession.objects.compare_and_set(
            payment_ref, PaymentSession.PENDING, new_status, completed_at=now, gateway_meta=meta or {}
        )
        if not won:
            session.refresh_from_db(fields=["status"])
            logger.info("Payment %s was applied concurrently; treating as duplicate", payment_ref)
            return _result(session, duplicate=True)

        if new_status == PaymentSession.PAID:
            Order.objects.filter(
                pk=order.pk, payment_status__in=[Order.PAYMENT_PENDING, Order.PAYMENT_FAILED]
            ).update(
                payment_status=Order.PAYMENT_PAID,
                status=Order.STATUS_PROCESSING,
                paid_at=now,
                updated_at=now,
            )
            transaction.on_commit(lambda: send_order_confirmation(order.pk))
        else:
            latest_pk = (
                PaymentSession.objects.filter(order_id=order.pk)
                .order_by("-created_at", "-pk")
                .values_list("pk", flat=True)
                .first()
            )
            if latest_pk == session.pk:
                Order.objects.filter(pk=order.pk, payment_status=Order.PAYMENT_PENDING).update(
                    payment_status=Order.PAYMENT_FAILED, updated_at=now
                )

    logger.info("Payment %s -> %s (order %s)", payment_ref, new_status, order.order_id)
    return _result(session, status=new_status)


def apply_webhook(payload: dict, signature=None, *, verifier=None) -> dict:
    """Apply a gateway callback ``{ref, status, amount?, timestamp, signature?}``.

    Signature first, then idempotency, then the amount cross-check; the
    status write itself is a conditional update so concurrent redeliveries
    apply at most once.
    """
    verifier = verifier or get_verifier()
    ref = str(payload.get("ref") or "").strip()
    if not ref:
        raise ValidationError("Missing payment reference")
    if signature is None:
        signature = payload.get("signature")
    if not verifier.verify(payload, signature):
        raise InvalidSignatureError(f"Invalid webhook signature for {ref}")
    if not verifier.is_fresh(payload.get("timestamp")):
        logger.error("Stale webhook for ref=%s (timestamp=%s)", ref, payload.get("timestamp"))
        raise StaleWebhookError(f"Webhook timestamp outside the accepted window for {ref}")

    new_status = normalize_status(payload.get("status"))
    meta = {k: v for k, v in payload.items() if k != "signature"}
    return _apply_status(ref, new_status, payload.get("amount"), meta=meta)


def apply_gateway_status(payment_ref, status, amount=None, meta=None) -> dict:
    """Apply a status fetched from the gateway API (reconciliation path)."""
    return _apply_status(payment_ref, normalize_status(status), amount, meta=meta)


def latest_session(order_id):
    return (
        PaymentSession.objects.filter(order__order_id=order_id)
        .order_by("-created_at", "-pk")
        .first()
    )


def get_status(payment_ref) -> dict:
    session = PaymentSession.objects.select_related("order").filter(payment_ref=payment_ref).first()
    if session is None:
        raise PaymentNotFoundError(f"Unknown payment reference {payment_ref}")
    return {
        "payment_ref": session.payment_ref,
        "status": session.status,
        "order_id": session.order.order_id,
        "amount": str(session.amount),
    }
