import logging
import random
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.utils.module_loading import import_string

from .models import Order

logger = logging.getLogger(__name__)

ALNUM = string.ascii_uppercase + string.digits
CENTS = Decimal("0.01")


def generate_order_id(prefix="ORD"):
    ts = datetime.now(timezone.utc).strftime("%m%d%H%M%S")  # 10 chars
    rand = "".join(random.choices(ALNUM, k=6))
    base = f"{prefix}{ts}{rand}"
    # gateway references embed the order id, keep it <=20 alnum
    return base[-20:]


def _store_setting(key, default=None):
    return getattr(settings, "STOREFRONT", {}).get(key, default)


def to_money(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")


def shipping_fee_for(subtotal: Decimal) -> Decimal:
    """Flat fee below the free-shipping threshold, free at or above it."""
    threshold = to_money(_store_setting("FREE_SHIPPING_THRESHOLD", "1000"))
    fee = to_money(_store_setting("SHIPPING_FEE", "99"))
    if threshold > 0 and subtotal >= threshold:
        return Decimal("0.00")
    return fee


def resolve_coupon_discount(coupon_code: str, subtotal: Decimal) -> Decimal:
    """Ask the configured coupon validator for a discount.

    The validator is a dotted path in ``STOREFRONT["COUPON_VALIDATOR"]`` to a
    callable ``(code, subtotal) -> Decimal``. Without one, coupons are ignored.
    """
    if not coupon_code:
        return Decimal("0.00")
    path = _store_setting("COUPON_VALIDATOR")
    if not path:
        logger.info("Coupon %s ignored: no validator configured", coupon_code)
        return Decimal("0.00")
    validator = import_string(path)
    discount = to_money(validator(coupon_code, subtotal) or 0)
    return max(Decimal("0.00"), min(discount, subtotal))


def compute_totals(lines, coupon_code=""):
    subtotal = sum((to_money(line["line_total"]) for line in lines), Decimal("0.00"))
    shipping_fee = shipping_fee_for(subtotal)
    discount = resolve_coupon_discount(coupon_code, subtotal)
    total = max(Decimal("0.00"), subtotal + shipping_fee - discount)
    return {
        "subtotal": subtotal,
        "shipping_fee": shipping_fee,
        "discount": discount,
        "total": total,
    }


def get_order(order_id: str):
    return Order.objects.filter(order_id=order_id).first()


def serialize_order(order: Order) -> dict:
    latest = order.payment_sessions.order_by("-created_at", "-pk").first()
    return {
        "order_id": order.order_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "items": order.items,
        "shipping_address": order.shipping_address,
        "subtotal": str(order.subtotal),
        "shipping_fee": str(order.shipping_fee),
        "discount": str(order.discount),
        "total": str(order.total),
        "currency": order.currency,
        "payment_ref": latest.payment_ref if latest else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
    }
