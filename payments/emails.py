import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    raw = getattr(settings, "STOREFRONT", {}).get("ADMIN_EMAILS") or getattr(settings, "ADMIN_EMAILS", None)
    if not raw:
        raw = getattr(settings, "EMAIL_HOST_USER", "") or ""
    emails = [e.strip() for e in (raw or "").split(",") if e and e.strip()]
    # Deduplicate while preserving order
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_order_confirmation(order_pk) -> None:
    """Email the customer and the shop admins about a confirmed order.

    Runs after commit for COD orders and for online orders once the payment
    webhook lands. Never raises.
    """
    from orders.models import Order

    try:
        order = Order.objects.filter(pk=order_pk).first()
        if order is None:
            logger.error("Order pk=%s not found for confirmation email", order_pk)
            return

        context = {
            "order": order,
            "items": order.items or [],
            "address": order.shipping_address or {},
            "payment_label": "Cash on Delivery" if order.is_cod else order.get_payment_method_display(),
        }
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)

        try:
            if order.customer_email:
                subject = f"Order confirmed: {order.order_id} – {order.currency} {order.total}"
                text = render_to_string("emails/order_confirmation.txt", context)
                html = render_to_string("emails/order_confirmation.html", context)
                msg = EmailMultiAlternatives(subject, text, from_email, [order.customer_email])
                msg.attach_alternative(html, "text/html")
                msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send order confirmation to %s", order.customer_email)

        try:
            admins = _admin_recipients()
            if admins:
                subject = f"New order: {order.order_id} – {order.currency} {order.total} ({order.payment_status})"
                text = render_to_string("emails/order_notification_admin.txt", context)
                EmailMultiAlternatives(subject, text, from_email, admins).send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send admin notification for %s", order.order_id)

    except Exception:
        logger.exception("send_order_confirmation crashed for order pk=%s", order_pk)
