import json
import logging

from django.http import JsonResponse
from django.urls import reverse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from . import services
from .exceptions import AlreadyPaidError, CheckoutError, GatewayUnavailableError, OutOfStockError
from .integrations.directpay import SUPPORTED_METHODS, amount_str, validate_payment_amount

logger = logging.getLogger(__name__)


def json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def error_response(exc: CheckoutError, **extra) -> JsonResponse:
    data = {"success": False, "error": exc.kind, "message": str(exc)}
    if isinstance(exc, OutOfStockError):
        data["item"] = exc.item
        data["available"] = exc.available
    data.update(extra)
    return JsonResponse(data, status=exc.status_code)


def bad_request(message: str) -> JsonResponse:
    return JsonResponse({"success": False, "error": "validation_error", "message": message}, status=400)


@csrf_exempt
@require_POST
def create_session_view(request):
    body = json_body(request)
    if body is None:
        return bad_request("Invalid JSON body")
    missing = [k for k in ("order_id", "payment_method") if not body.get(k)]
    if missing:
        return bad_request(f"Missing fields: {', '.join(missing)}")

    order_id = str(body["order_id"])
    try:
        result = services.create_payment_session(
            order_id, body["payment_method"], body.get("payment_type", "")
        )
    except AlreadyPaidError as e:
        # nothing to pay; the client goes straight to the order page
        latest = services.latest_session(order_id)
        status_url = reverse("payments:status", kwargs={"payment_ref": latest.payment_ref}) if latest else None
        return error_response(e, order_id=order_id, status_url=status_url)
    except GatewayUnavailableError as e:
        return error_response(
            e,
            order_id=order_id,
            message="Your order has been placed. Payment is temporarily unavailable; "
                    "you can complete it later from your orders page.",
        )
    except CheckoutError as e:
        return error_response(e)
    except Exception:
        logger.exception("Payment session creation crashed for order %s", order_id)
        return JsonResponse({"success": False, "error": "server_error"}, status=500)
    return JsonResponse(result, status=200)


@require_GET
def payment_status_view(request, payment_ref: str):
    try:
        return JsonResponse(services.get_status(payment_ref))
    except CheckoutError as e:
        return error_response(e)


@require_GET
def payment_methods_view(request):
    methods = [
        {"id": key, "name": m["name"], "type": m["type"], "min": str(m["min"]), "max": str(m["max"])}
        for key, m in SUPPORTED_METHODS.items()
    ]
    methods.append({"id": "cod", "name": "Cash on Delivery", "type": "cod", "min": None, "max": None})
    return JsonResponse({"methods": methods})


@csrf_exempt
@require_POST
def validate_payment_view(request):
    body = json_body(request)
    if body is None:
        return bad_request("Invalid JSON body")
    amount, method = body.get("amount"), body.get("payment_method")
    if amount in (None, "") or not method:
        return bad_request("Amount and payment method required")
    try:
        validate_payment_amount(amount, method)
    except CheckoutError as e:
        return JsonResponse({"valid": False, "error": str(e)}, status=400)
    return JsonResponse({"valid": True, "amount": amount_str(amount), "payment_method": method})
