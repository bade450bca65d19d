import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from payments import services
from payments.exceptions import CheckoutError
from payments.views import bad_request, error_response, json_body

from .services import get_order, serialize_order

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def create_order_view(request):
    body = json_body(request)
    if body is None:
        return bad_request("Invalid JSON body")

    # older checkout pages send camelCase keys
    shipping = body.get("shipping_address") or body.get("shippingAddress")
    method = body.get("payment_method") or body.get("paymentMethod")
    items = body.get("items")
    if items is not None and not isinstance(items, list):
        return bad_request("items must be a list")

    try:
        order = services.create_order(
            items=items or [],
            shipping_address=shipping,
            payment_method=method,
            customer_id=str(body.get("customer_id") or ""),
            customer_email=str(body.get("customer_email") or ""),
            coupon_code=str(body.get("coupon_code") or ""),
        )
    except CheckoutError as e:
        return error_response(e)
    except Exception:
        logger.exception("Order creation crashed")
        return JsonResponse({"success": False, "error": "server_error"}, status=500)

    return JsonResponse(
        {
            "success": True,
            "order_id": order.order_id,
            "total": str(order.total),
            "status": order.status,
            "payment_status": order.payment_status,
            "payment_method": order.payment_method,
        },
        status=201,
    )


@require_GET
def order_detail_view(request, order_id: str):
    order = get_order(order_id)
    if order is None:
        return JsonResponse({"success": False, "error": "order_not_found"}, status=404)
    return JsonResponse(serialize_order(order))
