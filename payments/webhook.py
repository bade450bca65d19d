import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from . import services
from .exceptions import (
    AmountMismatchError,
    InvalidSignatureError,
    PaymentNotFoundError,
    ValidationError,
)
from .models import WebhookLog

logger = logging.getLogger(__name__)


def _truncate(raw) -> dict:
    text = json.dumps(raw or {}, default=str)
    if len(text) <= 4000:
        return json.loads(text)
    return {"truncated": text[:4000]}


def _log(**fields):
    raw = fields.pop("raw_payload", None)
    try:
        WebhookLog.objects.create(raw_payload=_truncate(raw), **fields)
    except Exception:
        logger.exception("Webhook log insert failed")


def _text(value, limit=64) -> str:
    return "" if value is None else str(value)[:limit]


def normalize_payload(body: dict, request) -> dict:
    """Map the gateway's field names onto ``{ref, status, amount, timestamp, signature}``."""
    ref = body.get("ref") or body.get("payment_ref") or body.get("merchantpaymentreferences")
    status = body.get("status") or body.get("transaction_status")
    amount = body["amount"] if "amount" in body else body.get("total_amount")
    return {
        "ref": ref,
        "status": status,
        "amount": amount,
        "timestamp": body.get("timestamp"),
        "signature": body.get("signature") or request.headers.get("X-Webhook-Signature"),
        "transaction_id": body.get("reference_number") or body.get("transaction_id"),
    }


def _handle(request, source):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        body = None
    if not isinstance(body, dict):
        _log(source=source, event_type="invalid", response_code=400, error_message="Invalid JSON")
        return JsonResponse({"success": False, "error": "invalid_json"}, status=400)

    payload = normalize_payload(body, request)
    entry = {
        "source": source,
        "payment_ref": _text(payload["ref"]),
        "transaction_id": _text(payload["transaction_id"], 128),
        "status": _text(payload["status"], 32),
        "amount": _text(payload["amount"], 32),
        "raw_payload": body,
    }
    if not payload["ref"] or not payload["status"]:
        _log(event_type="invalid", response_code=400, error_message="Missing ref or status", **entry)
        return JsonResponse({"success": False, "error": "invalid_payload"}, status=400)

    ref = payload["ref"]
    try:
        result = services.apply_webhook(payload)
    except InvalidSignatureError as e:
        logger.warning("SECURITY: rejected %s for ref=%s: %s", source, ref, e)
        _log(event_type=e.kind, response_code=401, error_message=str(e)[:255], **entry)
        return JsonResponse({"success": False, "error": e.kind}, status=401)
    except AmountMismatchError as e:
        logger.warning("SECURITY: %s", e)
        _log(event_type=e.kind, signature_valid=True, error_message=str(e)[:255], **entry)
        return JsonResponse({"success": False, "error": e.kind, "payment_ref": ref})
    except PaymentNotFoundError as e:
        logger.error("%s for unknown payment ref=%s", source.capitalize(), ref)
        _log(event_type="order_not_found", signature_valid=True, error_message=str(e)[:255], **entry)
        return JsonResponse({"success": False, "error": e.kind, "payment_ref": ref})
    except ValidationError as e:
        _log(event_type="status_unknown", signature_valid=True, error_message=str(e)[:255], **entry)
        return JsonResponse({"success": False, "error": e.kind, "payment_ref": ref})
    except Exception as e:
        logger.exception("%s processing failed for ref=%s", source.capitalize(), ref)
        _log(event_type="error", response_code=500, error_message=str(e)[:255], **entry)
        return JsonResponse({"success": False, "error": "server_error"}, status=500)

    if result["duplicate"]:
        event = "duplicate"
    else:
        event = f"payment_{result['status']}"
    _log(
        event_type=event,
        signature_valid=True,
        processed=not result["duplicate"],
        duplicate=result["duplicate"],
        **entry,
    )
    return JsonResponse({
        "success": result["accepted"],
        "duplicate": result["duplicate"],
        "payment_ref": result["payment_ref"],
        "status": result["status"],
    })


@csrf_exempt
@require_POST
def payment_webhook(request):
    """Gateway server-to-server notification.

    Verification failures answer 401 so the gateway retries and the event is
    visible; business outcomes (applied, duplicate, mismatch, unknown ref)
    answer 200 with the outcome in the body.
    """
    return _handle(request, "webhook")


@csrf_exempt
@require_POST
def payment_callback(request):
    """Signed confirmation relayed by the customer's browser on return from checkout.

    Same signature, idempotency and amount rules as the webhook; whichever of
    the two arrives first applies the status and the other is a duplicate.
    """
    return _handle(request, "callback")
