import logging
import secrets
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import jwt
import requests
from django.conf import settings
from django.utils import timezone
from requests import RequestException

from ..exceptions import GatewayUnavailableError, ValidationError

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
TOKEN_FALLBACK_TTL = 23 * 60 * 60
SESSION_TTL = timedelta(hours=24)

# Online methods and the amounts the gateway accepts for each (PHP)
SUPPORTED_METHODS = {
    "gcash": {"name": "GCash", "type": "ewallet", "min": Decimal("100"), "max": Decimal("100000")},
    "paymaya": {"name": "PayMaya", "type": "ewallet", "min": Decimal("100"), "max": Decimal("50000")},
    "grabpay": {"name": "GrabPay", "type": "ewallet", "min": Decimal("100"), "max": Decimal("50000")},
    "card": {"name": "Credit/Debit Card", "type": "card", "min": Decimal("100"), "max": Decimal("999999")},
    "bank": {"name": "Online Banking", "type": "bank", "min": Decimal("100"), "max": Decimal("999999")},
}

STATUS_MAP = {
    "COMPLETED": "paid",
    "SUCCESS": "paid",
    "PAID": "paid",
    "PENDING": "pending",
    "FAILED": "failed",
    "CANCELLED": "failed",
    "EXPIRED": "failed",
}


def amount_str(amount) -> str:
    try:
        q = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid amount value")
    return format(q, "f")


def validate_payment_amount(amount, payment_method: str) -> None:
    try:
        num = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid amount")
    if num <= 0:
        raise ValidationError("Invalid amount")
    method = SUPPORTED_METHODS.get(payment_method)
    if method is None:
        raise ValidationError(f"Unsupported payment method: {payment_method}")
    if num < method["min"]:
        raise ValidationError(f"Minimum amount for {method['name']} is ₱{method['min']}")
    if num > method["max"]:
        raise ValidationError(f"Maximum amount for {method['name']} is ₱{method['max']:,}")


def generate_payment_ref(order_id: str) -> str:
    return f"PAY-{int(time.time() * 1000)}-{order_id}-{secrets.token_hex(2).upper()}"


class DirectPayClient:
    """Thin client for the DirectPay cash-in API.

    Every provider-side problem surfaces as ``GatewayUnavailableError`` so the
    checkout code never deals with transport or payload details.
    """

    def __init__(self, base_url, username, password, *, merchant_id="", timeout=20, http=None):
        self.base_url = (base_url or "").rstrip("/")
        self.username = username
        self.password = password
        self.merchant_id = merchant_id
        self.timeout = timeout
        self.http = http or requests
        self._token = None
        self._token_expiry = 0.0

    @classmethod
    def from_settings(cls):
        conf = settings.PAYMENTS
        return cls(
            conf["BASE_URL"],
            conf.get("USERNAME", ""),
            conf.get("PASSWORD", ""),
            merchant_id=conf.get("MERCHANT_ID", ""),
            timeout=conf.get("TIMEOUT", 20),
        )

    # ---------- auth ----------
    def _csrf_token(self) -> str:
        try:
            resp = self.http.get(f"{self.base_url}/csrf_token", headers=COMMON_HEADERS, timeout=self.timeout)
            resp.raise_for_status()
            token = resp.json().get("csrf_token")
        except (RequestException, ValueError) as e:
            raise GatewayUnavailableError(f"Could not fetch CSRF token: {e}")
        if not token:
            raise GatewayUnavailableError("Gateway returned no CSRF token")
        return token

    @staticmethod
    def _token_expiry_of(token: str) -> float:
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
            exp = float(claims["exp"])
        except (jwt.PyJWTError, KeyError, TypeError, ValueError):
            return time.time() + TOKEN_FALLBACK_TTL
        # refresh a minute early
        return exp - 60

    def login(self) -> str:
        if self._token and time.time() < self._token_expiry:
            return self._token
        if not (self.username and self.password):
            raise GatewayUnavailableError("Gateway credentials are not configured")

        headers = dict(COMMON_HEADERS, **{"X-CSRF-TOKEN": self._csrf_token()})
        try:
            resp = self.http.post(
                f"{self.base_url}/create/login",
                json={"username": self.username, "password": self.password},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (RequestException, ValueError) as e:
            raise GatewayUnavailableError(f"Gateway login failed: {e}")

        token = (data.get("data") or {}).get("token") if data.get("status") == "success" else None
        if not token:
            raise GatewayUnavailableError(f"Gateway login rejected: {data.get('message') or 'no token'}")
        self._token = token
        self._token_expiry = self._token_expiry_of(token)
        logger.info("DirectPay login successful")
        return token

    def _auth_headers(self) -> dict:
        return dict(COMMON_HEADERS, Authorization=f"Bearer {self.login()}")

    # ---------- API calls ----------
    def create_session(self, *, order_id, amount, method, return_url, webhook_url=None) -> dict:
        """Open a hosted checkout for ``amount`` and return its reference and URL."""
        requested = amount_str(amount)
        payment_ref = generate_payment_ref(order_id)
        payload = {
            "amount": float(requested),
            "webhook": webhook_url or "",
            "redirectUrl": return_url,
            "merchantpaymentreferences": payment_ref,
        }
        try:
            resp = self.http.post(
                f"{self.base_url}/pay_cashin", json=payload, headers=self._auth_headers(), timeout=self.timeout
            )
        except RequestException as e:
            logger.exception("DirectPay session request failed for order_id=%s", order_id)
            raise GatewayUnavailableError(f"Gateway request failed: {e}")

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:800]}
        if resp.status_code != 200 or data.get("status") != "success":
            logger.error(
                "DirectPay session creation failed for order_id=%s: status=%s body=%s",
                order_id, resp.status_code, str(data)[:800],
            )
            raise GatewayUnavailableError(data.get("message") or f"Gateway error {resp.status_code}")

        checkout_url = data.get("link") or ""
        if not checkout_url:
            logger.error("DirectPay response missing checkout link for order_id=%s", order_id)
            raise GatewayUnavailableError("Gateway did not return a checkout link")

        echoed = data.get("amount")
        if echoed is not None and amount_str(echoed) != requested:
            logger.error(
                "DirectPay echoed amount %s for order_id=%s, requested %s", echoed, order_id, requested
            )
            raise GatewayUnavailableError("Gateway returned a different amount")

        return {
            "ref": data.get("merchantpaymentreferences") or payment_ref,
            "checkout_url": checkout_url,
            "amount": Decimal(requested),
            "transaction_id": str(data.get("transactionId") or ""),
            "expires_at": timezone.now() + SESSION_TTL,
            "raw": data,
        }

    def check_status(self, transaction_id: str) -> dict:
        url = f"{self.base_url}/cashin_transactions_status/{transaction_id}"
        try:
            resp = self.http.get(url, headers=self._auth_headers(), timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (RequestException, ValueError) as e:
            raise GatewayUnavailableError(f"Status check failed: {e}")
        if not data.get("success"):
            raise GatewayUnavailableError(f"Status check rejected for {transaction_id}")
        raw_status = str(data.get("transaction_status") or "").upper()
        return {
            "transaction_id": data.get("reference_number") or transaction_id,
            "status": STATUS_MAP.get(raw_status, "pending"),
            "amount": data.get("total_amount"),
            "raw": data,
        }
