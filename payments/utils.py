"""Webhook signature helpers for the payment gateway."""

import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


def _text(value) -> str:
    return "" if value is None else str(value)


def parse_timestamp(value) -> Optional[float]:
    """Return epoch seconds for an epoch (s or ms) or ISO-8601 timestamp."""
    if value is None or value == "":
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt.timestamp()
    # gateways send milliseconds
    return num / 1000.0 if num > 1e11 else num


class WebhookVerifier:
    """Authenticate gateway callbacks with a shared-secret HMAC-SHA256.

    The signed message is ``ref:status:amount:timestamp`` built from the values
    exactly as they appear in the payload, with an empty string for missing
    fields. ``secret=None`` switches to unsigned mode, which must be allowed
    explicitly and is logged on every call.
    """

    def __init__(self, secret: Optional[str], *, allow_unsigned: bool = False,
                 max_age: Optional[int] = None, clock=time.time):
        if not secret and not allow_unsigned:
            logger.error("Payment webhook secret missing and unsigned webhooks are not allowed")
            raise ImproperlyConfigured(
                "PAYMENTS['WEBHOOK_SECRET'] is required unless ALLOW_UNSIGNED_WEBHOOKS is enabled"
            )
        self.secret = secret or None
        self.allow_unsigned = allow_unsigned
        self.max_age = max_age or None
        self._clock = clock

    @classmethod
    def from_settings(cls):
        conf = getattr(settings, "PAYMENTS", {})
        return cls(
            conf.get("WEBHOOK_SECRET"),
            allow_unsigned=bool(conf.get("ALLOW_UNSIGNED_WEBHOOKS", False)),
            max_age=conf.get("WEBHOOK_MAX_AGE_SECONDS") or None,
        )

    @property
    def unsigned(self) -> bool:
        return self.secret is None

    @staticmethod
    def message(ref, status, amount, timestamp) -> bytes:
        return ":".join(_text(v) for v in (ref, status, amount, timestamp)).encode("utf-8")

    def sign(self, ref, status, amount=None, timestamp=None) -> str:
        if self.unsigned:
            raise ImproperlyConfigured("Cannot sign webhooks without a secret")
        msg = self.message(ref, status, amount, timestamp)
        return hmac.new(self.secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()

    def verify(self, payload: dict, signature: Optional[str]) -> bool:
        ref = payload.get("ref")
        if self.unsigned:
            logger.warning("Webhook signature verification skipped for ref=%s (unsigned mode)", ref)
            return True
        received = (signature or "").strip().lower()
        if not received:
            logger.error("Webhook for ref=%s has no signature", ref)
            return False
        expected = self.sign(ref, payload.get("status"), payload.get("amount"), payload.get("timestamp"))
        valid = hmac.compare_digest(expected, received)
        if not valid:
            logger.error("Webhook signature mismatch for ref=%s", ref)
        return valid

    def is_fresh(self, timestamp) -> bool:
        """False when a replay window is configured and ``timestamp`` falls outside it."""
        if not self.max_age:
            return True
        ts = parse_timestamp(timestamp)
        if ts is None:
            return False
        return abs(self._clock() - ts) <= self.max_age
