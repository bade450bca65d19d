from django.db import models
from django.utils import timezone


class PaymentSessionQuerySet(models.QuerySet):
    def compare_and_set(self, payment_ref: str, expected: str, new: str, **fields) -> bool:
        """Move a session from ``expected`` to ``new`` in a single UPDATE.

        Returns True only for the caller whose write took effect; a concurrent
        delivery that already moved the row sees False.
        """
        updated = self.filter(payment_ref=payment_ref, status=expected).update(
            status=new, updated_at=timezone.now(), **fields
        )
        return updated == 1


class PaymentSession(models.Model):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (PAID, "Paid"),
        (FAILED, "Failed"),
        (EXPIRED, "Expired"),
    ]
    TERMINAL = {PAID, FAILED, EXPIRED}

    payment_ref = models.CharField(max_length=64, unique=True, db_index=True)
    order = models.ForeignKey("orders.Order", on_delete=models.PROTECT, related_name="payment_sessions")
    payment_method = models.CharField(max_length=32)
    payment_type = models.CharField(max_length=32, blank=True, default="")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    checkout_url = models.URLField(max_length=500, blank=True, default="")
    transaction_id = models.CharField(max_length=128, blank=True, default="", db_index=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    gateway_meta = models.JSONField(default=dict, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    objects = PaymentSessionQuerySet.as_manager()

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    def __str__(self):
        return f"{self.payment_ref} {self.status} ₱{self.amount}"


class WebhookLog(models.Model):
    """Audit trail of every inbound gateway notification."""

    source = models.CharField(max_length=16, default="webhook")
    event_type = models.CharField(max_length=32, blank=True, default="")
    payment_ref = models.CharField(max_length=64, blank=True, default="", db_index=True)
    transaction_id = models.CharField(max_length=128, blank=True, default="")
    status = models.CharField(max_length=32, blank=True, default="")
    amount = models.CharField(max_length=32, blank=True, default="")
    signature_valid = models.BooleanField(default=False)
    response_code = models.PositiveSmallIntegerField(default=200)
    error_message = models.CharField(max_length=255, blank=True, default="")
    raw_payload = models.JSONField(default=dict, blank=True)
    processed = models.BooleanField(default=False)
    duplicate = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.source}:{self.event_type} {self.payment_ref}"
