from django.contrib import admin

from .models import PaymentSession, WebhookLog


@admin.register(PaymentSession)
class PaymentSessionAdmin(admin.ModelAdmin):
    list_display = ("payment_ref", "order", "status", "amount", "payment_method", "created_at", "completed_at")
    search_fields = ("payment_ref", "transaction_id", "order__order_id")
    list_filter = ("status", "payment_method", "created_at")
    readonly_fields = ("gateway_meta", "created_at", "updated_at", "completed_at")


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "source", "event_type", "payment_ref", "status", "signature_valid", "response_code", "duplicate")
    search_fields = ("payment_ref", "transaction_id")
    list_filter = ("event_type", "signature_valid", "duplicate")
    readonly_fields = ("raw_payload",)
