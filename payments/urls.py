from django.urls import path

from . import views, webhook

app_name = "payments"
urlpatterns = [
    path("methods", views.payment_methods_view, name="methods"),
    path("validate", views.validate_payment_view, name="validate"),
    path("session", views.create_session_view, name="create_session"),
    path("webhook", webhook.payment_webhook, name="webhook"),
    path("webhook/", webhook.payment_webhook),
    path("callback", webhook.payment_callback, name="callback"),
    path("<str:payment_ref>/status", views.payment_status_view, name="status"),
]
