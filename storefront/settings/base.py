from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "orders",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "storefront.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "storefront.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("TIME_ZONE", "Asia/Manila")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

# Email
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS", True)
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "orders@storefront.local")
EMAIL_FAIL_SILENTLY = _env_bool("EMAIL_FAIL_SILENTLY", True)

# Storefront pricing rules
STOREFRONT = {
    "CURRENCY": os.getenv("STORE_CURRENCY", "PHP"),
    "FREE_SHIPPING_THRESHOLD": os.getenv("FREE_SHIPPING_THRESHOLD", "1000"),
    "SHIPPING_FEE": os.getenv("SHIPPING_FEE", "99"),
    # Dotted path to a callable (code, subtotal) -> Decimal discount
    "COUPON_VALIDATOR": os.getenv("COUPON_VALIDATOR", ""),
    "ADMIN_EMAILS": os.getenv("STORE_ADMIN_EMAILS", ""),
}

# Payment gateway (DirectPay cash-in)
PAYMENTS = {
    "BASE_URL": os.getenv("DIRECTPAY_BASE_URL", "https://sandbox.directpayph.com/api"),
    "USERNAME": os.getenv("DIRECTPAY_USERNAME", ""),
    "PASSWORD": os.getenv("DIRECTPAY_PASSWORD", ""),
    "MERCHANT_ID": os.getenv("DIRECTPAY_MERCHANT_ID", ""),
    # Shared secret for webhook HMAC; empty means unsigned mode
    "WEBHOOK_SECRET": os.getenv("DIRECTPAY_MERCHANT_KEY", "") or None,
    "ALLOW_UNSIGNED_WEBHOOKS": _env_bool("ALLOW_UNSIGNED_WEBHOOKS", DEBUG),
    "WEBHOOK_MAX_AGE_SECONDS": int(os.getenv("WEBHOOK_MAX_AGE_SECONDS", "0")),
    "TIMEOUT": float(os.getenv("DIRECTPAY_TIMEOUT", "20")),
    "APP_BASE_URL": os.getenv("APP_BASE_URL", "http://localhost:8000"),
    "RETURN_PATH": os.getenv("PAYMENT_RETURN_PATH", "/payment-status"),
    "RECONCILE_OLDER_THAN_MINUTES": int(os.getenv("RECONCILE_OLDER_THAN_MINUTES", "5")),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
    "loggers": {
        "django": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "WARNING"), "propagate": False},
    },
}
