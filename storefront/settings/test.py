from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

PAYMENTS = {
    **PAYMENTS,
    'BASE_URL': 'https://gateway.test/api',
    'USERNAME': 'merchant',
    'PASSWORD': 'secret',
    'MERCHANT_ID': 'M-TEST',
    'WEBHOOK_SECRET': 'test-webhook-secret',
    'ALLOW_UNSIGNED_WEBHOOKS': False,
    'WEBHOOK_MAX_AGE_SECONDS': 0,
    'APP_BASE_URL': 'https://shop.test',
}

STOREFRONT = {
    **STOREFRONT,
    'FREE_SHIPPING_THRESHOLD': '1000',
    'SHIPPING_FEE': '99',
    'COUPON_VALIDATOR': '',
    'ADMIN_EMAILS': 'ops@shop.test',
}
