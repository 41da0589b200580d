from decimal import Decimal

from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'storefront-tests',
    }
}

ALLOWED_HOSTS = ['testserver']

SITE_URL = 'https://shop.example.com'

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
ORDERS_ADMIN_EMAILS = 'orders@example.com'

PAYWAY = {
    'ENABLED': True,
    'MERCHANT_ID': 'test_merchant',
    'SECRET_KEY': 'test_secret_key',
    'BASE_URL': 'https://checkout-sandbox.payway.com.kh',
    'CURRENCY': 'USD',
    'PAYMENT_OPTION': '',
    'REQUEST_TIMEOUT': 5.0,
    'AMOUNT_TOLERANCE': Decimal('0.01'),
    'STATUS_CODES': None,
    'STATUS_CACHE_SECONDS': 5,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {'null': {'class': 'logging.NullHandler'}},
    'root': {'handlers': ['null'], 'level': 'WARNING'},
}
