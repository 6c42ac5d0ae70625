from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        # threaded tests (concurrent transitions, the sweep loop) need a shared file
        'TEST': {'NAME': str(BASE_DIR / 'test_telemedicine.sqlite3')},
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

VNPAY = {
    **VNPAY,
    'TMN_CODE': 'TESTTMN1',
    'SECRET_KEY': 'VNPAYTESTSECRET',
}

MOMO = {
    **MOMO,
    'PARTNER_CODE': 'MOMOTEST',
    'ACCESS_KEY': 'momo-access',
    'SECRET_KEY': 'momo-secret',
}

PAYMENTS = {
    **PAYMENTS,
    'GATEWAY_STATUS_CHECK': False,
    'OPERATOR_EMAILS': 'ops@example.com',
}
