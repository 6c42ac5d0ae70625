import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-change-me")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "appointments",
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

ROOT_URLCONF = "telemedicine.urls"
WSGI_APPLICATION = "telemedicine.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "telemedicine.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

# Email
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS", "true")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "noreply@telemedicine.local")
EMAIL_FAIL_SILENTLY = _env_bool("EMAIL_FAIL_SILENTLY", "true")

# ---------- Payment gateways ----------
# VNPay: sorted + URL-encoded parameters, HMAC-SHA512 (vnp_SecureHash)
VNPAY = {
    "PAY_URL": os.getenv("VNPAY_PAY_URL", "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"),
    "API_URL": os.getenv("VNPAY_API_URL", "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"),
    "RETURN_URL": os.getenv("VNPAY_RETURN_URL", "http://localhost:8000/payments/vnpay/return"),
    "TMN_CODE": os.getenv("VNPAY_TMN_CODE", ""),
    "SECRET_KEY": os.getenv("VNPAY_SECRET_KEY", ""),
    "VERSION": os.getenv("VNPAY_VERSION", "2.1.0"),
    "COMMAND": os.getenv("VNPAY_COMMAND", "pay"),
    "ORDER_TYPE": os.getenv("VNPAY_ORDER_TYPE", "other"),
    "LOCALE": os.getenv("VNPAY_LOCALE", "vn"),
    # vnp_CreateDate / vnp_TransactionDate are wall-clock times in GMT+7
    "TIMEZONE": os.getenv("VNPAY_TIMEZONE", "Asia/Ho_Chi_Minh"),
}

# MoMo: fixed field order, HMAC-SHA256 (signature)
MOMO = {
    "CREATE_URL": os.getenv("MOMO_CREATE_URL", "https://test-payment.momo.vn/v2/gateway/api/create"),
    "QUERY_URL": os.getenv("MOMO_QUERY_URL", "https://test-payment.momo.vn/v2/gateway/api/query"),
    "NOTIFY_URL": os.getenv("MOMO_NOTIFY_URL", "http://localhost:8000/payments/momo/notify"),
    "RETURN_URL": os.getenv("MOMO_RETURN_URL", "http://localhost:8000/payments/momo/return"),
    "PARTNER_CODE": os.getenv("MOMO_PARTNER_CODE", ""),
    "ACCESS_KEY": os.getenv("MOMO_ACCESS_KEY", ""),
    "SECRET_KEY": os.getenv("MOMO_SECRET_KEY", ""),
    "REQUEST_TYPE": os.getenv("MOMO_REQUEST_TYPE", "payWithMethod"),
    "ORDER_PREFIX": os.getenv("MOMO_ORDER_PREFIX", "PAY"),
    "PARTNER_NAME": os.getenv("MOMO_PARTNER_NAME", "Hospital Telemedicine"),
    "STORE_ID": os.getenv("MOMO_STORE_ID", "HospitalStore"),
    "LANG": os.getenv("MOMO_LANG", "vi"),
}

PAYMENTS = {
    "CURRENCY": os.getenv("PAYMENTS_CURRENCY", "VND"),
    "STALE_AFTER_MINUTES": int(os.getenv("PAYMENTS_STALE_AFTER_MINUTES", "30")),
    "SWEEP_INTERVAL_MINUTES": int(os.getenv("PAYMENTS_SWEEP_INTERVAL_MINUTES", "30")),
    "GATEWAY_STATUS_CHECK": _env_bool("PAYMENTS_GATEWAY_STATUS_CHECK"),
    "STATUS_CHECK_LIMIT": int(os.getenv("PAYMENTS_STATUS_CHECK_LIMIT", "20")),
    "STATUS_CHECK_TIMEOUT": float(os.getenv("PAYMENTS_STATUS_CHECK_TIMEOUT", "5")),
    "REQUEST_TIMEOUT": float(os.getenv("PAYMENTS_REQUEST_TIMEOUT", "30")),
    "RESULT_URL": os.getenv("PAYMENTS_RESULT_URL", "http://localhost:3000/payment-result"),
    "NOTIFICATION_SINK": os.getenv("PAYMENTS_NOTIFICATION_SINK", "payments.emails.email_sink"),
    # Comma-separated; falls back to DEFAULT_FROM_EMAIL
    "OPERATOR_EMAILS": os.getenv("PAYMENTS_OPERATOR_EMAILS", ""),
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
        "django": {"handlers": ["console"], "level": "INFO", "propagate": False},
        # bad signatures, tampered amounts, state anomalies
        "payments.security": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}
