from django.conf import settings

from ..models import Payment
from .momo import MomoClient
from .vnpay import VnpayClient

CLIENTS = {
    "vnpay": (VnpayClient, "VNPAY"),
    "momo": (MomoClient, "MOMO"),
}

METHOD_GATEWAYS = {
    Payment.Method.VNPAY: "vnpay",
    Payment.Method.MOMO: "momo",
}


def get_client(gateway: str, **kwargs):
    try:
        cls, setting = CLIENTS[gateway]
    except KeyError:
        raise ValueError(f"Unknown gateway: {gateway}")
    kwargs.setdefault("timeout", settings.PAYMENTS.get("REQUEST_TIMEOUT", 30))
    return cls(getattr(settings, setting), **kwargs)


def client_for_method(method: str, **kwargs):
    """Client for a stored ``Payment.method``; None for offline methods."""
    gateway = METHOD_GATEWAYS.get(method)
    return get_client(gateway, **kwargs) if gateway else None
