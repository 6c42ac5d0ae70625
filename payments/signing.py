"""Canonicalization and keyed hashing for the two gateway protocols.

VNPay signs the parameters sorted by key and URL-encoded, skipping empty
values, with HMAC-SHA512. MoMo signs a fixed, message-specific field order,
raw values with empty placeholders, with HMAC-SHA256. Both are pure functions
of (params, secret) so the same code builds outbound requests and checks
inbound ones.
"""

import hashlib
import hmac
import logging
from urllib.parse import quote_plus

from django.conf import settings

logger = logging.getLogger(__name__)


def hmac_hex(secret: str, data: str, digestmod=hashlib.sha256) -> str:
    if not secret:
        raise ValueError("HMAC secret is not configured")
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), digestmod).hexdigest()


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class GatewaySigner:
    """Common interface: ``canonicalize`` builds the hash input, ``sign`` hashes it."""

    gateway = ""
    signature_field = ""
    # Fields that travel next to the signature and are never part of the hash input
    excluded_fields = ()
    digestmod = hashlib.sha256

    def __init__(self, secret_key: str):
        self.secret_key = secret_key or ""

    def canonicalize(self, params: dict) -> str:
        raise NotImplementedError

    def sign(self, params: dict) -> str:
        return hmac_hex(self.secret_key, self.canonicalize(params), self.digestmod)

    def strip(self, params: dict) -> dict:
        skip = {self.signature_field, *self.excluded_fields}
        return {k: v for k, v in params.items() if k not in skip}


class VnpaySigner(GatewaySigner):
    gateway = "vnpay"
    signature_field = "vnp_SecureHash"
    excluded_fields = ("vnp_SecureHashType",)
    digestmod = hashlib.sha512

    def canonicalize(self, params: dict) -> str:
        pairs = []
        for key in sorted(params):
            if key == self.signature_field or key in self.excluded_fields:
                continue
            value = _as_text(params[key])
            if not value:
                continue
            pairs.append(f"{quote_plus(key)}={quote_plus(value)}")
        return "&".join(pairs)

    def signed_query(self, params: dict) -> str:
        """Query string for the redirect URL: the hash input plus ``vnp_SecureHash``."""
        query = self.canonicalize(params)
        return f"{query}&{self.signature_field}={self.sign(params)}"


class MomoSigner(GatewaySigner):
    gateway = "momo"
    signature_field = "signature"

    # Field orders published by MoMo for each message type (accessKey is
    # injected from config, it never travels in the payload).
    CREATE_FIELDS = (
        "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
        "partnerCode", "redirectUrl", "requestId", "requestType",
    )
    NOTIFY_FIELDS = (
        "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
        "orderType", "partnerCode", "payType", "requestId", "responseTime",
        "resultCode", "transId",
    )
    QUERY_FIELDS = ("accessKey", "orderId", "partnerCode", "requestId")

    def __init__(self, secret_key: str, access_key: str, field_order=NOTIFY_FIELDS):
        super().__init__(secret_key)
        self.access_key = access_key or ""
        self.field_order = tuple(field_order)

    def canonicalize(self, params: dict) -> str:
        values = dict(params)
        values["accessKey"] = self.access_key
        return "&".join(f"{name}={_as_text(values.get(name))}" for name in self.field_order)


def vnpay_signer() -> VnpaySigner:
    return VnpaySigner(settings.VNPAY.get("SECRET_KEY", ""))


def momo_signer(field_order=MomoSigner.NOTIFY_FIELDS) -> MomoSigner:
    return MomoSigner(
        settings.MOMO.get("SECRET_KEY", ""),
        settings.MOMO.get("ACCESS_KEY", ""),
        field_order=field_order,
    )


SIGNERS = {
    "vnpay": vnpay_signer,
    "momo": momo_signer,
}


def get_signer(gateway: str) -> GatewaySigner:
    """Signer used to check inbound (return / notify) messages of ``gateway``."""
    try:
        factory = SIGNERS[gateway]
    except KeyError:
        raise ValueError(f"Unknown gateway: {gateway}")
    return factory()
