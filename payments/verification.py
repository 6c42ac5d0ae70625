import hmac
import logging
from dataclasses import dataclass, field

from .exceptions import VerificationError
from .signing import GatewaySigner, get_signer

logger = logging.getLogger("payments.security")


@dataclass
class VerificationResult:
    verified: bool
    params: dict = field(default_factory=dict)

    def __bool__(self):
        return self.verified


class CallbackVerifier:
    """Recompute the signature of an inbound gateway message and compare.

    Pure predicate: never touches the database. Any problem (missing secret,
    missing signature, unexpected types) yields an unverified result.
    """

    def __init__(self, signer: GatewaySigner):
        self.signer = signer

    @classmethod
    def for_gateway(cls, gateway: str) -> "CallbackVerifier":
        return cls(get_signer(gateway))

    def verify(self, raw_params) -> VerificationResult:
        try:
            params = {str(k): v for k, v in dict(raw_params).items()}
            cleaned = self.signer.strip(params)
            claimed = params.get(self.signer.signature_field)
            if not isinstance(claimed, str) or not claimed.strip():
                logger.warning("%s callback without %s", self.signer.gateway, self.signer.signature_field)
                return VerificationResult(False, cleaned)
            expected = self.signer.sign(cleaned)
            ok = hmac.compare_digest(expected.lower(), claimed.strip().lower())
        except Exception:
            logger.exception("%s callback could not be verified", getattr(self.signer, "gateway", "?"))
            return VerificationResult(False, {})
        if not ok:
            logger.warning("%s callback signature mismatch", self.signer.gateway)
        return VerificationResult(ok, cleaned)

    def require(self, raw_params) -> dict:
        """Verified params without the signature, or ``VerificationError``."""
        result = self.verify(raw_params)
        if not result:
            raise VerificationError(f"Invalid {self.signer.gateway} signature")
        return result.params
