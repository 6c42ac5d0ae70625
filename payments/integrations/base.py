from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import requests
from django.utils import timezone

from ..exceptions import GatewayError


@dataclass
class ChargeArtifact:
    """What the payer needs to continue: the gateway page URL."""
    pay_url: str
    reference: str
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayStatus:
    # One of Payment.Status values; PENDING means "no authoritative answer yet"
    outcome: str
    transaction_id: str = ""
    message: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class Notification:
    """A verified inbound message, reduced to what the state machine needs."""
    payment_id: Optional[int]
    outcome: str
    transaction_id: str = ""
    result_code: str = ""
    message: str = ""
    amount_minor: Optional[int] = None
    amount: Optional[Decimal] = None


class GatewayClient:
    gateway = ""
    method = ""

    def __init__(self, config: dict, timeout: float = 30, clock=timezone.now):
        self.config = config
        self.timeout = timeout
        self.clock = clock

    def validate_amount(self, amount: Decimal) -> None:
        """Raise ``payments.exceptions.ValidationError`` for amounts the gateway refuses."""

    def create_charge(self, payment, *, client_ip: str = "127.0.0.1", description: str = "") -> ChargeArtifact:
        raise NotImplementedError

    def query_status(self, payment, *, timeout: Optional[float] = None) -> GatewayStatus:
        raise NotImplementedError

    def parse_notification(self, params: dict) -> Notification:
        raise NotImplementedError

    def amount_matches(self, payment, notification: Notification) -> bool:
        raise NotImplementedError

    def _post_json(self, url: str, body: dict, timeout: Optional[float] = None) -> dict:
        try:
            resp = requests.post(url, json=body, timeout=timeout or self.timeout)
        except requests.Timeout:
            raise GatewayError(f"{self.gateway} request timed out")
        except requests.RequestException as e:
            raise GatewayError(f"{self.gateway} request failed: {e}")
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:800]}
        if not isinstance(data, dict):
            data = {"raw": str(data)[:800]}
        if resp.status_code != 200:
            raise GatewayError(
                f"{self.gateway} HTTP {resp.status_code}: {data.get('message') or data.get('raw') or ''}".strip(),
                result_code=data.get("resultCode"),
            )
        return data
