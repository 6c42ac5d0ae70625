"""Inbound gateway calls: the authoritative notify (IPN) and the browser return.

Only ``handle_notify`` moves a payment out of PENDING. The return redirect is
client-controlled, so it is verified for display purposes and nothing else.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from . import notifications
from .exceptions import InvalidStateError, PaymentError, VerificationError
from .integrations import get_client
from .models import Payment
from .services import PaymentStateMachine
from .verification import CallbackVerifier

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payments.security")

VNPAY_ACKS = {
    "ok": ("00", "Confirm Success"),
    "not_found": ("01", "Order not found"),
    "conflict": ("02", "Order already confirmed"),
    "amount": ("04", "Invalid amount"),
    "signature": ("97", "Invalid signature"),
    "error": ("99", "Unknown error"),
}
MOMO_MESSAGES = {
    "ok": "Success",
    "not_found": "Order not found",
    "conflict": "Order already processed",
    "amount": "Invalid amount",
    "signature": "Invalid signature",
    "error": "Unknown error",
}


def ack_body(gateway: str, key: str) -> dict:
    """The synchronous acknowledgement each gateway expects from the IPN endpoint."""
    if gateway == "vnpay":
        code, message = VNPAY_ACKS[key]
        return {"RspCode": code, "Message": message}
    return {"resultCode": 0 if key == "ok" else 1, "message": MOMO_MESSAGES[key]}


@dataclass
class NotifyResult:
    gateway: str
    ack: str
    payment_id: Optional[int] = None
    changed: bool = False

    @property
    def accepted(self) -> bool:
        return self.ack == "ok"

    @property
    def body(self) -> dict:
        return ack_body(self.gateway, self.ack)


@dataclass
class ReturnResult:
    success: bool
    message: str
    payment_id: Optional[int] = None
    params: dict = field(default_factory=dict)


class CallbackHandler:
    def __init__(self, gateway: str, state_machine: Optional[PaymentStateMachine] = None,
                 verifier: Optional[CallbackVerifier] = None, client=None):
        self.gateway = gateway
        self.client = client or get_client(gateway)
        self.verifier = verifier or CallbackVerifier.for_gateway(gateway)
        self.state_machine = state_machine or PaymentStateMachine()

    def _find(self, payment_id) -> Optional[Payment]:
        if payment_id is None:
            return None
        # refund rows are never the subject of a gateway notification
        return Payment.objects.filter(pk=payment_id, method=self.client.method, amount__gt=0).first()

    def handle_notify(self, raw_params) -> NotifyResult:
        try:
            params = self.verifier.require(raw_params)
        except VerificationError:
            return NotifyResult(self.gateway, "signature")

        note = self.client.parse_notification(params)
        payment = self._find(note.payment_id)
        if payment is None:
            logger.warning("%s notify for unknown payment %r", self.gateway, note.payment_id)
            return NotifyResult(self.gateway, "not_found", note.payment_id)

        if not self.client.amount_matches(payment, note):
            security_logger.warning(
                "%s notify amount mismatch payment=%s stored=%s notified=%s",
                self.gateway, payment.pk, payment.amount, note.amount if note.amount is not None else note.amount_minor,
            )
            return NotifyResult(self.gateway, "amount", payment.pk)

        if note.outcome == Payment.Status.PENDING:
            logger.info("%s notify for payment=%s is non-terminal (code %s)",
                        self.gateway, payment.pk, note.result_code)
            return NotifyResult(self.gateway, "ok", payment.pk)

        try:
            if note.outcome == Payment.Status.COMPLETED:
                transition = self.state_machine.mark_completed(payment.pk, note.transaction_id, params)
            else:
                transition = self.state_machine.mark_failed(payment.pk, note.message, params)
        except InvalidStateError as e:
            notifications.report_anomaly(payment.pk, e, f"{self.gateway} notify")
            return NotifyResult(self.gateway, "conflict", payment.pk)
        except PaymentError as e:
            logger.warning("%s notify for payment=%s rejected: %s", self.gateway, payment.pk, e)
            return NotifyResult(self.gateway, "error", payment.pk)

        return NotifyResult(self.gateway, "ok", payment.pk, transition.changed)

    def handle_return(self, raw_params) -> ReturnResult:
        result = self.verifier.verify(raw_params)
        if not result:
            return ReturnResult(False, "Invalid signature")
        note = self.client.parse_notification(result.params)
        success = note.outcome == Payment.Status.COMPLETED
        message = "Payment successful" if success else (note.message or "Payment failed")
        return ReturnResult(success, message, note.payment_id, result.params)
