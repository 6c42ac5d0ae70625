import logging
from decimal import Decimal
from typing import Optional

from ..exceptions import GatewayError, ValidationError
from ..models import Payment
from ..signing import MomoSigner
from ..utils import generate_request_id
from .base import ChargeArtifact, GatewayClient, GatewayStatus, Notification

logger = logging.getLogger(__name__)

MIN_AMOUNT = Decimal("1000")
MAX_AMOUNT = Decimal("50000000")

SUCCESS = 0
ORDER_NOT_FOUND = 42
# Processing, awaiting user confirmation, authorised but not captured
PENDING_CODES = {1000, 7000, 7002, 9000}


def _result_code(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MomoClient(GatewayClient):
    """Server-to-server checkout: MoMo returns the ``payUrl`` for the payer."""

    gateway = "momo"
    method = Payment.Method.MOMO

    def signer(self, field_order=MomoSigner.NOTIFY_FIELDS) -> MomoSigner:
        return MomoSigner(self.config.get("SECRET_KEY", ""), self.config.get("ACCESS_KEY", ""), field_order)

    def _configured(self):
        missing = [k for k in ("PARTNER_CODE", "ACCESS_KEY", "SECRET_KEY") if not self.config.get(k)]
        if missing:
            raise GatewayError(f"MoMo is not configured ({', '.join(missing)})")

    def order_id(self, payment) -> str:
        return f"{self.config.get('ORDER_PREFIX', 'PAY')}{payment.pk}"

    def payment_id_from_order(self, order_id) -> Optional[int]:
        prefix = self.config.get("ORDER_PREFIX", "PAY")
        order_id = str(order_id or "")
        if not order_id.startswith(prefix):
            return None
        try:
            return int(order_id[len(prefix):])
        except ValueError:
            return None

    def validate_amount(self, amount: Decimal) -> None:
        if amount != amount.to_integral_value():
            raise ValidationError("MoMo only accepts whole VND amounts")
        if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
            raise ValidationError(f"MoMo accepts amounts from {MIN_AMOUNT:,.0f} to {MAX_AMOUNT:,.0f} VND")

    def create_charge(self, payment, *, client_ip: str = "127.0.0.1", description: str = "") -> ChargeArtifact:
        self._configured()
        body = {
            "partnerCode": self.config["PARTNER_CODE"],
            "partnerName": self.config.get("PARTNER_NAME", ""),
            "storeId": self.config.get("STORE_ID", ""),
            "requestId": generate_request_id("REQ"),
            "amount": int(payment.amount),
            "orderId": self.order_id(payment),
            "orderInfo": description or f"Payment for appointment {payment.appointment_id}",
            "redirectUrl": self.config.get("RETURN_URL", ""),
            "ipnUrl": self.config.get("NOTIFY_URL", ""),
            "lang": self.config.get("LANG", "vi"),
            "requestType": self.config.get("REQUEST_TYPE", "payWithMethod"),
            "autoCapture": True,
            "extraData": "",
        }
        body["signature"] = self.signer(MomoSigner.CREATE_FIELDS).sign(body)

        data = self._post_json(self.config["CREATE_URL"], body)
        code = _result_code(data.get("resultCode"))
        if code != SUCCESS or not data.get("payUrl"):
            logger.warning("MoMo create rejected payment=%s resultCode=%s message=%s",
                           payment.pk, data.get("resultCode"), data.get("message"))
            raise GatewayError(
                f"MoMo error: {data.get('message') or 'no payUrl returned'}",
                result_code=data.get("resultCode"),
            )
        return ChargeArtifact(pay_url=data["payUrl"], reference=body["orderId"], raw=data)

    def query_status(self, payment, *, timeout: Optional[float] = None) -> GatewayStatus:
        self._configured()
        body = {
            "partnerCode": self.config["PARTNER_CODE"],
            "requestId": generate_request_id("Q"),
            "orderId": self.order_id(payment),
            "lang": self.config.get("LANG", "vi"),
        }
        body["signature"] = self.signer(MomoSigner.QUERY_FIELDS).sign(body)
        data = self._post_json(self.config["QUERY_URL"], body, timeout=timeout)

        code = _result_code(data.get("resultCode"))
        if code == SUCCESS:
            if _result_code(data.get("amount")) not in (None, int(payment.amount)):
                raise GatewayError("MoMo query response amount mismatch")
            return GatewayStatus(
                Payment.Status.COMPLETED,
                transaction_id=str(data.get("transId") or ""),
                message=data.get("message", ""),
                raw=data,
            )
        if code in PENDING_CODES or code == ORDER_NOT_FOUND:
            return GatewayStatus(Payment.Status.PENDING, message=data.get("message", ""), raw=data)
        if code is None:
            raise GatewayError("MoMo query returned no resultCode")
        return GatewayStatus(Payment.Status.FAILED, message=data.get("message", "") or f"MoMo code {code}", raw=data)

    def parse_notification(self, params: dict) -> Notification:
        code = _result_code(params.get("resultCode"))
        if code == SUCCESS:
            outcome = Payment.Status.COMPLETED
        elif code in PENDING_CODES:
            outcome = Payment.Status.PENDING
        else:
            outcome = Payment.Status.FAILED
        try:
            amount = Decimal(str(params.get("amount")))
        except ArithmeticError:
            amount = None
        return Notification(
            payment_id=self.payment_id_from_order(params.get("orderId")),
            outcome=outcome,
            transaction_id=str(params.get("transId") or ""),
            result_code="" if code is None else str(code),
            message=str(params.get("message") or ""),
            amount=amount,
        )

    def amount_matches(self, payment, notification: Notification) -> bool:
        return notification.amount is not None and notification.amount == payment.amount
