import hashlib
import hmac
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from ..exceptions import GatewayError, ValidationError
from ..models import Payment
from ..signing import VnpaySigner, hmac_hex
from ..utils import generate_request_id
from .base import ChargeArtifact, GatewayClient, GatewayStatus, Notification

logger = logging.getLogger(__name__)

MIN_AMOUNT = Decimal("5000")
MAX_AMOUNT = Decimal("1000000000")

SUCCESS_CODE = "00"
# vnp_TransactionStatus values returned by querydr
TXN_SUCCESS = "00"
TXN_ERROR = "02"
QUERY_NOT_FOUND = "91"

QUERY_REQUEST_FIELDS = (
    "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TxnRef",
    "vnp_TransactionDate", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
)
QUERY_RESPONSE_FIELDS = (
    "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode",
    "vnp_TxnRef", "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo",
    "vnp_TransactionType", "vnp_TransactionStatus", "vnp_OrderInfo", "vnp_PromotionCode",
    "vnp_PromotionAmount",
)


def _pipe_join(params: dict, fields) -> str:
    return "|".join("" if params.get(f) is None else str(params.get(f)) for f in fields)


class VnpayClient(GatewayClient):
    """Redirect-based checkout: the payment URL is built and signed locally."""

    gateway = "vnpay"
    method = Payment.Method.VNPAY

    def __init__(self, config: dict, timeout: float = 30, **kwargs):
        super().__init__(config, timeout=timeout, **kwargs)
        self.signer = VnpaySigner(config.get("SECRET_KEY", ""))

    def _configured(self):
        if not self.config.get("TMN_CODE") or not self.config.get("SECRET_KEY"):
            raise GatewayError("VNPay is not configured (TMN_CODE / SECRET_KEY)")

    def _local(self, dt) -> str:
        return dt.astimezone(ZoneInfo(self.config.get("TIMEZONE", "Asia/Ho_Chi_Minh"))).strftime("%Y%m%d%H%M%S")

    def validate_amount(self, amount: Decimal) -> None:
        if amount < MIN_AMOUNT or amount >= MAX_AMOUNT:
            raise ValidationError(f"VNPay accepts amounts from {MIN_AMOUNT:,.0f} to under {MAX_AMOUNT:,.0f} VND")

    def order_info(self, payment, description: str = "") -> str:
        return description or f"Payment for appointment {payment.appointment_id}"

    def build_params(self, payment, *, client_ip: str = "127.0.0.1", description: str = "") -> dict:
        return {
            "vnp_Version": self.config.get("VERSION", "2.1.0"),
            "vnp_Command": self.config.get("COMMAND", "pay"),
            "vnp_TmnCode": self.config["TMN_CODE"],
            "vnp_Amount": str(payment.amount_minor),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": str(payment.pk),
            "vnp_OrderInfo": self.order_info(payment, description),
            "vnp_OrderType": self.config.get("ORDER_TYPE", "other"),
            "vnp_Locale": self.config.get("LOCALE", "vn"),
            "vnp_ReturnUrl": self.config.get("RETURN_URL", ""),
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": self._local(payment.created_at),
            "vnp_ExpireDate": self._local(payment.created_at + timedelta(minutes=15)),
        }

    def create_charge(self, payment, *, client_ip: str = "127.0.0.1", description: str = "") -> ChargeArtifact:
        self._configured()
        params = self.build_params(payment, client_ip=client_ip, description=description)
        url = f"{self.config['PAY_URL']}?{self.signer.signed_query(params)}"
        return ChargeArtifact(pay_url=url, reference=str(payment.pk), raw=params)

    def query_status(self, payment, *, timeout: Optional[float] = None) -> GatewayStatus:
        self._configured()
        body = {
            "vnp_RequestId": generate_request_id("Q"),
            "vnp_Version": self.config.get("VERSION", "2.1.0"),
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.config["TMN_CODE"],
            "vnp_TxnRef": str(payment.pk),
            "vnp_OrderInfo": f"Query payment {payment.pk}",
            "vnp_TransactionDate": self._local(payment.created_at),
            "vnp_CreateDate": self._local(self.clock()),
            "vnp_IpAddr": "127.0.0.1",
        }
        body["vnp_SecureHash"] = hmac_hex(
            self.config["SECRET_KEY"], _pipe_join(body, QUERY_REQUEST_FIELDS), hashlib.sha512
        )
        data = self._post_json(self.config["API_URL"], body, timeout=timeout)

        code = str(data.get("vnp_ResponseCode", ""))
        if code == QUERY_NOT_FOUND:
            return GatewayStatus(Payment.Status.PENDING, message="Transaction not found at VNPay", raw=data)
        if code != SUCCESS_CODE:
            raise GatewayError(f"VNPay query failed: {data.get('vnp_Message') or code}", result_code=code)

        expected = hmac_hex(self.config["SECRET_KEY"], _pipe_join(data, QUERY_RESPONSE_FIELDS), hashlib.sha512)
        if not hmac.compare_digest(expected.lower(), str(data.get("vnp_SecureHash", "")).lower()):
            logger.warning("VNPay querydr response for payment=%s failed signature check", payment.pk)
            raise GatewayError("VNPay query response signature mismatch")
        if str(data.get("vnp_Amount", "")) != str(payment.amount_minor):
            raise GatewayError("VNPay query response amount mismatch")

        txn_status = str(data.get("vnp_TransactionStatus", ""))
        if txn_status == TXN_SUCCESS:
            return GatewayStatus(
                Payment.Status.COMPLETED,
                transaction_id=str(data.get("vnp_TransactionNo", "")),
                message=data.get("vnp_Message", ""),
                raw=data,
            )
        if txn_status == TXN_ERROR:
            return GatewayStatus(Payment.Status.FAILED, message=f"VNPay transaction status {txn_status}", raw=data)
        return GatewayStatus(Payment.Status.PENDING, message=f"VNPay transaction status {txn_status}", raw=data)

    def parse_notification(self, params: dict) -> Notification:
        try:
            payment_id = int(params.get("vnp_TxnRef", ""))
        except (TypeError, ValueError):
            payment_id = None
        try:
            amount_minor = int(params.get("vnp_Amount", ""))
        except (TypeError, ValueError):
            amount_minor = None

        code = str(params.get("vnp_ResponseCode", ""))
        # the return redirect carries no vnp_TransactionStatus
        txn_status = str(params.get("vnp_TransactionStatus", code))
        if code == SUCCESS_CODE and txn_status == TXN_SUCCESS:
            outcome = Payment.Status.COMPLETED
            message = "Payment successful"
        else:
            outcome = Payment.Status.FAILED
            message = f"VNPay response code {code or '?'}"
        return Notification(
            payment_id=payment_id,
            outcome=outcome,
            transaction_id=str(params.get("vnp_TransactionNo", "") or ""),
            result_code=code,
            message=message,
            amount_minor=amount_minor,
        )

    def amount_matches(self, payment, notification: Notification) -> bool:
        return notification.amount_minor == payment.amount_minor
