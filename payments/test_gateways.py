import hashlib
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import Mock, patch
from urllib.parse import parse_qsl, urlparse

import requests
from django.conf import settings
from django.test import TestCase

from .exceptions import GatewayError, ValidationError
from .integrations import client_for_method, get_client
from .integrations.momo import MomoClient
from .integrations.vnpay import QUERY_RESPONSE_FIELDS, VnpayClient, _pipe_join
from .models import Payment
from .signing import MomoSigner, VnpaySigner, hmac_hex
from .verification import CallbackVerifier


def _response(payload, status_code=200):
    resp = Mock(status_code=status_code, text=str(payload))
    resp.json.return_value = payload
    return resp


def make_payment(method, amount="500000", **kwargs):
    return Payment.objects.create(
        appointment_id=kwargs.pop("appointment_id", 7), patient_id=1, doctor_id=2,
        amount=Decimal(amount), method=method,
        created_at=datetime(2024, 1, 1, 3, 0, tzinfo=dt_timezone.utc), **kwargs,
    )


class ClientRegistryTests(TestCase):
    def test_get_client(self):
        self.assertIsInstance(get_client("vnpay"), VnpayClient)
        self.assertIsInstance(get_client("momo"), MomoClient)
        with self.assertRaises(ValueError):
            get_client("paypal")

    def test_offline_methods_have_no_client(self):
        self.assertIsNone(client_for_method(Payment.Method.CASH))
        self.assertIsInstance(client_for_method(Payment.Method.MOMO), MomoClient)


class VnpayClientTests(TestCase):
    def setUp(self):
        self.client_ = get_client("vnpay")
        self.payment = make_payment(Payment.Method.VNPAY)

    def test_pay_url_is_signed_and_carries_minor_units(self):
        artifact = self.client_.create_charge(self.payment, client_ip="10.0.0.5")
        url = urlparse(artifact.pay_url)
        self.assertTrue(artifact.pay_url.startswith(settings.VNPAY["PAY_URL"] + "?"))
        params = dict(parse_qsl(url.query))
        self.assertEqual(params["vnp_Amount"], "50000000")
        self.assertEqual(params["vnp_TxnRef"], str(self.payment.pk))
        self.assertEqual(params["vnp_TmnCode"], "TESTTMN1")
        self.assertEqual(params["vnp_CurrCode"], "VND")
        self.assertEqual(params["vnp_IpAddr"], "10.0.0.5")
        self.assertEqual(params["vnp_OrderInfo"], "Payment for appointment 7")
        # 03:00 UTC is 10:00 in Vietnam
        self.assertEqual(params["vnp_CreateDate"], "20240101100000")
        self.assertEqual(params["vnp_ExpireDate"], "20240101101500")
        verifier = CallbackVerifier(VnpaySigner(settings.VNPAY["SECRET_KEY"]))
        self.assertTrue(verifier.verify(params))

    def test_create_makes_no_network_call(self):
        with patch("payments.integrations.base.requests.post") as post:
            self.client_.create_charge(self.payment)
        post.assert_not_called()

    def test_missing_configuration(self):
        client = VnpayClient(dict(settings.VNPAY, SECRET_KEY=""))
        with self.assertRaises(GatewayError):
            client.create_charge(self.payment)

    def test_amount_limits(self):
        with self.assertRaises(ValidationError):
            self.client_.validate_amount(Decimal("4999"))
        with self.assertRaises(ValidationError):
            self.client_.validate_amount(Decimal("1000000000"))
        self.client_.validate_amount(Decimal("5000"))

    def _query_response(self, transaction_status="00", response_code="00", amount=None):
        data = {
            "vnp_ResponseId": "r1", "vnp_Command": "querydr", "vnp_ResponseCode": response_code,
            "vnp_Message": "QueryDR Success", "vnp_TmnCode": "TESTTMN1", "vnp_TxnRef": str(self.payment.pk),
            "vnp_Amount": str(amount if amount is not None else self.payment.amount_minor),
            "vnp_BankCode": "NCB", "vnp_PayDate": "20240101101000", "vnp_TransactionNo": "14000001",
            "vnp_TransactionType": "01", "vnp_TransactionStatus": transaction_status,
            "vnp_OrderInfo": "Payment for appointment 7", "vnp_PromotionCode": "", "vnp_PromotionAmount": "",
        }
        data["vnp_SecureHash"] = hmac_hex(
            settings.VNPAY["SECRET_KEY"], _pipe_join(data, QUERY_RESPONSE_FIELDS), hashlib.sha512
        )
        return data

    def test_query_completed(self):
        with patch("payments.integrations.base.requests.post", return_value=_response(self._query_response())) as post:
            status = self.client_.query_status(self.payment, timeout=5)
        self.assertEqual(status.outcome, Payment.Status.COMPLETED)
        self.assertEqual(status.transaction_id, "14000001")
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["vnp_Command"], "querydr")
        self.assertEqual(body["vnp_TransactionDate"], "20240101100000")
        self.assertEqual(post.call_args.kwargs["timeout"], 5)

    def test_query_failed_and_pending(self):
        with patch("payments.integrations.base.requests.post",
                   return_value=_response(self._query_response(transaction_status="02"))):
            self.assertEqual(self.client_.query_status(self.payment).outcome, Payment.Status.FAILED)
        with patch("payments.integrations.base.requests.post",
                   return_value=_response(self._query_response(transaction_status="01"))):
            self.assertEqual(self.client_.query_status(self.payment).outcome, Payment.Status.PENDING)

    def test_query_not_found_is_pending(self):
        with patch("payments.integrations.base.requests.post",
                   return_value=_response({"vnp_ResponseCode": "91", "vnp_Message": "Not found"})):
            self.assertEqual(self.client_.query_status(self.payment).outcome, Payment.Status.PENDING)

    def test_query_response_with_bad_signature_is_rejected(self):
        data = self._query_response()
        data["vnp_TransactionStatus"] = "00"
        data["vnp_SecureHash"] = "0" * 128
        with patch("payments.integrations.base.requests.post", return_value=_response(data)):
            with self.assertRaises(GatewayError):
                self.client_.query_status(self.payment)

    def test_query_error_code_raises(self):
        with patch("payments.integrations.base.requests.post",
                   return_value=_response({"vnp_ResponseCode": "97", "vnp_Message": "Invalid checksum"})):
            with self.assertRaises(GatewayError) as cm:
                self.client_.query_status(self.payment)
        self.assertEqual(cm.exception.result_code, "97")

    def test_parse_notification(self):
        note = self.client_.parse_notification({
            "vnp_TxnRef": str(self.payment.pk), "vnp_Amount": "50000000",
            "vnp_ResponseCode": "00", "vnp_TransactionStatus": "00", "vnp_TransactionNo": "123",
        })
        self.assertEqual(note.payment_id, self.payment.pk)
        self.assertEqual(note.outcome, Payment.Status.COMPLETED)
        self.assertTrue(self.client_.amount_matches(self.payment, note))

        note = self.client_.parse_notification({"vnp_TxnRef": "abc", "vnp_ResponseCode": "00", "vnp_TransactionStatus": "02"})
        self.assertIsNone(note.payment_id)
        self.assertEqual(note.outcome, Payment.Status.FAILED)


class MomoClientTests(TestCase):
    def setUp(self):
        self.client_ = get_client("momo")
        self.payment = make_payment(Payment.Method.MOMO)

    def test_create_posts_signed_body_and_returns_pay_url(self):
        payload = {"resultCode": 0, "message": "Successful.", "payUrl": "https://test-payment.momo.vn/pay/abc"}
        with patch("payments.integrations.base.requests.post", return_value=_response(payload)) as post:
            artifact = self.client_.create_charge(self.payment)
        self.assertEqual(artifact.pay_url, "https://test-payment.momo.vn/pay/abc")
        self.assertEqual(artifact.reference, f"PAY{self.payment.pk}")

        self.assertEqual(post.call_args.args[0], settings.MOMO["CREATE_URL"])
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["orderId"], f"PAY{self.payment.pk}")
        self.assertEqual(body["amount"], 500000)
        self.assertEqual(body["partnerCode"], "MOMOTEST")
        self.assertEqual(body["ipnUrl"], settings.MOMO["NOTIFY_URL"])
        self.assertNotIn("accessKey", body)
        signer = MomoSigner("momo-secret", "momo-access", MomoSigner.CREATE_FIELDS)
        self.assertEqual(body["signature"], signer.sign(body))

    def test_gateway_rejection_raises_with_its_message(self):
        payload = {"resultCode": 22, "message": "Invalid amount"}
        with patch("payments.integrations.base.requests.post", return_value=_response(payload)):
            with self.assertRaises(GatewayError) as cm:
                self.client_.create_charge(self.payment)
        self.assertIn("Invalid amount", str(cm.exception))
        self.assertEqual(cm.exception.result_code, 22)

    def test_timeout_becomes_gateway_error(self):
        with patch("payments.integrations.base.requests.post", side_effect=requests.Timeout):
            with self.assertRaises(GatewayError):
                self.client_.create_charge(self.payment)

    def test_http_error_becomes_gateway_error(self):
        with patch("payments.integrations.base.requests.post", return_value=_response("oops", status_code=500)):
            with self.assertRaises(GatewayError):
                self.client_.create_charge(self.payment)

    def test_amount_limits(self):
        for amount in ("999", "1000.50", "50000001"):
            with self.subTest(amount=amount), self.assertRaises(ValidationError):
                self.client_.validate_amount(Decimal(amount))
        self.client_.validate_amount(Decimal("1000.00"))

    def test_query_status_mapping(self):
        cases = [
            ({"resultCode": 0, "amount": 500000, "transId": 99, "message": "ok"}, Payment.Status.COMPLETED),
            ({"resultCode": 1000, "message": "processing"}, Payment.Status.PENDING),
            ({"resultCode": 42, "message": "not found"}, Payment.Status.PENDING),
            ({"resultCode": 1006, "message": "denied"}, Payment.Status.FAILED),
        ]
        for payload, outcome in cases:
            with self.subTest(code=payload["resultCode"]):
                with patch("payments.integrations.base.requests.post", return_value=_response(payload)) as post:
                    status = self.client_.query_status(self.payment)
                self.assertEqual(status.outcome, outcome)
                self.assertEqual(post.call_args.args[0], settings.MOMO["QUERY_URL"])
        self.assertEqual(status.message, "denied")

    def test_query_completed_carries_transaction_id(self):
        payload = {"resultCode": 0, "amount": 500000, "transId": 4088878653}
        with patch("payments.integrations.base.requests.post", return_value=_response(payload)):
            status = self.client_.query_status(self.payment)
        self.assertEqual(status.transaction_id, "4088878653")

    def test_order_id_parsing(self):
        self.assertEqual(self.client_.payment_id_from_order("PAY12"), 12)
        self.assertIsNone(self.client_.payment_id_from_order("ORD12"))
        self.assertIsNone(self.client_.payment_id_from_order("PAYx"))
