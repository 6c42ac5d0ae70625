import hashlib
import hmac

from django.test import SimpleTestCase, override_settings

from .exceptions import VerificationError
from .signing import MomoSigner, VnpaySigner, get_signer, hmac_hex
from .verification import CallbackVerifier


def _flip_first_char(sig: str) -> str:
    return ("0" if sig[0] != "0" else "1") + sig[1:]


class VnpaySignerTests(SimpleTestCase):
    def setUp(self):
        self.signer = VnpaySigner("VNPAYTESTSECRET")

    def test_canonical_form_sorts_encodes_and_skips_empty(self):
        params = {
            "vnp_OrderInfo": "Payment for appointment 7",
            "vnp_Amount": "50000000",
            "vnp_BankCode": "",
            "vnp_ReturnUrl": "http://localhost:8000/payments/vnpay/return",
            "vnp_SecureHash": "ignored",
            "vnp_SecureHashType": "HmacSHA512",
        }
        self.assertEqual(
            self.signer.canonicalize(params),
            "vnp_Amount=50000000"
            "&vnp_OrderInfo=Payment+for+appointment+7"
            "&vnp_ReturnUrl=http%3A%2F%2Flocalhost%3A8000%2Fpayments%2Fvnpay%2Freturn",
        )

    def test_sign_is_hmac_sha512_of_canonical_form(self):
        params = {"vnp_TxnRef": "1", "vnp_Amount": "500000"}
        expected = hmac.new(b"VNPAYTESTSECRET", b"vnp_Amount=500000&vnp_TxnRef=1", hashlib.sha512).hexdigest()
        self.assertEqual(self.signer.sign(params), expected)

    def test_signed_query_appends_hash(self):
        query = self.signer.signed_query({"vnp_TxnRef": "1"})
        self.assertTrue(query.startswith("vnp_TxnRef=1&vnp_SecureHash="))

    def test_missing_secret_refuses_to_sign(self):
        with self.assertRaises(ValueError):
            VnpaySigner("").sign({"vnp_TxnRef": "1"})


class MomoSignerTests(SimpleTestCase):
    def test_fixed_order_with_empty_placeholders(self):
        signer = MomoSigner("momo-secret", "momo-access", MomoSigner.CREATE_FIELDS)
        params = {
            "requestType": "payWithMethod",
            "orderId": "PAY5",
            "amount": 500000,
            "partnerCode": "MOMOTEST",
            "requestId": "REQ1",
            "orderInfo": "Payment for appointment 3",
            "redirectUrl": "http://r",
            "ipnUrl": "http://i",
            "extraData": "",
        }
        self.assertEqual(
            signer.canonicalize(params),
            "accessKey=momo-access&amount=500000&extraData=&ipnUrl=http://i&orderId=PAY5"
            "&orderInfo=Payment for appointment 3&partnerCode=MOMOTEST&redirectUrl=http://r"
            "&requestId=REQ1&requestType=payWithMethod",
        )

    def test_payload_access_key_is_ignored(self):
        signer = MomoSigner("momo-secret", "momo-access", MomoSigner.QUERY_FIELDS)
        a = signer.sign({"orderId": "PAY1", "partnerCode": "P", "requestId": "R"})
        b = signer.sign({"orderId": "PAY1", "partnerCode": "P", "requestId": "R", "accessKey": "forged"})
        self.assertEqual(a, b)

    def test_sign_is_hmac_sha256(self):
        signer = MomoSigner("momo-secret", "k", ("accessKey", "orderId"))
        self.assertEqual(signer.sign({"orderId": "PAY1"}), hmac_hex("momo-secret", "accessKey=k&orderId=PAY1"))


class GetSignerTests(SimpleTestCase):
    def test_unknown_gateway(self):
        with self.assertRaises(ValueError):
            get_signer("paypal")

    @override_settings(VNPAY={"SECRET_KEY": "abc"})
    def test_reads_secret_from_settings(self):
        self.assertEqual(get_signer("vnpay").secret_key, "abc")


class CallbackVerifierTests(SimpleTestCase):
    def setUp(self):
        self.signer = VnpaySigner("VNPAYTESTSECRET")
        self.verifier = CallbackVerifier(self.signer)
        self.params = {
            "vnp_Amount": "50000000",
            "vnp_TxnRef": "42",
            "vnp_ResponseCode": "00",
            "vnp_TransactionNo": "14000001",
            "vnp_BankCode": "",
        }
        self.params["vnp_SecureHash"] = self.signer.sign(self.params)

    def test_valid_signature_verifies_and_strips_signature(self):
        result = self.verifier.verify(self.params)
        self.assertTrue(result)
        self.assertNotIn("vnp_SecureHash", result.params)
        self.assertEqual(result.params["vnp_TxnRef"], "42")

    def test_signature_compare_is_case_insensitive(self):
        params = dict(self.params, vnp_SecureHash=self.params["vnp_SecureHash"].upper())
        self.assertTrue(self.verifier.verify(params))

    def test_hash_type_field_is_not_signed(self):
        params = dict(self.params, vnp_SecureHashType="HmacSHA512")
        self.assertTrue(self.verifier.verify(params))

    def test_flipped_signature_char_is_rejected(self):
        params = dict(self.params, vnp_SecureHash=_flip_first_char(self.params["vnp_SecureHash"]))
        with self.assertLogs("payments.security", level="WARNING"):
            self.assertFalse(self.verifier.verify(params))

    def test_changed_amount_is_rejected(self):
        params = dict(self.params, vnp_Amount="100")
        with self.assertLogs("payments.security", level="WARNING"):
            self.assertFalse(self.verifier.verify(params))

    def test_missing_signature_is_rejected(self):
        params = dict(self.params)
        del params["vnp_SecureHash"]
        with self.assertLogs("payments.security", level="WARNING"):
            self.assertFalse(self.verifier.verify(params))

    def test_missing_secret_fails_closed(self):
        verifier = CallbackVerifier(VnpaySigner(""))
        with self.assertLogs("payments.security", level="ERROR"):
            self.assertFalse(verifier.verify(self.params))

    def test_require_raises_on_bad_signature(self):
        self.assertNotIn("vnp_SecureHash", self.verifier.require(self.params))
        with self.assertLogs("payments.security", level="WARNING"), self.assertRaises(VerificationError):
            self.verifier.require(dict(self.params, vnp_TxnRef="43"))

    def test_momo_round_trip_and_tamper(self):
        signer = MomoSigner("momo-secret", "momo-access")
        body = {
            "partnerCode": "MOMOTEST", "orderId": "PAY9", "requestId": "REQ9", "amount": 500000,
            "orderInfo": "x", "orderType": "momo_wallet", "transId": 4088878653, "resultCode": 0,
            "message": "Successful.", "payType": "qr", "responseTime": 1721720663942, "extraData": "",
        }
        body["signature"] = signer.sign(body)
        verifier = CallbackVerifier(signer)
        self.assertTrue(verifier.verify(body))
        with self.assertLogs("payments.security", level="WARNING"):
            self.assertFalse(verifier.verify(dict(body, amount=1000)))
