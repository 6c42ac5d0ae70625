"""Typed outcomes for the payment flows.

Views map each class to a structured ``{"success": false, "message": ...}``
response; nothing here is meant to reach a gateway or a browser as a traceback.
"""


class PaymentError(Exception):
    http_status = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(PaymentError):
    """Bad input rejected before any gateway interaction."""
    http_status = 400


class PaymentNotFound(PaymentError):
    http_status = 404


class ConflictError(PaymentError):
    """An outstanding PENDING charge already exists for the appointment."""
    http_status = 409


class VerificationError(PaymentError):
    """Signature mismatch or malformed notification."""
    http_status = 400


class GatewayError(PaymentError):
    """Outbound call failed or the gateway answered with a non-success code."""
    http_status = 502

    def __init__(self, message: str = "", *, result_code=None, **context):
        super().__init__(message, **context)
        self.result_code = result_code


class InvalidStateError(PaymentError):
    """Requested transition contradicts the stored terminal state."""
    http_status = 409


class InsufficientBalanceError(PaymentError):
    http_status = 422
