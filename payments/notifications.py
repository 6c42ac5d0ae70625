"""Outbound messages: patient-facing notices and the operator channel."""

import logging

from django.conf import settings
from django.utils.module_loading import import_string

from .utils import format_money

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payments.security")


def _sink():
    path = settings.PAYMENTS.get("NOTIFICATION_SINK") or "payments.emails.email_sink"
    return import_string(path)


def notify(payment, message: str) -> None:
    """Hand ``message`` to the configured sink; a broken sink never breaks a payment."""
    try:
        _sink()(payment, message)
    except Exception:
        logger.exception("Notification sink failed for payment=%s", getattr(payment, "pk", None))


def alert_operators(subject: str, message: str) -> None:
    logger.error("%s: %s", subject, message)
    try:
        from .emails import send_operator_alert

        send_operator_alert(subject, message)
    except Exception:
        logger.exception("Failed to alert operators: %s", subject)


def report_anomaly(payment_id, error, source: str) -> None:
    """Stored terminal state disagrees with what a gateway or sweep reported."""
    security_logger.error("State anomaly on payment=%s from %s: %s", payment_id, source, error)
    alert_operators(
        f"Payment #{payment_id} state anomaly",
        f"Source: {source}\nDetail: {error}\nContext: {getattr(error, 'context', {})}",
    )


def success_message(payment) -> str:
    return (
        f"Payment of {format_money(payment.amount, payment.currency)} for appointment "
        f"#{payment.appointment_id} was processed successfully."
    )


def failure_message(payment, reason: str) -> str:
    return (
        f"Payment of {format_money(payment.amount, payment.currency)} for appointment "
        f"#{payment.appointment_id} failed. Reason: {reason}. Please try again."
    )


def refund_message(refund) -> str:
    return (
        f"Refund of {format_money(refund.amount, refund.currency)} for appointment "
        f"#{refund.appointment_id} has been processed."
    )
