import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _from_email():
    return getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)


def _operator_recipients() -> List[str]:
    # Comma-separated list via PAYMENTS["OPERATOR_EMAILS"]; fall back to ADMINS / DEFAULT_FROM_EMAIL
    raw = settings.PAYMENTS.get("OPERATOR_EMAILS") or ""
    if not raw:
        admins = [email for _, email in getattr(settings, "ADMINS", [])]
        raw = ",".join(admins) or (getattr(settings, "DEFAULT_FROM_EMAIL", "") or "")
    emails = [e.strip() for e in raw.split(",") if e and e.strip()]
    # Deduplicate while preserving order
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def _patient_email(payment) -> str:
    from appointments.models import Appointment

    appt = Appointment.objects.filter(pk=payment.appointment_id).only("patient_email").first()
    return appt.patient_email if appt else ""


def email_sink(payment, message: str) -> None:
    """Default notification sink: mail the patient on file for the appointment."""
    recipient = _patient_email(payment)
    if not recipient:
        logger.info("No patient email for appointment=%s; notice not sent", payment.appointment_id)
        return
    context = {"payment": payment, "message": message}
    subject = f"Payment update for appointment #{payment.appointment_id}"
    text = render_to_string("payments/emails/payment_notice.txt", context)
    msg = EmailMultiAlternatives(subject, text, _from_email(), [recipient])
    msg.send(fail_silently=_fail_silently())


def log_sink(payment, message: str) -> None:
    logger.info("Payment notice payment=%s: %s", payment.pk, message)


def send_operator_alert(subject: str, message: str) -> None:
    recipients = _operator_recipients()
    if not recipients:
        return
    text = render_to_string("payments/emails/operator_alert.txt", {"subject": subject, "message": message})
    msg = EmailMultiAlternatives(f"[payments] {subject}", text, _from_email(), recipients)
    msg.send(fail_silently=_fail_silently())
