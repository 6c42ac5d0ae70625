"""The payment state machine: the only writer of ``Payment.status``.

PENDING -> COMPLETED | FAILED, exactly once. Every terminal transition is a
single conditional UPDATE filtered on ``status='PENDING'`` so concurrent
notifications and the reconciliation sweep cannot both win.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from appointments.models import Appointment

from . import notifications
from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidStateError,
    PaymentNotFound,
    ValidationError,
)
from .models import Payment
from .utils import generate_refund_id, parse_amount

logger = logging.getLogger(__name__)


class Transition(NamedTuple):
    payment: Payment
    changed: bool


class PaymentStateMachine:
    def __init__(self, clock=timezone.now, notify=notifications.notify):
        self.clock = clock
        self.notify = notify

    # ---------- creation ----------
    def create_charge(self, appointment_id, amount, method, description: str = "", validate_amount=None) -> Payment:
        """Open a PENDING charge. ``validate_amount`` lets a gateway veto the amount."""
        if method not in Payment.Method.values:
            raise ValidationError(f"Unsupported payment method: {method}")
        try:
            appointment_id = int(appointment_id)
        except (TypeError, ValueError):
            raise ValidationError("appointment_id must be an integer")

        with transaction.atomic():
            appointment = Appointment.objects.select_for_update().filter(pk=appointment_id).first()
            if appointment is None:
                raise ValidationError("Appointment not found", appointment_id=appointment_id)
            if not appointment.is_confirmed:
                raise ValidationError("Only confirmed appointments can be paid", appointment_id=appointment_id)

            if amount in (None, ""):
                amount = appointment.fee
            try:
                amount = parse_amount(amount)
            except (InvalidOperation, TypeError, ValueError):
                raise ValidationError("Invalid amount")
            if amount <= 0:
                raise ValidationError("Amount must be > 0")
            if validate_amount is not None:
                validate_amount(amount)

            outstanding = Payment.objects.outstanding_charges(appointment_id).first()
            if outstanding is not None:
                raise ConflictError(
                    f"Payment #{outstanding.pk} is still pending for this appointment",
                    payment_id=outstanding.pk,
                )
            try:
                with transaction.atomic():
                    payment = Payment.objects.create(
                        appointment_id=appointment.pk,
                        patient_id=appointment.patient_id,
                        doctor_id=appointment.doctor_id,
                        amount=amount,
                        method=method,
                        description=(description or "")[:255],
                        status=Payment.Status.PENDING,
                        created_at=self.clock(),
                    )
            except IntegrityError:
                # lost a race against another create for the same appointment
                raise ConflictError("A pending payment already exists for this appointment")

        logger.info("Created %s charge payment=%s appointment=%s amount=%s",
                    method, payment.pk, appointment_id, amount)
        return payment

    # ---------- terminal transitions ----------
    def _conditional_update(self, payment_id, **fields) -> int:
        return Payment.objects.filter(pk=payment_id, status=Payment.Status.PENDING).update(
            resolved_at=self.clock(), **fields
        )

    def _load(self, payment_id) -> Payment:
        payment = Payment.objects.filter(pk=payment_id).first()
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    def mark_completed(self, payment_id, transaction_id: str, payload: Optional[dict] = None) -> Transition:
        transaction_id = (transaction_id or "").strip()
        if not transaction_id:
            raise ValidationError("transaction_id is required to complete a payment")

        updated = self._conditional_update(
            payment_id,
            status=Payment.Status.COMPLETED,
            transaction_id=transaction_id,
            gateway_payload=payload,
        )
        payment = self._load(payment_id)
        if updated:
            logger.info("Payment %s COMPLETED (txn=%s)", payment_id, transaction_id)
            transaction.on_commit(lambda: self.notify(payment, notifications.success_message(payment)))
            return Transition(payment, True)

        if payment.status == Payment.Status.COMPLETED and payment.transaction_id == transaction_id:
            logger.info("Payment %s already COMPLETED with txn=%s; replay ignored", payment_id, transaction_id)
            return Transition(payment, False)
        raise InvalidStateError(
            f"Payment {payment_id} is {payment.status}"
            + (f" with transaction {payment.transaction_id}" if payment.transaction_id else "")
            + f"; cannot complete with transaction {transaction_id}",
            payment_id=payment_id,
            current_status=payment.status,
            requested=Payment.Status.COMPLETED,
        )

    def mark_failed(self, payment_id, reason: str, payload: Optional[dict] = None) -> Transition:
        reason = (reason or "unspecified")[:255]
        updated = self._conditional_update(
            payment_id,
            status=Payment.Status.FAILED,
            status_reason=reason,
            gateway_payload=payload,
        )
        payment = self._load(payment_id)
        if updated:
            logger.info("Payment %s FAILED: %s", payment_id, reason)
            transaction.on_commit(lambda: self.notify(payment, notifications.failure_message(payment, reason)))
            return Transition(payment, True)

        if payment.status == Payment.Status.FAILED:
            return Transition(payment, False)
        raise InvalidStateError(
            f"Payment {payment_id} is {payment.status}; cannot mark it FAILED",
            payment_id=payment_id,
            current_status=payment.status,
            requested=Payment.Status.FAILED,
        )

    # ---------- refunds ----------
    def refund(self, payment_id, reason: str, amount=None) -> Payment:
        with transaction.atomic():
            original = self._load(payment_id)
            # appointment first, then payment: same lock order as create_charge
            Appointment.objects.select_for_update().filter(pk=original.appointment_id).first()
            original = Payment.objects.select_for_update().get(pk=payment_id)

            if original.status != Payment.Status.COMPLETED or original.amount <= 0:
                raise InvalidStateError(
                    "Only completed charges can be refunded",
                    payment_id=payment_id,
                    current_status=original.status,
                )

            if amount in (None, ""):
                amount = original.amount
            try:
                amount = parse_amount(amount)
            except (InvalidOperation, TypeError, ValueError):
                raise ValidationError("Invalid refund amount")
            if amount <= 0:
                raise ValidationError("Refund amount must be > 0")

            already_refunded = -original.refunds.completed().total_amount()
            remaining = original.amount - already_refunded
            balance = Payment.objects.captured_balance(original.appointment_id)
            available = min(remaining, balance)
            if amount > available:
                raise InsufficientBalanceError(
                    f"Refund of {amount} exceeds the refundable balance {max(available, Decimal('0'))}",
                    payment_id=payment_id,
                )

            refund = Payment.objects.create(
                appointment_id=original.appointment_id,
                patient_id=original.patient_id,
                doctor_id=original.doctor_id,
                amount=-amount,
                currency=original.currency,
                method=original.method,
                status=Payment.Status.COMPLETED,
                transaction_id=generate_refund_id(),
                status_reason=(reason or "")[:255],
                refund_of=original,
                created_at=self.clock(),
                resolved_at=self.clock(),
            )
            transaction.on_commit(lambda: self.notify(refund, notifications.refund_message(refund)))

        logger.info("Refund payment=%s of original=%s amount=%s reason=%s",
                    refund.pk, payment_id, amount, reason)
        return refund
