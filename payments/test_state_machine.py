import threading
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import Mock

from django.core import mail
from django.db import IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings

from appointments.models import Appointment

from .exceptions import (
    ConflictError,
    InsufficientBalanceError,
    InvalidStateError,
    ValidationError,
)
from .models import Payment
from .services import PaymentStateMachine

FIXED_NOW = datetime(2024, 5, 1, 8, 0, tzinfo=dt_timezone.utc)


def make_appointment(fee="500000", status=Appointment.Status.CONFIRMED, **kwargs):
    defaults = {"patient_id": 11, "doctor_id": 22, "patient_email": "patient@example.com"}
    defaults.update(kwargs)
    return Appointment.objects.create(fee=Decimal(fee), status=status, **defaults)


class CreateChargeTests(TestCase):
    def setUp(self):
        self.machine = PaymentStateMachine(clock=lambda: FIXED_NOW, notify=Mock())
        self.appointment = make_appointment()

    def test_creates_pending_row_with_fee_as_default_amount(self):
        payment = self.machine.create_charge(self.appointment.pk, None, Payment.Method.VNPAY)
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertEqual(payment.amount, Decimal("500000.00"))
        self.assertEqual(payment.patient_id, 11)
        self.assertEqual(payment.doctor_id, 22)
        self.assertIsNone(payment.transaction_id)
        self.assertEqual(payment.created_at, FIXED_NOW)

    def test_second_charge_while_pending_conflicts(self):
        first = self.machine.create_charge(self.appointment.pk, "500000", Payment.Method.VNPAY)
        with self.assertRaises(ConflictError) as cm:
            self.machine.create_charge(self.appointment.pk, "500000", Payment.Method.MOMO)
        self.assertEqual(cm.exception.context["payment_id"], first.pk)
        self.assertEqual(Payment.objects.count(), 1)

    def test_new_charge_allowed_once_previous_failed(self):
        first = self.machine.create_charge(self.appointment.pk, "500000", Payment.Method.VNPAY)
        self.machine.mark_failed(first.pk, "cancelled")
        second = self.machine.create_charge(self.appointment.pk, "500000", Payment.Method.VNPAY)
        self.assertNotEqual(first.pk, second.pk)

    def test_unconfirmed_appointment_is_rejected(self):
        pending = make_appointment(status=Appointment.Status.PENDING)
        with self.assertRaises(ValidationError):
            self.machine.create_charge(pending.pk, "500000", Payment.Method.VNPAY)

    def test_unknown_appointment_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.machine.create_charge(999999, "500000", Payment.Method.VNPAY)

    def test_invalid_amounts_are_rejected(self):
        for amount in ("0", "-5", "abc", "NaN"):
            with self.subTest(amount=amount), self.assertRaises(ValidationError):
                self.machine.create_charge(self.appointment.pk, amount, Payment.Method.CARD)
        self.assertFalse(Payment.objects.exists())

    def test_unknown_method_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.machine.create_charge(self.appointment.pk, "500000", "BITCOIN")

    def test_gateway_amount_check_runs_before_insert(self):
        veto = Mock(side_effect=ValidationError("too small"))
        with self.assertRaises(ValidationError):
            self.machine.create_charge(self.appointment.pk, "100", Payment.Method.VNPAY, validate_amount=veto)
        veto.assert_called_once_with(Decimal("100.00"))
        self.assertFalse(Payment.objects.exists())


class TerminalTransitionTests(TestCase):
    def setUp(self):
        self.notify = Mock()
        self.machine = PaymentStateMachine(clock=lambda: FIXED_NOW, notify=self.notify)
        self.appointment = make_appointment()
        self.payment = self.machine.create_charge(self.appointment.pk, "500000", Payment.Method.VNPAY)

    def test_complete_sets_transaction_and_resolved_at(self):
        transition = self.machine.mark_completed(self.payment.pk, "TXN1", {"vnp_ResponseCode": "00"})
        self.assertTrue(transition.changed)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.payment.transaction_id, "TXN1")
        self.assertEqual(self.payment.resolved_at, FIXED_NOW)
        self.assertEqual(self.payment.gateway_payload, {"vnp_ResponseCode": "00"})

    def test_replayed_completion_is_a_no_op(self):
        self.machine.mark_completed(self.payment.pk, "TXN1")
        transition = self.machine.mark_completed(self.payment.pk, "TXN1")
        self.assertFalse(transition.changed)
        self.assertEqual(Payment.objects.filter(status=Payment.Status.COMPLETED).count(), 1)

    def test_completion_with_other_transaction_id_conflicts(self):
        self.machine.mark_completed(self.payment.pk, "TXN1")
        with self.assertRaises(InvalidStateError):
            self.machine.mark_completed(self.payment.pk, "TXN2")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.transaction_id, "TXN1")

    def test_failed_row_is_never_completed(self):
        self.machine.mark_failed(self.payment.pk, "declined")
        with self.assertRaises(InvalidStateError) as cm:
            self.machine.mark_completed(self.payment.pk, "TXN1")
        self.assertEqual(cm.exception.context["current_status"], Payment.Status.FAILED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)
        self.assertIsNone(self.payment.transaction_id)

    def test_completed_row_is_never_failed(self):
        self.machine.mark_completed(self.payment.pk, "TXN1")
        with self.assertRaises(InvalidStateError):
            self.machine.mark_failed(self.payment.pk, "timeout")

    def test_repeated_failure_is_a_no_op(self):
        self.assertTrue(self.machine.mark_failed(self.payment.pk, "declined").changed)
        self.assertFalse(self.machine.mark_failed(self.payment.pk, "timeout").changed)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status_reason, "declined")

    def test_completion_requires_transaction_id(self):
        with self.assertRaises(ValidationError):
            self.machine.mark_completed(self.payment.pk, "  ")

    def test_notifications_are_sent_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.machine.mark_completed(self.payment.pk, "TXN1")
            self.machine.mark_completed(self.payment.pk, "TXN1")
        self.assertEqual(len(callbacks), 1)
        payment, message = self.notify.call_args.args
        self.assertEqual(payment.pk, self.payment.pk)
        self.assertIn("processed successfully", message)

    def test_default_sink_emails_the_patient(self):
        machine = PaymentStateMachine(clock=lambda: FIXED_NOW)
        with self.captureOnCommitCallbacks(execute=True):
            machine.mark_failed(self.payment.pk, "Card declined")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["patient@example.com"])
        self.assertIn("Card declined", mail.outbox[0].body)

    def test_sink_is_configurable(self):
        machine = PaymentStateMachine()
        with override_settings(PAYMENTS={"NOTIFICATION_SINK": "payments.emails.log_sink"}):
            with self.assertLogs("payments.emails", level="INFO") as cm, self.captureOnCommitCallbacks(execute=True):
                machine.mark_completed(self.payment.pk, "TXN1")
        self.assertIn("processed successfully", cm.output[0])
        self.assertEqual(len(mail.outbox), 0)

    def test_broken_sink_does_not_break_the_transition(self):
        machine = PaymentStateMachine()
        with override_settings(PAYMENTS={"NOTIFICATION_SINK": "payments.emails.no_such_sink"}):
            with self.assertLogs("payments.notifications", level="ERROR"), self.captureOnCommitCallbacks(execute=True):
                machine.mark_completed(self.payment.pk, "TXN1")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.COMPLETED)

    def test_database_rejects_completed_without_transaction_id(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            Payment.objects.filter(pk=self.payment.pk).update(status=Payment.Status.COMPLETED)


class RefundTests(TestCase):
    def setUp(self):
        self.notify = Mock()
        self.machine = PaymentStateMachine(notify=self.notify)
        self.appointment = make_appointment()
        self.charge = self.machine.create_charge(self.appointment.pk, "500000", Payment.Method.VNPAY)
        self.machine.mark_completed(self.charge.pk, "TXN1")

    def test_full_refund_appends_negative_completed_row(self):
        refund = self.machine.refund(self.charge.pk, "Doctor unavailable")
        self.assertEqual(refund.amount, Decimal("-500000.00"))
        self.assertEqual(refund.status, Payment.Status.COMPLETED)
        self.assertEqual(refund.refund_of_id, self.charge.pk)
        self.assertEqual(refund.status_reason, "Doctor unavailable")
        self.assertTrue(refund.transaction_id.startswith("RF"))
        self.assertEqual(refund.method, Payment.Method.VNPAY)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Payment.Status.COMPLETED)
        self.assertEqual(Payment.objects.captured_balance(self.appointment.pk), Decimal("0"))

    def test_refunds_never_exceed_captured_amount(self):
        self.machine.refund(self.charge.pk, "partial", amount="300000")
        with self.assertRaises(InsufficientBalanceError):
            self.machine.refund(self.charge.pk, "again", amount="300000")
        self.machine.refund(self.charge.pk, "rest", amount="200000")
        with self.assertRaises(InsufficientBalanceError):
            self.machine.refund(self.charge.pk, "one more", amount="1")
        self.assertEqual(self.charge.refunds.count(), 2)
        self.assertEqual(Payment.objects.captured_balance(self.appointment.pk), Decimal("0"))

    def test_only_completed_charges_are_refundable(self):
        other = make_appointment()
        pending = self.machine.create_charge(other.pk, "500000", Payment.Method.MOMO)
        with self.assertRaises(InvalidStateError):
            self.machine.refund(pending.pk, "nope")

    def test_refund_rows_are_not_refundable(self):
        refund = self.machine.refund(self.charge.pk, "partial", amount="100000")
        with self.assertRaises(InvalidStateError):
            self.machine.refund(refund.pk, "refund of refund")

    def test_refund_notification(self):
        with self.captureOnCommitCallbacks(execute=True):
            refund = self.machine.refund(self.charge.pk, "partial", amount="100000")
        payment, message = self.notify.call_args.args
        self.assertEqual(payment.pk, refund.pk)
        self.assertEqual(message, f"Refund of 100,000 VND for appointment #{self.appointment.pk} has been processed.")


class ConcurrentTransitionTests(TransactionTestCase):
    def test_racing_complete_and_fail_resolve_exactly_once(self):
        machine = PaymentStateMachine(notify=Mock())
        payment = machine.create_charge(make_appointment().pk, "500000", Payment.Method.VNPAY)
        barrier = threading.Barrier(2)
        outcomes = {}

        def run(name, transition):
            try:
                barrier.wait(timeout=5)
                outcomes[name] = transition().changed
            except InvalidStateError as e:
                outcomes[name] = e
            finally:
                connection.close()

        threads = [
            threading.Thread(target=run, args=("complete", lambda: machine.mark_completed(payment.pk, "TXN1"))),
            threading.Thread(target=run, args=("fail", lambda: machine.mark_failed(payment.pk, "timeout"))),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(set(outcomes), {"complete", "fail"})
        errors = [v for v in outcomes.values() if isinstance(v, InvalidStateError)]
        self.assertEqual(len(errors), 1)
        payment.refresh_from_db()
        if outcomes["complete"] is True:
            self.assertEqual(payment.status, Payment.Status.COMPLETED)
            self.assertEqual(payment.transaction_id, "TXN1")
        else:
            self.assertIs(outcomes["fail"], True)
            self.assertEqual(payment.status, Payment.Status.FAILED)
            self.assertIsNone(payment.transaction_id)
