from decimal import Decimal

from django.db import models
from django.db.models import Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone


def money_sum(field="amount"):
    """``Sum`` of a money column, zero when empty, with the column's own scale."""
    output = models.DecimalField(max_digits=12, decimal_places=2)
    return Coalesce(Sum(field, output_field=output), Value(Decimal("0")), output_field=output)


class PaymentQuerySet(models.QuerySet):
    def for_appointment(self, appointment_id):
        return self.filter(appointment_id=appointment_id)

    def outstanding_charges(self, appointment_id):
        return self.filter(appointment_id=appointment_id, status=Payment.Status.PENDING, amount__gt=0)

    def stale_pending(self, cutoff):
        return self.filter(status=Payment.Status.PENDING, created_at__lt=cutoff).order_by("created_at")

    def completed(self):
        return self.filter(status=Payment.Status.COMPLETED)

    def refunds(self):
        return self.filter(amount__lt=0)

    def total_amount(self) -> Decimal:
        return self.aggregate(total=money_sum())["total"]

    def captured_balance(self, appointment_id) -> Decimal:
        """Net money captured for an appointment: completed charges minus refunds."""
        return self.for_appointment(appointment_id).completed().total_amount()


class Payment(models.Model):
    """One row per monetary event.

    Rows are append-only: ``status`` (with ``transaction_id``, ``status_reason`` and
    ``resolved_at`` written in the same statement) changes once, from PENDING to a
    terminal state, and only through ``payments.services.PaymentStateMachine``.
    Refunds are new rows with a negative amount.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        COMPLETED = "COMPLETED", "Completed"
        FAILED = "FAILED", "Failed"

    class Method(models.TextChoices):
        CASH = "CASH", "Cash"
        CARD = "CARD", "Card"
        VNPAY = "VNPAY", "VNPay"
        MOMO = "MOMO", "MoMo"

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED)

    appointment_id = models.BigIntegerField(db_index=True)
    patient_id = models.BigIntegerField(db_index=True)
    doctor_id = models.BigIntegerField(db_index=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="VND")
    method = models.CharField(max_length=16, choices=Method.choices)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)

    transaction_id = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    status_reason = models.CharField(max_length=255, blank=True, default="")
    description = models.CharField(max_length=255, blank=True, default="")
    refund_of = models.ForeignKey(
        "self", null=True, blank=True, on_delete=models.PROTECT, related_name="refunds"
    )
    gateway_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True, editable=False)
    resolved_at = models.DateTimeField(null=True, blank=True)

    objects = PaymentQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.CheckConstraint(condition=~Q(amount=0), name="payment_amount_nonzero"),
            models.UniqueConstraint(
                fields=["appointment_id"],
                condition=Q(status="PENDING", amount__gt=0),
                name="one_pending_charge_per_appointment",
            ),
            models.CheckConstraint(
                condition=Q(status="COMPLETED", transaction_id__isnull=False)
                | (~Q(status="COMPLETED") & Q(transaction_id__isnull=True)),
                name="transaction_id_iff_completed",
            ),
        ]

    @property
    def is_refund(self) -> bool:
        return self.amount < 0

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def amount_minor(self) -> int:
        """Amount in minor units (x100), as VNPay expects it."""
        return int(self.amount * 100)

    def __str__(self):
        return f"Payment #{self.pk} {self.method} {self.amount} ({self.status})"
