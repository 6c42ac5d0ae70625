import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("appointment_id", models.BigIntegerField(db_index=True)),
                ("patient_id", models.BigIntegerField(db_index=True)),
                ("doctor_id", models.BigIntegerField(db_index=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="VND", max_length=8)),
                (
                    "method",
                    models.CharField(
                        choices=[("CASH", "Cash"), ("CARD", "Card"), ("VNPAY", "VNPay"), ("MOMO", "MoMo")],
                        max_length=16,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("PENDING", "Pending"), ("COMPLETED", "Completed"), ("FAILED", "Failed")],
                        db_index=True,
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("transaction_id", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("status_reason", models.CharField(blank=True, default="", max_length=255)),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("gateway_payload", models.JSONField(blank=True, null=True)),
                (
                    "created_at",
                    models.DateTimeField(db_index=True, default=django.utils.timezone.now, editable=False),
                ),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "refund_of",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="payments.payment",
                    ),
                ),
            ],
            options={
                "ordering": ("-created_at",),
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount", 0), _negated=True), name="payment_amount_nonzero"),
                    models.UniqueConstraint(
                        condition=models.Q(("amount__gt", 0), ("status", "PENDING")),
                        fields=("appointment_id",),
                        name="one_pending_charge_per_appointment",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "COMPLETED"), ("transaction_id__isnull", False)),
                            models.Q(models.Q(("status", "COMPLETED"), _negated=True), ("transaction_id__isnull", True)),
                            _connector="OR",
                        ),
                        name="transaction_id_iff_completed",
                    ),
                ],
            },
        ),
    ]
