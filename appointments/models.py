from django.db import models


class Appointment(models.Model):
    """Scheduling lives elsewhere; payments only read the fields below."""

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        CONFIRMED = "CONFIRMED", "Confirmed"
        COMPLETED = "COMPLETED", "Completed"
        CANCELLED = "CANCELLED", "Cancelled"

    patient_id = models.BigIntegerField(db_index=True)
    doctor_id = models.BigIntegerField(db_index=True)
    patient_email = models.EmailField(blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    @property
    def is_confirmed(self) -> bool:
        return self.status == self.Status.CONFIRMED

    def __str__(self):
        return f"Appointment #{self.pk} ({self.status})"
