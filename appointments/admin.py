from django.contrib import admin

from .models import Appointment


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ("id", "patient_id", "doctor_id", "status", "fee", "created_at")
    list_filter = ("status",)
    search_fields = ("id", "patient_email")
