from django.contrib import admin
from .models import Payment

@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    """Ledger rows change only through PaymentStateMachine."""
    list_display = ("id", "appointment_id", "method", "amount", "currency", "status", "transaction_id", "created_at", "resolved_at")
    search_fields = ("transaction_id", "appointment_id", "patient_id", "status_reason")
    list_filter = ("status", "method", "currency", "created_at")
    readonly_fields = [f.name for f in Payment._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
