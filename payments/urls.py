from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("<str:gateway>/create", views.create_payment_view, name="create"),
    path("<str:gateway>/return", views.return_view, name="return"),
    # IPN: https://<domain>/payments/vnpay/notify, https://<domain>/payments/momo/notify
    path("<str:gateway>/notify", views.notify_view, name="notify"),
    path("<int:payment_id>/status", views.payment_status_view, name="status"),
    path("<int:payment_id>/cancel", views.cancel_payment_view, name="cancel"),
    path("<int:payment_id>/refund", views.refund_view, name="refund"),
    path("<int:payment_id>/check-status", views.check_status_view, name="check_status"),
    path("patient/<int:patient_id>", views.patient_payments_view, name="patient_payments"),
    path("doctor/<int:doctor_id>", views.doctor_payments_view, name="doctor_payments"),
    path("admin/statistics", views.statistics_view, name="statistics"),
    path("admin/stale-pending", views.stale_pending_view, name="stale_pending"),
    path("admin/failed", views.failed_payments_view, name="failed"),
    path("admin/method-stats", views.method_stats_view, name="method_stats"),
]
