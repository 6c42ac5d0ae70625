import json
import logging
from datetime import datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import wraps
from urllib.parse import urlencode

from django.conf import settings
from django.db.models import Count, Q
from django.http import JsonResponse
from django.shortcuts import redirect
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST, require_http_methods

from .exceptions import GatewayError, PaymentError, PaymentNotFound, ValidationError
from .integrations import CLIENTS, client_for_method, get_client
from .models import Payment, money_sum
from .reconciliation import ReconciliationScheduler
from .services import PaymentStateMachine
from .webhook import CallbackHandler, ack_body

logger = logging.getLogger(__name__)


def _json_body(request):
    if not request.body:
        return {}
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR") or "127.0.0.1"


def _error(message, status, **extra):
    return JsonResponse({"success": False, "message": message, **extra}, status=status)


def _payment_dict(p: Payment) -> dict:
    return {
        "id": p.pk,
        "appointment_id": p.appointment_id,
        "patient_id": p.patient_id,
        "doctor_id": p.doctor_id,
        "amount": p.amount,
        "currency": p.currency,
        "method": p.method,
        "status": p.status,
        "transaction_id": p.transaction_id,
        "status_reason": p.status_reason,
        "description": p.description,
        "refund_of": p.refund_of_id,
        "created_at": p.created_at,
        "resolved_at": p.resolved_at,
    }


def payment_api(view):
    """Translate ``PaymentError`` into the structured ``{success, message}`` body."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except PaymentError as e:
            extra = {"payment_id": e.context["payment_id"]} if "payment_id" in e.context else {}
            return _error(e.message or str(e), e.http_status, **extra)
    return wrapper


def login_required_json(view):
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _error("Authentication required", 401)
        return view(request, *args, **kwargs)
    return wrapper


def staff_required_json(view):
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _error("Authentication required", 401)
        if not request.user.is_staff:
            return _error("Staff only", 403)
        return view(request, *args, **kwargs)
    return wrapper


def _known_gateway(gateway):
    if gateway not in CLIENTS:
        raise PaymentNotFound(f"Unknown gateway: {gateway}")


def _get_payment(payment_id) -> Payment:
    payment = Payment.objects.filter(pk=payment_id).first()
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found")
    return payment


# ---------- payer flow ----------

@csrf_exempt
@require_POST
@login_required_json
@payment_api
def create_payment_view(request, gateway: str):
    _known_gateway(gateway)
    body = _json_body(request)
    if body is None:
        raise ValidationError("Invalid JSON body")
    if not body.get("appointment_id"):
        raise ValidationError("Missing fields: appointment_id")

    client = get_client(gateway)
    payment = PaymentStateMachine().create_charge(
        body["appointment_id"],
        body.get("amount"),
        client.method,
        description=str(body.get("description") or ""),
        validate_amount=client.validate_amount,
    )
    try:
        artifact = client.create_charge(payment, client_ip=_client_ip(request), description=payment.description)
    except GatewayError as e:
        # the row stays PENDING; the sweep or a cancel resolves it
        logger.warning("%s create failed for payment=%s: %s", gateway, payment.pk, e)
        return _error(e.message, e.http_status, payment_id=payment.pk)

    return JsonResponse({
        "success": True,
        "message": "Payment created",
        "payment_id": payment.pk,
        "pay_url": artifact.pay_url,
        "payment": _payment_dict(payment),
    }, status=201)


@require_GET
def return_view(request, gateway: str):
    if gateway not in CLIENTS:
        return _error(f"Unknown gateway: {gateway}", 404)
    result = CallbackHandler(gateway).handle_return(request.GET.dict())
    query = urlencode({
        "success": "true" if result.success else "false",
        "paymentId": result.payment_id or "",
        "message": result.message,
    })
    return redirect(f"{settings.PAYMENTS['RESULT_URL']}?{query}")


@csrf_exempt
@require_http_methods(["GET", "POST"])
def notify_view(request, gateway: str):
    if gateway not in CLIENTS:
        return _error(f"Unknown gateway: {gateway}", 404)
    if gateway == "momo":
        params = _json_body(request)
        if params is None:
            params = request.POST.dict()
    else:
        params = request.GET.dict() if request.method == "GET" else (request.POST.dict() or request.GET.dict())
    try:
        result = CallbackHandler(gateway).handle_notify(params)
    except Exception:
        # the gateway expects its own ack format even on failure
        logger.exception("%s notify crashed", gateway)
        return JsonResponse(ack_body(gateway, "error"))
    return JsonResponse(result.body)


@require_GET
@login_required_json
@payment_api
def payment_status_view(request, payment_id: int):
    return JsonResponse({"success": True, "payment": _payment_dict(_get_payment(payment_id))})


@require_GET
@login_required_json
def patient_payments_view(request, patient_id: int):
    items = [_payment_dict(p) for p in Payment.objects.filter(patient_id=patient_id)]
    return JsonResponse({"success": True, "count": len(items), "payments": items})


@require_GET
@staff_required_json
def doctor_payments_view(request, doctor_id: int):
    items = [_payment_dict(p) for p in Payment.objects.filter(doctor_id=doctor_id)]
    return JsonResponse({"success": True, "count": len(items), "payments": items})


@csrf_exempt
@require_POST
@login_required_json
@payment_api
def cancel_payment_view(request, payment_id: int):
    payment = _get_payment(payment_id)
    if payment.is_refund:
        raise ValidationError("Refund rows cannot be cancelled")
    transition = PaymentStateMachine().mark_failed(payment.pk, "Cancelled by user")
    return JsonResponse({
        "success": True,
        "message": "Payment cancelled" if transition.changed else "Payment was already cancelled",
        "payment": _payment_dict(transition.payment),
    })


# ---------- staff ----------

@csrf_exempt
@require_POST
@staff_required_json
@payment_api
def refund_view(request, payment_id: int):
    body = _json_body(request)
    if body is None:
        raise ValidationError("Invalid JSON body")
    reason = str(body.get("reason") or "").strip()
    if not reason:
        raise ValidationError("Missing fields: reason")
    refund = PaymentStateMachine().refund(payment_id, reason, amount=body.get("amount"))
    return JsonResponse({"success": True, "message": "Refund processed", "payment": _payment_dict(refund)}, status=201)


@csrf_exempt
@require_POST
@staff_required_json
@payment_api
def check_status_view(request, payment_id: int):
    payment = _get_payment(payment_id)
    client = client_for_method(payment.method)
    if client is None:
        raise ValidationError(f"{payment.method} payments have no gateway to query")
    if payment.is_terminal:
        return JsonResponse({"success": True, "message": "Payment already resolved", "payment": _payment_dict(payment)})

    status = client.query_status(payment)
    machine = PaymentStateMachine()
    if status.outcome == Payment.Status.COMPLETED:
        payment = machine.mark_completed(payment.pk, status.transaction_id, status.raw).payment
    elif status.outcome == Payment.Status.FAILED:
        payment = machine.mark_failed(payment.pk, f"Gateway reported failure: {status.message}", status.raw).payment
    return JsonResponse({
        "success": True,
        "message": status.message or f"Gateway status: {status.outcome}",
        "gateway_status": status.outcome,
        "payment": _payment_dict(payment),
    })


@require_GET
@staff_required_json
def statistics_view(request):
    charges = Payment.objects.filter(amount__gt=0)
    counts = charges.aggregate(
        total=Count("id"),
        pending=Count("id", filter=Q(status=Payment.Status.PENDING)),
        completed=Count("id", filter=Q(status=Payment.Status.COMPLETED)),
        failed=Count("id", filter=Q(status=Payment.Status.FAILED)),
    )
    refunds = Payment.objects.refunds().completed()
    by_method = {
        row["method"]: row["revenue"]
        for row in Payment.objects.completed().values("method").annotate(revenue=money_sum()).order_by("method")
    }
    success_rate = round(counts["completed"] * 100.0 / counts["total"], 2) if counts["total"] else 0.0
    return JsonResponse({
        "success": True,
        "total_payments": counts["total"],
        "pending": counts["pending"],
        "completed": counts["completed"],
        "failed": counts["failed"],
        "total_revenue": Payment.objects.completed().total_amount(),
        "revenue_by_method": by_method,
        "refund_count": refunds.count(),
        "refund_total": -refunds.total_amount(),
        "success_rate": success_rate,
    })


@require_GET
@staff_required_json
def stale_pending_view(request):
    threshold = ReconciliationScheduler().stale_after
    rows = Payment.objects.stale_pending(timezone.now() - threshold)
    items = [_payment_dict(p) for p in rows]
    return JsonResponse({"success": True, "count": len(items), "payments": items})


def _created_between(request) -> Q:
    """``from``/``to`` query dates (inclusive, default last 30 days) as a ``created_at`` filter."""
    today = timezone.localdate()
    try:
        start = parse_date(request.GET["from"]) if request.GET.get("from") else today - timedelta(days=30)
        end = parse_date(request.GET["to"]) if request.GET.get("to") else today
    except ValueError:
        start = end = None
    if start is None or end is None:
        raise ValidationError("Dates must be YYYY-MM-DD")
    tz = timezone.get_current_timezone()
    return Q(
        created_at__gte=datetime.combine(start, time.min, tzinfo=tz),
        created_at__lt=datetime.combine(end + timedelta(days=1), time.min, tzinfo=tz),
    )


@require_GET
@staff_required_json
@payment_api
def failed_payments_view(request):
    rows = Payment.objects.filter(_created_between(request), status=Payment.Status.FAILED)
    items = [_payment_dict(p) for p in rows]
    return JsonResponse({"success": True, "count": len(items), "payments": items})


def _percent(part, whole) -> Decimal:
    if not whole:
        return Decimal("0.00")
    return (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@require_GET
@staff_required_json
@payment_api
def method_stats_view(request):
    rows = (
        Payment.objects.completed()
        .filter(_created_between(request), amount__gt=0)
        .values("method")
        .annotate(count=Count("id"), revenue=money_sum())
        .order_by("method")
    )
    total_count = sum(row["count"] for row in rows)
    total_revenue = sum((row["revenue"] for row in rows), Decimal("0.00"))
    methods = {
        row["method"]: {
            "count": row["count"],
            "revenue": row["revenue"],
            "average_amount": (row["revenue"] / row["count"]).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            "revenue_percentage": _percent(row["revenue"], total_revenue),
            "count_percentage": _percent(row["count"], total_count),
        }
        for row in rows
    }
    return JsonResponse({
        "success": True,
        "methods": methods,
        "total_count": total_count,
        "total_revenue": total_revenue,
    })
