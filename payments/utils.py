import secrets
import string
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

ALNUM = string.ascii_uppercase + string.digits


def _stamp() -> str:
    return timezone.now().strftime("%y%m%d%H%M%S")


def generate_refund_id() -> str:
    # e.g. RF2410191230554K7Q2M
    rand = "".join(secrets.choice(ALNUM) for _ in range(6))
    return f"RF{_stamp()}{rand}"


def generate_request_id(prefix="REQ") -> str:
    return f"{prefix}{_stamp()}{secrets.randbelow(10_000):04d}"


def parse_amount(raw) -> Decimal:
    """Decimal with two places; raises ``InvalidOperation``/``TypeError`` on junk."""
    if raw is None or isinstance(raw, bool):
        raise InvalidOperation("amount is required")
    value = Decimal(str(raw).strip())
    if not value.is_finite():
        raise InvalidOperation("amount must be finite")
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_money(amount, currency="VND") -> str:
    return f"{abs(Decimal(amount)):,.0f} {currency}"
