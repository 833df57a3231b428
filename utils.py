import re
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from flask import request
from flask_login import current_user

CENT = Decimal("0.01")


def validate_email(email):
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def validate_phone(phone):
    return re.match(r'^\+?\d{9,15}$', phone) is not None


def safe_decimal(value, default=Decimal("0.00")) -> Decimal:
    """Convert to Decimal quantized to cents."""
    try:
        if value is None:
            return default
        if isinstance(value, float):
            value = str(value)
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        return default


def generate_referral_code(exists, length=8):
    """Random upper-case alphanumeric code; `exists(code)` says whether it is taken."""
    chars = string.ascii_uppercase + string.digits
    for _ in range(10):
        code = ''.join(secrets.choice(chars) for _ in range(length))
        if not exists(code):
            return code
    # Widen the code space rather than risk a collision
    return ''.join(secrets.choice(chars) for _ in range(length + 4))


def get_client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


def authenticate():
    """Return the logged-in ACTIVE user, or None."""
    if current_user.is_authenticated and current_user.is_active:
        return current_user._get_current_object()
    return None


def current_user_id():
    """Id of the session's user whatever their status; None when anonymous."""
    user_id = current_user.get_id()
    return int(user_id) if user_id is not None else None


# ---------------------------------------------------------------------------
# Time windows (server-local clock)
# ---------------------------------------------------------------------------

def day_window(now=None):
    now = now or datetime.now()
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def month_window(now=None):
    now = now or datetime.now()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end
