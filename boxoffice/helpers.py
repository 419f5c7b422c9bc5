import re
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I
)
ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {"XOF", "XAF", "JPY", "KRW", "GNF", "RWF", "UGX"}


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return EMAIL_RE.match(email.strip()) is not None


def is_uuid(value: str) -> bool:
    return UUID_RE.match(value) is not None


def is_valid_id(value) -> bool:
    return isinstance(value, str) and ID_RE.match(value) is not None


def normalize_email(email: Optional[str]) -> Optional[str]:
    trimmed = (email or "").strip()
    return trimmed.lower() if "@" in trimmed else None


def sanitize_phone(value: Optional[str]) -> Optional[str]:
    """Keep digits and a single leading '+'; None when nothing is left."""
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    lead = "+" if trimmed.startswith("+") else ""
    digits = re.sub(r"\D", "", trimmed)
    return (lead + digits) if digits else None


def sanitize_provider(value: Optional[str]) -> Optional[str]:
    trimmed = (value or "").strip()
    return trimmed.lower() if trimmed else None


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return ""
    return f"{email.split('@')[0][:3]}***@***"


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    keep = phone[-4:]
    return "*" * max(0, len(phone) - 4) + keep


def new_idempotency_key() -> str:
    # uuid4 draws from os.urandom
    return f"payment-{uuid.uuid4()}"


def new_ticket_code() -> str:
    return f"TCK-{uuid.uuid4().hex[:10].upper()}"


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"),
                                        rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
