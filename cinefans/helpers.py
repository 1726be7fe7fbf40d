import time
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ----------------------------
# Time / ids
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return EMAIL_RE.match(email.strip()) is not None


# ----------------------------
# Money (integer cents everywhere)
# ----------------------------
def percent_of(amount: int, percentage: int) -> int:
    # round half up
    return (amount * percentage + 50) // 100


def to_units(cents: int) -> float:
    return round(int(cents) / 100, 2)


def to_cents(amount) -> int:
    return int(round(float(amount or 0) * 100))


def format_cents(cents: int) -> str:
    return f"{int(cents) / 100:.2f}"
