"""Human-facing reference numbers for quotes, bookings and confirmations."""
import secrets
import string
from datetime import datetime, timezone

_ALPHABET = string.ascii_uppercase + string.digits


def _token(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def quote_reference() -> str:
    return f"QT-{_token(8)}"


def booking_reference(now: datetime | None = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    return f"BK-{year}-{_token(6)}"


def confirmation_number() -> str:
    return f"CNF{_token(8)}"
