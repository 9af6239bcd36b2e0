from __future__ import annotations

import base64
import calendar
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation


def safe_text(value: str | None) -> str:
    return (value or "").strip()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    return utc_now().isoformat()


def parse_iso_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except Exception:
        return utc_now() - timedelta(days=3650)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def add_one_month(value: datetime) -> datetime:
    # Jan 31 -> Feb 28/29: clamp to the last day of the next month.
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - (len(value) % 4)) % 4)
    return base64.urlsafe_b64decode(value + padding)


def parse_amount(value: str | int | float | Decimal | None) -> Decimal | None:
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def format_amount(value: Decimal | int | float) -> str:
    amount = Decimal(str(value))
    if amount == amount.to_integral_value():
        return str(int(amount))
    return f"{amount.quantize(Decimal('0.01'))}"
