from datetime import datetime, timezone, date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC so comparisons work."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts: Any) -> datetime | None:
    if ts in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def to_timestamp(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(as_utc(value).timestamp())


def parse_datetime(value: Any) -> datetime | None:
    """Accept datetimes, unix timestamps and ISO-8601 strings (PayPal uses trailing 'Z')."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        return from_timestamp(value)
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return from_timestamp(s)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None


def to_minor_units(amount: Any) -> int:
    """19.99 -> 1999. Raises ValueError on junk so callers can report the field."""
    try:
        value = Decimal(str(amount))
    except Exception as exc:
        raise ValueError(f"invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid amount: {amount!r}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Any) -> str:
    return str((Decimal(int(amount)) / 100).quantize(Decimal("0.01")))


def jsonable(value: Any) -> Any:
    """Make provider payloads and snapshots safe for JSON columns."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "to_dict_recursive"):
        return jsonable(value.to_dict_recursive())
    return str(value)
