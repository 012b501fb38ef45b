import re
from datetime import datetime
from typing import Any, List, Mapping, Optional

from subledger.utils.helpers import parse_datetime

# Simple, pragmatic patterns
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")


def clean_str(val: Any, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]


def is_valid_email(val: str | None) -> bool:
    if not val:
        return False
    return bool(_EMAIL_RE.match(val))


def is_valid_currency(val: str | None) -> bool:
    return bool(val and _CURRENCY_RE.match(val))


def missing_fields(payload: Mapping[str, Any], fields) -> List[str]:
    """Names of ``fields`` that are absent or blank in ``payload``, in order."""
    return [f for f in fields if payload.get(f) in (None, "") or (isinstance(payload.get(f), str) and not payload.get(f).strip())]


def positive_int(val: Any, allow_zero: bool = False) -> int | None:
    """int(val) when it is a whole number above zero (or zero when allowed); else None."""
    if isinstance(val, bool):
        return None
    try:
        n = int(val)
    except (TypeError, ValueError):
        return None
    if isinstance(val, float) and not val.is_integer():
        return None
    if n < 0 or (n == 0 and not allow_zero):
        return None
    return n


def parse_when(val: Any) -> Optional[datetime]:
    """Timestamps arrive as ISO-8601 strings or unix seconds."""
    return parse_datetime(val)
