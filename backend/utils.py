"""
Shared utilities for request handling, batching and date wording.
"""

from datetime import date, datetime, timezone
from typing import Iterable, Iterator, List, Optional, TypeVar

T = TypeVar("T")


def get_client_ip(request) -> str:
    """
    Extract client IP from FastAPI/Starlette request.
    - Checks x-forwarded-for header first (for proxies/load balancers)
    - Falls back to request.client.host
    - Returns "unknown" if unavailable
    """
    if request is None:
        return "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
        return ip if ip else "unknown"
    if getattr(request, "client", None) and request.client:
        host = getattr(request.client, "host", None)
        return host if host else "unknown"
    return "unknown"


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive lists of at most size items."""
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_chat_date(date_str: str, long: bool = True) -> str:
    """
    "2025-06-01" -> "June 1st, 2025" (long) or "Jun 1st" (short, used in push subtitles).
    Unparseable input is returned unchanged.
    """
    try:
        d = date.fromisoformat(date_str)
    except (TypeError, ValueError):
        return date_str
    if long:
        return f"{d.strftime('%B')} {_ordinal(d.day)}, {d.year}"
    return f"{d.strftime('%b')} {_ordinal(d.day)}"


def date_description(date_str: str, today: Optional[date] = None) -> str:
    """
    Human wording for a crew date relative to today (UTC):
    "tonight", "tomorrow night", "on Friday" within the week, else "on YYYY-MM-DD".
    """
    if today is None:
        today = datetime.now(timezone.utc).date()
    try:
        target = date.fromisoformat(date_str)
    except (TypeError, ValueError):
        return f"on {date_str}"
    diff_days = (target - today).days
    if diff_days == 0:
        return "tonight"
    if diff_days == 1:
        return "tomorrow night"
    if 2 <= diff_days <= 6:
        return f"on {target.strftime('%A')}"
    return f"on {date_str}"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so Firestore and cached timestamps compare cleanly."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
