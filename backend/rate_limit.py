"""
Rate limiting for the public API.
IP-based default limit on every route; pokes are additionally keyed per crew so one
client cannot flood a crew with notifications. The event endpoint is exempt.
"""

import json

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

import config
from utils import get_client_ip

DEFAULT_RETRY_AFTER_SECONDS = 60


def poke_key(request: Request) -> str:
    crew_id = request.path_params.get("crew_id", "")
    return f"{get_client_ip(request)}:poke:{crew_id}"


limiter = Limiter(
    key_func=get_client_ip,
    default_limits=[config.RATE_LIMIT_DEFAULT],
    headers_enabled=True,
    retry_after="http-date",
)


def _retry_after_seconds(exc: RateLimitExceeded) -> int:
    """Window length of the limit that was hit, e.g. 60 for "5/minute"."""
    item = getattr(getattr(exc, "limit", None), "limit", None)
    if item is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    return int(item.get_expiry())


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 with a JSON body and Retry-After header."""
    retry_after_seconds = _retry_after_seconds(exc)
    body = {
        "detail": "Too many requests. Please slow down and retry later.",
        "retry_after_seconds": retry_after_seconds,
    }
    return Response(
        content=json.dumps(body),
        status_code=429,
        media_type="application/json",
        headers={"Retry-After": str(retry_after_seconds)},
    )
