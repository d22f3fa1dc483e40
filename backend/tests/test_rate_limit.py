import json
from types import SimpleNamespace

from limits import parse
from starlette.requests import Request

from rate_limit import poke_key, rate_limit_exceeded_handler


def _request(headers=(), crew_id=None):
    scope = {
        "type": "http",
        "headers": [(k.encode(), v.encode()) for k, v in headers],
        "client": ("9.9.9.9", 5000),
        "path_params": {"crew_id": crew_id} if crew_id else {},
    }
    return Request(scope)


def test_poke_key_is_per_client_and_crew():
    assert poke_key(_request(crew_id="crew1")) == "9.9.9.9:poke:crew1"
    assert poke_key(_request([("x-forwarded-for", "1.2.3.4")], "crew2")) == "1.2.3.4:poke:crew2"


def test_429_uses_window_of_exceeded_limit():
    exc = SimpleNamespace(limit=SimpleNamespace(limit=parse("5/hour")))
    resp = rate_limit_exceeded_handler(_request(), exc)
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "3600"
    assert json.loads(resp.body)["retry_after_seconds"] == 3600


def test_429_default_retry_after():
    resp = rate_limit_exceeded_handler(_request(), SimpleNamespace(limit=None))
    assert resp.headers["Retry-After"] == "60"
