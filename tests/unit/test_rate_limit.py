"""Unit tests for the rate limit key."""
from starlette.requests import Request

from roombook.auth import create_access_token
from roombook.rate_limit import rate_limit_key


def make_request(headers: dict[str, str] | None = None) -> Request:
    raw_headers = [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()]
    return Request({"type": "http", "headers": raw_headers, "client": ("10.0.0.5", 5000)})


def test_anonymous_requests_are_keyed_by_address():
    assert rate_limit_key(make_request()) == "ip:10.0.0.5"


def test_authenticated_requests_are_keyed_by_user():
    token = create_access_token({"sub": "alice"})
    assert rate_limit_key(make_request({"Authorization": f"Bearer {token}"})) == "user:alice"


def test_invalid_token_falls_back_to_address():
    assert rate_limit_key(make_request({"Authorization": "Bearer not-a-token"})) == "ip:10.0.0.5"
