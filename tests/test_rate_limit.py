"""
tests/test_rate_limit.py -- Login rate limiting through slowapi.

Runs in its own module so the module-scoped client starts from a reset
limiter and no other test's logins count towards the window.
"""

from __future__ import annotations

from conftest import TEST_PASSWORD, ApiContext, read_audit


def test_eleventh_login_in_a_minute_is_rejected(api_client: ApiContext) -> None:
    body = {"username": "bob", "password": TEST_PASSWORD}
    for _ in range(10):
        assert api_client.client.post("/api/v1/login", json=body).status_code == 200

    resp = api_client.client.post("/api/v1/login", json=body)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) > 0

    event = read_audit(api_client.services.audit_path)[-1]
    assert event["action"] == "rate_limited"
    assert event["details"]["url"] == "/api/v1/login"
