"""
tests/test_metrics.py -- Prometheus counters and the /metrics endpoint.

Counters are process-wide, so every assertion compares against the value
read just before the action.

Covers:
  - Login outcomes, lockouts, refresh outcomes and reset stages are counted
  - Request counter labels use the normalized path and status class
  - /metrics serves the text exposition without authentication
"""

from __future__ import annotations

import pytest

from core import metrics

LOGIN = "/api/v1/auth/login"
REFRESH = "/api/v1/auth/refresh"


def _value(name: str, **labels: str) -> float:
    return metrics.registry.get_sample_value(name, labels) or 0.0


class TestAuthCounters:
    def test_login_success_and_failure(self, api_client, make_user) -> None:
        client, _, _ = api_client
        user = make_user()
        ok_before = _value("hr_auth_login_attempts_total", status="success")
        bad_before = _value("hr_auth_login_attempts_total", status="bad_credentials")

        client.post(LOGIN, json={"email": user.email, "password": "Wrong12345"})
        resp = client.post(LOGIN, json={"email": user.email, "password": "Str0ngPassw0rd"})
        client.cookies.clear()
        assert resp.status_code == 200

        assert _value("hr_auth_login_attempts_total", status="success") == ok_before + 1
        assert _value("hr_auth_login_attempts_total", status="bad_credentials") == bad_before + 1

    def test_lockout_counted_once(self, api_client, make_user) -> None:
        client, _, _ = api_client
        user = make_user()
        lockouts = _value("hr_auth_account_lockouts_total")
        locked = _value("hr_auth_login_attempts_total", status="account_locked")

        for _ in range(5):
            client.post(LOGIN, json={"email": user.email, "password": "Wrong12345"})
        resp = client.post(LOGIN, json={"email": user.email, "password": "Wrong12345"})
        assert resp.status_code == 423

        assert _value("hr_auth_account_lockouts_total") == lockouts + 1
        assert _value("hr_auth_login_attempts_total", status="account_locked") == locked + 1

    def test_refresh_outcomes(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        tokens = login(make_user().email)
        ok_before = _value("hr_auth_token_refresh_total", status="success")
        missing_before = _value("hr_auth_token_refresh_total", status="invalid_refresh_token")

        resp = client.post(REFRESH, json={"refresh_token": tokens["refresh_token"]})
        client.cookies.clear()
        assert resp.status_code == 200
        assert client.post(REFRESH, json={}).status_code == 401

        assert _value("hr_auth_token_refresh_total", status="success") == ok_before + 1
        assert _value("hr_auth_token_refresh_total", status="invalid_refresh_token") == missing_before + 1

    def test_reset_request_counted(self, api_client, make_user) -> None:
        client, _, _ = api_client
        user = make_user()
        before = _value("hr_auth_password_resets_total", stage="requested")
        resp = client.post("/api/v1/auth/password-reset-request", json={"email": user.email})
        assert resp.status_code == 202
        assert _value("hr_auth_password_resets_total", stage="requested") == before + 1


def test_request_counter_uses_status_class(api_client) -> None:
    client, _, _ = api_client
    labels = {"endpoint": "/api/v1/audit-logs/{id}", "method": "GET", "status": "4xx"}
    before = _value("hr_auth_requests_total", **labels)
    client.get("/api/v1/audit-logs/42")
    assert _value("hr_auth_requests_total", **labels) == before + 1


def test_metrics_endpoint(api_client) -> None:
    client, _, _ = api_client
    client.get("/api/v1/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "hr_auth_requests_total" in resp.text
    assert "hr_auth_login_attempts_total" in resp.text


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/api/v1/users/17", "/api/v1/users/{id}"),
        ("/api/v1/users/17/unlock", "/api/v1/users/{id}/unlock"),
        ("/api/v1/auth/sessions/0123456789abcdef0123456789ABCDEF", "/api/v1/auth/sessions/{id}"),
        ("/api/v1/health", "/api/v1/health"),
        ("/api/v1/auth/login", "/api/v1/auth/login"),
    ],
)
def test_normalize_endpoint(path: str, expected: str) -> None:
    assert metrics.normalize_endpoint(path) == expected
