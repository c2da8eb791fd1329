"""
core/metrics.py -- Prometheus counters for authentication activity.

All metrics live in one module-level CollectorRegistry so /metrics exposes
only this service's series. Label values are kept low-cardinality: no user
ids, emails or raw paths (numeric ids and session ids are folded to {id}).

Series:
  hr_auth_requests_total{endpoint,method,status}    HTTP requests by status class
  hr_auth_request_latency_seconds{endpoint,method}  HTTP latency histogram
  hr_auth_login_attempts_total{status}              success | bad_credentials | account_locked | account_disabled
  hr_auth_account_lockouts_total                    accounts locked by the failed-login policy
  hr_auth_token_refresh_total{status}               success | <session error code>
  hr_auth_password_resets_total{stage}              requested | completed | rejected

Layer rule: no imports from api/, auth/ or audit/.
"""

from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry()

_requests_total = Counter(
    "hr_auth_requests_total",
    "HTTP requests handled",
    ["endpoint", "method", "status"],
    registry=registry,
)

_request_latency = Histogram(
    "hr_auth_request_latency_seconds",
    "HTTP request latency in seconds",
    ["endpoint", "method"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry,
)

_login_attempts = Counter(
    "hr_auth_login_attempts_total",
    "Password login attempts by outcome",
    ["status"],
    registry=registry,
)

_lockouts = Counter(
    "hr_auth_account_lockouts_total",
    "Accounts locked after repeated failed logins",
    registry=registry,
)

_token_refreshes = Counter(
    "hr_auth_token_refresh_total",
    "Refresh-token exchanges by outcome",
    ["status"],
    registry=registry,
)

_password_resets = Counter(
    "hr_auth_password_resets_total",
    "Password reset flow events",
    ["stage"],
    registry=registry,
)

_UUID_HEX_RE = re.compile(r"/[0-9a-f]{32}(?=/|$)", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"/\d+(?=/|$)")


def normalize_endpoint(path: str) -> str:
    """Fold path ids into {id} so per-resource URLs share one series."""
    path = _UUID_HEX_RE.sub("/{id}", path)
    return _NUMERIC_RE.sub("/{id}", path)


def _status_bucket(code: int) -> str:
    if 200 <= code < 300:
        return "2xx"
    if 300 <= code < 400:
        return "3xx"
    if 400 <= code < 500:
        return "4xx"
    if 500 <= code < 600:
        return "5xx"
    return "other"


def record_request(path: str, method: str, status_code: int, latency_seconds: float) -> None:
    endpoint = normalize_endpoint(path)
    _requests_total.labels(endpoint=endpoint, method=method, status=_status_bucket(status_code)).inc()
    _request_latency.labels(endpoint=endpoint, method=method).observe(latency_seconds)


def record_login_attempt(status: str) -> None:
    _login_attempts.labels(status=status).inc()


def record_lockout() -> None:
    _lockouts.inc()


def record_token_refresh(status: str) -> None:
    _token_refreshes.labels(status=status).inc()


def record_password_reset(stage: str) -> None:
    _password_resets.labels(stage=stage).inc()


def metrics_payload() -> tuple[bytes, str]:
    """Return (body, content type) for the /metrics endpoint."""
    return generate_latest(registry), CONTENT_TYPE_LATEST
