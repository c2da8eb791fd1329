"""Unit tests for core/config.py.

Covers:
- Token, lockout and reset defaults match the documented policy
- SECRET_KEY rules: dev auto-generation, production refusal, minimum length
- bcrypt cost factor bounds
"""

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings

_GOOD_KEY = "k" * 48


def test_policy_defaults() -> None:
    s = Settings(secret_key=_GOOD_KEY, _env_file=None)
    assert s.access_token_expire_seconds == 3600
    assert s.refresh_token_expire_days == 7
    assert s.password_reset_expire_seconds == 3600
    assert s.max_failed_login_attempts == 5
    assert s.account_lockout_minutes == 30
    assert s.audit_retention_years == 7


def test_debug_generates_secret_key() -> None:
    s = Settings(debug=True, secret_key="", _env_file=None)
    assert len(s.secret_key) >= 32


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="", _env_file=None)


def test_short_secret_key_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=True, secret_key="too-short", _env_file=None)


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_out_of_range(rounds: int) -> None:
    with pytest.raises(ValidationError):
        Settings(secret_key=_GOOD_KEY, bcrypt_rounds=rounds, _env_file=None)


def test_lockout_threshold_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        Settings(secret_key=_GOOD_KEY, max_failed_login_attempts=0, _env_file=None)


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
