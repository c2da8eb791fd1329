"""
tests/test_api_register.py -- POST /api/v1/auth/register, starting from an empty database.

Tests run in order: the first registration bootstraps the admin, later ones
depend on it.

Covers:
  - First account is public and forced to admin
  - After bootstrap the endpoint needs users:create (admin, hr)
  - hr cannot create admins
  - Duplicate email (any case) -> 409
  - Weak passwords and malformed emails -> 422 validation_error
  - Every outcome is audited
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import DEFAULT_PASSWORD, bearer

REGISTER = "/api/v1/auth/register"
LOGIN = "/api/v1/auth/login"


def _login_token(client: TestClient, email: str) -> str:
    resp = client.post(LOGIN, json={"email": email, "password": DEFAULT_PASSWORD})
    client.cookies.clear()
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


@pytest.fixture(scope="module")
def admin_token(bootstrap_client: TestClient) -> str:
    resp = bootstrap_client.post(
        REGISTER,
        json={"email": "First@Example.com", "password": DEFAULT_PASSWORD, "full_name": "First User", "role": "employee"},
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["role"] == "admin"
    assert body["email"] == "first@example.com"
    return _login_token(bootstrap_client, "first@example.com")


class TestBootstrap:
    def test_first_registration_is_admin(self, bootstrap_client, admin_token, api_stores) -> None:
        _, audit_store, _ = api_stores
        rows, _ = audit_store.search(action="register")
        assert rows[-1].status == "success"
        assert rows[-1].changes["role"] == "admin"

    def test_anonymous_registration_closed_after_bootstrap(self, bootstrap_client, admin_token) -> None:
        resp = bootstrap_client.post(
            REGISTER, json={"email": "anon@example.com", "password": DEFAULT_PASSWORD, "full_name": "Anon"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestAuthorizedRegistration:
    def test_admin_creates_hr(self, bootstrap_client, admin_token) -> None:
        resp = bootstrap_client.post(
            REGISTER,
            json={
                "email": "hr@example.com",
                "password": DEFAULT_PASSWORD,
                "full_name": "Helen Hr",
                "role": "hr",
                "employee_id": "E-001",
            },
            headers=bearer(admin_token),
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["role"] == "hr"
        assert data["employee_id"] == "E-001"
        assert "password_hash" not in data

    def test_hr_creates_employee_but_not_admin(self, bootstrap_client, admin_token) -> None:
        hr_token = _login_token(bootstrap_client, "hr@example.com")
        ok = bootstrap_client.post(
            REGISTER,
            json={"email": "emp@example.com", "password": DEFAULT_PASSWORD, "full_name": "Emp"},
            headers=bearer(hr_token),
        )
        assert ok.status_code == 201
        assert ok.json()["role"] == "employee"

        denied = bootstrap_client.post(
            REGISTER,
            json={"email": "boss@example.com", "password": DEFAULT_PASSWORD, "full_name": "Boss", "role": "admin"},
            headers=bearer(hr_token),
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

    def test_employee_cannot_register_users(self, bootstrap_client, admin_token) -> None:
        emp_token = _login_token(bootstrap_client, "emp@example.com")
        resp = bootstrap_client.post(
            REGISTER,
            json={"email": "x@example.com", "password": DEFAULT_PASSWORD, "full_name": "X"},
            headers=bearer(emp_token),
        )
        assert resp.status_code == 403

    def test_duplicate_email_conflict(self, bootstrap_client, admin_token, api_stores) -> None:
        resp = bootstrap_client.post(
            REGISTER,
            json={"email": "HR@example.com", "password": DEFAULT_PASSWORD, "full_name": "Dup"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        rows, _ = api_stores[1].search(action="register", status="failure")
        assert rows[0].error_message == "conflict"


class TestValidation:
    @pytest.mark.parametrize(
        "password",
        ["short1", "nodigitshere", "12345678901", "a1" + "x" * 71],
        ids=["too-short", "no-digit", "no-letter", "over-72-bytes"],
    )
    def test_weak_passwords_rejected(self, bootstrap_client, admin_token, password: str) -> None:
        resp = bootstrap_client.post(
            REGISTER,
            json={"email": "weak@example.com", "password": password, "full_name": "Weak"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert password not in (error["detail"] or "")

    def test_bad_email_rejected(self, bootstrap_client, admin_token) -> None:
        resp = bootstrap_client.post(
            REGISTER,
            json={"email": "not-an-email", "password": DEFAULT_PASSWORD, "full_name": "Bad"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 422

    def test_unknown_role_rejected(self, bootstrap_client, admin_token) -> None:
        resp = bootstrap_client.post(
            REGISTER,
            json={"email": "role@example.com", "password": DEFAULT_PASSWORD, "full_name": "R", "role": "superuser"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 422
