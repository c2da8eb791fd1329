"""
tests/test_api_users.py -- Integration tests for user administration routes.

Coverage:
  - RBAC: admin/hr/manager may read, employee may not; only admin may update
  - PATCH guards: self-deactivation, last active admin, no_changes
  - Deactivation revokes sessions immediately
  - POST /users/{id}/unlock clears a lockout
  - Changes are audited as field diffs

The seeded admin from api_client is the only admin until
test_second_admin_can_be_demoted runs; keep that ordering.
"""

from __future__ import annotations

from conftest import DEFAULT_PASSWORD, bearer

USERS = "/api/v1/users"
LOGIN = "/api/v1/auth/login"


class TestRead:
    def test_admin_lists_users(self, api_client) -> None:
        client, token, uid = api_client
        resp = client.get(USERS, headers=bearer(token))
        assert resp.status_code == 200
        assert uid in [u["id"] for u in resp.json()]
        assert all("password_hash" not in u for u in resp.json())

    def test_role_filter(self, api_client, make_user) -> None:
        client, token, _ = api_client
        manager = make_user(role="manager")
        resp = client.get(USERS, params={"role": "manager"}, headers=bearer(token))
        assert manager.id in [u["id"] for u in resp.json()]
        assert {u["role"] for u in resp.json()} == {"manager"}

    def test_hr_and_manager_can_read(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        for role in ("hr", "manager"):
            tokens = login(make_user(role=role).email)
            assert client.get(USERS, headers=bearer(tokens["access_token"])).status_code == 200

    def test_employee_forbidden(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        tokens = login(make_user().email)
        resp = client.get(USERS, headers=bearer(tokens["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_get_one_and_missing(self, api_client, make_user) -> None:
        client, token, _ = api_client
        user = make_user()
        assert client.get(f"{USERS}/{user.id}", headers=bearer(token)).json()["email"] == user.email
        assert client.get(f"{USERS}/99999", headers=bearer(token)).status_code == 404


class TestUpdate:
    def test_admin_changes_role_and_it_is_audited(self, api_client, api_stores, make_user) -> None:
        client, token, uid = api_client
        user = make_user()
        resp = client.patch(f"{USERS}/{user.id}", json={"role": "hr", "full_name": "New Name"}, headers=bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json()["role"] == "hr"

        rows, _ = api_stores[1].search(action="user_update", resource_id=str(user.id))
        assert rows[0].user_id == uid
        assert rows[0].changes["role"] == {"old": "employee", "new": "hr"}
        assert rows[0].changes["full_name"]["new"] == "New Name"

    def test_hr_cannot_update(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        hr = login(make_user(role="hr").email)
        target = make_user()
        resp = client.patch(f"{USERS}/{target.id}", json={"role": "manager"}, headers=bearer(hr["access_token"]))
        assert resp.status_code == 403

    def test_self_deactivation_blocked(self, api_client) -> None:
        client, token, uid = api_client
        resp = client.patch(f"{USERS}/{uid}", json={"is_active": False}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

    def test_last_admin_cannot_be_demoted(self, api_client) -> None:
        client, token, uid = api_client
        resp = client.patch(f"{USERS}/{uid}", json={"role": "hr"}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "last_admin"

    def test_second_admin_can_be_demoted(self, api_client, make_user) -> None:
        client, token, _ = api_client
        other_admin = make_user(role="admin")
        resp = client.patch(f"{USERS}/{other_admin.id}", json={"role": "employee"}, headers=bearer(token))
        assert resp.status_code == 200

    def test_no_changes(self, api_client, make_user) -> None:
        client, token, _ = api_client
        user = make_user()
        for body in ({}, {"role": "employee"}):
            resp = client.patch(f"{USERS}/{user.id}", json=body, headers=bearer(token))
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "no_changes"

    def test_deactivation_revokes_sessions(self, api_client, api_stores, make_user, login) -> None:
        client, token, _ = api_client
        user = make_user()
        tokens = login(user.email)
        resp = client.patch(f"{USERS}/{user.id}", json={"is_active": False}, headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        assert client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"])).status_code == 401
        assert api_stores[0].get_session(tokens["session_id"]).revoked_reason == "account_disabled"
        relog = client.post(LOGIN, json={"email": user.email, "password": DEFAULT_PASSWORD})
        assert relog.status_code == 401

    def test_missing_user(self, api_client) -> None:
        client, token, _ = api_client
        assert client.patch(f"{USERS}/99999", json={"role": "hr"}, headers=bearer(token)).status_code == 404


class TestUnlock:
    def test_admin_unlocks_account(self, api_client, api_stores, make_user, login) -> None:
        client, token, _ = api_client
        user = make_user()
        for _ in range(5):
            client.post(LOGIN, json={"email": user.email, "password": "Wrong12345"})
        assert client.post(LOGIN, json={"email": user.email, "password": DEFAULT_PASSWORD}).status_code == 423

        resp = client.post(f"{USERS}/{user.id}/unlock", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["account_locked_until"] is None
        login(user.email)

        rows, _ = api_stores[1].search(action="account_unlock", resource_id=str(user.id))
        assert len(rows) == 1

    def test_unlock_requires_admin(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        hr = login(make_user(role="hr").email)
        target = make_user()
        assert client.post(f"{USERS}/{target.id}/unlock", headers=bearer(hr["access_token"])).status_code == 403
