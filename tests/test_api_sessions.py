"""
tests/test_api_sessions.py -- Integration tests for session management and change-password.

Coverage:
  - GET /auth/sessions lists only the caller's active sessions, flags current
  - DELETE /auth/sessions/{id}: own session 204; foreign or unknown 404
  - POST /auth/change-password: wrong current, reuse, weak, success path
  - A password change voids a reset token issued before it
"""

from __future__ import annotations

from conftest import DEFAULT_PASSWORD, bearer

SESSIONS = "/api/v1/auth/sessions"
CHANGE = "/api/v1/auth/change-password"
ME = "/api/v1/auth/me"


class TestListSessions:
    def test_lists_own_sessions_with_current_flag(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        user = make_user()
        other = login(make_user().email)
        first = login(user.email, headers={"User-Agent": "laptop"})
        second = login(user.email, headers={"User-Agent": "phone"})

        resp = client.get(SESSIONS, headers=bearer(second["access_token"]))
        assert resp.status_code == 200
        sessions = {s["id"]: s for s in resp.json()}
        assert set(sessions) == {first["session_id"], second["session_id"]}
        assert other["session_id"] not in sessions
        assert sessions[second["session_id"]]["current"] is True
        assert sessions[first["session_id"]]["current"] is False
        assert sessions[first["session_id"]]["user_agent"] == "laptop"

    def test_requires_auth(self, api_client) -> None:
        client, _, _ = api_client
        assert client.get(SESSIONS).status_code == 401


class TestRevokeSession:
    def test_revoke_other_device(self, api_client, api_stores, make_user, login) -> None:
        client, _, _ = api_client
        user = make_user()
        laptop = login(user.email)
        phone = login(user.email)

        resp = client.delete(f"{SESSIONS}/{laptop['session_id']}", headers=bearer(phone["access_token"]))
        assert resp.status_code == 204
        assert client.get(ME, headers=bearer(laptop["access_token"])).status_code == 401
        assert client.get(ME, headers=bearer(phone["access_token"])).status_code == 200

        rows, _ = api_stores[1].search(action="session_revoke", resource_id=laptop["session_id"])
        assert rows[0].user_id == user.id

    def test_cannot_revoke_someone_elses_session(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        victim = login(make_user().email)
        attacker = login(make_user().email)
        resp = client.delete(f"{SESSIONS}/{victim['session_id']}", headers=bearer(attacker["access_token"]))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert client.get(ME, headers=bearer(victim["access_token"])).status_code == 200

    def test_unknown_session(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        tokens = login(make_user().email)
        resp = client.delete(f"{SESSIONS}/doesnotexist", headers=bearer(tokens["access_token"]))
        assert resp.status_code == 404


class TestChangePassword:
    def test_wrong_current_password(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        tokens = login(make_user().email)
        resp = client.post(
            CHANGE,
            json={"current_password": "Wrong12345", "new_password": "Another123"},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_new_password_must_differ(self, api_client, api_stores, make_user, login) -> None:
        client, _, _ = api_client
        user = make_user()
        tokens = login(user.email)
        resp = client.post(
            CHANGE,
            json={"current_password": DEFAULT_PASSWORD, "new_password": DEFAULT_PASSWORD},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_reused"

        rows, _ = api_stores[1].search(action="password_change", user_id=user.id)
        assert [(r.status, r.error_message) for r in rows] == [("failure", "password_reused")]

    def test_weak_new_password(self, api_client, make_user, login) -> None:
        client, _, _ = api_client
        tokens = login(make_user().email)
        resp = client.post(
            CHANGE,
            json={"current_password": DEFAULT_PASSWORD, "new_password": "short"},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 422

    def test_success_revokes_other_sessions(self, api_client, api_stores, make_user, login) -> None:
        client, _, _ = api_client
        user = make_user()
        other = login(user.email)
        current = login(user.email)

        resp = client.post(
            CHANGE,
            json={"current_password": DEFAULT_PASSWORD, "new_password": "Changed123"},
            headers=bearer(current["access_token"]),
        )
        assert resp.status_code == 200, resp.text
        assert client.get(ME, headers=bearer(current["access_token"])).status_code == 200
        assert client.get(ME, headers=bearer(other["access_token"])).status_code == 401
        assert api_stores[0].get_session(other["session_id"]).revoked_reason == "password_changed"

        login(user.email, "Changed123")
        old = client.post("/api/v1/auth/login", json={"email": user.email, "password": DEFAULT_PASSWORD})
        assert old.status_code == 401

        rows, _ = api_stores[1].search(action="password_change", user_id=user.id)
        assert rows[0].changes == {"sessions_revoked": 1}

    def test_change_voids_pending_reset_token(self, api_client, api_stores, make_user, login) -> None:
        client, _, _ = api_client
        user = make_user()
        tokens = login(user.email)
        client.post("/api/v1/auth/password-reset-request", json={"email": user.email})
        reset_token = api_stores[2].last_token_for(user.email)

        resp = client.post(
            CHANGE,
            json={"current_password": DEFAULT_PASSWORD, "new_password": "Changed456"},
            headers=bearer(tokens["access_token"]),
        )
        assert resp.status_code == 200
        assert api_stores[0].get_by_id(user.id).password_reset_token is None

        reset = client.post("/api/v1/auth/password-reset", json={"token": reset_token, "new_password": "Takeover99"})
        assert reset.status_code == 400
        assert reset.json()["error"]["code"] == "invalid_token"
        login(user.email, "Changed456")
