"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- create account (bootstrap or users:create)
  POST   /api/v1/auth/login                   -- password login; issues token pair
  POST   /api/v1/auth/refresh                 -- rotate refresh token; issues token pair
  POST   /api/v1/auth/logout                  -- revoke current session
  POST   /api/v1/auth/logout-all              -- revoke every session of the caller
  POST   /api/v1/auth/password-reset-request  -- issue reset token (always 202)
  POST   /api/v1/auth/password-reset          -- consume reset token
  POST   /api/v1/auth/change-password         -- change own password
  GET    /api/v1/auth/me                      -- current user + permissions
  GET    /api/v1/auth/sessions                -- caller's active sessions
  DELETE /api/v1/auth/sessions/{id}           -- revoke one of the caller's sessions

Security:
  [H2] POST /login and POST /password-reset-request are rate-limited per IP.
  [C1] check_credentials() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  No email enumeration: /password-reset-request answers 202 with one fixed
  body; /login answers bad_credentials for unknown, wrong and disabled alike.
  IDOR guard: DELETE /sessions/{id} passes user_id to the store.

Every outcome, success or failure, is written to the audit log.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.auditing import record_event
from api.limiter import LOGIN_LIMIT, PASSWORD_RESET_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from audit.models import AuditAction, AuditStatus
from auth.dependencies import AuthContext, client_info, get_auth_context
from auth.lockout import is_locked, register_failure, register_success, seconds_until_unlock
from auth.models import User
from auth.password_reset import consume_reset, request_reset
from auth.rbac import Permission, Role, has_permission
from auth.sessions import IssuedTokens, SessionError, refresh_session, start_session
from auth.store import UserStore, normalize_email
from auth.tokens import (
    REFRESH_COOKIE,
    burn_password_check,
    check_credentials,
    clear_auth_cookies,
    hash_password,
    set_auth_cookies,
    verify_password,
)
from core import metrics
from core.time_utils import utcnow

logger = logging.getLogger("hr_auth.api")

# Auth policy:
# - POST   /auth/register:                 public only while no users exist, then users:create
# - POST   /auth/login:                    public, rate-limited
# - POST   /auth/refresh:                  refresh token (body or cookie)
# - POST   /auth/password-reset-request:   public, rate-limited
# - POST   /auth/password-reset:           reset token
# - everything else:                       access token (get_auth_context)
router = APIRouter()

_RESET_REQUESTED_MESSAGE = "If an account exists for that email, a password reset link has been sent."


def _error(status_code: int, code: str, message: str, headers: Optional[dict] = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message}, headers=headers)


def _token_response(user: User, tokens: IssuedTokens, now) -> JSONResponse:
    """Build the token-pair response, set browser cookies and forbid caching [M5]."""
    body = TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=int((tokens.access_expires_at - now).total_seconds()),
        refresh_expires_in=int((tokens.refresh_expires_at - now).total_seconds()),
        session_id=tokens.session_id,
        user=UserResponse.from_user(user),
    )
    resp = JSONResponse(status_code=200, content=body.model_dump())
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a user account.

    Bootstrap: while the users table is empty the endpoint is public and the
    account is always created as admin. Afterwards the caller needs
    users:create, and only admins may create admin accounts.
    """
    user_store: UserStore = request.app.state.user_store

    role = body.role.value
    if not user_store.has_users():
        role = Role.admin.value
        logger.info("Bootstrap registration: first account created as admin")
    else:
        ctx = get_auth_context(request)
        if not has_permission(ctx.user.role, Permission.USERS_CREATE):
            raise _error(403, "forbidden", f"Missing permission: {Permission.USERS_CREATE.value}.")
        if role == Role.admin.value and ctx.user.role != Role.admin.value:
            raise _error(403, "forbidden", "Only admins can create admin accounts.")

    new_user = User(
        email=body.email,
        full_name=body.full_name,
        role=role,
        employee_id=body.employee_id,
        password_hash=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        record_event(
            request,
            AuditAction.REGISTER,
            changes={"email": normalize_email(body.email)},
            status=AuditStatus.FAILURE,
            status_code=409,
            error_message="conflict",
        )
        raise _error(409, "conflict", "A user with that email already exists.") from exc

    created = user_store.get_by_id(user_id)
    record_event(
        request,
        AuditAction.REGISTER,
        resource_id=user_id,
        changes={"email": created.email, "role": created.role},
    )
    return UserResponse.from_user(created)


# ---------------------------------------------------------------------------
# Login / refresh / logout
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(LOGIN_LIMIT)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; start a session.

    Order of checks:
      1. Locked account -> 423 with Retry-After. The password is not
         evaluated and the attempt does not count.
      2. check_credentials() [C1] -> on mismatch count a failure for a known
         account (the 5th consecutive one locks it) and answer 401.
      3. Disabled account -> the same 401 as a wrong password.
    """
    user_store: UserStore = request.app.state.user_store
    ip, user_agent = client_info(request)
    now = utcnow()

    known = user_store.get_by_email(body.email)
    if known is not None and is_locked(known, now):
        burn_password_check(body.password)
        retry_after = seconds_until_unlock(known, now)
        record_event(
            request,
            AuditAction.LOGIN,
            user_id=known.id,
            resource_id=known.id,
            status=AuditStatus.FAILURE,
            status_code=423,
            error_message="account_locked",
        )
        metrics.record_login_attempt("account_locked")
        raise _error(
            423,
            "account_locked",
            "Account is temporarily locked after repeated failed logins.",
            headers={"Retry-After": str(retry_after), "Cache-Control": "no-store"},
        )

    user = check_credentials(user_store, body.email, body.password)
    if user is None:
        if known is not None:
            result = register_failure(user_store, known, now)
            record_event(
                request,
                AuditAction.LOGIN,
                user_id=known.id,
                resource_id=known.id,
                status=AuditStatus.FAILURE,
                status_code=401,
                error_message="bad_credentials",
            )
            if result.locked:
                metrics.record_lockout()
                record_event(
                    request,
                    AuditAction.ACCOUNT_LOCKED,
                    user_id=known.id,
                    resource_id=known.id,
                    changes={"failed_attempts": result.attempts, "locked_until": result.locked_until},
                )
        else:
            record_event(
                request,
                AuditAction.LOGIN,
                status=AuditStatus.FAILURE,
                status_code=401,
                error_message="bad_credentials",
            )
        metrics.record_login_attempt("bad_credentials")
        raise _error(401, "bad_credentials", "Invalid email or password.", headers={"Cache-Control": "no-store"})

    if not user.is_active:
        record_event(
            request,
            AuditAction.LOGIN,
            user_id=user.id,
            resource_id=user.id,
            status=AuditStatus.FAILURE,
            status_code=401,
            error_message="account_disabled",
        )
        metrics.record_login_attempt("account_disabled")
        raise _error(401, "bad_credentials", "Invalid email or password.", headers={"Cache-Control": "no-store"})

    register_success(user_store, user, ip, now)
    tokens = start_session(user_store, user, ip, user_agent, now)
    record_event(
        request,
        AuditAction.LOGIN,
        user_id=user.id,
        session_id=tokens.session_id,
        resource_id=user.id,
    )
    metrics.record_login_attempt("success")
    logger.info("Login succeeded (user_id=%d, session=%s)", user.id, tokens.session_id)
    return _token_response(user_store.get_by_id(user.id), tokens, now)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent.

    The token comes from the JSON body, or from the refresh cookie when the
    body omits it.
    """
    user_store: UserStore = request.app.state.user_store
    ip, user_agent = client_info(request)
    now = utcnow()

    raw_token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not raw_token:
        metrics.record_token_refresh("invalid_refresh_token")
        raise _error(401, "invalid_refresh_token", "Refresh token is required.")

    try:
        user, tokens = refresh_session(user_store, raw_token, ip, user_agent, now)
    except SessionError as exc:
        session = exc.session
        record_event(
            request,
            AuditAction.REFRESH,
            "session",
            user_id=session.user_id if session else None,
            session_id=session.id if session else None,
            resource_id=session.id if session else None,
            status=AuditStatus.FAILURE,
            status_code=401,
            error_message=exc.code,
        )
        metrics.record_token_refresh(exc.code)
        raise _error(401, exc.code, exc.message) from exc

    record_event(
        request,
        AuditAction.REFRESH,
        "session",
        user_id=user.id,
        session_id=tokens.session_id,
        resource_id=tokens.session_id,
    )
    metrics.record_token_refresh("success")
    return _token_response(user, tokens, now)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Revoke the calling session and clear auth cookies."""
    user_store: UserStore = request.app.state.user_store
    user_store.revoke_session(ctx.session.id, "logout")
    record_event(request, AuditAction.LOGOUT, "session", resource_id=ctx.session.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Revoke every active session of the caller, including this one."""
    user_store: UserStore = request.app.state.user_store
    revoked = user_store.revoke_all_sessions(ctx.user.id, "logout_all")
    record_event(
        request,
        AuditAction.LOGOUT_ALL,
        resource_id=ctx.user.id,
        changes={"sessions_revoked": revoked},
    )
    resp = JSONResponse(
        content=LogoutAllResponse(message="Logged out of all sessions.", sessions_revoked=revoked).model_dump()
    )
    clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset-request", response_model=MessageResponse, status_code=202)
@limiter.limit(PASSWORD_RESET_LIMIT)  # [H2]
def password_reset_request(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Issue a reset token and hand it to the notifier.

    The response is identical whether or not the email belongs to an active
    account. A notifier failure is logged and not surfaced, otherwise a 500
    would reveal that the email exists.
    """
    user_store: UserStore = request.app.state.user_store
    issued = request_reset(user_store, body.email)
    if issued is None:
        record_event(
            request,
            AuditAction.PASSWORD_RESET_REQUEST,
            status=AuditStatus.FAILURE,
            status_code=202,
            error_message="no_active_account",
        )
        return MessageResponse(message=_RESET_REQUESTED_MESSAGE)

    user, raw_token = issued
    try:
        request.app.state.reset_notifier.send_password_reset(user, raw_token)
    except Exception:
        logger.exception("Reset notifier failed (user_id=%d)", user.id)
    record_event(request, AuditAction.PASSWORD_RESET_REQUEST, user_id=user.id, resource_id=user.id)
    metrics.record_password_reset("requested")
    return MessageResponse(message=_RESET_REQUESTED_MESSAGE)


@router.post("/auth/password-reset", response_model=MessageResponse)
def password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    """Set a new password with a reset token. Every session of the account is revoked."""
    user_store: UserStore = request.app.state.user_store
    user = consume_reset(user_store, body.token, body.new_password)
    if user is None:
        record_event(
            request,
            AuditAction.PASSWORD_RESET,
            status=AuditStatus.FAILURE,
            status_code=400,
            error_message="invalid_token",
        )
        metrics.record_password_reset("rejected")
        raise _error(400, "invalid_token", "Reset token is invalid or has expired.")
    record_event(request, AuditAction.PASSWORD_RESET, user_id=user.id, resource_id=user.id)
    metrics.record_password_reset("completed")
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> MessageResponse:
    """Change the caller's password. Other sessions are revoked; this one survives."""
    user_store: UserStore = request.app.state.user_store
    user = ctx.user

    if not verify_password(body.current_password, user.password_hash):
        record_event(
            request,
            AuditAction.PASSWORD_CHANGE,
            resource_id=user.id,
            status=AuditStatus.FAILURE,
            status_code=400,
            error_message="bad_credentials",
        )
        raise _error(400, "bad_credentials", "Current password is incorrect.")
    if verify_password(body.new_password, user.password_hash):
        record_event(
            request,
            AuditAction.PASSWORD_CHANGE,
            resource_id=user.id,
            status=AuditStatus.FAILURE,
            status_code=400,
            error_message="password_reused",
        )
        raise _error(400, "password_reused", "New password must differ from the current password.")

    # Voids any reset link issued before the change.
    user_store.set_password(user.id, hash_password(body.new_password))
    revoked = user_store.revoke_all_sessions(user.id, "password_changed", except_session_id=ctx.session.id)
    record_event(
        request,
        AuditAction.PASSWORD_CHANGE,
        resource_id=user.id,
        changes={"sessions_revoked": revoked},
    )
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Identity and sessions
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return the current user and the permissions their role grants."""
    permissions = sorted(p.value for p in Permission if p is not Permission.ALL and has_permission(ctx.user.role, p))
    return MeResponse(
        **UserResponse.from_user(ctx.user).model_dump(),
        permissions=permissions,
        session_id=ctx.session.id,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> list[SessionResponse]:
    """List the caller's active sessions, flagging the one making this request."""
    user_store: UserStore = request.app.state.user_store
    sessions = user_store.list_active_sessions(ctx.user.id, utcnow())
    return [SessionResponse.from_session(s, ctx.session.id) for s in sessions]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    """Revoke one of the caller's sessions. Ownership is verified server-side [IDOR guard].

    Another user's session id answers 404, the same as an unknown id.
    """
    user_store: UserStore = request.app.state.user_store
    if not user_store.revoke_session(session_id, "user_revoked", user_id=ctx.user.id):
        raise _error(404, "not_found", "Session not found.")
    record_event(request, AuditAction.SESSION_REVOKE, "session", resource_id=session_id)
    return Response(status_code=204)
