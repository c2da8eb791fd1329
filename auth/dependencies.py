"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Two token carriers are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login/refresh routes for
     browser clients.
  2. Authorization: Bearer <token> header -- API clients.
A cookie that no longer validates (expired, rotated, logged out) does not
mask a valid Bearer token sent on the same request.

Both converge on an AuthContext (user, session, claims) after the token
signature is verified and auth.sessions.validate_access() confirms the bound
session is still live. Logging out or revoking a session therefore kills its
access token immediately, not after the JWT exp.

try_get_auth_context() is the soft variant (returns None on failure).
get_auth_context() / get_current_user() raise HTTP 401.
require_roles() / require_permission() build dependencies that raise HTTP 403.

Layer rule: no imports from api/ or audit/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, Request

from auth.models import Session, User
from auth.rbac import Permission, Role, has_permission
from auth.sessions import validate_access
from auth.tokens import ACCESS_COOKIE, decode_access_token


@dataclass(frozen=True)
class AuthContext:
    """The authenticated caller: user row, live session, verified JWT claims."""

    user: User
    session: Session
    claims: dict


def _candidate_tokens(request: Request) -> list[str]:
    tokens: list[str] = []
    cookie = request.cookies.get(ACCESS_COOKIE)
    if cookie:
        tokens.append(cookie)
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        bearer = auth_header[7:].strip()
        if bearer and bearer not in tokens:
            tokens.append(bearer)
    return tokens


def _resolve(request: Request, token: str) -> AuthContext | None:
    claims = decode_access_token(token)
    if claims is None:
        return None
    resolved = validate_access(request.app.state.user_store, claims)
    if resolved is None:
        return None
    user, session = resolved
    return AuthContext(user=user, session=session, claims=claims)


def try_get_auth_context(request: Request) -> AuthContext | None:
    """Authenticate the request via cookie or Bearer token.

    Returns the AuthContext on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_auth_context().
    """
    for token in _candidate_tokens(request):
        ctx = _resolve(request, token)
        if ctx is not None:
            # Exposed to the request logger and audit helpers.
            request.state.auth = ctx
            return ctx
    return None


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    ctx = try_get_auth_context(request)
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return ctx


def get_current_user(request: Request) -> User:
    """Require authentication and return just the User."""
    return get_auth_context(request).user


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": message})


def require_roles(*roles: Role | str) -> Callable[[Request], AuthContext]:
    """Build a dependency that admits only the given roles.

    Raises HTTP 401 if unauthenticated, HTTP 403 if the role is not listed.

        @router.get("/hr-only")
        async def route(ctx: AuthContext = Depends(require_roles(Role.admin, Role.hr))): ...
    """
    allowed = {getattr(r, "value", r) for r in roles}

    def dependency(request: Request) -> AuthContext:
        ctx = get_auth_context(request)
        if ctx.user.role not in allowed:
            raise _forbidden("Insufficient role for this operation.")
        return ctx

    return dependency


def require_permission(permission: Permission) -> Callable[[Request], AuthContext]:
    """Build a dependency that admits roles holding `permission` (see auth.rbac)."""

    def dependency(request: Request) -> AuthContext:
        ctx = get_auth_context(request)
        if not has_permission(ctx.user.role, permission):
            raise _forbidden(f"Missing permission: {permission.value}.")
        return ctx

    return dependency


def client_info(request: Request) -> tuple[str | None, str | None]:
    """Return (client_ip, user_agent) for session and audit records."""
    ip = request.client.host if request.client else None
    user_agent = request.headers.get("User-Agent")
    if user_agent is not None:
        user_agent = user_agent[:512]
    return ip, user_agent
