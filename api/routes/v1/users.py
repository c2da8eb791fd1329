"""
api/routes/v1/users.py -- User administration REST endpoints.

Routes:
  GET   /api/v1/users               -- list users (users:read)
  GET   /api/v1/users/{id}          -- one user (users:read)
  PATCH /api/v1/users/{id}          -- update role / is_active / profile (users:update)
  POST  /api/v1/users/{id}/unlock   -- clear a login lockout (users:update)

Security:
  [M4] PATCH blocks self-deactivation, and deactivating or demoting the last
       active admin.
  Deactivation revokes every session of the target immediately.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.auditing import record_event
from api.models import UserPatch, UserResponse
from audit.models import AuditAction, diff_fields
from auth.dependencies import AuthContext, require_permission
from auth.models import User
from auth.rbac import Permission, Role
from auth.store import UserStore

router = APIRouter()


def _get_or_404(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return user


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    ctx: AuthContext = Depends(require_permission(Permission.USERS_READ)),
) -> list[UserResponse]:
    """List user accounts ordered by email, optionally filtered."""
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(role=role.value if role else None, is_active=is_active)
    return [UserResponse.from_user(u) for u in users]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require_permission(Permission.USERS_READ)),
) -> UserResponse:
    return UserResponse.from_user(_get_or_404(request.app.state.user_store, user_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    ctx: AuthContext = Depends(require_permission(Permission.USERS_UPDATE)),
) -> UserResponse:
    """Update a user's role, active flag, name or employee link.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating or demoting the last active admin (no recovery path
        without DB access or the CLI).
    """
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)

    updates: dict = {}
    if body.full_name is not None:
        updates["full_name"] = body.full_name
    if body.employee_id is not None:
        updates["employee_id"] = body.employee_id or None
    if body.role is not None:
        updates["role"] = body.role.value
    if body.is_active is not None:
        if not body.is_active and target.id == ctx.user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        updates["is_active"] = body.is_active

    removes_admin = target.role == Role.admin.value and (
        updates.get("is_active") is False or updates.get("role", Role.admin.value) != Role.admin.value
    )
    if removes_admin and target.is_active and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot deactivate or demote the last active admin account."},
        )

    before = {
        "full_name": target.full_name,
        "employee_id": target.employee_id,
        "role": target.role,
        "is_active": target.is_active,
    }
    changes = diff_fields(before, updates)
    if not changes:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    user_store.update_user(user_id, **{field: updates[field] for field in changes})
    if changes.get("is_active", {}).get("new") is False:
        revoked = user_store.revoke_all_sessions(user_id, "account_disabled")
        changes["sessions_revoked"] = revoked

    record_event(request, AuditAction.USER_UPDATE, resource_id=user_id, changes=changes)
    return UserResponse.from_user(user_store.get_by_id(user_id))


@router.post("/users/{user_id}/unlock", response_model=UserResponse)
def unlock_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require_permission(Permission.USERS_UPDATE)),
) -> UserResponse:
    """Clear a lockout and the failed-login counter ahead of the timer."""
    user_store: UserStore = request.app.state.user_store
    target = _get_or_404(user_store, user_id)
    user_store.unlock_account(user_id)
    record_event(
        request,
        AuditAction.ACCOUNT_UNLOCK,
        resource_id=user_id,
        changes={
            "account_locked_until": {"old": target.account_locked_until, "new": None},
            "failed_login_attempts": {"old": target.failed_login_attempts, "new": 0},
        },
    )
    return UserResponse.from_user(user_store.get_by_id(user_id))
