"""
api/routes/v1/audit.py -- Read-only audit log REST endpoints.

Routes:
  GET /api/v1/audit-logs             -- filtered, paginated search (newest first)
  GET /api/v1/audit-logs/statistics  -- counts per action, status and severity
  GET /api/v1/audit-logs/actions     -- the action vocabulary
  GET /api/v1/audit-logs/{id}        -- one entry

All routes need audit:read (admin, hr). There is deliberately no write,
update or delete route: entries are only created as a side effect of the
actions they describe.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditLogPage, AuditLogResponse, AuditStatisticsResponse
from audit.models import AuditAction, AuditCategory, AuditSeverity, AuditStatus
from audit.store import AuditStore
from auth.dependencies import AuthContext, require_permission
from auth.rbac import Permission

router = APIRouter()

_require_audit_read = require_permission(Permission.AUDIT_READ)


@router.get("/audit-logs", response_model=AuditLogPage)
def search_audit_logs(
    request: Request,
    user_id: Optional[int] = None,
    action: Optional[AuditAction] = None,
    resource_type: Optional[str] = Query(default=None, max_length=50),
    resource_id: Optional[str] = Query(default=None, max_length=64),
    status: Optional[AuditStatus] = None,
    action_category: Optional[AuditCategory] = None,
    severity: Optional[AuditSeverity] = None,
    start: Optional[datetime] = Query(default=None, description="Inclusive lower bound (ISO-8601)."),
    end: Optional[datetime] = Query(default=None, description="Exclusive upper bound (ISO-8601)."),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: AuthContext = Depends(_require_audit_read),
) -> AuditLogPage:
    """Search the audit trail. Filters combine with AND."""
    audit_store: AuditStore = request.app.state.audit_store
    entries, total = audit_store.search(
        user_id=user_id,
        action=action.value if action else None,
        resource_type=resource_type,
        resource_id=resource_id,
        status=status.value if status else None,
        action_category=action_category.value if action_category else None,
        severity=severity.value if severity else None,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return AuditLogPage(
        items=[AuditLogResponse.from_entry(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/audit-logs/statistics", response_model=AuditStatisticsResponse)
def audit_statistics(
    request: Request,
    since: Optional[datetime] = None,
    ctx: AuthContext = Depends(_require_audit_read),
) -> AuditStatisticsResponse:
    audit_store: AuditStore = request.app.state.audit_store
    return AuditStatisticsResponse(**audit_store.statistics(since=since))


@router.get("/audit-logs/actions", response_model=list[str])
def audit_actions(ctx: AuthContext = Depends(_require_audit_read)) -> list[str]:
    return [a.value for a in AuditAction]


@router.get("/audit-logs/{entry_id}", response_model=AuditLogResponse)
def get_audit_log(
    request: Request,
    entry_id: int,
    ctx: AuthContext = Depends(_require_audit_read),
) -> AuditLogResponse:
    audit_store: AuditStore = request.app.state.audit_store
    entry = audit_store.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Audit entry not found."})
    return AuditLogResponse.from_entry(entry)
