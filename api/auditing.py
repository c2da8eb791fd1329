"""
api/auditing.py -- Request-scoped helper for writing audit records.

Route handlers call record_event() after every security-relevant action.
Client IP, user agent, method, endpoint, elapsed time and (when
authenticated) session id are taken from the request, so handlers only
state what happened.

status_code: a successful event takes the route's declared status (200
unless the route says otherwise). Failure events pass the code of the error
they are about to raise.
"""

from __future__ import annotations

import time
from typing import Any, Optional

from fastapi import Request

from audit.models import AuditAction, AuditLog, AuditStatus
from audit.store import AuditStore
from auth.dependencies import client_info


def _elapsed_ms(request: Request) -> Optional[int]:
    started = getattr(request.state, "started_at", None)
    if started is None:
        return None
    return int((time.perf_counter() - started) * 1000)


def record_event(
    request: Request,
    action: AuditAction,
    resource_type: str = "user",
    *,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    resource_id: Any = None,
    changes: Optional[dict[str, Any]] = None,
    status: AuditStatus = AuditStatus.SUCCESS,
    status_code: Optional[int] = None,
    error_message: Optional[str] = None,
) -> int:
    """Append one audit entry for the current request and return its id."""
    audit_store: AuditStore = request.app.state.audit_store
    ip, user_agent = client_info(request)
    ctx = getattr(request.state, "auth", None)
    if ctx is not None:
        user_id = user_id if user_id is not None else ctx.user.id
        session_id = session_id or ctx.session.id
    if status_code is None and status is AuditStatus.SUCCESS:
        route = request.scope.get("route")
        status_code = getattr(route, "status_code", None) or 200
    return audit_store.record(
        AuditLog(
            action=action.value,
            resource_type=resource_type,
            status=status.value,
            user_id=user_id,
            session_id=session_id,
            resource_id=None if resource_id is None else str(resource_id),
            method=request.method,
            endpoint=request.url.path[:255],
            status_code=status_code,
            duration_ms=_elapsed_ms(request),
            ip_address=ip,
            user_agent=user_agent,
            changes=changes,
            error_message=error_message,
        )
    )
