"""
audit/store.py -- SQLAlchemy Core persistence for the append-only audit log.

Pattern: Repository + Data Mapper, same as auth/store.py. AuditStore exposes
record / search / get / statistics and nothing else: there is no update or
delete method, and on SQLite two triggers reject UPDATE and DELETE against
the table so ad-hoc SQL cannot rewrite history either.

The table carries no foreign key to users. Audit rows must outlive any
change to the account tables and are never cascaded.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import (
    DDL,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from audit.models import AuditLog, AuditStatus, category_for, default_severity
from core.config import get_settings
from core.time_utils import to_iso, utcnow

logger = logging.getLogger("hr_auth.audit")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("session_id", String(32)),
    Column("action", String(50), nullable=False),
    Column("resource_type", String(50), nullable=False),
    Column("resource_id", String(64)),
    Column("action_category", String(50), nullable=False),
    Column("severity", String(20), nullable=False, server_default="info"),
    Column("method", String(10)),
    Column("endpoint", String(255)),
    Column("status_code", Integer),
    Column("duration_ms", Integer),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("changes", Text),  # JSON
    Column("status", String(20), nullable=False, server_default="success"),
    Column("error_message", Text),
    Column("created_at", String(32), nullable=False),
)

Index("ix_audit_logs_user_id", _audit_logs.c.user_id)
Index("ix_audit_logs_action", _audit_logs.c.action)
Index("ix_audit_logs_action_category", _audit_logs.c.action_category)
Index("ix_audit_logs_resource", _audit_logs.c.resource_type, _audit_logs.c.resource_id)
Index("ix_audit_logs_created_at", _audit_logs.c.created_at)
Index("ix_audit_logs_status", _audit_logs.c.status)
Index("ix_audit_logs_severity", _audit_logs.c.severity)

event.listen(
    _audit_logs,
    "after_create",
    DDL(
        "CREATE TRIGGER IF NOT EXISTS audit_logs_no_update BEFORE UPDATE ON audit_logs "
        "BEGIN SELECT RAISE(ABORT, 'audit_logs is append-only'); END"
    ).execute_if(dialect="sqlite"),
)
event.listen(
    _audit_logs,
    "after_create",
    DDL(
        "CREATE TRIGGER IF NOT EXISTS audit_logs_no_delete BEFORE DELETE ON audit_logs "
        "BEGIN SELECT RAISE(ABORT, 'audit_logs is append-only'); END"
    ).execute_if(dialect="sqlite"),
)


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditStore:
    """Append-only repository for AuditLog entries.

    Usage:
        audit = AuditStore()
        audit.record(AuditLog(action="login", resource_type="user", user_id=1))
        rows, total = audit.search(user_id=1, limit=20)
        audit.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def record(self, entry: AuditLog) -> int:
        """Append one entry and return its id.

        changes is serialised with json.dumps(default=str), so datetimes and
        enums in a diff never make the write fail. A missing category or
        severity is derived from the action and outcome.
        """
        created_at = entry.created_at or to_iso(utcnow())
        action = _value(entry.action)
        status = _value(entry.status)
        changes = json.dumps(entry.changes, default=str, sort_keys=True) if entry.changes else None
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    user_id=entry.user_id,
                    session_id=entry.session_id,
                    action=action,
                    resource_type=entry.resource_type,
                    resource_id=None if entry.resource_id is None else str(entry.resource_id),
                    action_category=_value(entry.action_category) if entry.action_category else category_for(action),
                    severity=(
                        _value(entry.severity) if entry.severity else default_severity(action, status, entry.error_message)
                    ),
                    method=entry.method,
                    endpoint=entry.endpoint,
                    status_code=entry.status_code,
                    duration_ms=entry.duration_ms,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    changes=changes,
                    status=status,
                    error_message=entry.error_message,
                    created_at=created_at,
                )
            )
            conn.commit()
            entry_id = result.inserted_primary_key[0]
        logger.debug(
            "audit %s/%s user_id=%s resource=%s:%s",
            action,
            status,
            entry.user_id,
            entry.resource_type,
            entry.resource_id,
        )
        return entry_id

    def get(self, entry_id: int) -> AuditLog | None:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def search(
        self,
        user_id: int | None = None,
        action: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        status: str | None = None,
        action_category: str | None = None,
        severity: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLog], int]:
        """Filtered, paginated query. Returns (entries newest first, total matches).

        start is inclusive, end is exclusive.
        """
        conditions = []
        if user_id is not None:
            conditions.append(_audit_logs.c.user_id == user_id)
        if action is not None:
            conditions.append(_audit_logs.c.action == action)
        if resource_type is not None:
            conditions.append(_audit_logs.c.resource_type == resource_type)
        if resource_id is not None:
            conditions.append(_audit_logs.c.resource_id == str(resource_id))
        if status is not None:
            conditions.append(_audit_logs.c.status == status)
        if action_category is not None:
            conditions.append(_audit_logs.c.action_category == action_category)
        if severity is not None:
            conditions.append(_audit_logs.c.severity == severity)
        if start is not None:
            conditions.append(_audit_logs.c.created_at >= to_iso(start))
        if end is not None:
            conditions.append(_audit_logs.c.created_at < to_iso(end))

        query = _audit_logs.select()
        count_query = select(func.count()).select_from(_audit_logs)
        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)
        query = query.order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc()).limit(limit).offset(offset)

        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows], total

    def statistics(self, since: datetime | None = None) -> dict[str, Any]:
        """Aggregate counts for the audit dashboard.

        Returns {"total": n, "failures": n, "by_action": {...}, "by_status": {...},
        "by_severity": {...}}.
        """
        counts: dict[str, dict[str, int]] = {}
        with self.engine.connect() as conn:
            for column in (_audit_logs.c.action, _audit_logs.c.status, _audit_logs.c.severity):
                query = select(column, func.count()).group_by(column)
                if since is not None:
                    query = query.where(_audit_logs.c.created_at >= to_iso(since))
                counts[column.name] = {key: count for key, count in conn.execute(query).fetchall()}
        by_action, by_status = counts["action"], counts["status"]
        return {
            "total": sum(by_status.values()),
            "failures": by_status.get(AuditStatus.FAILURE.value, 0),
            "by_action": dict(sorted(by_action.items())),
            "by_status": dict(sorted(by_status.items())),
            "by_severity": dict(sorted(counts["severity"].items())),
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _value(item: Any) -> str:
    return getattr(item, "value", item)


def _row_to_entry(row) -> AuditLog:
    return AuditLog(
        id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        action_category=row.action_category,
        severity=row.severity,
        method=row.method,
        endpoint=row.endpoint,
        status_code=row.status_code,
        duration_ms=row.duration_ms,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        changes=json.loads(row.changes) if row.changes else None,
        status=row.status,
        error_message=row.error_message,
        created_at=row.created_at,
    )
