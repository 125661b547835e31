"""
auth/audit.py -- Append-only audit log and its best-effort writer.

AuditLogStore is the repository (insert + paginated reads + retention).
AuditTrail wraps it for the AuthManager: record() never raises. A broken
audit pipe is logged through logger.exception and reported back as an
AuditWriteResult with ok=False; callers only look at that result to log,
never to decide what to do next.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import String, func, or_, select, true
from sqlalchemy.engine import Engine

from auth.models import AuditAction, AuditLogEntry, AuditLogPage, AuditLogStatistics, AuditWriteResult
from auth.schema import audit_logs as _audit
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("icmsauth.audit")

_MAX_PAGE_SIZE = 100


class AuditLogStore:
    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, entry: AuditLogEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit.insert().values(
                    user_id=entry.user_id,
                    action=AuditAction(entry.action).value,
                    resource=entry.resource,
                    resource_id=entry.resource_id,
                    details=json.dumps(entry.details or {}, default=str),
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    created_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def search(
        self,
        page: int = 1,
        limit: int = 10,
        user_id: int | None = None,
        action: AuditAction | None = None,
        resource: str | None = None,
        term: str | None = None,
    ) -> AuditLogPage:
        """Return one page of entries, newest first, optionally filtered.

        term is a case-insensitive substring match against action, resource,
        and resource_id. LIKE wildcards in term are matched literally.
        """
        page = max(page, 1)
        limit = min(max(limit, 1), _MAX_PAGE_SIZE)
        condition = true()
        if user_id is not None:
            condition = condition & (_audit.c.user_id == user_id)
        if action is not None:
            condition = condition & (_audit.c.action == AuditAction(action).value)
        if resource is not None:
            condition = condition & (_audit.c.resource == resource)
        if term:
            needle = term.lower()
            condition = condition & or_(
                *(
                    func.lower(col, type_=String).contains(needle, autoescape=True)
                    for col in (_audit.c.action, _audit.c.resource, _audit.c.resource_id)
                )
            )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit).where(condition)).scalar() or 0
            rows = conn.execute(
                _audit.select()
                .where(condition)
                .order_by(_audit.c.created_at.desc(), _audit.c.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return AuditLogPage(items=[_row_to_entry(r) for r in rows], page=page, limit=limit, total=total)

    def statistics(self) -> AuditLogStatistics:
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit)).scalar() or 0
            by_action = conn.execute(select(_audit.c.action, func.count()).group_by(_audit.c.action)).fetchall()
            by_resource = conn.execute(select(_audit.c.resource, func.count()).group_by(_audit.c.resource)).fetchall()
            by_user = conn.execute(select(_audit.c.user_id, func.count()).group_by(_audit.c.user_id)).fetchall()
        return AuditLogStatistics(
            total=total,
            by_action={action: count for action, count in by_action},
            by_resource={resource: count for resource, count in by_resource},
            by_user={(str(uid) if uid is not None else "anonymous"): count for uid, count in by_user},
        )

    def purge_older_than(self, days: int) -> int:
        cutoff = to_iso(self._clock() - timedelta(days=days))
        with self.engine.connect() as conn:
            result = conn.execute(_audit.delete().where(_audit.c.created_at < cutoff))
            conn.commit()
        return result.rowcount


class AuditTrail:
    """Fire-and-forget audit writer. record() logs failures and never raises."""

    def __init__(self, store: AuditLogStore) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        resource: str = "AUTH",
        *,
        user_id: int | None = None,
        resource_id: str | int | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditWriteResult:
        entry = AuditLogEntry(
            action=action,
            resource=resource,
            user_id=user_id,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            entry_id = self.store.create(entry)
        except Exception as exc:  # noqa: BLE001 -- audit must never break the calling flow
            logger.exception("Failed to write audit entry action=%s user_id=%s", entry.action, user_id)
            return AuditWriteResult(ok=False, error=str(exc))
        return AuditWriteResult(ok=True, entry_id=entry_id)


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=AuditAction(row.action),
        resource=row.resource,
        resource_id=row.resource_id,
        details=json.loads(row.details or "{}"),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
    )
