"""
auth/sessions.py -- Session store: SQLAlchemy Core repository for user_sessions.

A session binds one device/browser to one user and one token pair.

Lifecycle:
  create()          on successful login
  rotate()          on refresh -- same row, new token pair, origin kept
  deactivate*()     on logout, password change/reset, revocation, or admin
                    deactivation of the owner. A flag flip, never a delete,
                    so the row stays available for audit.
  purge_expired()   storage hygiene only. Physically removes rows whose
                    expires_at has passed; foreground flows never depend on it.

Invariant: an inactive row is never switched back to active. Nothing in
this module writes is_active=1 after insert.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.models import Session, SessionStatistics
from auth.schema import user_sessions as _sessions
from core.clock import Clock, from_iso, to_iso, utc_now


class SessionStore:
    """Repository for Session rows."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str,
        ip_address: str | None,
        user_agent: str | None,
        expires_at: datetime,
    ) -> Session:
        """Insert an active session and return it.

        Raises sqlalchemy.exc.IntegrityError if either token already exists.
        """
        values = {
            "user_id": user_id,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "expires_at": to_iso(expires_at),
            "is_active": 1,
            "created_at": to_iso(self._clock()),
        }
        values["updated_at"] = values["created_at"]
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.insert().values(**values))
            conn.commit()
            session_id = result.inserted_primary_key[0]
        return _row_to_session(SimpleNamespace(id=session_id, **values))

    def get_by_id(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_by_refresh_token(self, refresh_token: str) -> Session | None:
        """Exact-match lookup. Returns inactive and expired rows too; callers check."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token == refresh_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_by_access_token(self, access_token: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.access_token == access_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_active_by_user(self, user_id: int) -> list[Session]:
        """Return active, unexpired sessions for a user, newest first."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1) & (_sessions.c.expires_at > now)
                )
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def rotate(
        self,
        session_id: int,
        access_token: str,
        refresh_token: str,
        *,
        expected_refresh_token: str | None = None,
    ) -> Session | None:
        """Overwrite the token pair of an active session in place.

        When expected_refresh_token is given the UPDATE only matches if the
        row still holds that token, so of two concurrent refreshes presenting
        the same token exactly one wins. Returns the updated Session, or None
        if no row matched.
        """
        condition = (_sessions.c.id == session_id) & (_sessions.c.is_active == 1)
        if expected_refresh_token is not None:
            condition = condition & (_sessions.c.refresh_token == expected_refresh_token)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(condition)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    updated_at=to_iso(self._clock()),
                )
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_by_id(session_id)

    def deactivate(self, session_id: int) -> bool:
        """Mark one session inactive. Returns True if it was active before."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.is_active == 1))
                .values(is_active=0, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_all(self, user_id: int) -> int:
        """Mark every active session of a user inactive. Returns the number flipped."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1))
                .values(is_active=0, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount

    def statistics(self) -> SessionStatistics:
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_sessions)).scalar() or 0
            active = (
                conn.execute(
                    select(func.count())
                    .select_from(_sessions)
                    .where((_sessions.c.is_active == 1) & (_sessions.c.expires_at > now))
                ).scalar()
                or 0
            )
            expired = (
                conn.execute(select(func.count()).select_from(_sessions).where(_sessions.c.expires_at <= now)).scalar()
                or 0
            )
            by_user = conn.execute(
                select(_sessions.c.user_id, func.count()).group_by(_sessions.c.user_id)
            ).fetchall()
        return SessionStatistics(
            total=total,
            active=active,
            expired=expired,
            by_user={user_id: count for user_id, count in by_user},
        )

    def purge_expired(self) -> int:
        """Delete rows whose expires_at has passed. Returns number of rows removed."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now))
            conn.commit()
        return result.rowcount


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        expires_at=from_iso(row.expires_at),
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
