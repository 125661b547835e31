"""
auth/attempts.py -- Login-attempt log and the brute-force rate limiter built on it.

LoginAttemptStore is an append-only log: rows are inserted and counted,
never updated. purge_older_than() is retention only.

RateLimiter derives its counters from that log with two COUNT(*) queries per
check (failures per email, failures per origin IP, both inside the trailing
window). There is no in-process counter map, so any number of workers see
the same numbers and nothing needs invalidation. Under concurrent attack
traffic the counts may lag by the attempts still in flight; that is accepted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.models import LoginAttempt, LoginAttemptStatistics, RateLimitDecision
from auth.schema import login_attempts as _attempts
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("icmsauth.auth")

REASON_INVALID_CREDENTIALS = "invalid credentials"
REASON_TOO_MANY_ATTEMPTS = "too many attempts"


class LoginAttemptStore:
    """Append-only repository for LoginAttempt facts."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def record(
        self,
        email: str,
        ip_address: str,
        user_agent: str | None,
        success: bool,
        failure_reason: str | None = None,
    ) -> int:
        """Append one attempt stamped with the current clock time. Returns its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _attempts.insert().values(
                    email=email.strip().lower(),
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=1 if success else 0,
                    failure_reason=failure_reason,
                    attempted_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def count_failures_for_email(self, email: str, since: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_attempts)
                .where(
                    (_attempts.c.email == email.strip().lower())
                    & (_attempts.c.success == 0)
                    & (_attempts.c.attempted_at >= to_iso(since))
                )
            ).scalar()
        return result or 0

    def count_failures_for_ip(self, ip_address: str, since: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_attempts)
                .where(
                    (_attempts.c.ip_address == ip_address)
                    & (_attempts.c.success == 0)
                    & (_attempts.c.attempted_at >= to_iso(since))
                )
            ).scalar()
        return result or 0

    def list_for_email(self, email: str, limit: int = 50) -> list[LoginAttempt]:
        """Return recent attempts for an email, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _attempts.select()
                .where(_attempts.c.email == email.strip().lower())
                .order_by(_attempts.c.attempted_at.desc(), _attempts.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def statistics(self, window_seconds: int = 24 * 60 * 60) -> LoginAttemptStatistics:
        """Return outcome totals, per-email and per-IP counts, and failures in the trailing window."""
        since = to_iso(self._clock() - timedelta(seconds=window_seconds))
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_attempts)).scalar() or 0
            successful = (
                conn.execute(select(func.count()).select_from(_attempts).where(_attempts.c.success == 1)).scalar() or 0
            )
            failed_in_window = (
                conn.execute(
                    select(func.count())
                    .select_from(_attempts)
                    .where((_attempts.c.success == 0) & (_attempts.c.attempted_at >= since))
                ).scalar()
                or 0
            )
            by_email = conn.execute(select(_attempts.c.email, func.count()).group_by(_attempts.c.email)).fetchall()
            by_ip = conn.execute(
                select(_attempts.c.ip_address, func.count()).group_by(_attempts.c.ip_address)
            ).fetchall()
        return LoginAttemptStatistics(
            total=total,
            successful=successful,
            failed=total - successful,
            failed_in_window=failed_in_window,
            by_email={email: count for email, count in by_email},
            by_ip={ip: count for ip, count in by_ip},
        )

    def purge_older_than(self, days: int) -> int:
        cutoff = to_iso(self._clock() - timedelta(days=days))
        with self.engine.connect() as conn:
            result = conn.execute(_attempts.delete().where(_attempts.c.attempted_at < cutoff))
            conn.commit()
        return result.rowcount


class RateLimiter:
    """Denies a login when the email or the origin IP has too many recent failures."""

    def __init__(
        self,
        attempts: LoginAttemptStore,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        clock: Clock = utc_now,
    ) -> None:
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock

    def check(self, email: str, ip_address: str) -> RateLimitDecision:
        since = self._clock() - self.window
        email_failures = self.attempts.count_failures_for_email(email, since)
        ip_failures = self.attempts.count_failures_for_ip(ip_address, since)
        allowed = email_failures < self.max_attempts and ip_failures < self.max_attempts
        return RateLimitDecision(allowed=allowed, email_failures=email_failures, ip_failures=ip_failures)

    def check_and_record(self, email: str, ip_address: str, user_agent: str | None = None) -> RateLimitDecision:
        """Check both counters; on denial append a throttled failure before returning.

        An allowed check writes nothing -- the caller records the real outcome
        once credentials have been verified.
        """
        decision = self.check(email, ip_address)
        if not decision.allowed:
            logger.warning(
                "Login throttled email=%s ip=%s email_failures=%d ip_failures=%d",
                email,
                ip_address,
                decision.email_failures,
                decision.ip_failures,
            )
            self.attempts.record(email, ip_address, user_agent, success=False, failure_reason=REASON_TOO_MANY_ATTEMPTS)
        return decision


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        email=row.email,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=bool(row.success),
        failure_reason=row.failure_reason,
        attempted_at=from_iso(row.attempted_at),
    )
