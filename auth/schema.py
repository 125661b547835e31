"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for auth storage.

All four auth tables share one MetaData and one Engine so a deployment has a
single auth database. Each repository (UserStore, SessionStore,
LoginAttemptStore, AuditLogStore) receives the engine rather than opening
its own.

Invariants enforced by the database, not by application code:
  users.email                   UNIQUE -- concurrent registrations race loudly
  user_sessions.refresh_token   UNIQUE -- no two sessions share a refresh token
  user_sessions.access_token    UNIQUE -- every issuance carries a random jti

Timestamps are fixed-width ISO strings (core.clock.to_iso) so the range
filters in the rate limiter and the expiry checks can compare them directly.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(20), nullable=False, server_default="VIEWER"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token", String(64), index=True),
    Column("password_reset_token", String(64), index=True),
    Column("password_reset_expires", String(32)),
    Column("last_login_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("access_token", Text, nullable=False, unique=True),
    Column("refresh_token", String(128), nullable=False, unique=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("ip_address", String(45), nullable=False),
    Column("user_agent", Text),
    Column("success", Integer, nullable=False),
    Column("failure_reason", String(100)),
    Column("attempted_at", String(32), nullable=False),
    Index("ix_login_attempts_email_time", "email", "attempted_at"),
    Index("ix_login_attempts_ip_time", "ip_address", "attempted_at"),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),
    Column("action", String(50), nullable=False, index=True),
    Column("resource", String(50), nullable=False),
    Column("resource_id", String(64)),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Engine factory
# ---------------------------------------------------------------------------


def make_engine(db_url: str, timeout_seconds: float = 5.0) -> Engine:
    """Create the auth engine and ensure every table exists.

    timeout_seconds bounds how long a statement waits on a locked SQLite
    database, or on a free pool connection for other backends.
    """
    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
        event.listen(engine, "connect", _set_wal_mode)
    else:
        engine = create_engine(db_url, pool_timeout=timeout_seconds, pool_pre_ping=True)
    metadata.create_all(engine)
    return engine
