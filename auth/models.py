"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and the AuthManager do the work. Rows never leave a
store as dicts -- every repository method returns one of these types.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class AuditAction(str, Enum):
    """Closed vocabulary of security-relevant actions written to the audit log."""

    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    VERIFICATION_RESENT = "VERIFICATION_RESENT"
    SESSION_REVOKED = "SESSION_REVOKED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    BOOTSTRAP_USER_CREATED = "BOOTSTRAP_USER_CREATED"


@dataclass
class User:
    """An identity record owned by the credential store.

    email is stored lower-cased and is globally unique (UNIQUE constraint).
    hashed_password is a bcrypt hash; the plaintext is never persisted.
    password_reset_token / password_reset_expires are set together by
    forgot_password() and cleared together when the token is consumed.
    """

    email: str
    hashed_password: str
    first_name: str = ""
    last_name: str = ""
    role: Role = Role.VIEWER
    id: int | None = None
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token: str | None = None
    password_reset_token: str | None = None
    password_reset_expires: datetime | None = None
    last_login_at: datetime | None = None
    password_changed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Session:
    """One authenticated device/browser binding holding a single token pair.

    refresh_token is UNIQUE across all rows. An inactive session is never
    reactivated -- a fresh login creates a new row.
    """

    user_id: int
    access_token: str
    refresh_token: str
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class LoginAttempt:
    email: str
    ip_address: str
    success: bool
    user_agent: str | None = None
    failure_reason: str | None = None
    id: int | None = None
    attempted_at: datetime | None = None


@dataclass
class AuditLogEntry:
    action: AuditAction
    resource: str
    user_id: int | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Flow result records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass(frozen=True)
class AuthResult:
    """Outcome of login, register, and refresh_token.

    session_id is None for register(), which issues tokens without creating a
    Session row.
    """

    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    session_id: int | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    email_failures: int
    ip_failures: int


@dataclass(frozen=True)
class AuditWriteResult:
    """Outcome of a best-effort audit write. Inspected for logging only."""

    ok: bool
    entry_id: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class AuditLogPage:
    items: list[AuditLogEntry]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


# ---------------------------------------------------------------------------
# Statistics snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserStatistics:
    total: int
    active: int
    verified: int
    unverified: int
    by_role: dict[str, int]


@dataclass(frozen=True)
class SessionStatistics:
    """active counts rows that are both flagged active and unexpired."""

    total: int
    active: int
    expired: int
    by_user: dict[int, int]


@dataclass(frozen=True)
class LoginAttemptStatistics:
    total: int
    successful: int
    failed: int
    failed_in_window: int
    by_email: dict[str, int]
    by_ip: dict[str, int]


@dataclass(frozen=True)
class AuditLogStatistics:
    """by_user keys are user ids as strings; entries with no user go under "anonymous"."""

    total: int
    by_action: dict[str, int]
    by_resource: dict[str, int]
    by_user: dict[str, int]


@dataclass(frozen=True)
class AuthStatistics:
    users: UserStatistics
    sessions: SessionStatistics
    login_attempts: LoginAttemptStatistics
    audit: AuditLogStatistics
