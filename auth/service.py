"""
auth/service.py -- AuthManager: the login, registration, token, and password flows.

The manager holds no state of its own. Each public method is one short unit
of work over the injected collaborators:

  UserStore          identities (credential store)
  SessionStore       device sessions and their token pairs
  RateLimiter        failure counts read from the login-attempt log
  AuditTrail         best-effort append of security events
  PasswordHasher     bcrypt
  TokenIssuer        JWT access tokens + opaque refresh tokens
  Notifier           reset / verification email hand-off

Failure policy:
  Every check that can reject a flow runs before the flow's first write, so a
  rejected call leaves users and sessions untouched. Audit writes and
  notifier hand-offs are the only side effects allowed to fail silently --
  they are logged and the flow carries on.

  Login failures never say which check failed. Unknown email, inactive
  account, and wrong password all raise InvalidCredentials, and the bcrypt
  cost is paid on every path so response time does not leak either.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.attempts import REASON_INVALID_CREDENTIALS, LoginAttemptStore, RateLimiter
from auth.audit import AuditLogStore, AuditTrail
from auth.errors import (
    AlreadyExists,
    InvalidCredentials,
    InvalidEmail,
    InvalidOrExpiredToken,
    InvalidToken,
    NotFound,
    PasswordMismatch,
    TooManyAttempts,
    WeakPassword,
)
from auth.models import AuditAction, AuditLogPage, AuthResult, AuthStatistics, Role, Session, User
from auth.notifications import LoggingNotifier, Notifier
from auth.passwords import PasswordHasher, is_strong_password, is_valid_email
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenIssuer, generate_opaque_token
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("icmsauth.auth")

_UNKNOWN_ORIGIN = "unknown"


class AuthManager:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        limiter: RateLimiter,
        audit: AuditTrail,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        *,
        notifier: Notifier | None = None,
        clock: Clock = utc_now,
        session_default_days: int = 7,
        session_remember_days: int = 30,
        password_reset_ttl_seconds: int = 3600,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.limiter = limiter
        self.audit = audit
        self.hasher = hasher
        self.tokens = tokens
        self.notifier: Notifier = notifier or LoggingNotifier()
        self._clock = clock
        self.session_default = timedelta(days=session_default_days)
        self.session_remember = timedelta(days=session_remember_days)
        self.password_reset_ttl = timedelta(seconds=password_reset_ttl_seconds)

    @classmethod
    def from_settings(
        cls,
        engine: Engine,
        settings: Settings,
        *,
        notifier: Notifier | None = None,
        clock: Clock = utc_now,
    ) -> "AuthManager":
        """Wire every collaborator against one engine using configured values."""
        attempts = LoginAttemptStore(engine, clock=clock)
        return cls(
            users=UserStore(engine, clock=clock),
            sessions=SessionStore(engine, clock=clock),
            limiter=RateLimiter(
                attempts,
                max_attempts=settings.login_max_attempts,
                window_seconds=settings.login_window_seconds,
                clock=clock,
            ),
            audit=AuditTrail(AuditLogStore(engine, clock=clock)),
            hasher=PasswordHasher(settings.bcrypt_rounds),
            tokens=TokenIssuer(settings.secret_key, settings.access_token_expire_seconds, clock=clock),
            notifier=notifier,
            clock=clock,
            session_default_days=settings.session_default_days,
            session_remember_days=settings.session_remember_days,
            password_reset_ttl_seconds=settings.password_reset_ttl_seconds,
        )

    @property
    def attempts(self) -> LoginAttemptStore:
        return self.limiter.attempts

    # ------------------------------------------------------------------
    # Login / registration / refresh / logout
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        ip_address: str | None,
        user_agent: str | None,
        remember_me: bool = False,
    ) -> AuthResult:
        email = _normalize_email(email)
        ip_address = ip_address or _UNKNOWN_ORIGIN

        decision = self.limiter.check_and_record(email, ip_address, user_agent)
        if not decision.allowed:
            raise TooManyAttempts()

        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            self.hasher.verify_dummy(password)
            self.attempts.record(email, ip_address, user_agent, success=False, failure_reason=REASON_INVALID_CREDENTIALS)
            logger.info("Login rejected (unknown or inactive account) email=%s ip=%s", email, ip_address)
            raise InvalidCredentials()

        if not self.hasher.verify(password, user.hashed_password):
            self.attempts.record(email, ip_address, user_agent, success=False, failure_reason=REASON_INVALID_CREDENTIALS)
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                user_id=user.id,
                details={"reason": REASON_INVALID_CREDENTIALS},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            logger.info("Login rejected (bad password) user_id=%s ip=%s", user.id, ip_address)
            raise InvalidCredentials()

        issued = self.tokens.issue(user.id)
        lifetime = self.session_remember if remember_me else self.session_default
        session = self.sessions.create(
            user_id=user.id,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=self._clock() + lifetime,
        )
        self.users.update_last_login(user.id)
        self.attempts.record(email, ip_address, user_agent, success=True)
        self.audit.record(
            AuditAction.LOGIN,
            user_id=user.id,
            details={"session_id": session.id, "remember_me": remember_me},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("Login succeeded user_id=%s session_id=%s", user.id, session.id)
        return AuthResult(
            user=self.users.get_by_id(user.id) or user,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
            session_id=session.id,
        )

    def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        first_name: str,
        last_name: str,
        role: Role | str | None = None,
    ) -> AuthResult:
        """Create an identity and issue tokens.

        Unlike login(), registration does not create a Session row. Neither
        returned token is bound to a session, so validate_access_token() and
        refresh_token() reject them until the user logs in.
        """
        if password != confirm_password:
            raise PasswordMismatch()
        email = _normalize_email(email)
        if not is_valid_email(email):
            raise InvalidEmail()
        if not is_strong_password(password):
            raise WeakPassword()
        if self.users.get_by_email(email) is not None:
            raise AlreadyExists()

        verification_token = generate_opaque_token()
        new_user = User(
            email=email,
            hashed_password=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            role=Role(role) if role else Role.VIEWER,
            is_active=True,
            is_email_verified=False,
            email_verification_token=verification_token,
        )
        try:
            user_id = self.users.create_user(new_user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise AlreadyExists() from exc

        created = self.users.get_by_id(user_id)
        if created is None:
            raise LookupError(f"user {user_id} missing right after insert")
        issued = self.tokens.issue(user_id)
        self._notify("verification", self.notifier.send_verification, email, verification_token)
        self.audit.record(
            AuditAction.REGISTER,
            "USER",
            user_id=user_id,
            resource_id=user_id,
            details={"email": email, "role": created.role.value},
        )
        logger.info("Registered user_id=%s role=%s", user_id, created.role.value)
        return AuthResult(
            user=created,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
        )

    def refresh_token(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, rotating the session row in place.

        The presented token stops working the moment rotate() commits.
        """
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is None or not session.is_active or session.expires_at <= self._clock():
            raise InvalidToken("Invalid refresh token.")

        user = self.users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            raise InvalidToken("User not found or inactive.")

        issued = self.tokens.issue(user.id)
        rotated = self.sessions.rotate(
            session.id,
            issued.access_token,
            issued.refresh_token,
            expected_refresh_token=refresh_token,
        )
        if rotated is None:
            logger.warning("Refresh token lost rotation race session_id=%s", session.id)
            raise InvalidToken("Invalid refresh token.")

        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            user_id=user.id,
            details={"session_id": session.id},
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )
        return AuthResult(
            user=user,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
            session_id=session.id,
        )

    def logout(
        self,
        user_id: int,
        session_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Deactivate one named session, or every session of the user."""
        if session_id is not None:
            self._owned_session(user_id, session_id)
            self.sessions.deactivate(session_id)
        else:
            self.sessions.deactivate_all(user_id)
        self.audit.record(
            AuditAction.LOGOUT,
            user_id=user_id,
            details={"session_id": session_id},
            ip_address=ip_address or _UNKNOWN_ORIGIN,
            user_agent=user_agent or _UNKNOWN_ORIGIN,
        )

    def validate_access_token(self, token: str) -> User:
        """Resolve a bearer access token to its active user.

        The token must be held by an active, unexpired session of the same
        user. rotate() overwrites the stored access token, so a token
        superseded by a refresh is rejected, as are tokens from register()
        which never had a session.
        """
        user_id = self.tokens.user_id_from(token)
        if user_id is None:
            raise InvalidToken()
        session = self.sessions.find_by_access_token(token)
        if (
            session is None
            or session.user_id != user_id
            or not session.is_active
            or session.expires_at <= self._clock()
        ):
            raise InvalidToken()
        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise InvalidToken()
        return user

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Issue a one-hour reset token. Unknown or inactive emails return silently."""
        user = self.users.get_by_email(_normalize_email(email))
        if user is None or not user.is_active:
            return

        token = generate_opaque_token()
        self.users.set_password_reset_token(user.email, token, self._clock() + self.password_reset_ttl)
        self._notify("password reset", self.notifier.send_password_reset, user.email, token)
        self.audit.record(AuditAction.PASSWORD_RESET_REQUESTED, "USER", user_id=user.id, resource_id=user.id)

    def reset_password(self, token: str, password: str, confirm_password: str) -> None:
        if password != confirm_password:
            raise PasswordMismatch()
        if not is_strong_password(password):
            raise WeakPassword()

        now = self._clock()
        user = self.users.get_by_reset_token(token, now)
        if user is None:
            raise InvalidOrExpiredToken()

        if not self.users.consume_reset_token(token, self.hasher.hash(password), now):
            raise InvalidOrExpiredToken()
        revoked = self.sessions.deactivate_all(user.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            "USER",
            user_id=user.id,
            resource_id=user.id,
            details={"sessions_revoked": revoked},
        )
        logger.info("Password reset user_id=%s sessions_revoked=%d", user.id, revoked)

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> None:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        if not self.hasher.verify(current_password, user.hashed_password):
            raise InvalidCredentials("Current password is incorrect.")
        if new_password != confirm_password:
            raise PasswordMismatch()
        if not is_strong_password(new_password):
            raise WeakPassword()

        self.users.update_password(user_id, self.hasher.hash(new_password))
        revoked = self.sessions.deactivate_all(user_id)
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            "USER",
            user_id=user_id,
            resource_id=user_id,
            details={"sessions_revoked": revoked},
        )
        logger.info("Password changed user_id=%s sessions_revoked=%d", user_id, revoked)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> None:
        user = self.users.get_by_verification_token(token)
        if user is None or not self.users.mark_email_verified(token):
            raise InvalidToken("Invalid verification token.")
        self.audit.record(AuditAction.EMAIL_VERIFIED, "USER", user_id=user.id, resource_id=user.id)

    def resend_verification(self, email: str) -> None:
        """Regenerate the verification token. Unknown or verified emails return silently."""
        user = self.users.get_by_email(_normalize_email(email))
        if user is None or user.is_email_verified:
            return
        token = generate_opaque_token()
        self.users.set_verification_token(user.id, token)
        self._notify("verification", self.notifier.send_verification, user.email, token)
        self.audit.record(AuditAction.VERIFICATION_RESENT, "USER", user_id=user.id, resource_id=user.id)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: int) -> list[Session]:
        return self.sessions.find_active_by_user(user_id)

    def revoke_session(self, user_id: int, session_id: int) -> None:
        self._owned_session(user_id, session_id)
        self.sessions.deactivate(session_id)
        self.audit.record(AuditAction.SESSION_REVOKED, "SESSION", user_id=user_id, resource_id=session_id)

    def revoke_all_sessions(self, user_id: int) -> int:
        revoked = self.sessions.deactivate_all(user_id)
        self.audit.record(
            AuditAction.SESSION_REVOKED,
            "SESSION",
            user_id=user_id,
            details={"all": True, "sessions_revoked": revoked},
        )
        return revoked

    def deactivate_user(self, user_id: int, actor_id: int | None = None) -> None:
        """Administratively disable an identity and end every session it holds."""
        if self.users.get_by_id(user_id) is None:
            raise NotFound("User not found.")
        self.users.update_user(user_id, is_active=False)
        revoked = self.sessions.deactivate_all(user_id)
        self.audit.record(
            AuditAction.USER_DEACTIVATED,
            "USER",
            user_id=actor_id,
            resource_id=user_id,
            details={"sessions_revoked": revoked},
        )
        logger.info("Deactivated user_id=%s by actor_id=%s", user_id, actor_id)

    # ------------------------------------------------------------------
    # Audit log and storage hygiene
    # ------------------------------------------------------------------

    def audit_log(
        self,
        page: int = 1,
        limit: int = 10,
        user_id: int | None = None,
        action: AuditAction | None = None,
        resource: str | None = None,
        term: str | None = None,
    ) -> AuditLogPage:
        return self.audit.store.search(
            page=page,
            limit=limit,
            user_id=user_id,
            action=action,
            resource=resource,
            term=term,
        )

    def statistics(self) -> AuthStatistics:
        """Snapshot of users, sessions, the throttle window, and the audit log."""
        return AuthStatistics(
            users=self.users.statistics(),
            sessions=self.sessions.statistics(),
            login_attempts=self.attempts.statistics(int(self.limiter.window.total_seconds())),
            audit=self.audit.store.statistics(),
        )

    def purge_expired(self, retention_days: int, include_audit: bool = False) -> dict[str, int]:
        """Delete expired sessions and login attempts older than retention_days."""
        counts = {
            "sessions": self.sessions.purge_expired(),
            "login_attempts": self.attempts.purge_older_than(retention_days),
        }
        if include_audit:
            counts["audit_logs"] = self.audit.store.purge_older_than(retention_days)
        logger.info("Purge complete %s", counts)
        return counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned_session(self, user_id: int, session_id: int) -> Session:
        session = self.sessions.get_by_id(session_id)
        if session is None or session.user_id != user_id:
            raise NotFound("Session not found.")
        return session

    def _notify(self, kind: str, send: Callable[[str, str], None], email: str, token: str) -> None:
        try:
            send(email, token)
        except Exception:  # noqa: BLE001 -- delivery belongs to the notifier
            logger.exception("Failed to hand off %s email for %s", kind, email)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()
