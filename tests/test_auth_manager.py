"""Unit tests for AuthManager flows in auth/service.py.

Covers:
- Login: generic failure for unknown / inactive / wrong password, attempt
  logging, session creation and lifetimes
- Registration: validation order, default role, no session row
- Refresh: single-use rotation, expired and inactive rejections
- Logout, session listing and revocation with ownership checks
- Access token validation against session and user state
- Forgot / reset / change password, including session revocation
- Email verification and resend
- Administrative deactivation and storage purge
- Statistics rolled up across users, sessions, attempts, and audit
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.attempts import REASON_INVALID_CREDENTIALS
from auth.errors import (
    AlreadyExists,
    InvalidCredentials,
    InvalidEmail,
    InvalidOrExpiredToken,
    InvalidToken,
    NotFound,
    PasswordMismatch,
    WeakPassword,
)
from auth.models import AuditAction, Role
from tests.helpers import TEST_PASSWORD, create_user

IP = "203.0.113.7"
UA = "pytest-agent"
NEW_PASSWORD = "N3w!secret"


def _login(manager, email="alice@example.com", password=TEST_PASSWORD, **kwargs):
    return manager.login(email, password, IP, UA, **kwargs)


def _actions(manager, user_id=None):
    return [e.action for e in manager.audit_log(limit=100, user_id=user_id).items]


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_wrong_password_records_one_failed_attempt(self, manager):
        """A wrong password raises InvalidCredentials and appends one failed attempt."""
        uid = create_user(manager, "alice@example.com")
        with pytest.raises(InvalidCredentials):
            _login(manager, password="Wrong1!")

        attempts = manager.attempts.list_for_email("alice@example.com")
        assert len(attempts) == 1
        assert attempts[0].success is False
        assert attempts[0].failure_reason == REASON_INVALID_CREDENTIALS
        assert attempts[0].ip_address == IP
        assert manager.list_sessions(uid) == []
        assert AuditAction.LOGIN_FAILED in _actions(manager, uid)

    def test_unknown_and_inactive_look_like_wrong_password(self, manager):
        """All three failure causes carry the same code and message."""
        create_user(manager, "alice@example.com")
        create_user(manager, "gone@example.com", is_active=False)

        errors = []
        for email, password in [
            ("alice@example.com", "Wrong1!"),
            ("nobody@example.com", TEST_PASSWORD),
            ("gone@example.com", TEST_PASSWORD),
        ]:
            with pytest.raises(InvalidCredentials) as exc_info:
                _login(manager, email=email, password=password)
            errors.append((exc_info.value.code, exc_info.value.message, exc_info.value.status_code))
        assert len(set(errors)) == 1

    def test_success_creates_exactly_one_session(self, manager, clock):
        uid = create_user(manager, "alice@example.com")
        result = _login(manager)

        sessions = manager.list_sessions(uid)
        assert len(sessions) == 1
        session = sessions[0]
        assert session.id == result.session_id
        assert session.refresh_token == result.refresh_token
        assert session.access_token == result.access_token
        assert session.ip_address == IP
        assert session.user_agent == UA
        assert session.expires_at == clock() + timedelta(days=7)
        assert result.token_type == "Bearer"
        assert result.expires_in == 3600
        assert result.user.last_login_at == clock()

    def test_remember_me_extends_session(self, manager, clock):
        uid = create_user(manager, "alice@example.com")
        _login(manager, remember_me=True)
        assert manager.list_sessions(uid)[0].expires_at == clock() + timedelta(days=30)

    def test_refresh_tokens_unique_across_logins(self, manager):
        create_user(manager, "alice@example.com")
        tokens = {_login(manager).refresh_token for _ in range(3)}
        assert len(tokens) == 3

    def test_email_is_case_insensitive(self, manager):
        create_user(manager, "alice@example.com")
        assert _login(manager, email="  Alice@Example.COM ").user.email == "alice@example.com"

    def test_success_is_logged_and_audited(self, manager):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        attempts = manager.attempts.list_for_email("alice@example.com")
        assert [a.success for a in attempts] == [True]
        assert _actions(manager, uid) == [AuditAction.LOGIN]

    def test_missing_ip_recorded_as_unknown(self, manager):
        create_user(manager, "alice@example.com")
        manager.login("alice@example.com", TEST_PASSWORD, None, None)
        assert manager.attempts.list_for_email("alice@example.com")[0].ip_address == "unknown"

    def test_broken_audit_does_not_fail_login(self, manager, monkeypatch):
        """An audit store that raises is logged and ignored."""
        create_user(manager, "alice@example.com")

        def boom(entry):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(manager.audit.store, "create", boom)
        assert _login(manager).session_id is not None

    def test_failed_session_insert_leaves_last_login_untouched(self, manager, monkeypatch):
        """last_login_at only moves once the session row exists."""
        uid = create_user(manager, "alice@example.com")

        def collide(*args, **kwargs):
            raise IntegrityError("INSERT INTO sessions", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(manager.sessions, "create", collide)
        with pytest.raises(IntegrityError):
            _login(manager)
        assert manager.users.get_by_id(uid).last_login_at is None
        assert manager.attempts.list_for_email("alice@example.com") == []


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_defaults_to_viewer(self, manager, notifier):
        result = manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "New", "User")
        assert result.user.role is Role.VIEWER
        assert result.user.is_email_verified is False
        assert result.session_id is None
        assert result.access_token and result.refresh_token
        assert notifier.verifications == [("new@example.com", result.user.email_verification_token)]

    def test_register_creates_no_session(self, manager):
        result = manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "New", "User")
        assert manager.list_sessions(result.user.id) == []
        with pytest.raises(InvalidToken):
            manager.refresh_token(result.refresh_token)

    def test_register_token_rejected_until_login(self, manager):
        """Registration tokens are not bound to a session row."""
        result = manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "New", "User")
        with pytest.raises(InvalidToken):
            manager.validate_access_token(result.access_token)
        login = _login(manager, email="new@example.com")
        assert manager.validate_access_token(login.access_token).id == result.user.id

    def test_explicit_role(self, manager):
        result = manager.register("ed@example.com", TEST_PASSWORD, TEST_PASSWORD, "Ed", "Itor", role="EDITOR")
        assert result.user.role is Role.EDITOR

    def test_weak_password_creates_nothing(self, manager):
        with pytest.raises(WeakPassword):
            manager.register("weak@example.com", "short", "short", "Weak", "User")
        assert manager.users.get_by_email("weak@example.com") is None
        assert not manager.users.has_users()

    def test_mismatch_checked_first(self, manager):
        with pytest.raises(PasswordMismatch):
            manager.register("bad-email", "short", "other", "A", "B")

    def test_invalid_email(self, manager):
        with pytest.raises(InvalidEmail):
            manager.register("not-an-email", TEST_PASSWORD, TEST_PASSWORD, "A", "B")

    def test_duplicate_email_conflicts(self, manager):
        create_user(manager, "taken@example.com")
        with pytest.raises(AlreadyExists):
            manager.register("TAKEN@example.com", TEST_PASSWORD, TEST_PASSWORD, "A", "B")

    def test_register_is_audited(self, manager):
        result = manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "New", "User")
        entry = manager.audit_log(action=AuditAction.REGISTER).items[0]
        assert entry.user_id == result.user.id
        assert entry.resource == "USER"
        assert entry.details["email"] == "new@example.com"


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_is_single_use(self, manager):
        """The second exchange of the same refresh token fails."""
        create_user(manager, "alice@example.com")
        first = _login(manager)

        rotated = manager.refresh_token(first.refresh_token)
        assert rotated.session_id == first.session_id
        assert rotated.refresh_token != first.refresh_token
        assert rotated.access_token != first.access_token

        with pytest.raises(InvalidToken):
            manager.refresh_token(first.refresh_token)

    def test_rotated_token_can_refresh_again(self, manager):
        create_user(manager, "alice@example.com")
        first = _login(manager)
        second = manager.refresh_token(first.refresh_token)
        third = manager.refresh_token(second.refresh_token)
        assert third.session_id == first.session_id

    def test_rotation_keeps_origin_and_expiry(self, manager):
        uid = create_user(manager, "alice@example.com")
        first = _login(manager)
        before = manager.sessions.get_by_id(first.session_id)
        manager.refresh_token(first.refresh_token)
        after = manager.sessions.get_by_id(first.session_id)
        assert (after.ip_address, after.user_agent, after.expires_at) == (
            before.ip_address,
            before.user_agent,
            before.expires_at,
        )
        assert len(manager.list_sessions(uid)) == 1

    def test_expired_session_rejected(self, manager, clock):
        create_user(manager, "alice@example.com")
        first = _login(manager)
        clock.advance(days=7, seconds=1)
        with pytest.raises(InvalidToken):
            manager.refresh_token(first.refresh_token)

    def test_unknown_token_rejected(self, manager):
        with pytest.raises(InvalidToken):
            manager.refresh_token("f" * 128)

    def test_inactive_user_rejected(self, manager):
        uid = create_user(manager, "alice@example.com")
        first = _login(manager)
        manager.users.update_user(uid, is_active=False)
        with pytest.raises(InvalidToken):
            manager.refresh_token(first.refresh_token)


# ---------------------------------------------------------------------------
# Logout and sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_logout_one_session(self, manager):
        uid = create_user(manager, "alice@example.com")
        first = _login(manager)
        second = _login(manager)
        manager.logout(uid, first.session_id, IP, UA)
        remaining = manager.list_sessions(uid)
        assert [s.id for s in remaining] == [second.session_id]
        with pytest.raises(InvalidToken):
            manager.validate_access_token(first.access_token)
        assert manager.validate_access_token(second.access_token).id == uid

    def test_logout_all_sessions(self, manager):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        _login(manager)
        manager.logout(uid)
        assert manager.list_sessions(uid) == []
        assert AuditAction.LOGOUT in _actions(manager, uid)

    def test_logout_foreign_session_not_found(self, manager):
        alice = create_user(manager, "alice@example.com")
        create_user(manager, "bob@example.com")
        bob_session = _login(manager, email="bob@example.com").session_id
        with pytest.raises(NotFound):
            manager.logout(alice, bob_session)

    def test_revoke_foreign_session_not_found(self, manager):
        alice = create_user(manager, "alice@example.com")
        bob = create_user(manager, "bob@example.com")
        bob_session = _login(manager, email="bob@example.com").session_id
        with pytest.raises(NotFound):
            manager.revoke_session(alice, bob_session)
        assert len(manager.list_sessions(bob)) == 1

    def test_revoke_session(self, manager):
        uid = create_user(manager, "alice@example.com")
        result = _login(manager)
        manager.revoke_session(uid, result.session_id)
        assert manager.list_sessions(uid) == []
        with pytest.raises(InvalidToken):
            manager.refresh_token(result.refresh_token)

    def test_revoke_all_returns_count(self, manager):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        _login(manager)
        assert manager.revoke_all_sessions(uid) == 2
        assert manager.revoke_all_sessions(uid) == 0

    def test_list_sessions_hides_expired(self, manager, clock):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        clock.advance(days=8)
        assert manager.list_sessions(uid) == []


# ---------------------------------------------------------------------------
# Access token validation
# ---------------------------------------------------------------------------


class TestValidateAccessToken:
    def test_valid_token_resolves_user(self, manager):
        uid = create_user(manager, "alice@example.com")
        assert manager.validate_access_token(_login(manager).access_token).id == uid

    def test_expired_token_rejected(self, manager, clock):
        create_user(manager, "alice@example.com")
        token = _login(manager).access_token
        clock.advance(hours=1)
        with pytest.raises(InvalidToken):
            manager.validate_access_token(token)

    def test_inactive_user_rejected(self, manager):
        uid = create_user(manager, "alice@example.com")
        token = _login(manager).access_token
        manager.users.update_user(uid, is_active=False)
        with pytest.raises(InvalidToken):
            manager.validate_access_token(token)

    def test_token_without_session_row_rejected(self, manager):
        uid = create_user(manager, "alice@example.com")
        with pytest.raises(InvalidToken):
            manager.validate_access_token(manager.tokens.issue(uid).access_token)

    def test_refresh_then_logout_kills_every_access_token(self, manager):
        """Rotation retires the old access token and logout retires the new one."""
        uid = create_user(manager, "alice@example.com")
        first = _login(manager)
        rotated = manager.refresh_token(first.refresh_token)

        with pytest.raises(InvalidToken):
            manager.validate_access_token(first.access_token)
        assert manager.validate_access_token(rotated.access_token).id == uid

        manager.logout(uid, rotated.session_id, IP, UA)
        for token in (first.access_token, rotated.access_token):
            with pytest.raises(InvalidToken):
                manager.validate_access_token(token)

    def test_pre_refresh_token_dead_after_revoke_all(self, manager):
        uid = create_user(manager, "alice@example.com")
        first = _login(manager)
        manager.refresh_token(first.refresh_token)
        manager.revoke_all_sessions(uid)
        with pytest.raises(InvalidToken):
            manager.validate_access_token(first.access_token)

    def test_pre_refresh_token_dead_after_change_password(self, manager):
        uid = create_user(manager, "alice@example.com")
        first = _login(manager)
        rotated = manager.refresh_token(first.refresh_token)
        manager.change_password(uid, TEST_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)
        for token in (first.access_token, rotated.access_token):
            with pytest.raises(InvalidToken):
                manager.validate_access_token(token)

    def test_pre_refresh_token_dead_after_reset_password(self, manager, notifier):
        create_user(manager, "alice@example.com")
        first = _login(manager)
        manager.refresh_token(first.refresh_token)
        manager.forgot_password("alice@example.com")
        manager.reset_password(notifier.resets[-1][1], NEW_PASSWORD, NEW_PASSWORD)
        with pytest.raises(InvalidToken):
            manager.validate_access_token(first.access_token)

    def test_garbage_rejected(self, manager):
        with pytest.raises(InvalidToken):
            manager.validate_access_token("garbage")


# ---------------------------------------------------------------------------
# Password flows
# ---------------------------------------------------------------------------


class TestForgotPassword:
    def test_unknown_email_is_silent(self, manager, notifier):
        assert manager.forgot_password("ghost@nowhere.com") is None
        assert notifier.resets == []
        assert manager.audit_log().total == 0

    def test_inactive_user_is_silent(self, manager, notifier):
        """A deactivated account gets no reset token and no email."""
        uid = create_user(manager, "alice@example.com")
        manager.deactivate_user(uid)
        before = manager.audit_log().total

        assert manager.forgot_password("alice@example.com") is None
        assert manager.users.get_by_id(uid).password_reset_token is None
        assert notifier.resets == []
        assert manager.audit_log().total == before

    def test_concurrent_unknown_email_writes_nothing(self, manager, notifier):
        """Parallel requests for a missing account neither fail nor write."""
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: manager.forgot_password("ghost@nowhere.com"), range(8)))
        assert results == [None] * 8
        assert notifier.resets == []
        assert manager.audit_log().total == 0
        assert not manager.users.has_users()

    def test_known_email_issues_one_hour_token(self, manager, notifier, clock):
        uid = create_user(manager, "alice@example.com")
        manager.forgot_password("Alice@example.com")
        user = manager.users.get_by_id(uid)
        assert user.password_reset_token
        assert user.password_reset_expires == clock() + timedelta(hours=1)
        assert notifier.resets == [("alice@example.com", user.password_reset_token)]
        assert AuditAction.PASSWORD_RESET_REQUESTED in _actions(manager, uid)

    def test_failing_notifier_does_not_raise(self, manager):
        create_user(manager, "alice@example.com")

        def boom(email, token):
            raise RuntimeError("smtp down")

        manager.notifier.send_password_reset = boom
        manager.forgot_password("alice@example.com")
        assert manager.users.get_by_email("alice@example.com").password_reset_token


class TestResetPassword:
    def _token(self, manager, notifier):
        manager.forgot_password("alice@example.com")
        return notifier.resets[-1][1]

    def test_reset_revokes_every_session_and_changes_hash(self, manager, notifier):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        _login(manager)
        old_hash = manager.users.get_by_id(uid).hashed_password

        manager.reset_password(self._token(manager, notifier), NEW_PASSWORD, NEW_PASSWORD)

        user = manager.users.get_by_id(uid)
        assert user.hashed_password != old_hash
        assert user.password_reset_token is None
        assert user.password_reset_expires is None
        assert manager.list_sessions(uid) == []
        assert _login(manager, password=NEW_PASSWORD).session_id is not None

    def test_token_is_single_use(self, manager, notifier):
        create_user(manager, "alice@example.com")
        token = self._token(manager, notifier)
        manager.reset_password(token, NEW_PASSWORD, NEW_PASSWORD)
        with pytest.raises(InvalidOrExpiredToken):
            manager.reset_password(token, "An0ther!pw", "An0ther!pw")

    def test_expired_token_rejected(self, manager, notifier, clock):
        uid = create_user(manager, "alice@example.com")
        token = self._token(manager, notifier)
        old_hash = manager.users.get_by_id(uid).hashed_password
        clock.advance(hours=1, seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            manager.reset_password(token, NEW_PASSWORD, NEW_PASSWORD)
        assert manager.users.get_by_id(uid).hashed_password == old_hash

    def test_mismatch_and_weak_rejected_before_lookup(self, manager):
        with pytest.raises(PasswordMismatch):
            manager.reset_password("whatever", NEW_PASSWORD, "different")
        with pytest.raises(WeakPassword):
            manager.reset_password("whatever", "short", "short")


class TestChangePassword:
    def test_change_revokes_sessions(self, manager):
        uid = create_user(manager, "alice@example.com")
        token = _login(manager).access_token
        manager.change_password(uid, TEST_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)
        assert manager.list_sessions(uid) == []
        with pytest.raises(InvalidToken):
            manager.validate_access_token(token)
        assert manager.users.get_by_id(uid).password_changed_at is not None
        assert _login(manager, password=NEW_PASSWORD).session_id is not None

    def test_wrong_current_password(self, manager):
        uid = create_user(manager, "alice@example.com")
        with pytest.raises(InvalidCredentials) as exc_info:
            manager.change_password(uid, "Wrong1!", NEW_PASSWORD, NEW_PASSWORD)
        assert exc_info.value.message == "Current password is incorrect."

    def test_new_password_policy(self, manager):
        uid = create_user(manager, "alice@example.com")
        with pytest.raises(PasswordMismatch):
            manager.change_password(uid, TEST_PASSWORD, NEW_PASSWORD, "other")
        with pytest.raises(WeakPassword):
            manager.change_password(uid, TEST_PASSWORD, "short", "short")

    def test_unknown_user(self, manager):
        with pytest.raises(NotFound):
            manager.change_password(999, TEST_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_verify_email(self, manager, notifier):
        uid = manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "N", "U").user.id
        token = notifier.verifications[-1][1]
        manager.verify_email(token)
        user = manager.users.get_by_id(uid)
        assert user.is_email_verified is True
        assert user.email_verification_token is None
        with pytest.raises(InvalidToken):
            manager.verify_email(token)

    def test_resend_replaces_token(self, manager, notifier):
        manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "N", "U")
        old = notifier.verifications[-1][1]
        manager.resend_verification("new@example.com")
        new = notifier.verifications[-1][1]
        assert new != old
        with pytest.raises(InvalidToken):
            manager.verify_email(old)
        manager.verify_email(new)

    def test_resend_silent_for_unknown_or_verified(self, manager, notifier):
        manager.resend_verification("ghost@nowhere.com")
        manager.register("new@example.com", TEST_PASSWORD, TEST_PASSWORD, "N", "U")
        manager.verify_email(notifier.verifications[-1][1])
        manager.resend_verification("new@example.com")
        assert len(notifier.verifications) == 1


# ---------------------------------------------------------------------------
# Administration and hygiene
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_deactivate_user(self, manager):
        admin = create_user(manager, "admin@example.com", role=Role.ADMIN)
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        manager.deactivate_user(uid, actor_id=admin)

        assert manager.users.get_by_id(uid).is_active is False
        assert manager.list_sessions(uid) == []
        with pytest.raises(InvalidCredentials):
            _login(manager)
        entry = manager.audit_log(action=AuditAction.USER_DEACTIVATED).items[0]
        assert entry.user_id == admin
        assert entry.resource_id == str(uid)

    def test_deactivate_unknown_user(self, manager):
        with pytest.raises(NotFound):
            manager.deactivate_user(404)

    def test_purge_expired(self, manager, clock):
        create_user(manager, "alice@example.com")
        _login(manager)
        with pytest.raises(InvalidCredentials):
            _login(manager, password="Wrong1!")
        clock.advance(days=91)

        counts = manager.purge_expired(retention_days=90, include_audit=True)
        assert counts == {"sessions": 1, "login_attempts": 2, "audit_logs": 2}
        assert manager.attempts.list_for_email("alice@example.com") == []

    def test_purge_keeps_live_rows(self, manager):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        counts = manager.purge_expired(retention_days=90)
        assert counts == {"sessions": 0, "login_attempts": 0}
        assert len(manager.list_sessions(uid)) == 1


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class TestStatistics:
    def test_user_counts(self, manager):
        create_user(manager, "admin@example.com", role=Role.ADMIN, is_email_verified=True)
        create_user(manager, "alice@example.com")
        create_user(manager, "bob@example.com", is_active=False)

        stats = manager.users.statistics()
        assert (stats.total, stats.active, stats.verified, stats.unverified) == (3, 2, 1, 2)
        assert stats.by_role == {"ADMIN": 1, "VIEWER": 2}

    def test_rolls_up_every_store(self, manager):
        uid = create_user(manager, "alice@example.com")
        _login(manager)
        with pytest.raises(InvalidCredentials):
            _login(manager, password="Wrong1!")

        stats = manager.statistics()
        assert stats.users.total == 1
        assert (stats.sessions.total, stats.sessions.active) == (1, 1)
        assert stats.sessions.by_user == {uid: 1}
        assert (stats.login_attempts.successful, stats.login_attempts.failed) == (1, 1)
        assert stats.login_attempts.failed_in_window == 1
        assert stats.audit.by_action == {"LOGIN": 1, "LOGIN_FAILED": 1}
        assert stats.audit.by_user == {str(uid): 2}

    def test_empty_database(self, manager):
        stats = manager.statistics()
        assert stats.users.total == stats.sessions.total == stats.login_attempts.total == stats.audit.total == 0
        assert stats.users.by_role == {}
