"""
tests/helpers.py -- Test doubles and small builders shared by the test modules.

Kept out of conftest.py so test modules can import them directly.
"""

from __future__ import annotations

from datetime import timedelta

from auth.models import Role, User
from auth.service import AuthManager
from core.clock import utc_now

TEST_PASSWORD = "Str0ng!pass"


class FakeClock:
    """Callable clock pinned to a settable instant. Starts at the real now."""

    def __init__(self) -> None:
        self.now = utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.resets: list[tuple[str, str]] = []
        self.verifications: list[tuple[str, str]] = []

    def send_password_reset(self, email: str, token: str) -> None:
        self.resets.append((email, token))

    def send_verification(self, email: str, token: str) -> None:
        self.verifications.append((email, token))


def create_user(manager: AuthManager, email: str, password: str = TEST_PASSWORD, **fields) -> int:
    """Insert an active user directly through the store and return its ID."""
    return manager.users.create_user(
        User(
            email=email,
            hashed_password=manager.hasher.hash(password),
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", "User"),
            role=fields.pop("role", Role.VIEWER),
            **fields,
        )
    )
