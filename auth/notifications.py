"""
auth/notifications.py -- Hand-off point for account emails.

The auth core only generates reset and verification tokens; delivering them
is somebody else's job. Anything with these two methods can be passed to
AuthManager(notifier=...). LoggingNotifier is the default for development:
it records that a hand-off happened without writing the token at INFO.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("icmsauth.notify")


class Notifier(Protocol):
    def send_password_reset(self, email: str, token: str) -> None: ...

    def send_verification(self, email: str, token: str) -> None: ...


class LoggingNotifier:
    def send_password_reset(self, email: str, token: str) -> None:
        logger.info("Password reset requested for %s", email)
        logger.debug("Password reset token for %s: %s", email, token)

    def send_verification(self, email: str, token: str) -> None:
        logger.info("Verification email requested for %s", email)
        logger.debug("Verification token for %s: %s", email, token)
