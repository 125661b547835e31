"""
auth/errors.py -- Failure taxonomy for the authentication flows.

Each class carries a stable machine code and the HTTP status the inbound
boundary should use. The AuthManager raises these; api/main.py turns them
into the shared error envelope.

InvalidCredentials and TooManyAttempts deliberately share public_code and
public_message so a client cannot tell a throttled attempt from a wrong
password (anti-enumeration). Logs keep the real code.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure the auth core raises on purpose."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Authentication request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def public_code(self) -> str:
        return self.code

    @property
    def public_message(self) -> str:
        return self.message


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    status_code = 401
    default_message = "Invalid credentials."


class TooManyAttempts(AuthError):
    code = "too_many_attempts"
    status_code = 401
    default_message = "Too many failed attempts. Please try again later."

    @property
    def public_code(self) -> str:
        return InvalidCredentials.code

    @property
    def public_message(self) -> str:
        return InvalidCredentials.default_message


class AlreadyExists(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "User with this email already exists."


class PasswordMismatch(AuthError):
    code = "password_mismatch"
    status_code = 400
    default_message = "Passwords do not match."


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 400
    default_message = (
        "Password must be at least 8 characters long and contain at least one uppercase letter, "
        "one lowercase letter, one number, and one special character (@$!%*?&)."
    )


class InvalidEmail(AuthError):
    code = "invalid_email"
    status_code = 400
    default_message = "Invalid email format."


class InvalidToken(AuthError):
    code = "invalid_token"
    status_code = 401
    default_message = "Invalid token."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    status_code = 400
    default_message = "Invalid or expired reset token."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."
