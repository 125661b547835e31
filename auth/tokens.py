"""
auth/tokens.py -- Access token signing and opaque token generation.

Security design decisions:
  Access tokens: python-jose with HS256, signed with SECRET_KEY. Claims are
       sub (user id as str), iat, exp, typ, and jti. jti is 16 random bytes
       per issuance, so two tokens minted for the same user in the same
       second still differ -- the sessions table relies on that
       (UNIQUE access_token).

  Refresh tokens: secrets.token_hex(64), drawn independently of the access
       token. They carry no structure and are only useful when looked up in
       the session store by exact match.

  Expiry math uses the injected clock, not the wall clock inside jose, so
       decode() honours the same "now" as the rest of the auth core.
       Verification returns None on any failure -- callers turn that into
       InvalidToken.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from jose import JWTError, jwt

from auth.models import IssuedTokens
from core.clock import Clock, utc_now

logger = logging.getLogger("icmsauth.auth")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"


def generate_opaque_token(nbytes: int = 32) -> str:
    """Return a random hex token for password-reset and email-verification links."""
    return secrets.token_hex(nbytes)


class TokenIssuer:
    """Mints access/refresh token pairs for a user id."""

    def __init__(self, secret_key: str, expire_seconds: int = 3600, clock: Clock = utc_now) -> None:
        if len(secret_key) < 32:
            raise ValueError("secret_key must be at least 32 characters")
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds
        self._clock = clock

    def issue(self, user_id: int) -> IssuedTokens:
        """Return a fresh (access_token, refresh_token, expires_in) triple."""
        now = self._clock()
        payload = {
            "sub": str(user_id),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.expire_seconds)).timestamp()),
            "jti": secrets.token_hex(16),
            "typ": _TOKEN_TYPE,
        }
        access_token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        refresh_token = secrets.token_hex(64)
        return IssuedTokens(access_token=access_token, refresh_token=refresh_token, expires_in=self.expire_seconds)

    def decode(self, token: str) -> dict | None:
        """Verify signature and expiry. Returns the claims dict or None on any failure."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        if payload.get("typ") != _TOKEN_TYPE or "sub" not in payload or "exp" not in payload:
            return None
        try:
            expired = int(payload["exp"]) <= int(self._clock().timestamp())
        except (TypeError, ValueError):
            return None
        if expired:
            logger.debug("Rejected expired access token jti=%s", payload.get("jti"))
            return None
        return payload

    def user_id_from(self, token: str) -> int | None:
        payload = self.decode(token)
        if payload is None:
            return None
        try:
            return int(payload["sub"])
        except (TypeError, ValueError):
            return None
