"""
auth/store.py -- Credential store: SQLAlchemy Core repository for User records.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. The AuthManager
never touches SQL directly, and no row leaves this module as a dict.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) is enforced by the schema (auth/schema.py). create_user()
  lets IntegrityError propagate so a concurrent duplicate registration fails
  loudly; the AuthManager maps it to AlreadyExists.

  Reset-token consumption is a single UPDATE that writes the new hash and
  clears token + expiry together, so a consumed token can never be replayed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.models import Role, User, UserStatistics
from auth.schema import users as _users
from core.clock import Clock, from_iso, to_iso, utc_now

# Fields update_user() accepts. Password, reset, and verification fields have
# dedicated methods so their invariants stay in one place.
_MUTABLE_FIELDS = {"first_name", "last_name", "role", "is_active"}


class UserStore:
    """Repository for User identities.

    Usage:
        store = UserStore(engine)
        user_id = store.create_user(User(email="a@b.io", hashed_password=hasher.hash("...")))
        user = store.get_by_email("a@b.io")
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_reset_token(self, token: str, now: datetime | None = None) -> User | None:
        """Return the user holding this reset token if it has not expired yet."""
        now = now or self._clock()
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.password_reset_token == token) & (_users.c.password_reset_expires > to_iso(now))
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_verification_token(self, token: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email_verification_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    email_verification_token=user.email_verification_token,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update profile fields on an existing user.

        Accepted fields: first_name, last_name, role, is_active. Unknown keys
        raise ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Store a new hash, stamp password_changed_at, and drop any pending reset token."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    password_reset_token=None,
                    password_reset_expires=None,
                    password_changed_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def consume_reset_token(self, token: str, hashed_password: str, now: datetime | None = None) -> bool:
        """Atomically swap in a new hash for the holder of an unexpired reset token.

        The WHERE clause re-checks token and expiry, so two concurrent resets
        with the same token cannot both succeed.
        """
        now = now or self._clock()
        stamp = to_iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.password_reset_token == token) & (_users.c.password_reset_expires > stamp))
                .values(
                    hashed_password=hashed_password,
                    password_reset_token=None,
                    password_reset_expires=None,
                    password_changed_at=stamp,
                    updated_at=stamp,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current time as last_login_at for the given user."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=now, updated_at=now))
            conn.commit()

    def set_password_reset_token(self, email: str, token: str, expires_at: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.email == email.strip().lower())
                .values(
                    password_reset_token=token,
                    password_reset_expires=to_iso(expires_at),
                    updated_at=to_iso(self._clock()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def set_verification_token(self, user_id: int, token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(email_verification_token=token, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def mark_email_verified(self, token: str) -> bool:
        """Flip is_email_verified for the token holder and clear the token."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.email_verification_token == token)
                .values(is_email_verified=1, email_verification_token=None, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def statistics(self) -> UserStatistics:
        """Return head counts by activity, verification, and role."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
            active = conn.execute(select(func.count()).select_from(_users).where(_users.c.is_active == 1)).scalar() or 0
            verified = (
                conn.execute(select(func.count()).select_from(_users).where(_users.c.is_email_verified == 1)).scalar()
                or 0
            )
            by_role = conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        return UserStatistics(
            total=total,
            active=active,
            verified=verified,
            unverified=total - verified,
            by_role={role: count for role, count in by_role},
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        email_verification_token=row.email_verification_token,
        password_reset_token=row.password_reset_token,
        password_reset_expires=from_iso(row.password_reset_expires),
        last_login_at=from_iso(row.last_login_at),
        password_changed_at=from_iso(row.password_changed_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
