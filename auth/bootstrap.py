"""
auth/bootstrap.py -- First-run seeding of the administrator account.

Runs from the CLI (python main.py bootstrap-admin) and, when BOOTSTRAP_EMAIL
and BOOTSTRAP_PASSWORD are both configured, from the API lifespan on an
empty database. Idempotent: an existing account with that email is left
alone.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import InvalidEmail, WeakPassword
from auth.models import AuditAction, Role, User
from auth.passwords import is_strong_password, is_valid_email
from auth.service import AuthManager

logger = logging.getLogger("icmsauth.bootstrap")

DEFAULT_ADMIN_EMAIL = "admin@example.com"
DEFAULT_ADMIN_PASSWORD = "Admin@123"


def resolve_credentials(email: str, password: str) -> tuple[str, str, bool]:
    """Return (email, password, is_default). Falls back to the defaults unless both are set."""
    if email and password:
        return email, password, False
    logger.warning("BOOTSTRAP_EMAIL and/or BOOTSTRAP_PASSWORD not set; using default credentials %s", DEFAULT_ADMIN_EMAIL)
    return DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD, True


def bootstrap_admin(manager: AuthManager, email: str, password: str, *, is_default: bool = False) -> User | None:
    """Create the ADMIN account if no user holds this email yet.

    Returns the created User, or None if the account already existed.
    """
    email = email.strip().lower()
    if not is_valid_email(email):
        raise InvalidEmail()
    if not is_strong_password(password):
        raise WeakPassword()

    if manager.users.get_by_email(email) is not None:
        logger.info("Admin user already exists: %s", email)
        return None

    try:
        user_id = manager.users.create_user(
            User(
                email=email,
                hashed_password=manager.hasher.hash(password),
                first_name="System",
                last_name="Administrator",
                role=Role.ADMIN,
                is_active=True,
            )
        )
    except IntegrityError:
        logger.info("Admin user created concurrently: %s", email)
        return None

    manager.audit.record(
        AuditAction.BOOTSTRAP_USER_CREATED,
        "USER",
        resource_id=user_id,
        details={"email": email, "role": Role.ADMIN.value, "is_default_credentials": is_default},
        ip_address="system",
        user_agent="bootstrap",
    )
    logger.info("Admin user created: %s", email)
    if is_default:
        logger.warning("Default credentials were used. Change the password after first login.")
    return manager.users.get_by_id(user_id)
