#!/usr/bin/env python3
"""
ICMS auth -- operator commands for the authentication database.

Usage:
  python main.py bootstrap-admin
  python main.py bootstrap-admin --email admin@corp.example --password 'S3cure!pass'
  python main.py purge
  python main.py purge --retention-days 30 --include-audit
  python main.py audit --user-id 3 --action LOGIN --limit 20
  python main.py audit --resource SESSION --search revoked
  python main.py stats

Environment variables (see core/config.py):
  SECRET_KEY          Required unless DEBUG=true.
  DATABASE_URL        SQLAlchemy URL of the auth database.
  BOOTSTRAP_EMAIL     Admin email for bootstrap-admin (default admin@example.com).
  BOOTSTRAP_PASSWORD  Admin password for bootstrap-admin.
"""

import argparse
import logging
import sys

from auth.bootstrap import bootstrap_admin, resolve_credentials
from auth.errors import AuthError
from auth.models import AuditAction
from auth.schema import make_engine
from auth.service import AuthManager
from core.config import get_settings

logger = logging.getLogger("icmsauth.cli")


def _build_manager() -> AuthManager:
    settings = get_settings()
    engine = make_engine(settings.database_url, settings.db_timeout_seconds)
    return AuthManager.from_settings(engine, settings)


def cmd_bootstrap(args: argparse.Namespace) -> int:
    settings = get_settings()
    email, password, is_default = resolve_credentials(
        args.email or settings.bootstrap_email,
        args.password or settings.bootstrap_password,
    )
    manager = _build_manager()
    try:
        created = bootstrap_admin(manager, email, password, is_default=is_default)
    except AuthError as exc:
        print(f"  [!] Bootstrap failed: {exc.message}")
        return 1
    finally:
        manager.users.close()
    if created is None:
        print(f"  Admin user already exists: {email}")
    else:
        print(f"  Admin user created: {created.email} (id={created.id})")
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    settings = get_settings()
    retention = args.retention_days or settings.retention_days
    manager = _build_manager()
    try:
        counts = manager.purge_expired(retention, include_audit=args.include_audit)
    finally:
        manager.users.close()
    for name, count in counts.items():
        print(f"  {name:<16} {count} removed")
    return 0


def cmd_audit(args: argparse.Namespace) -> int:
    manager = _build_manager()
    try:
        page = manager.audit_log(
            page=args.page,
            limit=args.limit,
            user_id=args.user_id,
            action=AuditAction(args.action) if args.action else None,
            resource=args.resource,
            term=args.search,
        )
    finally:
        manager.users.close()
    for entry in page.items:
        stamp = entry.created_at.isoformat() if entry.created_at else "-"
        print(f"  {stamp}  {entry.action.value:<26} user={entry.user_id or '-'}  {entry.resource}:{entry.resource_id or '-'}")
    print(f"  page {page.page}/{max(page.total_pages, 1)} ({page.total} entries)")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    manager = _build_manager()
    try:
        stats = manager.statistics()
    finally:
        manager.users.close()
    print(f"  Users           {stats.users.total} total, {stats.users.active} active, {stats.users.verified} verified")
    for role, count in sorted(stats.users.by_role.items()):
        print(f"    {role:<14}{count}")
    print(f"  Sessions        {stats.sessions.total} total, {stats.sessions.active} active, {stats.sessions.expired} expired")
    attempts = stats.login_attempts
    print(
        f"  Login attempts  {attempts.total} total, {attempts.successful} ok, {attempts.failed} failed "
        f"({attempts.failed_in_window} in throttle window)"
    )
    print(f"  Audit entries   {stats.audit.total}")
    for action, count in sorted(stats.audit.by_action.items()):
        print(f"    {action:<26}{count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ICMS auth -- operator commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_boot = sub.add_parser("bootstrap-admin", help="Create the first ADMIN account if missing")
    p_boot.add_argument("--email", help="Admin email (default: BOOTSTRAP_EMAIL)")
    p_boot.add_argument("--password", help="Admin password (default: BOOTSTRAP_PASSWORD)")
    p_boot.set_defaults(func=cmd_bootstrap)

    p_purge = sub.add_parser("purge", help="Delete expired sessions and old login attempts")
    p_purge.add_argument("--retention-days", type=int, help="Keep attempts newer than this (default: RETENTION_DAYS)")
    p_purge.add_argument("--include-audit", action="store_true", help="Also delete audit entries past retention")
    p_purge.set_defaults(func=cmd_purge)

    p_audit = sub.add_parser("audit", help="Print recent audit log entries")
    p_audit.add_argument("--user-id", type=int)
    p_audit.add_argument("--action", choices=[a.value for a in AuditAction])
    p_audit.add_argument("--resource", help="Exact resource name, e.g. USER or SESSION")
    p_audit.add_argument("--search", help="Case-insensitive match on action, resource, or resource id")
    p_audit.add_argument("--page", type=int, default=1)
    p_audit.add_argument("--limit", type=int, default=20)
    p_audit.set_defaults(func=cmd_audit)

    p_stats = sub.add_parser("stats", help="Print user, session, attempt, and audit counts")
    p_stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
