#!/usr/bin/env python3
"""
HR Auth -- operator CLI for the authentication service.

Usage:
  python main.py create-admin --email admin@example.com --full-name "Ada Admin"
  python main.py create-admin --email admin@example.com --full-name "Ada Admin" --password 's3cretpass'
  python main.py cleanup-sessions
  python main.py unlock --email someone@example.com
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL  SQLAlchemy URL (default: SQLite file under auth/).
"""

import argparse
import getpass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.models import validate_password_strength
from audit.models import AuditAction, AuditLog
from audit.store import AuditStore
from auth.models import User
from auth.rbac import Role
from auth.sessions import run_session_cleanup
from auth.store import UserStore
from auth.tokens import hash_password


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return a policy-compliant password from --password or an interactive prompt."""
    password = given
    if password is None:
        password = getpass.getpass("  Password: ")
        if password != getpass.getpass("  Repeat password: "):
            print("  [!] Passwords do not match.")
            return None
    try:
        return validate_password_strength(password)
    except ValueError as e:
        print(f"  [!] {e}")
        return None


def cmd_create_admin(args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    store = UserStore()
    audit = AuditStore()
    try:
        user_id = store.create_user(
            User(
                email=args.email,
                full_name=args.full_name,
                role=Role.admin.value,
                password_hash=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    else:
        audit.record(
            AuditLog(
                action=AuditAction.REGISTER.value,
                resource_type="user",
                resource_id=str(user_id),
                changes={"role": Role.admin.value, "source": "cli"},
            )
        )
        print(f"  Admin account created (id={user_id}).")
        return 0
    finally:
        store.close()
        audit.close()


def cmd_cleanup_sessions(args: argparse.Namespace) -> int:
    store = UserStore()
    try:
        expired, deleted = run_session_cleanup(store)
    finally:
        store.close()
    print(f"  Sessions expired: {expired}, deleted: {deleted}")
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    store = UserStore()
    audit = AuditStore()
    try:
        user = store.get_by_email(args.email)
        if user is None:
            print(f"  [!] No user with email '{args.email}'.")
            return 1
        store.unlock_account(user.id)
        audit.record(
            AuditLog(
                action=AuditAction.ACCOUNT_UNLOCK.value,
                resource_type="user",
                resource_id=str(user.id),
                changes={
                    "account_locked_until": {"old": user.account_locked_until, "new": None},
                    "source": "cli",
                },
            )
        )
        print(f"  Account '{user.email}' unlocked.")
        return 0
    finally:
        store.close()
        audit.close()


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hr-auth",
        description="Operator commands for the HR authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-admin", help="Create an admin account (bootstrap or recovery)")
    p.add_argument("--email", required=True)
    p.add_argument("--full-name", required=True)
    p.add_argument("--password", default=None, help="Prompted for when omitted")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("cleanup-sessions", help="Expire overdue sessions and purge old ones once")
    p.set_defaults(func=cmd_cleanup_sessions)

    p = sub.add_parser("unlock", help="Clear a login lockout")
    p.add_argument("--email", required=True)
    p.set_defaults(func=cmd_unlock)

    p = sub.add_parser("serve", help="Run the API with uvicorn")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
