#!/usr/bin/env python3
"""
Session Authority -- operator command line.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py create-user alice --role secretario --email alice@example.org
  python main.py create-user bob --role obispo --legacy
  python main.py purge
  python main.py access-log --limit 20

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the auth database (default: sqlite authority.db)
  DEBUG          true to auto-generate missing secrets (development only)
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.authority import SessionAuthority
from auth.errors import ConfigurationError
from auth.models import Hashed, LegacyPlaintext, User
from auth.passwords import hash_password
from auth.store import AuthStore
from core.config import get_settings


def _read_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)


def cmd_create_user(args: argparse.Namespace, store: AuthStore) -> None:
    password = _read_password(args).strip()
    if not password:
        print("  [!] Password must not be empty.")
        sys.exit(1)
    # --legacy reproduces rows written by the pre-hashing application; they are
    # upgraded to bcrypt on the user's first successful login.
    credential = LegacyPlaintext(password) if args.legacy else Hashed(hash_password(password))
    try:
        user_id = store.create_user(
            User(
                username=args.username.strip(),
                role=args.role,
                password=credential,
                name=args.name,
                email=args.email,
                organization_id=args.organization,
                require_email_otp=args.require_otp,
            )
        )
    except IntegrityError:
        print(f"  [!] Username '{args.username}' already exists.")
        sys.exit(1)
    print(f"  Created user {args.username} ({args.role}) id={user_id}")


def cmd_purge(args: argparse.Namespace, authority: SessionAuthority) -> None:
    otps, tokens = authority.purge_expired()
    print(f"  Purged {otps} OTP challenge(s) and {tokens} refresh token(s).")


def cmd_access_log(args: argparse.Namespace, authority: SessionAuthority) -> None:
    rows = authority.access_log(args.limit)
    if not rows:
        print("  No login events recorded.")
        return
    for event, user in rows:
        who = user.username if user else "-"
        status = "ok  " if event.success else "fail"
        created = event.created_at.strftime("%Y-%m-%d %H:%M:%S") if event.created_at else "-"
        print(
            f"  {created}  {status}  {event.reason or '-':<20} {who:<20} "
            f"{event.ip_address or '-':<16} {event.country or '--'}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="session-authority",
        description="Operate the session authority: serve the API, manage users, inspect the access log.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py create-user alice --role secretario --email alice@example.org --require-otp
  python main.py access-log --limit 20
  DATABASE_URL=sqlite:////var/lib/authority.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    create = sub.add_parser("create-user", help="Create a local account")
    create.add_argument("username")
    create.add_argument("--role", required=True, help="Role name, e.g. obispo or secretario")
    create.add_argument("--name", default=None)
    create.add_argument("--email", default=None, help="Address for step-up codes")
    create.add_argument("--organization", default=None, metavar="ID")
    create.add_argument("--password", default=None, help="Read from the terminal when omitted")
    create.add_argument("--require-otp", action="store_true", help="Always require an emailed code")
    create.add_argument("--legacy", action="store_true", help="Store the password as legacy plaintext")

    sub.add_parser("purge", help="Delete dead OTP challenges and long-expired refresh tokens")

    log = sub.add_parser("access-log", help="Print the most recent login events")
    log.add_argument("--limit", type=int, default=50)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    if args.command == "serve":
        cmd_serve(args)
        return

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        print(f"  [!] Configuration error: {exc}")
        sys.exit(2)

    store = AuthStore(settings.database_url)
    try:
        if args.command == "create-user":
            cmd_create_user(args, store)
        else:
            authority = SessionAuthority.from_settings(settings, store)
            if args.command == "purge":
                cmd_purge(args, authority)
            else:
                cmd_access_log(args, authority)
    finally:
        store.close()


if __name__ == "__main__":
    main()
