#!/usr/bin/env python3
"""
Everglass CRM -- API server and administration commands.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py create-admin --username admin --email admin@everglass.fr \\
      --first-name Ada --last-name Martin
  python main.py clean-sessions

Environment variables (see core/config.py for the full list):
  DATABASE_URL     SQLAlchemy URL (default: sqlite everglass.db next to this file)
  SESSION_SECRET   Cookie signing secret. Required when NODE_ENV=production.
  PORT             Listen port for `serve` (default: 3000)
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import Level, Role, User
from auth.passwords import hash_password
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import build_auth_config, get_settings
from core.db import now_iso
from core.validation import password_requirements_message, validate_password, validate_username

logger = logging.getLogger("everglass.cli")


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "asgi:app",
        host=args.host,
        port=args.port or settings.port,
        reload=args.reload,
    )
    return 0


def _prompt_password() -> str:
    """Prompt twice without echo. Returns "" when the entries differ."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return ""
    return first


def _create_admin(args: argparse.Namespace) -> int:
    """Bootstrap an administrator account.

    The password is prompted (never taken from argv) and must satisfy the
    configured policy. Unlike accounts created through the API, the admin
    chose this password personally, so no change is forced at first login.
    """
    settings = get_settings()
    config = build_auth_config(settings)
    store = UserStore(settings.database_url)
    try:
        errors = validate_username(args.username, config.username_policy)
        if errors:
            for err in errors:
                print(f"  [!] {err.message}")
            return 1
        if store.username_exists(args.username):
            print(f"  [!] Username '{args.username}' is already taken.")
            return 1

        print(f"  {password_requirements_message(config.password_policy)}")
        password = _prompt_password()
        errors = validate_password(password, config.password_policy)
        if errors:
            for err in errors:
                print(f"  [!] {err.message}")
            return 1

        try:
            user_id = store.create_user(
                User(
                    username=args.username,
                    email=args.email,
                    first_name=args.first_name,
                    last_name=args.last_name,
                    role=Role.admin.value,
                    level=Level.site.value,
                    hashed_password=hash_password(password, rounds=config.bcrypt_salt_rounds),
                    must_change_password=False,
                    password_changed_at=now_iso(),
                )
            )
        except IntegrityError:
            print(f"  [!] An account with email '{args.email}' already exists.")
            return 1
    finally:
        store.close()
    print(f"  Administrator '{args.username}' created (id={user_id}).")
    return 0


def _clean_sessions(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = SessionStore(settings.database_url)
    try:
        removed = store.clean_expired()
    finally:
        store.close()
    print(f"  Removed {removed} expired session(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(
        prog="everglass",
        description="Everglass CRM API server and administration commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the API server with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Listen port (default: PORT or 3000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    serve.set_defaults(func=_serve)

    admin = sub.add_parser("create-admin", help="Create a site-level administrator account")
    admin.add_argument("--username", required=True)
    admin.add_argument("--email", required=True)
    admin.add_argument("--first-name", required=True)
    admin.add_argument("--last-name", required=True)
    admin.set_defaults(func=_create_admin)

    clean = sub.add_parser("clean-sessions", help="Delete expired sessions once and exit")
    clean.set_defaults(func=_clean_sessions)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
