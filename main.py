#!/usr/bin/env python3
"""
Gatehouse -- operator command line for user administration.

Works directly against the configured database (DATABASE_URL), so it can
rescue an installation where no admin can sign in.

Usage:
  python main.py list-users
  python main.py create-user alice alice@example.com --admin
  python main.py block alice
  python main.py unblock alice
  python main.py disable-2fa alice
  python main.py expire-password alice
"""

import argparse
import getpass
import secrets
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings


def _find_user(store: UserStore, login: str) -> Optional[User]:
    user = store.get_by_login(login)
    if user is None or user.is_ghost:
        print(f"  [!] No user matching '{login}'.")
        return None
    return user


def _cmd_list_users(store: UserStore, args: argparse.Namespace) -> int:
    users = [u for u in store.list_users() if not u.is_ghost]
    if not users:
        print("  No users.")
        return 0
    print(f"  {'ID':>4}  {'USERNAME':<20} {'EMAIL':<32} {'ROLE':<6} {'STATE':<8} 2FA")
    for u in users:
        print(
            f"  {u.id:>4}  {u.username:<20} {u.email:<32} {u.role:<6} {u.state:<8} "
            f"{'yes' if u.two_factor_enabled else 'no'}"
        )
    return 0


def _cmd_create_user(store: UserStore, args: argparse.Namespace) -> int:
    password = args.password
    if password is None and not args.random_password:
        password = getpass.getpass("  Password: ")
    min_length = get_settings().password_min_length
    if password is not None and len(password) < min_length:
        print(f"  [!] Password is too short (minimum is {min_length} characters).")
        return 1

    user = User(
        username=args.username,
        email=args.email.lower(),
        name=args.name or args.username,
        role="admin" if args.admin else "user",
        hashed_password=hash_password(password or secrets.token_urlsafe(32)),
        password_automatically_set=password is None,
    )
    try:
        user_id = store.create_user(user)
    except IntegrityError:
        print("  [!] A user with that username or email already exists.")
        return 1
    print(f"  Created {user.role} '{user.username}' (id {user_id}).")
    if password is None:
        print("  No password set. The user must reset it or sign in with OAuth.")
    return 0


def _cmd_set_state(state: str):
    def run(store: UserStore, args: argparse.Namespace) -> int:
        user = _find_user(store, args.login)
        if user is None:
            return 1
        if state == "blocked" and user.is_admin and user.is_active and store.count_active_admins() <= 1:
            print("  [!] Cannot block the last active admin account.")
            return 1
        store.update_user(user.id, state=state)
        if state == "active":
            store.unlock(user.id)
        print(f"  '{user.username}' is now {state}.")
        return 0

    return run


def _cmd_disable_2fa(store: UserStore, args: argparse.Namespace) -> int:
    user = _find_user(store, args.login)
    if user is None:
        return 1
    if not user.two_factor_enabled:
        print(f"  '{user.username}' does not have two-factor authentication enabled.")
        return 0
    store.disable_two_factor(user.id)
    print(f"  Two-factor authentication disabled for '{user.username}'.")
    return 0


def _cmd_expire_password(store: UserStore, args: argparse.Namespace) -> int:
    user = _find_user(store, args.login)
    if user is None:
        return 1
    store.update_user(user.id, password_expires_at=datetime.now(timezone.utc).isoformat())
    print(f"  Password for '{user.username}' expired. A new one is required at next sign-in.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Gatehouse user administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py list-users
  python main.py create-user root root@example.com --admin --random-password
  python main.py disable-2fa alice
  DATABASE_URL=sqlite:////srv/gatehouse/auth.db python main.py block mallory
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("list-users", help="List every account")
    p.set_defaults(func=_cmd_list_users)

    p = sub.add_parser("create-user", help="Create an account")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--name", help="Display name (default: the username)")
    p.add_argument("--admin", action="store_true", help="Grant the admin role")
    p.add_argument("--password", help="Password (prompted for when omitted)")
    p.add_argument(
        "--random-password",
        action="store_true",
        help="Set an unknown random password; the user resets it or signs in with OAuth",
    )
    p.set_defaults(func=_cmd_create_user)

    for name, state, text in (
        ("block", "blocked", "Block an account"),
        ("unblock", "active", "Unblock and unlock an account"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("login", help="Username or email")
        p.set_defaults(func=_cmd_set_state(state))

    p = sub.add_parser("disable-2fa", help="Turn off two-factor authentication for an account")
    p.add_argument("login", help="Username or email")
    p.set_defaults(func=_cmd_disable_2fa)

    p = sub.add_parser("expire-password", help="Force a password change at next sign-in")
    p.add_argument("login", help="Username or email")
    p.set_defaults(func=_cmd_expire_password)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    store = UserStore()
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
