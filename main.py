#!/usr/bin/env python3
"""
Caskbook auth maintenance CLI.

Usage:
  python main.py status alice       Show failed attempts and lockout state
  python main.py unlock alice       Clear a lockout before it expires
  python main.py purge              Drop expired sessions, tokens, attempt
                                    rows and reset tokens

Reads the same configuration as the API (DATABASE_URL, SECRET_KEY, ... from
the environment or .env).
"""

import argparse
import sys
from typing import Optional

from auth.db import build_engine
from auth.gateway import AuthGateway, build_gateway
from core.config import get_settings


def _build() -> AuthGateway:
    settings = get_settings()
    engine = build_engine(settings.database_url, settings.storage_timeout_seconds)
    return build_gateway(settings, engine)


def cmd_status(gateway: AuthGateway, username: str) -> int:
    status = gateway.lockout_status(username)
    if status is None:
        print(f"  [!] No such user: {username}")
        return 1
    state = "LOCKED" if status.is_locked else "unlocked"
    print(f"  {status.username}: {state}")
    print(f"  Failed attempts: {status.failed_attempts}/{status.max_attempts}")
    if status.is_locked:
        minutes, seconds = divmod(status.lockout_remaining_seconds, 60)
        print(f"  Lockout ends in: {minutes}m {seconds:02d}s")
    return 0


def cmd_unlock(gateway: AuthGateway, username: str) -> int:
    if not gateway.unlock(username):
        print(f"  [!] No such user: {username}")
        return 1
    print(f"  {username} unlocked. Failed-attempt counter reset to 0.")
    return 0


def cmd_purge(gateway: AuthGateway) -> int:
    counts = gateway.purge()
    for name, count in counts.items():
        print(f"  {name:<14} {count} removed")
    return 0


def main(argv: Optional[list[str]] = None, gateway: Optional[AuthGateway] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="caskbook-auth",
        description="Caskbook auth maintenance: inspect and clear lockouts, purge expired records.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_status = sub.add_parser("status", help="Show lockout state for a user")
    p_status.add_argument("username")

    p_unlock = sub.add_parser("unlock", help="Clear a user's lockout and failed-attempt counter")
    p_unlock.add_argument("username")

    sub.add_parser("purge", help="Delete expired sessions, tokens, attempts and reset tokens")

    args = parser.parse_args(argv)
    gateway = gateway or _build()

    if args.command == "status":
        return cmd_status(gateway, args.username)
    if args.command == "unlock":
        return cmd_unlock(gateway, args.username)
    return cmd_purge(gateway)


if __name__ == "__main__":
    sys.exit(main())
