#!/usr/bin/env python3
"""
suiteauth -- operator CLI for the authentication service.

Usage:
  python main.py hash-password
  python main.py hash-password --cost 12
  echo -n 's3cret' | python main.py hash-password
  python main.py verify-password '$2b$10$...'
  python main.py sweep
  python main.py sweep --database-url sqlite:///./suiteauth.db

hash-password prints a bcrypt hash for seeding USERS_FILE entries.
sweep runs one DeleteExpired pass against the durable refresh-token store and
is the hook for an external scheduler (cron, systemd timer).

Exit codes: 0 success, 1 password mismatch, 2 invalid input or failure.

Environment variables:
  DATABASE_URL  Refresh-token database used by `sweep` (default sqlite:///./suiteauth.db)
  BCRYPT_COST   Default work factor for `hash-password` (default 10)
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.passwords import DEFAULT_COST, BcryptPasswordHasher
from auth.store import SqlRefreshTokenStore
from core.config import get_settings
from core.errors import ServiceError, UnauthorizedError


def _read_password(prompt: str) -> str:
    """Prompt without echo on a terminal; read one line from stdin otherwise."""
    if sys.stdin.isatty():
        return getpass.getpass(prompt)
    return sys.stdin.readline().rstrip("\r\n")


def _cmd_hash_password(args: argparse.Namespace) -> int:
    cost = args.cost if args.cost is not None else _settings_cost()
    password = _read_password("Password: ")
    try:
        print(BcryptPasswordHasher(cost=cost).hash_password(password))
    except ServiceError as e:
        print(f"  [!] {e.message}", file=sys.stderr)
        return 2
    return 0


def _cmd_verify_password(args: argparse.Namespace) -> int:
    password = _read_password("Password: ")
    try:
        BcryptPasswordHasher().verify_password(password, args.hash)
    except UnauthorizedError:
        print("no match")
        return 1
    except ServiceError as e:
        print(f"  [!] {e.message}", file=sys.stderr)
        return 2
    print("match")
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    db_url = args.database_url or get_settings().database_url
    store = SqlRefreshTokenStore(db_url=db_url)
    try:
        removed = store.delete_expired()
    except ServiceError as e:
        print(f"  [!] Sweep failed: {e.message}", file=sys.stderr)
        return 2
    finally:
        store.close()
    print(f"  Deleted {removed} expired refresh token(s).")
    return 0


def _settings_cost() -> int:
    try:
        return get_settings().bcrypt_cost
    except ValueError:
        # Settings refuse to load without SECRET_KEY outside debug mode;
        # hashing does not need it.
        return DEFAULT_COST


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="suiteauth",
        description="Operator commands for the suiteauth authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py hash-password --cost 12
  python main.py verify-password '$2b$10$N9qo8uLOickgx2ZMRZoMye...'
  DATABASE_URL=sqlite:///./suiteauth.db python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_hash = sub.add_parser("hash-password", help="Read a password and print its bcrypt hash")
    p_hash.add_argument(
        "--cost",
        type=int,
        default=None,
        metavar="N",
        help="bcrypt work factor (4-31). Out-of-range values fall back to 10.",
    )
    p_hash.set_defaults(func=_cmd_hash_password)

    p_verify = sub.add_parser("verify-password", help="Read a password and check it against HASH")
    p_verify.add_argument("hash", metavar="HASH", help="bcrypt hash to verify against")
    p_verify.set_defaults(func=_cmd_verify_password)

    p_sweep = sub.add_parser("sweep", help="Delete expired refresh tokens from the durable store")
    p_sweep.add_argument(
        "--database-url",
        default=None,
        metavar="URL",
        help="SQLAlchemy URL of the refresh-token database (default: DATABASE_URL setting)",
    )
    p_sweep.set_defaults(func=_cmd_sweep)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
