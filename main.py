#!/usr/bin/env python3
"""
tokengate -- maintenance CLI for the token service.

Usage:
  python main.py sweep
  python main.py sweep --timeout 60
  python main.py create-user --username alice --email alice@example.com
  python main.py create-user --username ops --email ops@example.com --role admin --role user

Environment variables (see core/config.py):
  DATABASE_URL   SQLAlchemy URL of the auth database. Required: the in-memory
                 backends would lose everything when this process exits.
  SECRET_KEY     Signing key; required unless DEBUG=true.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AuthError, Cancelled
from auth.factory import build_backends, build_provider
from core.config import get_settings
from core.context import Context

logger = logging.getLogger("tokengate.cli")


def _sweep(args: argparse.Namespace) -> int:
    """Remove expired revocation records. Meant for cron / a k8s CronJob."""
    settings = get_settings()
    backends = build_backends(settings)
    try:
        removed = backends.revocation_store.sweep_expired(ctx=Context(timeout=args.timeout))
    finally:
        backends.close()
    print(f"Removed {removed} expired revocation record(s).")
    return 0


def _create_user(args: argparse.Namespace) -> int:
    settings = get_settings()
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        return 1
    backends = build_backends(settings)
    try:
        provider = build_provider(settings, backends)
        user = provider.register(args.username, args.email, password, roles=args.role or ["user"])
    finally:
        backends.close()
    print(f"Created user {user.username} ({user.id}) with roles {', '.join(user.roles)}.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tokengate",
        description="Maintenance commands for the tokengate auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="Delete revocation records whose token has expired")
    sweep.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        metavar="SECONDS",
        help="Give up after this many seconds (default: 30)",
    )
    sweep.set_defaults(func=_sweep)

    create = sub.add_parser("create-user", help="Create a local account (password is prompted)")
    create.add_argument("--username", required=True)
    create.add_argument("--email", required=True)
    create.add_argument(
        "--role",
        action="append",
        metavar="ROLE",
        help="Role label; repeat for several (default: user)",
    )
    create.set_defaults(func=_create_user)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not get_settings().database_url:
        print("  [!] DATABASE_URL is not set; nothing to maintain in an in-memory store.")
        return 2

    try:
        return args.func(args)
    except Cancelled as exc:
        print(f"  [!] Timed out: {exc}")
        return 1
    except AuthError as exc:
        print(f"  [!] {exc.code}: {exc.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
