#!/usr/bin/env python3
"""
passkeykit -- administrative command line for the passkey store.

Usage:
  python main.py cleanup
  python main.py show alice@example.com
  python main.py show alice@example.com --json

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the passkey store. Required unless DEBUG=true,
                in which case an (empty) in-memory store is used.
"""

import argparse
import json
from dataclasses import asdict
from typing import Optional

from core.config import get_settings
from core.models import UserIdentity
from store.base import PasskeyStorage
from store.factory import open_store


def _identity_to_dict(identity: UserIdentity) -> dict:
    data = asdict(identity)
    data["created_at"] = identity.created_at.isoformat()
    data["updated_at"] = identity.updated_at.isoformat()
    for credential in data["credentials"]:
        credential["created_at"] = credential["created_at"].isoformat()
    return data


def cmd_cleanup(store: PasskeyStorage) -> int:
    removed = store.cleanup_expired_challenges()
    print(f"  Removed {removed} expired challenge(s).")
    return 0


def cmd_show(store: PasskeyStorage, username: str, as_json: bool = False) -> int:
    identity = store.get_user_by_username(username)
    if identity is None:
        print(f"  [!] No passkey user named '{username}'.")
        return 1

    if as_json:
        print(json.dumps(_identity_to_dict(identity), indent=2))
        return 0

    print(f"\n  {identity.display_name} <{identity.username}>")
    print(f"  user id:  {identity.user_id}")
    print(f"  created:  {identity.created_at.isoformat()}")
    print(f"  updated:  {identity.updated_at.isoformat()}")
    print(f"  passkeys: {len(identity.credentials)}")
    print("─" * 40)
    for credential in identity.credentials:
        transports = ", ".join(credential.transports or []) or "-"
        print(f"  {credential.id}")
        print(f"    counter={credential.counter}  transports={transports}  created={credential.created_at.isoformat()}")
    print()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="passkeykit",
        description="Inspect and maintain the passkey store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py cleanup
  python main.py show alice@example.com
  DATABASE_URL=sqlite:///passkeys.db python main.py show alice@example.com --json
        """,
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("cleanup", help="Remove expired pending challenges")
    show = sub.add_parser("show", help="Print a user and their registered passkeys")
    show.add_argument("username", help="Username (e.g. email) to look up")
    show.add_argument("--json", action="store_true", help="Output structured JSON")
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    store = open_store(get_settings())
    try:
        if args.command == "cleanup":
            return cmd_cleanup(store)
        return cmd_show(store, args.username, as_json=args.json)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
