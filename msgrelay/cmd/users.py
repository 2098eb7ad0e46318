#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys

from msgrelay.core.errors import DirectoryError
from msgrelay.core.store import SqliteUserDirectory

log = logging.getLogger("msgrelay.cmd.users")


async def _run(args: argparse.Namespace) -> int:
    store = await SqliteUserDirectory.open(args.db)
    try:
        if args.command == "add":
            password = args.password or getpass.getpass(f"Password for {args.email}: ")
            if not password:
                print("Empty password refused", file=sys.stderr)
                return 2
            if await store.add_user(args.email, password, replace=args.replace):
                print(f"Created user {args.email} in {args.db}")
                return 0
            print(f"User {args.email} already exists (use --replace)", file=sys.stderr)
            return 1
        if args.command == "remove":
            if await store.remove_user(args.email):
                print(f"Removed user {args.email}")
                return 0
            print(f"No such user {args.email}", file=sys.stderr)
            return 1
        for email, online in await store.list_users():
            print(f"{email}\t{'online' if online else 'offline'}")
        return 0
    except DirectoryError as exc:
        log.error("User store error: %s", exc)
        return 1
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Manage relay user accounts")
    ap.add_argument("--db", default="msgrelay.db", help="User database path")
    sub = ap.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Create a user")
    add.add_argument("email")
    add.add_argument("--password", default=None, help="Prompted for when omitted")
    add.add_argument("--replace", action="store_true", help="Overwrite an existing user")

    remove = sub.add_parser("remove", help="Delete a user")
    remove.add_argument("email")

    sub.add_parser("list", help="List users and presence")

    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
