"""Command-line interface for the homestay identity service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from homestay.config import Settings, load_settings
from homestay.database import Database

logger = logging.getLogger("homestay.main")

_DEFAULT_PORT = 5000


def _default_port() -> int:
    raw = os.getenv("PORT")
    if raw and raw.strip().isdigit():
        return int(raw.strip())
    return _DEFAULT_PORT


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Homestay identity service utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML settings file (default: $HOMESTAY_CONFIG or config/homestay.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create or upgrade the database schema")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=_default_port(),
        help=f"Port for the HTTP API (default: $PORT or {_DEFAULT_PORT})",
    )

    list_parser = subparsers.add_parser("list-users", help="Print registered users")
    list_parser.add_argument("--limit", type=int, default=None, help="Maximum number of users to show")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "list-users"}

    global_args: list[str] = []
    if len(args_list) >= 2 and args_list[0] == "--config":
        global_args, args_list = args_list[:2], args_list[2:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*global_args, *args_list])
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args([*global_args, *args_list])
            args_list = ["serve", *args_list]

    return parser.parse_args([*global_args, *args_list])


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    from homestay.application import create_application
    import uvicorn

    logger.info("Starting homestay API on http://%s:%s", host, port)
    app = create_application(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _list_users(database: Database, limit: int | None) -> None:
    users = database.list_users(limit=limit)
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Phone':<16}  {'Name':<24}  {'Email':<32}  Status")
    print("-" * 96)
    for user in users:
        name = " ".join(part for part in (user.first_name, user.last_name) if part) or "<no name>"
        phone = user.phonenumber or "<no phone>"
        email = user.email or "<no email>"
        state = "pending" if user.google_auth_pending else "complete"
        print(f"{user.id:>4}  {phone:<16}  {name:<24}  {email:<32}  {state}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "list-users":
        _list_users(database, args.limit)
    elif args.command == "init-db":
        print("Database initialisation complete.")


if __name__ == "__main__":
    main()
