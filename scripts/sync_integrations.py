#!/usr/bin/env python3
"""CLI script for operating integration syncs.

Usage:
    python scripts/sync_integrations.py sync              # every due connection
    python scripts/sync_integrations.py sync 12           # one connection, due or not
    python scripts/sync_integrations.py retry-failed
    python scripts/sync_integrations.py discover 12 --auto-map --client "Acme Corp=7"

Connects directly to the database using DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.assetsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _parse_clients(pairs: list[str]) -> dict[str, int]:
    """Turn ``NAME=ID`` arguments into a name -> client id map."""
    clients: dict[str, int] = {}
    for pair in pairs:
        name, sep, raw_id = pair.rpartition("=")
        if not sep or not name.strip() or not raw_id.strip().isdigit():
            raise ValueError(f"Invalid --client value {pair!r}, expected NAME=ID")
        clients[name.strip()] = int(raw_id)
    return clients


async def run(args: argparse.Namespace) -> int:
    """Execute one subcommand. Returns the process exit code."""
    from src.assetsync.api.middleware.logging import configure_structlog
    from src.assetsync.config import get_settings
    from src.assetsync.core.database import close_db, init_db
    from src.assetsync.integrations.clients import StaticClientDirectory
    from src.assetsync.integrations.errors import IntegrationError
    from src.assetsync.integrations.services import build_integration_services

    configure_structlog()
    await init_db()
    services = build_integration_services(get_settings())
    orchestrator = services.orchestrator

    try:
        if args.command == "sync":
            if args.connection_id is not None:
                connection = await services.repository.get_connection(args.connection_id)
                try:
                    run = await orchestrator.sync_connection(args.connection_id, source="cli")
                except IntegrationError as exc:
                    print(f"Error: {exc}", file=sys.stderr)
                    return 1
                if run is None:
                    print(f"{connection.name}: skipped (sync already running)")
                else:
                    print(f"{connection.name}: {run.status.value} ({run.items_processed} processed)")
                return 0

            due = await orchestrator.due_connections()
            if not due:
                print("No integration connections are due for sync.")
                return 0
            for connection in due:
                try:
                    run = await orchestrator.sync_connection(connection.id, source="cli")
                except IntegrationError as exc:
                    print(f"{connection.name}: error ({exc})")
                    continue
                if run is None:
                    print(f"{connection.name}: skipped (sync already running)")
                else:
                    print(f"{connection.name}: {run.status.value} ({run.items_processed} processed)")
            return 0

        if args.command == "retry-failed":
            await services.retry_scheduler.fail_stale_runs()
            retried = await services.retry_scheduler.retry_failed_runs()
            print(f"Retried {retried} failed integration run(s).")
            return 0

        if args.command == "discover":
            directory = StaticClientDirectory(_parse_clients(args.client))
            try:
                result = await orchestrator.discover_clients(
                    args.connection_id, auto_map=args.auto_map, directory=directory
                )
            except IntegrationError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return 1
            for found in result.clients:
                print(f"{found.external_client_id}\t{found.external_client_name or ''}")
            print(f"Discovered {len(result.clients)} client(s), mapped {len(result.mapped)}.")
            return 0
    finally:
        await close_db()

    return 2


def main() -> None:
    parser = argparse.ArgumentParser(description="Operate integration asset syncs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Sync due connections, or one connection by id")
    sync_parser.add_argument("connection_id", nargs="?", type=int, default=None)

    subparsers.add_parser("retry-failed", help="Retry failed pull runs that are due")

    discover_parser = subparsers.add_parser("discover", help="List vendor clients for a connection")
    discover_parser.add_argument("connection_id", type=int)
    discover_parser.add_argument(
        "--auto-map", action="store_true", help="Create mappings for clients matched by name"
    )
    discover_parser.add_argument(
        "--client",
        action="append",
        default=[],
        metavar="NAME=ID",
        help="Internal client available for auto-mapping (repeatable)",
    )
    args = parser.parse_args()

    if args.command == "discover":
        try:
            _parse_clients(args.client)
        except ValueError as exc:
            parser.error(str(exc))

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
