"""CLI entry point for eventsync."""

import argparse
import asyncio
import dataclasses
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .store import EventStore, StoreError


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _open_store(config: Config) -> EventStore:
    store = EventStore(config.store.db_path, timeout=config.store.timeout_seconds)
    store.connect()
    return store


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)

    try:
        import uvicorn
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        return 1

    from .api import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = _open_store(config)

    print("Starting eventsync server")
    print(f"Store: {store.db_path}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        store.close()

    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the event table if it does not exist."""
    config = load_config(args.config)

    try:
        store = _open_store(config)
    except (StoreError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Event store ready at {store.db_path}")
    store.close()
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show event store statistics for a tenant."""
    config = load_config(args.config)
    tenant = args.tenant or config.server.default_tenant

    store = _open_store(config)
    try:
        stats = store.get_stats(tenant)
    finally:
        store.close()

    if args.json:
        print(json.dumps(stats, indent=2))
    else:
        print(f"Tenant: {stats['tenant_id']}")
        print(f"  Events: {stats['total_events']}")
        print(f"  Pending integration: {stats['pending_integration']}")
        print(f"  Latest change: {stats['latest_updated_at'] or 'never'}")
        if "db_size_mb" in stats:
            print(f"  Database size: {stats['db_size_mb']} MB")

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Synchronize the local replica with the server."""
    from .client import SyncClient, SyncStatus

    config = load_config(args.config)
    client_config = config.client

    local = EventStore(client_config.db_path, timeout=config.store.timeout_seconds)
    local.connect()

    client = SyncClient(
        local,
        remote_url=args.server or client_config.server_url,
        tenant_id=client_config.tenant_id,
        batch_size=client_config.batch_size,
        max_retries=client_config.max_retries,
        timeout=client_config.timeout_seconds,
        state_path=client_config.state_path,
    )

    try:
        if args.loop:
            try:
                await client.sync_loop(client_config.sync_interval_seconds)
            except KeyboardInterrupt:
                print("\nShutting down...")
            return 0

        result = await client.sync()
    finally:
        local.close()

    print(
        f"Sync {result.status.value}: "
        f"pushed={result.entries_pushed}, pulled={result.entries_pulled}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)

    return 0 if result.status == SyncStatus.SUCCESS else 1


async def cmd_integrate(args: argparse.Namespace) -> int:
    """Drain the pending-integration queue once."""
    from .client import IntegrationClient

    config = load_config(args.config)
    client_config = config.client

    client = IntegrationClient(
        remote_url=args.server or client_config.server_url,
        tenant_id=client_config.tenant_id,
        max_retries=client_config.max_retries,
        timeout=client_config.timeout_seconds,
    )

    result = await client.integrate_pending(
        page_size=args.page_size, max_pages=args.max_pages
    )

    print(
        f"Integration: processed={result.processed}, "
        f"marked={result.marked}, pages={result.pages}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Print the resolved configuration."""
    config = load_config(args.config)
    print(json.dumps(dataclasses.asdict(config), indent=2))
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="eventsync",
        description="Event synchronization and integration export service",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Init-db command
    init_parser = subparsers.add_parser("init-db", help="Create the event table")
    init_parser.set_defaults(func=cmd_init_db)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show store statistics")
    stats_parser.add_argument("--tenant", type=str, default=None, help="Tenant id")
    stats_parser.add_argument(
        "--json",
        action="store_true",
        help="Output stats as JSON",
    )
    stats_parser.set_defaults(func=cmd_stats)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync the local replica")
    sync_parser.add_argument("--server", type=str, default=None, help="Server URL")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing at the configured interval",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Integrate command
    integrate_parser = subparsers.add_parser(
        "integrate", help="Export pending events once"
    )
    integrate_parser.add_argument("--server", type=str, default=None, help="Server URL")
    integrate_parser.add_argument("--page-size", type=int, default=100)
    integrate_parser.add_argument("--max-pages", type=int, default=50)
    integrate_parser.set_defaults(func=cmd_integrate)

    # Config command
    config_parser = subparsers.add_parser("config", help="Print resolved config")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    else:
        return func(args)


if __name__ == "__main__":
    sys.exit(main())
