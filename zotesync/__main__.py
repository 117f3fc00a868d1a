"""CLI entry point for zotesync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .store import StoreError, SyncStore
from .sync import SyncClient
from .sync.metadata import SyncMode
from .sync.sync_client import SyncError, SyncStatus


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

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
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

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_store(config) -> SyncStore:
    return SyncStore(config.store.db_path, timeout=config.store.busy_timeout_seconds)


def _build_client(config, args: argparse.Namespace) -> SyncClient:
    return SyncClient(
        _build_store(config),
        remote_url=getattr(args, "remote", None) or config.sync.remote_url,
        token=config.sync.effective_token,
        tables=config.sync.tables or None,
        batch_size=config.sync.batch_size,
        max_retries=config.sync.max_retries,
        timeout=config.sync.timeout_seconds,
    )


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)

    import uvicorn

    from .server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = _build_store(config)
    try:
        store.init_schema()
        app = create_app(config, store=store)
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Store: {store.db_path}")
    print(f"URL: http://{host}:{port}")
    if not config.server.token.strip():
        print("Warning: no sync token configured, using the development token")

    verbose = getattr(args, "verbose", False)
    config_uvicorn = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info" if verbose else "warning",
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()

    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the replicated tables in the configured store."""
    config = load_config(args.config)
    store = _build_store(config)

    try:
        store.init_schema()
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Initialized {store.db_path}")
    return 0


async def cmd_state(args: argparse.Namespace) -> int:
    """Show the peer's replication position and local sync status."""
    config = load_config(args.config)
    client = _build_client(config, args)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "local": client.get_sync_status(),
    }

    remote, error = None, None
    try:
        remote = await client.fetch_state()
    except SyncError as e:
        error = str(e)

    status_data["remote"] = {
        "url": client.remote_url,
        "reachable": error is None,
        "state": remote,
        "error": error,
    }

    if args.output_json:
        print(json.dumps(status_data, indent=2))
        return 0 if error is None else 1

    print("zotesync state")
    print("==============")
    print(f"Store: {client.store.db_path}")
    print(f"Last version: {status_data['local']['last_version']}")
    pending = status_data["local"]["pending_changes"]
    print(f"Pending changes: {sum(pending.values())}")
    for table, count in pending.items():
        if count:
            print(f"  - {table}: {count}")
    print()

    print(f"Peer ({client.remote_url or 'not configured'}):")
    if error is None:
        print(f"  Version: {remote.get('version')}")
        print(f"  Build: {remote.get('server_version')}")
    else:
        print(f"  Status: {error}")

    return 0 if error is None else 1


async def cmd_sync(args: argparse.Namespace) -> int:
    """Sync once, or continuously with --loop."""
    config = load_config(args.config)
    client = _build_client(config, args)

    if not client.remote_url:
        print("Error: no remote URL (set sync.remote_url or pass --remote)", file=sys.stderr)
        return 1

    if args.loop:
        try:
            await client.sync_loop(config.sync.sync_interval_minutes * 60)
        except asyncio.CancelledError:
            pass
        return 0

    if args.table:
        mode = SyncMode.MANUAL if args.manual else SyncMode.AUTO
        result = await client.smart_sync_table(args.table, mode)
    else:
        result = await client.full_sync()

    print(
        f"Sync {result.status.value}: pushed={result.entries_pushed} "
        f"pulled={result.entries_pulled} version={result.server_version}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    for conflict in result.conflicts:
        print(
            f"  conflict {conflict.local.uuid}: local {conflict.local.updated_at} "
            f"vs remote {conflict.remote.updated_at} (kept local)"
        )

    return 0 if result.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL) else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="zotesync",
        description="Peer-to-peer sync for ZotePad installations",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
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
        "--json",
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
        help="Port to listen on (default: server.port, 54577)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Init-db command
    init_parser = subparsers.add_parser("init-db", help="Create the replicated tables")
    init_parser.set_defaults(func=cmd_init_db)

    # State command
    state_parser = subparsers.add_parser("state", help="Show peer and local sync state")
    state_parser.add_argument("--remote", type=str, default=None, help="Peer base URL")
    state_parser.add_argument(
        "--json",
        dest="output_json",
        action="store_true",
        help="Output state as JSON",
    )
    state_parser.set_defaults(func=cmd_state)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync with the paired peer")
    sync_parser.add_argument("--remote", type=str, default=None, help="Peer base URL")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing every sync.sync_interval_minutes",
    )
    sync_parser.add_argument(
        "--table",
        type=str,
        default=None,
        help="Metadata-diff sync of a single table",
    )
    sync_parser.add_argument(
        "--manual",
        action="store_true",
        help="With --table, report every differing row instead of resolving by time",
    )
    sync_parser.set_defaults(func=cmd_sync)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        try:
            return asyncio.run(func(args))
        except KeyboardInterrupt:
            print("\nShutting down...")
            return 0
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
