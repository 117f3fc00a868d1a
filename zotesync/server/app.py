"""FastAPI sync server application."""

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Config
from ..notify import ChangeNotifier, LogNotifier, WebhookNotifier
from ..store import StoreError, SyncStore
from ..sync.changes import ChangeError, SyncChange
from ..sync.engine import (
    apply_change,
    backfill_versions,
    clamp_limit,
    load_changes,
    load_metadata,
    max_version_all_tables,
)
from ..sync.tables import DEFAULT_TABLE, get_table_config
from ..sync.versions import VersionAllocator

logger = logging.getLogger(__name__)

DEFAULT_PULL_LIMIT = 500


def envelope(data: Any = None, success: bool = True, message: str | None = None) -> dict[str, Any]:
    """Wrap a response body in the protocol envelope."""
    return {"success": success, "data": data, "message": message}


@dataclass
class ServerState:
    """State shared by every request of one server process."""

    store: SyncStore
    allocator: VersionAllocator
    token: str
    build_id: str
    notifier: ChangeNotifier

    def check_token(self, authorization: str | None) -> bool:
        """Exact match against the shared secret, ``Bearer `` prefix optional."""
        if not authorization:
            return False
        value = authorization.strip()
        if value.startswith("Bearer "):
            value = value[len("Bearer "):].strip()
        return value == self.token


class PushRequest(BaseModel):
    """Body of POST /push."""

    table: str | None = None
    # Elements are validated one by one so a bad change only skips itself
    changes: list[Any] = Field(default_factory=list)
    client_version: int = 0


def _get_state(request: Request) -> ServerState:
    return request.app.state.sync


async def require_token(
    request: Request,
    authorization: str | None = Header(default=None),
) -> ServerState:
    """Reject the request before any store access unless the token matches."""
    state = _get_state(request)
    if not state.check_token(authorization):
        logger.warning(f"Rejected unauthenticated request to {request.url.path}")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return state


def create_app(
    config: Config,
    store: SyncStore | None = None,
    notifier: ChangeNotifier | None = None,
) -> FastAPI:
    """Create the sync server application.

    The version counter is seeded from the store's current maximum version.

    Args:
        config: Application configuration.
        store: Store to serve. Built from ``config.store`` if omitted.
        notifier: Sink for "changes received" events. Defaults to a webhook
            when ``config.server.notify_url`` is set, else to the log.

    Returns:
        Configured FastAPI application.

    Raises:
        StoreError: If the store cannot be opened.
    """
    if store is None:
        store = SyncStore(config.store.db_path, timeout=config.store.busy_timeout_seconds)

    if notifier is None:
        if config.server.notify_url:
            notifier = WebhookNotifier(config.server.notify_url)
        else:
            notifier = LogNotifier()

    with store.open() as conn:
        initial_version = max_version_all_tables(conn)

    state = ServerState(
        store=store,
        allocator=VersionAllocator(initial_version),
        token=config.server.effective_token,
        build_id=config.server.build_id,
        notifier=notifier,
    )

    app = FastAPI(
        title="zotesync",
        description="Peer-to-peer sync server for ZotePad installations",
        version=config.server.build_id,
    )
    app.state.sync = state

    logger.info(f"Sync server ready at version {initial_version} ({store.db_path})")

    # Mobile web views call the server cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== Error envelopes ====================

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(success=False, message=str(exc.detail)),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=envelope(success=False, message=f"Invalid request: {exc.errors()}"),
        )

    @app.exception_handler(StoreError)
    @app.exception_handler(sqlite3.Error)
    async def store_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Store failure on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=envelope(success=False, message=f"Store access failed: {exc}"),
        )

    # ==================== Health ====================

    @app.get("/")
    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness probe; does not require the token."""
        return envelope({
            "message": "ZotePad sync server is running",
            "timestamp": int(time.time() * 1000),
            "server_version": state.build_id,
        })

    # ==================== Sync protocol ====================

    @app.get("/state")
    async def sync_state(state: ServerState = Depends(require_token)) -> dict[str, Any]:
        """Current replication position."""
        with state.store.open() as conn:
            store_max = max_version_all_tables(conn)

        version = await state.allocator.advance_to(store_max)

        return envelope({
            "version": version,
            "server_version": state.build_id,
            "paired": True,
        })

    @app.get("/pull")
    async def pull(
        table: str = DEFAULT_TABLE,
        since_version: int = 0,
        limit: int = DEFAULT_PULL_LIMIT,
        state: ServerState = Depends(require_token),
    ) -> dict[str, Any]:
        """One page of changes for a table, oldest version first."""
        if get_table_config(table) is None:
            logger.warning(f"Pull requested for unsupported table {table}")

        limit = clamp_limit(limit)

        with state.store.open() as conn:
            async with state.allocator.hold() as allocator:
                page = load_changes(
                    conn, table, since_version, limit, floor=allocator.peek()
                )
                server_version = allocator.observe(max_version_all_tables(conn))

        logger.debug(
            f"Pull {table} since={since_version}: {len(page.changes)} changes, "
            f"next={page.next_version}"
        )

        return envelope({
            "changes": [c.to_dict() for c in page.changes],
            "next_version": page.next_version,
            "server_version": server_version,
        })

    @app.post("/push")
    async def push(
        body: PushRequest,
        state: ServerState = Depends(require_token),
    ) -> dict[str, Any]:
        """Apply a batch of changes from the peer."""
        server_version_before = await state.allocator.current_version()

        if body.client_version < server_version_before:
            logger.info(
                f"Push rejected: client at {body.client_version}, "
                f"server at {server_version_before}"
            )
            return envelope({
                "applied": 0,
                "server_version": server_version_before,
                "conflict": True,
            })

        default_table = body.table or DEFAULT_TABLE
        applied = 0
        touched: list[str] = []

        with state.store.open() as conn:
            for raw in body.changes:
                try:
                    change = SyncChange.from_dict(raw, default_table=default_table)
                except ChangeError as e:
                    logger.warning(f"Skipping malformed change: {e}")
                    continue

                if get_table_config(change.table) is None:
                    logger.warning(f"Skipping change for unsupported table {change.table}")
                    continue

                try:
                    async with state.allocator.reserve() as version:
                        if apply_change(conn, change.table, change, version):
                            conn.commit()
                            applied += 1
                            if change.table not in touched:
                                touched.append(change.table)
                except (sqlite3.Error, ChangeError, OverflowError) as e:
                    conn.rollback()
                    logger.error(f"Failed to apply change to {change.table}: {e}")

            server_version = await state.allocator.advance_to(max_version_all_tables(conn))

        logger.info(f"Push applied {applied}/{len(body.changes)} changes, version={server_version}")

        if applied:
            try:
                await state.notifier.changes_received(applied, touched)
            except Exception as e:
                logger.error(f"Change notification failed: {e}")

        return envelope({
            "applied": applied,
            "server_version": server_version,
            "conflict": False,
        })

    @app.get("/metadata")
    async def metadata(
        table: str = DEFAULT_TABLE,
        state: ServerState = Depends(require_token),
    ) -> dict[str, Any]:
        """Replication metadata of every live row, for metadata-diff sync."""
        with state.store.open() as conn:
            async with state.allocator.hold() as allocator:
                allocator.observe(backfill_versions(conn, table, floor=allocator.peek()))
            records = load_metadata(conn, table)

        return envelope([r.to_dict() for r in records])

    return app
