"""Sync client for replicating with a paired peer's sync server.

Handles network synchronization with retry logic and paging. The client
keeps the highest server version it has seen in the local store and uses it
as the ``since_version`` of the next pull and the ``client_version`` of the
next push.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from .changes import ChangeError, RecordMetadata, SyncChange
from .engine import collect_local_changes, load_metadata, store_remote_change
from .metadata import (
    Conflict,
    ConflictAction,
    ConflictDecision,
    SyncMode,
    compare_metadata,
    resolve_conflicts,
)
from .tables import table_names

if TYPE_CHECKING:
    from ..store import SyncStore

logger = logging.getLogger(__name__)

LAST_VERSION_KEY = "last_version"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some conflicts left for a manual decision
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


class SyncError(Exception):
    """A request to the peer failed."""

    def __init__(self, message: str, offline: bool = False):
        super().__init__(message)
        self.offline = offline


@dataclass
class PullResult:
    """Result of pulling one table."""

    last_server_version: int = 0
    pulled: int = 0
    max_pulled_version: int = 0


@dataclass
class PushResult:
    """Result of pushing one table."""

    server_version: int = 0
    applied: int = 0
    conflict: bool = False


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    server_version: int | None = None
    conflicts: list[Conflict] = field(default_factory=list)
    error: str | None = None
    timestamp: datetime | None = None


ConflictHandler = Callable[[list[Conflict]], Awaitable[list[ConflictDecision]]]


class SyncClient:
    """Client for replicating the local store with a peer.

    Supports:
    - Pull: Page through the peer's changes since the last seen version
    - Push: Send rows edited locally since the last sync
    - Full sync: Pull, push (pull-and-retry once on conflict), confirm
    - Smart sync: Metadata diff, then move only the rows that differ

    Uses exponential backoff for retries.
    """

    def __init__(
        self,
        store: "SyncStore",
        remote_url: str | None = None,
        token: str = "",
        tables: list[str] | None = None,
        batch_size: int = 200,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        """Initialize the sync client.

        Args:
            store: Local store to sync.
            remote_url: Base URL of the peer (e.g., "http://192.168.1.20:54577").
            token: Shared secret sent as a bearer token.
            tables: Tables to sync. If None, syncs every replicated table.
            batch_size: Page size for pulls.
            max_retries: Maximum retry attempts.
            timeout: Request timeout in seconds.
        """
        self.store = store
        self.remote_url = remote_url
        self.token = token
        self.tables = tables or table_names()
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    def set_remote_url(self, url: str) -> None:
        """Set or update the remote URL.

        Args:
            url: New remote URL.
        """
        self.remote_url = url
        logger.info(f"Remote URL set to {url}")

    @property
    def last_version(self) -> int:
        """Highest server version this installation has caught up to."""
        return int(self.store.get_meta(LAST_VERSION_KEY, "0") or 0)

    def _save_last_version(self, version: int) -> None:
        if version > self.last_version:
            self.store.set_meta(LAST_VERSION_KEY, str(version))
            logger.debug(f"last_version -> {version}")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to remote_url.
            params: Optional query parameters.
            json_data: Optional JSON body.

        Returns:
            Tuple of (envelope data, error_message).
        """
        if not self.remote_url:
            return None, "No remote URL configured"

        url = f"{self.remote_url.rstrip('/')}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url, params=params)
                    elif method == "POST":
                        response = await client.post(url, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        body = response.json()
                        if not body.get("success", False):
                            return None, body.get("message") or "Request failed"
                        return body.get("data"), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Connection failed: max retries ({self.max_retries}) exceeded"

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> Any:
        data, error = await self._request_with_retry(method, path, params, json_data)
        if error:
            raise SyncError(error, offline=error.startswith("Connection"))
        return data

    async def fetch_state(self) -> dict[str, Any]:
        """Fetch the peer's replication position.

        Raises:
            SyncError: If the request fails.
        """
        return await self._call("GET", "/state")

    def _apply_pulled(self, table: str, raw_changes: list[dict[str, Any]],
                      only: set[str] | None = None) -> tuple[int, int]:
        """Store pulled changes locally. Returns (applied, max version seen)."""
        applied = 0
        max_version = 0

        with self.store.open() as conn:
            for raw in raw_changes:
                try:
                    change = SyncChange.from_dict(raw, default_table=table)
                except ChangeError as e:
                    logger.warning(f"Skipping malformed pulled change: {e}")
                    continue

                max_version = max(max_version, change.version)
                if only is not None and change.payload.get("uuid") not in only:
                    continue

                try:
                    if store_remote_change(conn, table, change):
                        applied += 1
                except (sqlite3.Error, ChangeError, OverflowError) as e:
                    logger.error(f"Failed to store pulled change for {table}: {e}")
            conn.commit()

        return applied, max_version

    async def pull_table(
        self, table: str, since_version: int, only: set[str] | None = None
    ) -> PullResult:
        """Pull every page of a table's changes since a version.

        Args:
            table: Table to pull.
            since_version: Exclusive lower bound of the first page.
            only: If given, store only rows with these uuids.

        Raises:
            SyncError: If a request fails.
        """
        result = PullResult()
        cursor = since_version

        while True:
            data = await self._call(
                "GET",
                "/pull",
                params={"table": table, "since_version": cursor, "limit": self.batch_size},
            )

            result.last_server_version = max(
                result.last_server_version, data.get("server_version") or 0
            )

            changes = data.get("changes") or []
            if changes:
                applied, max_version = self._apply_pulled(table, changes, only)
                result.pulled += applied
                result.max_pulled_version = max(result.max_pulled_version, max_version)

            next_version = data.get("next_version")
            if next_version is None or next_version <= cursor:
                break
            cursor = next_version

        logger.debug(
            f"Pulled {table}: {result.pulled} applied, "
            f"server_version={result.last_server_version}"
        )
        return result

    async def push_table(
        self, table: str, client_version: int, keys: list[str] | None = None
    ) -> PushResult:
        """Push locally edited rows of a table.

        Args:
            table: Table to push.
            client_version: Server version this installation has caught up to.
            keys: Specific rows to push. If None, pushes every pending row.

        Raises:
            SyncError: If the request fails.
        """
        with self.store.open() as conn:
            changes = collect_local_changes(conn, table, keys)

        if not changes:
            return PushResult(server_version=client_version)

        data = await self._call(
            "POST",
            "/push",
            json_data={
                "table": table,
                "changes": [c.to_dict() for c in changes],
                "client_version": client_version,
            },
        )

        result = PushResult(
            server_version=data.get("server_version") or 0,
            applied=data.get("applied") or 0,
            conflict=bool(data.get("conflict")),
        )
        logger.debug(f"Pushed {table}: {len(changes)} sent, {result}")
        return result

    async def full_sync(self) -> SyncResult:
        """Pull, then push, then confirm pushed versions.

        A push rejected because the peer moved on is retried once after
        pulling that table again.

        Returns:
            Combined SyncResult.
        """
        if not self.remote_url:
            return SyncResult(status=SyncStatus.FAILED, error="No remote URL configured")

        since = self.last_version
        pushed = 0
        pulled = 0

        try:
            state = await self.fetch_state()
            client_version = max(since, state.get("version") or 0)

            for table in self.tables:
                pull = await self.pull_table(table, since)
                pulled += pull.pulled
                client_version = max(client_version, pull.last_server_version)

            before_push = client_version
            for table in self.tables:
                push = await self.push_table(table, client_version)
                if push.conflict:
                    logger.info(f"Push of {table} conflicted, pulling before retry")
                    pull = await self.pull_table(table, client_version)
                    pulled += pull.pulled
                    client_version = max(
                        client_version, push.server_version, pull.last_server_version
                    )
                    push = await self.push_table(table, client_version)

                pushed += push.applied
                if not push.conflict:
                    client_version = max(client_version, push.server_version)

            # Bring our own pushed rows back to confirm their server versions
            if pushed:
                for table in self.tables:
                    pull = await self.pull_table(table, before_push)
                    pulled += pull.pulled
                    client_version = max(client_version, pull.last_server_version)

        except SyncError as e:
            return SyncResult(
                status=SyncStatus.OFFLINE if e.offline else SyncStatus.FAILED,
                entries_pushed=pushed,
                entries_pulled=pulled,
                error=str(e),
            )

        self._save_last_version(client_version)
        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pushed=pushed,
            entries_pulled=pulled,
            server_version=client_version,
            timestamp=self._last_sync,
        )

    async def smart_sync_table(
        self,
        table: str,
        mode: SyncMode = SyncMode.AUTO,
        on_conflict: ConflictHandler | None = None,
    ) -> SyncResult:
        """Sync one table by comparing row metadata on both sides.

        Rows only one side has move to the other; rows both sides changed are
        resolved by ``updated_at`` in auto mode, or by ``on_conflict``. Without
        a handler, unresolved conflicts keep the local row.
        """
        if not self.remote_url:
            return SyncResult(status=SyncStatus.FAILED, error="No remote URL configured")

        try:
            with self.store.open() as conn:
                local = load_metadata(conn, table)
            remote = [
                RecordMetadata.from_dict(item)
                for item in await self._call("GET", "/metadata", params={"table": table})
            ]

            diff = compare_metadata(local, remote)
            need_manual, decisions = resolve_conflicts(diff.conflicts, mode)
            logger.info(
                f"{table} diff: local_only={len(diff.local_only)} "
                f"remote_only={len(diff.remote_only)} conflicts={len(diff.conflicts)} "
                f"identical={len(diff.identical)}"
            )

            if need_manual:
                if on_conflict is not None:
                    decisions.extend(await on_conflict(need_manual))
                else:
                    decisions.extend(
                        ConflictDecision(c.local.uuid, ConflictAction.KEEP_LOCAL)
                        for c in need_manual
                    )

            to_push = [m.uuid for m in diff.local_only] + [
                d.uuid for d in decisions if d.action is ConflictAction.KEEP_LOCAL
            ]
            to_pull = {m.uuid for m in diff.remote_only} | {
                d.uuid for d in decisions if d.action is ConflictAction.KEEP_REMOTE
            }

            pushed = 0
            server_version = None
            if to_push:
                state = await self.fetch_state()
                push = await self.push_table(table, state.get("version") or 0, keys=to_push)
                pushed = push.applied
                server_version = push.server_version

            pulled = 0
            if to_pull:
                pull = await self.pull_table(table, 0, only=to_pull)
                pulled = pull.pulled

        except SyncError as e:
            return SyncResult(
                status=SyncStatus.OFFLINE if e.offline else SyncStatus.FAILED,
                error=str(e),
            )

        self._last_sync = datetime.now()
        unresolved = need_manual if on_conflict is None else []

        return SyncResult(
            status=SyncStatus.PARTIAL if unresolved else SyncStatus.SUCCESS,
            entries_pushed=pushed,
            entries_pulled=pulled,
            server_version=server_version,
            conflicts=unresolved,
            timestamp=self._last_sync,
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.entries_pushed}, "
                    f"pulled={result.entries_pulled}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        with self.store.open() as conn:
            pending = {
                table: len(collect_local_changes(conn, table)) for table in self.tables
            }

        return {
            "remote_url": self.remote_url,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "last_version": self.last_version,
            "consecutive_failures": self._consecutive_failures,
            "pending_changes": pending,
        }
