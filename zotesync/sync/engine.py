"""Generic multi-table change loader and applier.

All functions take an open ``sqlite3.Connection`` and a table name from the
registry. Identifiers in the generated SQL come only from the static
registry; values are always bound as parameters.
"""

import json
import logging
import sqlite3
from typing import Any

from .changes import ChangeError, LoadedPage, RecordMetadata, SyncChange, SyncOp, now_iso
from .tables import SYNC_TABLES, TableConfig, get_table_config

logger = logging.getLogger(__name__)

# Hard upper bound on a page of changes, whatever the caller asks for
MAX_PAGE_SIZE = 1000

# SQLite INTEGER range
MIN_SQL_INT = -(2**63)
MAX_SQL_INT = 2**63 - 1


def clamp_limit(limit: int) -> int:
    """Clamp a requested page size to [1, MAX_PAGE_SIZE]."""
    return max(1, min(int(limit), MAX_PAGE_SIZE))


def max_version_for_table(conn: sqlite3.Connection, config: TableConfig) -> int:
    """Highest assigned version in one table, or 0."""
    try:
        row = conn.execute(
            f"SELECT MAX(version) FROM {config.name} WHERE version > 0"
        ).fetchone()
    except sqlite3.OperationalError as e:
        # Older stores may not have every table yet
        logger.warning(f"Cannot read max version of {config.name}: {e}")
        return 0
    return row[0] if row and row[0] is not None else 0


def max_version_all_tables(conn: sqlite3.Connection) -> int:
    """Highest assigned version across all replicated tables."""
    return max((max_version_for_table(conn, t) for t in SYNC_TABLES), default=0)


def _key_clause(config: TableConfig) -> str:
    pk = config.primary_key
    return f"{pk} IS NOT NULL AND TRIM({pk}) != ''"


def backfill_versions(
    conn: sqlite3.Connection, table_name: str, floor: int = 0
) -> int:
    """Assign versions to live rows that predate the sync engine.

    Rows with ``version <= 0`` (migrated data and local unsynced edits) get
    consecutive versions after the global maximum, oldest first, and their
    ``updated_at`` is stamped to now. Running it again is a no-op.

    Args:
        conn: Open store connection.
        table_name: Registry name of the table.
        floor: Lowest value to count from, normally the allocator's counter,
            so backfilled versions never collide with allocated ones.

    Returns:
        The highest version in use after the pass.
    """
    config = get_table_config(table_name)
    start = max(max_version_all_tables(conn), floor)
    if config is None:
        return start

    rows = conn.execute(
        f"""
        SELECT {config.primary_key} FROM {config.name}
        WHERE COALESCE(version, 0) <= 0
          AND deleted_at IS NULL
          AND {_key_clause(config)}
          AND {config.replicable_clause()}
        ORDER BY created_at ASC
        """
    ).fetchall()

    if not rows:
        return start

    logger.info(f"Backfilling versions for {len(rows)} rows in {config.name}")

    current = start
    stamped_at = now_iso()
    for row in rows:
        current += 1
        conn.execute(
            f"UPDATE {config.name} SET version = ?, updated_at = ? "
            f"WHERE {config.primary_key} = ?",
            (current, stamped_at, row[0]),
        )
    conn.commit()

    return current


def _row_to_change(config: TableConfig, row: dict[str, Any]) -> SyncChange:
    """Build a change from a row selected with ``config.columns``."""
    # Stamp sent verbatim, never filled in
    updated_at = row.get("updated_at") or ""
    deleted_at = row.get("deleted_at")

    payload = {column: row.get(column) for column in config.wire_columns}
    payload["updated_at"] = updated_at

    return SyncChange(
        table=config.name,
        op=SyncOp.DELETE if deleted_at else SyncOp.UPSERT,
        payload=payload,
        version=row.get("version") or 0,
        updated_at=updated_at,
        deleted_at=deleted_at,
    )


def _has_key(config: TableConfig, row: dict[str, Any]) -> bool:
    value = row.get(config.primary_key)
    return isinstance(value, str) and bool(value.strip())


def load_changes(
    conn: sqlite3.Connection,
    table_name: str,
    since_version: int,
    limit: int = 500,
    floor: int = 0,
) -> LoadedPage:
    """Load one page of changes with ``version > since_version``.

    Backfill runs first so every live row is visible. Rows whose primary key
    is blank are dropped; they still count toward the page size so that a
    full page is reported correctly.

    Args:
        conn: Open store connection.
        table_name: Registry name of the table.
        since_version: Exclusive lower bound.
        limit: Requested page size, clamped to MAX_PAGE_SIZE.
        floor: Passed to the backfill pass.

    Returns:
        LoadedPage with changes in ascending version order.
    """
    limit = clamp_limit(limit)
    page = LoadedPage(table=table_name, limit=limit)

    config = get_table_config(table_name)
    if config is None:
        return page

    backfill_versions(conn, table_name, floor=floor)

    cursor = conn.execute(
        f"""
        SELECT {", ".join(config.columns)} FROM {config.name}
        WHERE version > ?
        ORDER BY version ASC
        LIMIT ?
        """,
        (since_version, limit),
    )

    for values in cursor:
        row = dict(zip(config.columns, values))
        page.scanned += 1
        page.last_scanned_version = row["version"]

        if not _has_key(config, row):
            logger.warning(
                f"Skipping row with blank {config.primary_key} in {config.name} "
                f"(version={row['version']})"
            )
            continue

        page.changes.append(_row_to_change(config, row))

    return page


def _to_sql_value(value: Any) -> Any:
    """Convert a JSON-shaped payload value to something sqlite can bind."""
    if isinstance(value, int) and not MIN_SQL_INT <= value <= MAX_SQL_INT:
        raise ChangeError(f"Integer out of range: {value}")
    if value is None or isinstance(value, (str, int, float)):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _extract_key(config: TableConfig, change: SyncChange) -> str | None:
    value = change.payload.get(config.primary_key)
    if not isinstance(value, str) or not value.strip():
        return None
    return value


def _upsert_row(conn: sqlite3.Connection, config: TableConfig, values: dict[str, Any]) -> None:
    """Insert a row or update it in place; the primary key is never updated."""
    columns = list(values)
    placeholders = ", ".join("?" for _ in columns)
    update_set = ", ".join(
        f"{c} = excluded.{c}" for c in columns if c != config.primary_key
    )
    conn.execute(
        f"""
        INSERT INTO {config.name} ({", ".join(columns)}) VALUES ({placeholders})
        ON CONFLICT({config.primary_key}) DO UPDATE SET {update_set}
        """,
        [values[c] for c in columns],
    )


def _write_change(
    conn: sqlite3.Connection,
    config: TableConfig,
    key: str,
    change: SyncChange,
    version: int,
) -> None:
    values: dict[str, Any] = {}

    if change.op is SyncOp.DELETE:
        deleted_at = change.deleted_at or now_iso()
        for column in config.wire_columns:
            if column == config.primary_key:
                values[column] = key
            elif column == "version":
                values[column] = version
            elif column == "updated_at":
                values[column] = change.updated_at
            elif column == "deleted_at":
                values[column] = deleted_at
            else:
                values[column] = config.default_for(column)
    else:
        for column in config.wire_columns:
            if column == config.primary_key:
                values[column] = key
            elif column == "version":
                values[column] = version
            elif column == "updated_at":
                values[column] = change.updated_at
            elif column == "deleted_at":
                # An upsert always resurrects a tombstone
                values[column] = None
            elif column in change.payload:
                values[column] = _to_sql_value(change.payload[column])
            else:
                values[column] = config.default_for(column)

    _upsert_row(conn, config, values)


def apply_change(
    conn: sqlite3.Connection,
    table_name: str,
    change: SyncChange,
    new_version: int,
) -> bool:
    """Apply one incoming change using last-writer-wins on ``updated_at``.

    The local row wins ties and newer local edits. Version plays no part in
    the decision; it only stamps the row for later pulls.

    Args:
        conn: Open store connection. The caller commits.
        table_name: Registry name of the table.
        change: Incoming change.
        new_version: Version to stamp on the row if applied.

    Returns:
        True if the row was written.

    Raises:
        ChangeError: If a payload value cannot be stored.
        sqlite3.Error: If the store rejects the write.
    """
    config = get_table_config(table_name)
    if config is None:
        logger.warning(f"Skipping change for unsupported table {table_name}")
        return False

    key = _extract_key(config, change)
    if key is None:
        logger.warning(f"Skipping change for {table_name} with empty primary key")
        return False

    existing = conn.execute(
        f"SELECT updated_at FROM {config.name} WHERE {config.primary_key} = ?",
        (key,),
    ).fetchone()

    if existing is not None:
        local_updated_at = existing[0] or ""
        if local_updated_at >= change.updated_at:
            logger.debug(
                f"Skipping stale change for {table_name} {key}: "
                f"local {local_updated_at} >= remote {change.updated_at}"
            )
            return False

    _write_change(conn, config, key, change, new_version)
    return True


def store_remote_change(
    conn: sqlite3.Connection, table_name: str, change: SyncChange
) -> bool:
    """Store a change pulled from a peer, keeping the peer's version.

    Same last-writer-wins rule as ``apply_change``. When the timestamps are
    equal and the local row is still pending (``version <= 0``), the row is
    one this installation pushed itself: only its version is confirmed.

    Returns:
        True if the row content was written.
    """
    config = get_table_config(table_name)
    if config is None:
        logger.warning(f"Skipping pulled change for unsupported table {table_name}")
        return False

    if config.is_local_only(change.payload):
        logger.debug(f"Skipping local-only row pulled for {table_name}")
        return False

    key = _extract_key(config, change)
    if key is None:
        logger.warning(f"Skipping pulled change for {table_name} with empty primary key")
        return False

    existing = conn.execute(
        f"SELECT updated_at, version FROM {config.name} WHERE {config.primary_key} = ?",
        (key,),
    ).fetchone()

    if existing is not None:
        local_updated_at = existing[0] or ""
        local_version = existing[1] or 0

        if local_updated_at == change.updated_at and local_version <= 0 < change.version:
            conn.execute(
                f"UPDATE {config.name} SET version = ? WHERE {config.primary_key} = ?",
                (change.version, key),
            )
            logger.debug(f"Confirmed {table_name} {key} at version {change.version}")
            return False

        if local_updated_at >= change.updated_at:
            return False

    _write_change(conn, config, key, change, change.version)
    return True


def load_metadata(conn: sqlite3.Connection, table_name: str) -> list[RecordMetadata]:
    """Replication metadata for every live row, newest edit first."""
    config = get_table_config(table_name)
    if config is None:
        return []

    rows = conn.execute(
        f"""
        SELECT {config.primary_key}, version, updated_at, deleted_at
        FROM {config.name}
        WHERE deleted_at IS NULL
          AND {_key_clause(config)}
          AND {config.replicable_clause()}
        ORDER BY updated_at DESC
        """
    ).fetchall()

    return [
        RecordMetadata(
            uuid=row[0],
            version=row[1] or 0,
            updated_at=row[2] or "",
            deleted_at=row[3],
        )
        for row in rows
    ]


def collect_local_changes(
    conn: sqlite3.Connection,
    table_name: str,
    keys: list[str] | None = None,
) -> list[SyncChange]:
    """Collect rows to push to a peer.

    Args:
        conn: Open store connection.
        table_name: Registry name of the table.
        keys: Specific primary keys to collect. If None, collects every
            pending row (``version <= 0``), tombstones included.

    Returns:
        Changes carrying the rows' current local versions.
    """
    config = get_table_config(table_name)
    if config is None:
        return []

    where = [_key_clause(config), config.replicable_clause()]
    params: list[Any] = []

    if keys is None:
        where.append("COALESCE(version, 0) <= 0")
    else:
        if not keys:
            return []
        where.append(f"{config.primary_key} IN ({', '.join('?' for _ in keys)})")
        params.extend(keys)

    cursor = conn.execute(
        f"""
        SELECT {", ".join(config.columns)} FROM {config.name}
        WHERE {" AND ".join(where)}
        ORDER BY created_at ASC
        """,
        params,
    )

    return [_row_to_change(config, dict(zip(config.columns, values))) for values in cursor]
