"""Wire types for replicated changes."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ChangeError(ValueError):
    """A change that cannot be parsed from its wire form."""


class SyncOp(Enum):
    """Kind of replicated mutation."""

    UPSERT = "upsert"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "SyncOp":
        """Parse an operation name case-insensitively ("Upsert", "delete")."""
        if isinstance(value, SyncOp):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ChangeError(f"Unknown operation: {value!r}") from None


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    now = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return now.replace("+00:00", "Z")


@dataclass
class SyncChange:
    """A single upsert or tombstone for one row of one table."""

    table: str
    op: SyncOp
    payload: dict[str, Any]
    version: int
    updated_at: str
    deleted_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "table": self.table,
            "operation": self.op.value,
            "payload": self.payload,
            "version": self.version,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_table: str | None = None) -> "SyncChange":
        """Create from dictionary.

        Accepts ``op``/``data`` as aliases for ``operation``/``payload``.
        Falls back to the payload's ``updated_at`` when the change has none.

        Raises:
            ChangeError: If a required field is missing or malformed.
        """
        if not isinstance(data, dict):
            raise ChangeError("Change must be an object")

        table = data.get("table") or default_table
        if not table:
            raise ChangeError("Change has no table")

        payload = data.get("payload", data.get("data"))
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ChangeError("Change payload must be an object")

        op = SyncOp.parse(data.get("operation", data.get("op", SyncOp.UPSERT.value)))

        updated_at = data.get("updated_at") or payload.get("updated_at")
        if not updated_at:
            raise ChangeError("Change has no updated_at")

        try:
            version = int(data.get("version") or 0)
        except (TypeError, ValueError):
            raise ChangeError(f"Invalid version: {data.get('version')!r}") from None

        return cls(
            table=str(table),
            op=op,
            payload=payload,
            version=version,
            updated_at=str(updated_at),
            deleted_at=data.get("deleted_at") or payload.get("deleted_at"),
        )


@dataclass
class RecordMetadata:
    """Replication bookkeeping for one live row."""

    uuid: str
    version: int
    updated_at: str
    deleted_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uuid": self.uuid,
            "version": self.version,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordMetadata":
        return cls(
            uuid=data["uuid"],
            version=int(data.get("version") or 0),
            updated_at=data.get("updated_at") or "",
            deleted_at=data.get("deleted_at"),
        )


@dataclass
class LoadedPage:
    """One page of changes read from a table."""

    table: str
    changes: list[SyncChange] = field(default_factory=list)
    limit: int = 0
    # Rows read from the store, including ones dropped for a blank key
    scanned: int = 0
    last_scanned_version: int | None = None

    @property
    def is_full(self) -> bool:
        """A full page means more changes may follow."""
        return self.limit > 0 and self.scanned >= self.limit

    @property
    def next_version(self) -> int | None:
        """Exclusive lower bound for the next page, or None when drained."""
        if not self.is_full:
            return None
        return self.last_scanned_version
