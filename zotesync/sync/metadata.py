"""Metadata diff between two installations.

Compares ``{uuid, version, updated_at}`` listings from both sides to decide,
per row, which side should win before moving any row content.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .changes import RecordMetadata


class SyncMode(Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ConflictResolution(Enum):
    SAME = "same"
    LOCAL_NEWER = "local_newer"
    REMOTE_NEWER = "remote_newer"
    NEED_MANUAL = "need_manual"


class ConflictAction(Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"


@dataclass
class ConflictDecision:
    uuid: str
    action: ConflictAction


@dataclass
class Conflict:
    local: RecordMetadata
    remote: RecordMetadata


@dataclass
class SyncDiff:
    local_only: list[RecordMetadata] = field(default_factory=list)
    remote_only: list[RecordMetadata] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    identical: list[RecordMetadata] = field(default_factory=list)


def compare_metadata(
    local: list[RecordMetadata], remote: list[RecordMetadata]
) -> SyncDiff:
    """Split two metadata listings into local-only, remote-only, conflicting
    and identical rows. Rows match by uuid; identical means equal updated_at.
    """
    diff = SyncDiff()
    remote_by_uuid = {item.uuid: item for item in remote}
    local_uuids = {item.uuid for item in local}

    for item in local:
        other = remote_by_uuid.get(item.uuid)
        if other is None:
            diff.local_only.append(item)
        elif item.updated_at == other.updated_at:
            diff.identical.append(item)
        else:
            diff.conflicts.append(Conflict(local=item, remote=other))

    diff.remote_only = [item for item in remote if item.uuid not in local_uuids]
    return diff


def _parse_instant(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def detect_conflict(
    local: RecordMetadata, remote: RecordMetadata, mode: SyncMode = SyncMode.AUTO
) -> ConflictResolution:
    """Classify one row present on both sides.

    Equal strings are the same edit. Different strings naming the same instant
    (or unparseable ones) cannot be ordered and need a manual decision. In
    manual mode every difference needs a decision.
    """
    if local.updated_at == remote.updated_at:
        return ConflictResolution.SAME

    local_time = _parse_instant(local.updated_at)
    remote_time = _parse_instant(remote.updated_at)

    if local_time is None or remote_time is None or local_time == remote_time:
        return ConflictResolution.NEED_MANUAL

    if mode is SyncMode.AUTO:
        if local_time > remote_time:
            return ConflictResolution.LOCAL_NEWER
        return ConflictResolution.REMOTE_NEWER

    return ConflictResolution.NEED_MANUAL


def resolve_conflicts(
    conflicts: list[Conflict], mode: SyncMode = SyncMode.AUTO
) -> tuple[list[Conflict], list[ConflictDecision]]:
    """Resolve what can be resolved automatically.

    Returns:
        Tuple of (conflicts needing a manual decision, automatic decisions).
    """
    need_manual: list[Conflict] = []
    decisions: list[ConflictDecision] = []

    for conflict in conflicts:
        resolution = detect_conflict(conflict.local, conflict.remote, mode)
        if resolution is ConflictResolution.NEED_MANUAL:
            need_manual.append(conflict)
        elif resolution is ConflictResolution.LOCAL_NEWER:
            decisions.append(ConflictDecision(conflict.local.uuid, ConflictAction.KEEP_LOCAL))
        elif resolution is ConflictResolution.REMOTE_NEWER:
            decisions.append(ConflictDecision(conflict.remote.uuid, ConflictAction.KEEP_REMOTE))

    return need_manual, decisions
