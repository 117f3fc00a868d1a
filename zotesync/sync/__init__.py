"""Multi-table versioned sync engine.

Replicates notes, moments, assets, workflows and workflow schemas between
two installations using a global version counter for ordering and
last-writer-wins on ``updated_at`` for conflicts.
"""

from .changes import ChangeError, RecordMetadata, SyncChange, SyncOp
from .sync_client import SyncClient
from .tables import SYNC_TABLES, TableConfig, get_table_config, table_names
from .versions import VersionAllocator

__all__ = [
    "ChangeError",
    "RecordMetadata",
    "SyncChange",
    "SyncOp",
    "SyncClient",
    "SYNC_TABLES",
    "TableConfig",
    "get_table_config",
    "table_names",
    "VersionAllocator",
]
