"""Registry of tables eligible for replication.

Every replicated table is handled by the same generic loader/applier; this
module is the only place that knows table and column names.
"""

from dataclasses import dataclass

# Columns every replicated table must expose
REQUIRED_COLUMNS = ("version", "updated_at", "deleted_at")

# Store-managed column, never sent over the wire
STORE_MANAGED_COLUMN = "created_at"

# Default value written to a JSON-typed column that has no value
EMPTY_JSON = "[]"


@dataclass(frozen=True)
class TableConfig:
    """Static description of one replicated table."""

    name: str
    primary_key: str
    columns: tuple[str, ...]
    json_columns: tuple[str, ...] = ()
    local_only_column: str | None = None
    local_only_prefix: str | None = None

    def __post_init__(self) -> None:
        missing = [
            c for c in (self.primary_key, *REQUIRED_COLUMNS) if c not in self.columns
        ]
        if missing:
            raise ValueError(f"Table {self.name} is missing columns: {missing}")

    @property
    def wire_columns(self) -> tuple[str, ...]:
        """Columns carried in a change payload (everything but created_at)."""
        return tuple(c for c in self.columns if c != STORE_MANAGED_COLUMN)

    def default_for(self, column: str) -> str:
        """Value used for a domain column that is cleared or absent."""
        return EMPTY_JSON if column in self.json_columns else ""

    def is_local_only(self, row: dict) -> bool:
        """Whether a row belongs to this installation only (never replicated)."""
        if not self.local_only_column or not self.local_only_prefix:
            return False
        value = row.get(self.local_only_column)
        return isinstance(value, str) and value.startswith(self.local_only_prefix)

    def replicable_clause(self) -> str:
        """SQL predicate selecting rows that may be replicated."""
        if not self.local_only_column or not self.local_only_prefix:
            return "1 = 1"
        col = self.local_only_column
        return f"({col} IS NULL OR {col} NOT LIKE '{self.local_only_prefix}%')"


SYNC_TABLES: tuple[TableConfig, ...] = (
    TableConfig(
        name="notes",
        primary_key="uuid",
        columns=(
            "uuid", "title", "content", "tags",
            "created_at", "updated_at", "deleted_at", "version",
        ),
        json_columns=("tags",),
    ),
    TableConfig(
        name="moments",
        primary_key="uuid",
        columns=(
            "uuid", "content", "images", "tags",
            "created_at", "updated_at", "deleted_at", "version",
        ),
        json_columns=("images", "tags"),
    ),
    TableConfig(
        name="assets",
        primary_key="uuid",
        columns=(
            "uuid", "url", "path", "filename", "size", "mime_type", "storage_type",
            "created_at", "updated_at", "deleted_at", "version",
        ),
    ),
    TableConfig(
        name="workflows",
        primary_key="uuid",
        columns=(
            "uuid", "name", "description", "steps", "schema_id", "type",
            "created_at", "updated_at", "deleted_at", "version",
        ),
        json_columns=("steps",),
        # Built-in workflows ship with every installation
        local_only_column="type",
        local_only_prefix="system:",
    ),
    TableConfig(
        name="workflow_schemas",
        primary_key="uuid",
        columns=(
            "uuid", "name", "description", "fields",
            "created_at", "updated_at", "deleted_at", "version",
        ),
        json_columns=("fields",),
    ),
)

DEFAULT_TABLE = "notes"

_BY_NAME = {table.name: table for table in SYNC_TABLES}


def get_table_config(name: str) -> TableConfig | None:
    """Look up a replicated table by name."""
    return _BY_NAME.get(name)


def table_names() -> list[str]:
    """Names of all replicated tables, in registry order."""
    return [table.name for table in SYNC_TABLES]
