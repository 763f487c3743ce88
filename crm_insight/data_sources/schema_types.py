"""
Schema types for the live schema registry.

These dataclasses describe what the registry knows about the relational
store: tables, columns with normalized data types, foreign keys and the
relationships derived from them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class DatabaseType(str, Enum):
    """Relational engines the planner can target."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"
    MSSQL = "mssql"
    ANSI = "ansi"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "DatabaseType":
        """Resolve a configured database type, falling back to ANSI."""
        if not value:
            return cls.ANSI
        normalized = value.strip().lower()
        aliases = {
            "postgresql": cls.POSTGRES,
            "pg": cls.POSTGRES,
            "sqlserver": cls.MSSQL,
            "sql_server": cls.MSSQL,
            "sqlite3": cls.SQLITE,
        }
        if normalized in aliases:
            return aliases[normalized]
        for member in cls:
            if member.value == normalized:
                return member
        return cls.ANSI


class DataType(str, Enum):
    """Normalized column type used across database engines."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    FLOAT = "float"
    DOUBLE = "double"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    BLOB = "blob"
    JSON = "json"
    UUID = "uuid"
    UNKNOWN = "unknown"


NUMERIC_TYPES = frozenset(
    {DataType.INTEGER, DataType.BIGINT, DataType.DECIMAL, DataType.FLOAT, DataType.DOUBLE}
)

TEMPORAL_TYPES = frozenset(
    {DataType.DATE, DataType.DATETIME, DataType.TIMESTAMP, DataType.TIME}
)

# Order matters: the first matching fragment wins.
_TYPE_FRAGMENTS = [
    ("bigint", DataType.BIGINT),
    ("int", DataType.INTEGER),
    ("serial", DataType.INTEGER),
    ("decimal", DataType.DECIMAL),
    ("numeric", DataType.DECIMAL),
    ("money", DataType.DECIMAL),
    ("double", DataType.DOUBLE),
    ("real", DataType.FLOAT),
    ("float", DataType.FLOAT),
    ("bool", DataType.BOOLEAN),
    ("uuid", DataType.UUID),
    ("uniqueidentifier", DataType.UUID),
    ("json", DataType.JSON),
    ("timestamp", DataType.TIMESTAMP),
    ("datetime", DataType.DATETIME),
    ("date", DataType.DATE),
    ("time", DataType.TIME),
    ("text", DataType.TEXT),
    ("clob", DataType.TEXT),
    ("char", DataType.STRING),
    ("string", DataType.STRING),
    ("blob", DataType.BLOB),
    ("binary", DataType.BLOB),
    ("bytea", DataType.BLOB),
]


def normalize_data_type(raw_type: Optional[str]) -> DataType:
    """Map a native column type (e.g. ``VARCHAR(255)``) to a DataType."""
    if not raw_type:
        return DataType.UNKNOWN
    lowered = raw_type.lower()
    for fragment, data_type in _TYPE_FRAGMENTS:
        if fragment in lowered:
            return data_type
    return DataType.UNKNOWN


@dataclass(frozen=True)
class ColumnSchema:
    """Schema information for a database column."""

    name: str
    type: str
    data_type: DataType = DataType.UNKNOWN
    nullable: bool = True
    is_primary_key: bool = False
    is_unique: bool = False

    @property
    def is_numeric(self) -> bool:
        return self.data_type in NUMERIC_TYPES

    @property
    def is_temporal(self) -> bool:
        return self.data_type in TEMPORAL_TYPES


@dataclass(frozen=True)
class ForeignKeyInfo:
    """A foreign key from ``column_name`` to ``referenced_table.referenced_column``."""

    column_name: str
    referenced_table: str
    referenced_column: str
    name: str = ""


@dataclass(frozen=True)
class RelationshipInfo:
    """A navigable relationship between two tables."""

    type: str
    source_table: str
    source_column: str
    target_table: str
    target_column: str


@dataclass
class TableSchema:
    """Schema information for a database table."""

    name: str
    columns: dict[str, ColumnSchema] = field(default_factory=dict)
    primary_keys: list[str] = field(default_factory=list)
    foreign_keys: list[ForeignKeyInfo] = field(default_factory=list)

    def has_column(self, column_name: str) -> bool:
        return column_name in self.columns

    def find_column(self, column_name: str) -> Optional[str]:
        """Return the exact column name for a case-insensitive match."""
        if column_name in self.columns:
            return column_name
        lowered = column_name.lower()
        for name in self.columns:
            if name.lower() == lowered:
                return name
        return None

    def numeric_columns(self) -> list[str]:
        return [name for name, col in self.columns.items() if col.is_numeric]


@dataclass
class DatabaseSchema:
    """A consistent snapshot of the relational store's structure."""

    database_type: DatabaseType
    tables: dict[str, TableSchema] = field(default_factory=dict)
    relationships: list[RelationshipInfo] = field(default_factory=list)

    def has_table(self, table_name: str) -> bool:
        return table_name in self.tables

    def get_table(self, table_name: str) -> Optional[TableSchema]:
        return self.tables.get(table_name)

    def has_column(self, table_name: str, column_name: str) -> bool:
        table = self.tables.get(table_name)
        return table is not None and table.has_column(column_name)

    def find_table(self, table_name: str) -> Optional[str]:
        """Return the exact table name for a case-insensitive match."""
        if table_name in self.tables:
            return table_name
        lowered = table_name.lower()
        for name in self.tables:
            if name.lower() == lowered:
                return name
        return None

    def find_foreign_key(
        self, table_name: str, referenced_table: str
    ) -> Optional[ForeignKeyInfo]:
        """Find a foreign key on ``table_name`` pointing at ``referenced_table``."""
        table = self.tables.get(table_name)
        if table is None:
            return None
        for fk in table.foreign_keys:
            if fk.referenced_table == referenced_table:
                return fk
        return None


def derive_relationships(tables: dict[str, TableSchema]) -> list[RelationshipInfo]:
    """Build both directions of every foreign key as relationships."""
    relationships = []
    for table in tables.values():
        for fk in table.foreign_keys:
            relationships.append(
                RelationshipInfo(
                    type="many-to-one",
                    source_table=table.name,
                    source_column=fk.column_name,
                    target_table=fk.referenced_table,
                    target_column=fk.referenced_column,
                )
            )
            relationships.append(
                RelationshipInfo(
                    type="one-to-many",
                    source_table=fk.referenced_table,
                    source_column=fk.referenced_column,
                    target_table=table.name,
                    target_column=fk.column_name,
                )
            )
    return relationships
