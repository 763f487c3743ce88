"""
Data Sources module for CRM Insight.

This module provides the schema registry and the introspectors that feed it.
"""

from .introspectors import (
    MySQLIntrospector,
    PostgresIntrospector,
    SchemaIntrospectionError,
    SchemaIntrospector,
    SQLiteIntrospector,
    StaticSchemaIntrospector,
)
from .schema_registry import SchemaRegistry
from .schema_types import (
    ColumnSchema,
    DatabaseSchema,
    DatabaseType,
    DataType,
    ForeignKeyInfo,
    RelationshipInfo,
    TableSchema,
)

__all__ = [
    # Schema types
    "ColumnSchema",
    "DatabaseSchema",
    "DatabaseType",
    "DataType",
    "ForeignKeyInfo",
    "RelationshipInfo",
    "TableSchema",
    # Registry
    "SchemaRegistry",
    # Introspectors
    "SchemaIntrospector",
    "SchemaIntrospectionError",
    "StaticSchemaIntrospector",
    "SQLiteIntrospector",
    "PostgresIntrospector",
    "MySQLIntrospector",
]
