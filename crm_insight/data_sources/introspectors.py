"""
Schema introspectors for the schema registry.

Each introspector reads table, column and foreign key information from one
kind of source and returns a DatabaseSchema snapshot. The registry only
depends on the abstract interface.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .schema_types import (
    ColumnSchema,
    DatabaseSchema,
    DatabaseType,
    ForeignKeyInfo,
    TableSchema,
    derive_relationships,
    normalize_data_type,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_CONFIG_PATH = Path(__file__).parent / "config" / "crm_schema.yaml"


class SchemaIntrospectionError(Exception):
    """Exception raised when a schema cannot be read from its source."""

    pass


class SchemaIntrospector(ABC):
    """
    Abstract base class for schema introspectors.

    Implementations read the structure of one data source and build a
    complete DatabaseSchema snapshot in a single call.
    """

    @property
    @abstractmethod
    def database_type(self) -> DatabaseType:
        """The relational engine described by this introspector."""
        pass

    @abstractmethod
    def introspect(self) -> DatabaseSchema:
        """
        Read the full schema.

        Returns:
            A new DatabaseSchema snapshot.

        Raises:
            SchemaIntrospectionError: If the source cannot be read.
        """
        pass

    def _build_schema(self, tables: Dict[str, TableSchema]) -> DatabaseSchema:
        return DatabaseSchema(
            database_type=self.database_type,
            tables=tables,
            relationships=derive_relationships(tables),
        )


class StaticSchemaIntrospector(SchemaIntrospector):
    """
    Schema loaded from a YAML configuration file.

    Used when the relational store is not reachable from the planner, and
    in tests. The file lists tables with typed columns and foreign keys.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        database_type: Optional[DatabaseType] = None,
    ):
        self._config_path = Path(config_path) if config_path else DEFAULT_SCHEMA_CONFIG_PATH
        self._config = config
        self._database_type = database_type

    @property
    def database_type(self) -> DatabaseType:
        if self._database_type is not None:
            return self._database_type
        data = self._load()
        return DatabaseType.from_string(data.get("database_type"))

    def _load(self) -> Dict[str, Any]:
        if self._config is not None:
            return self._config
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load schema config %s: %s", self._config_path, e)
            raise SchemaIntrospectionError(
                f"Failed to load schema config: {e}"
            ) from e
        return self._config

    def introspect(self) -> DatabaseSchema:
        data = self._load()
        tables: Dict[str, TableSchema] = {}

        for table_name, table_info in (data.get("tables") or {}).items():
            primary_keys = list(table_info.get("primary_keys", ["id"]))
            columns = {}
            for col_name, col_info in (table_info.get("columns") or {}).items():
                if isinstance(col_info, str):
                    col_info = {"type": col_info}
                raw_type = col_info.get("type", "varchar")
                columns[col_name] = ColumnSchema(
                    name=col_name,
                    type=raw_type,
                    data_type=normalize_data_type(raw_type),
                    nullable=col_info.get("nullable", col_name not in primary_keys),
                    is_primary_key=col_name in primary_keys,
                    is_unique=col_info.get("unique", False),
                )

            foreign_keys = []
            for column_name, reference in (table_info.get("foreign_keys") or {}).items():
                ref_table, _, ref_column = reference.partition(".")
                foreign_keys.append(
                    ForeignKeyInfo(
                        column_name=column_name,
                        referenced_table=ref_table,
                        referenced_column=ref_column or "id",
                        name=f"fk_{table_name}_{column_name}",
                    )
                )

            tables[table_name] = TableSchema(
                name=table_name,
                columns=columns,
                primary_keys=primary_keys,
                foreign_keys=foreign_keys,
            )

        logger.info("Loaded static schema with %d tables", len(tables))
        return self._build_schema(tables)


class SQLiteIntrospector(SchemaIntrospector):
    """Introspects a SQLite database through its PRAGMA interface."""

    def __init__(
        self,
        db_path: str = ":memory:",
        connection: Optional[sqlite3.Connection] = None,
    ):
        self._db_path = db_path
        self._connection = connection

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.SQLITE

    def introspect(self) -> DatabaseSchema:
        owns_connection = self._connection is None
        conn = self._connection or sqlite3.connect(self._db_path)
        try:
            tables = {
                name: self._read_table(conn, name)
                for name in self._list_tables(conn)
            }
        except sqlite3.Error as e:
            logger.error("SQLite introspection failed: %s", e)
            raise SchemaIntrospectionError(f"SQLite introspection failed: {e}") from e
        finally:
            if owns_connection:
                conn.close()

        logger.info("Introspected %d SQLite tables", len(tables))
        return self._build_schema(tables)

    def _list_tables(self, conn: sqlite3.Connection) -> List[str]:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' "
            "ORDER BY name"
        )
        return [row[0] for row in cursor.fetchall()]

    def _read_table(self, conn: sqlite3.Connection, table_name: str) -> TableSchema:
        # PRAGMA arguments cannot be bound; names come from sqlite_master.
        quoted = '"' + table_name.replace('"', '""') + '"'

        columns = {}
        primary_keys = []
        for _, name, col_type, notnull, _, pk in conn.execute(
            f"PRAGMA table_info({quoted})"
        ).fetchall():
            if pk:
                primary_keys.append(name)
            columns[name] = ColumnSchema(
                name=name,
                type=col_type or "",
                data_type=normalize_data_type(col_type),
                nullable=not notnull and not pk,
                is_primary_key=bool(pk),
            )

        foreign_keys = []
        for row in conn.execute(f"PRAGMA foreign_key_list({quoted})").fetchall():
            # id, seq, table, from, to, on_update, on_delete, match
            foreign_keys.append(
                ForeignKeyInfo(
                    column_name=row[3],
                    referenced_table=row[2],
                    referenced_column=row[4] or "id",
                    name=f"fk_{table_name}_{row[3]}",
                )
            )

        return TableSchema(
            name=table_name,
            columns=columns,
            primary_keys=primary_keys,
            foreign_keys=foreign_keys,
        )


class PostgresIntrospector(SchemaIntrospector):
    """Introspects a PostgreSQL database through information_schema."""

    def __init__(self, connection_params: Dict[str, Any], schema_name: str = "public"):
        self._connection_params = connection_params
        self._schema_name = schema_name

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.POSTGRES

    def _get_connection(self):
        import psycopg2

        return psycopg2.connect(**self._connection_params)

    def introspect(self) -> DatabaseSchema:
        import psycopg2

        try:
            conn = self._get_connection()
        except psycopg2.Error as e:
            raise SchemaIntrospectionError(f"Failed to connect: {e}") from e

        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.table_name, c.column_name, c.data_type, c.is_nullable
                    FROM information_schema.columns c
                    JOIN information_schema.tables t
                      ON t.table_name = c.table_name AND t.table_schema = c.table_schema
                    WHERE c.table_schema = %s AND t.table_type = 'BASE TABLE'
                    ORDER BY c.table_name, c.ordinal_position
                    """,
                    (self._schema_name,),
                )
                column_rows = cur.fetchall()

                cur.execute(
                    """
                    SELECT tc.table_name, kcu.column_name, tc.constraint_type,
                           ccu.table_name, ccu.column_name, tc.constraint_name
                    FROM information_schema.table_constraints tc
                    JOIN information_schema.key_column_usage kcu
                      ON tc.constraint_name = kcu.constraint_name
                     AND tc.table_schema = kcu.table_schema
                    JOIN information_schema.constraint_column_usage ccu
                      ON ccu.constraint_name = tc.constraint_name
                     AND ccu.table_schema = tc.table_schema
                    WHERE tc.table_schema = %s
                      AND tc.constraint_type IN ('PRIMARY KEY', 'FOREIGN KEY')
                    """,
                    (self._schema_name,),
                )
                constraint_rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.error("PostgreSQL introspection failed: %s", e)
            raise SchemaIntrospectionError(f"PostgreSQL introspection failed: {e}") from e
        finally:
            conn.close()

        primary_keys: Dict[str, List[str]] = {}
        foreign_keys: Dict[str, List[ForeignKeyInfo]] = {}
        for table_name, column_name, constraint_type, ref_table, ref_column, name in constraint_rows:
            if constraint_type == "PRIMARY KEY":
                primary_keys.setdefault(table_name, []).append(column_name)
            else:
                foreign_keys.setdefault(table_name, []).append(
                    ForeignKeyInfo(
                        column_name=column_name,
                        referenced_table=ref_table,
                        referenced_column=ref_column,
                        name=name,
                    )
                )

        tables: Dict[str, TableSchema] = {}
        for table_name, column_name, data_type, is_nullable in column_rows:
            table = tables.setdefault(
                table_name,
                TableSchema(
                    name=table_name,
                    primary_keys=primary_keys.get(table_name, []),
                    foreign_keys=foreign_keys.get(table_name, []),
                ),
            )
            table.columns[column_name] = ColumnSchema(
                name=column_name,
                type=data_type,
                data_type=normalize_data_type(data_type),
                nullable=is_nullable == "YES",
                is_primary_key=column_name in table.primary_keys,
            )

        logger.info("Introspected %d PostgreSQL tables", len(tables))
        return self._build_schema(tables)


class MySQLIntrospector(SchemaIntrospector):
    """
    Introspects a MySQL or MariaDB database through information_schema.

    ``schema_name`` defaults to the ``database`` connection parameter.
    Primary keys come from ``COLUMN_KEY`` and foreign keys from
    ``KEY_COLUMN_USAGE`` rows that reference another table.
    """

    def __init__(
        self,
        connection_params: Dict[str, Any],
        schema_name: Optional[str] = None,
        mariadb: bool = False,
    ):
        self._connection_params = connection_params
        self._schema_name = schema_name or connection_params.get("database", "")
        self._mariadb = mariadb

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.MARIADB if self._mariadb else DatabaseType.MYSQL

    def _get_connection(self):
        import mysql.connector

        return mysql.connector.connect(**self._connection_params)

    def introspect(self) -> DatabaseSchema:
        import mysql.connector

        try:
            conn = self._get_connection()
        except mysql.connector.Error as e:
            raise SchemaIntrospectionError(f"Failed to connect: {e}") from e

        try:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    """
                    SELECT c.TABLE_NAME, c.COLUMN_NAME, c.DATA_TYPE, c.COLUMN_TYPE,
                           c.IS_NULLABLE, c.COLUMN_KEY
                    FROM information_schema.COLUMNS c
                    JOIN information_schema.TABLES t
                      ON t.TABLE_NAME = c.TABLE_NAME AND t.TABLE_SCHEMA = c.TABLE_SCHEMA
                    WHERE c.TABLE_SCHEMA = %s AND t.TABLE_TYPE = 'BASE TABLE'
                    ORDER BY c.TABLE_NAME, c.ORDINAL_POSITION
                    """,
                    (self._schema_name,),
                )
                column_rows = cursor.fetchall()

                cursor.execute(
                    """
                    SELECT TABLE_NAME, COLUMN_NAME, REFERENCED_TABLE_NAME,
                           REFERENCED_COLUMN_NAME, CONSTRAINT_NAME
                    FROM information_schema.KEY_COLUMN_USAGE
                    WHERE TABLE_SCHEMA = %s AND REFERENCED_TABLE_NAME IS NOT NULL
                    ORDER BY TABLE_NAME, ORDINAL_POSITION
                    """,
                    (self._schema_name,),
                )
                fk_rows = cursor.fetchall()
            finally:
                cursor.close()
        except mysql.connector.Error as e:
            logger.error("MySQL introspection failed: %s", e)
            raise SchemaIntrospectionError(f"MySQL introspection failed: {e}") from e
        finally:
            conn.close()

        foreign_keys: Dict[str, List[ForeignKeyInfo]] = {}
        for table_name, column_name, ref_table, ref_column, name in fk_rows:
            foreign_keys.setdefault(table_name, []).append(
                ForeignKeyInfo(
                    column_name=column_name,
                    referenced_table=ref_table,
                    referenced_column=ref_column,
                    name=name,
                )
            )

        tables: Dict[str, TableSchema] = {}
        for table_name, column_name, data_type, column_type, is_nullable, column_key in column_rows:
            table = tables.setdefault(
                table_name,
                TableSchema(name=table_name, foreign_keys=foreign_keys.get(table_name, [])),
            )
            if column_key == "PRI":
                table.primary_keys.append(column_name)
            table.columns[column_name] = ColumnSchema(
                name=column_name,
                type=column_type,
                data_type=normalize_data_type(data_type),
                nullable=is_nullable == "YES",
                is_primary_key=column_key == "PRI",
                is_unique=column_key == "UNI",
            )

        logger.info("Introspected %d MySQL tables", len(tables))
        return self._build_schema(tables)
