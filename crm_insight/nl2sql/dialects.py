"""
SQL dialect strategies for the SQL builder.

Every engine-specific concern (identifier quoting, placeholders, date
functions, LIMIT/OFFSET syntax, CTE and RETURNING support) lives behind the
SQLDialect interface, with one implementation per target engine.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional, Union

from ..data_sources.schema_types import DatabaseType


class SQLDialect(ABC):
    """Capability set of one relational engine."""

    database_type: DatabaseType = DatabaseType.ANSI

    def quote_identifier(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def format_date(self, value: Union[date, datetime]) -> str:
        return value.isoformat()

    def current_timestamp(self) -> str:
        return "CURRENT_TIMESTAMP"

    def date_function(self, part: str, column: str) -> str:
        """SQL extracting ``part`` (year, month or day) from ``column``."""
        return f"EXTRACT({part.upper()} FROM {column})"

    def string_concat(self, *args: str) -> str:
        return " || ".join(args)

    @abstractmethod
    def limit_clause(self, limit: Optional[int], offset: Optional[int] = None) -> str:
        """Row-limiting clause placed after ORDER BY, or "" for none."""

    @abstractmethod
    def placeholder(self, index: int) -> str:
        """Placeholder for the 1-based parameter ``index``."""

    def supports_cte(self) -> bool:
        return True

    def supports_returning(self) -> bool:
        return False

    def requires_order_for_offset(self) -> bool:
        """Whether OFFSET/FETCH is only valid after an ORDER BY."""
        return False


class PostgreSQLDialect(SQLDialect):
    database_type = DatabaseType.POSTGRES

    def limit_clause(self, limit, offset=None):
        parts = []
        if limit is not None:
            parts.append(f"LIMIT {int(limit)}")
        if offset:
            parts.append(f"OFFSET {int(offset)}")
        return " ".join(parts)

    def placeholder(self, index):
        return f"${index}"

    def supports_returning(self):
        return True


class MySQLDialect(SQLDialect):
    """MySQL and MariaDB."""

    database_type = DatabaseType.MYSQL

    # MySQL has no "no limit" keyword; the documented idiom is the max BIGINT.
    MAX_ROWS = 18446744073709551615

    def quote_identifier(self, identifier):
        return "`" + identifier.replace("`", "``") + "`"

    def format_date(self, value):
        if isinstance(value, datetime):
            return value.strftime("%Y-%m-%d %H:%M:%S")
        return value.isoformat()

    def date_function(self, part, column):
        return f"{part.upper()}({column})"

    def string_concat(self, *args):
        return f"CONCAT({', '.join(args)})"

    def limit_clause(self, limit, offset=None):
        if limit is None and not offset:
            return ""
        rows = int(limit) if limit is not None else self.MAX_ROWS
        if offset:
            return f"LIMIT {int(offset)}, {rows}"
        return f"LIMIT {rows}"

    def placeholder(self, index):
        return "?"


class SQLiteDialect(SQLDialect):
    database_type = DatabaseType.SQLITE

    _STRFTIME_FORMATS = {"year": "%Y", "month": "%m", "day": "%d"}

    def current_timestamp(self):
        return "datetime('now')"

    def date_function(self, part, column):
        return f"strftime('{self._STRFTIME_FORMATS[part.lower()]}', {column})"

    def limit_clause(self, limit, offset=None):
        if limit is None and not offset:
            return ""
        clause = f"LIMIT {int(limit) if limit is not None else -1}"
        if offset:
            clause += f" OFFSET {int(offset)}"
        return clause

    def placeholder(self, index):
        return "?"

    def supports_returning(self):
        return True


class MSSQLDialect(SQLDialect):
    database_type = DatabaseType.MSSQL

    def quote_identifier(self, identifier):
        return "[" + identifier.replace("]", "]]") + "]"

    def current_timestamp(self):
        return "GETDATE()"

    def date_function(self, part, column):
        return f"DATEPART({part.lower()}, {column})"

    def string_concat(self, *args):
        return f"CONCAT({', '.join(args)})"

    def limit_clause(self, limit, offset=None):
        if limit is None and not offset:
            return ""
        clause = f"OFFSET {int(offset or 0)} ROWS"
        if limit is not None:
            clause += f" FETCH NEXT {int(limit)} ROWS ONLY"
        return clause

    def placeholder(self, index):
        return f"@p{index}"

    def supports_returning(self):
        # OUTPUT clause
        return True

    def requires_order_for_offset(self):
        return True


class ANSISQLDialect(SQLDialect):
    """SQL:2008 fallback for unrecognised engines."""

    database_type = DatabaseType.ANSI

    def limit_clause(self, limit, offset=None):
        if offset:
            clause = f"OFFSET {int(offset)} ROWS"
            if limit is not None:
                clause += f" FETCH NEXT {int(limit)} ROWS ONLY"
            return clause
        if limit is not None:
            return f"FETCH FIRST {int(limit)} ROWS ONLY"
        return ""

    def placeholder(self, index):
        return "?"


_DIALECTS = {
    DatabaseType.POSTGRES: PostgreSQLDialect,
    DatabaseType.MYSQL: MySQLDialect,
    DatabaseType.MARIADB: MySQLDialect,
    DatabaseType.SQLITE: SQLiteDialect,
    DatabaseType.MSSQL: MSSQLDialect,
    DatabaseType.ANSI: ANSISQLDialect,
}


def get_dialect(database_type: Union[DatabaseType, str, None]) -> SQLDialect:
    """Resolve a dialect; unknown engines get the ANSI fallback."""
    if not isinstance(database_type, DatabaseType):
        database_type = DatabaseType.from_string(database_type)
    return _DIALECTS.get(database_type, ANSISQLDialect)()
