"""
Business Glossary for NL2SQL planning.

Maps CRM domain vocabulary to schema tables, columns and SQL expressions,
and carries the business metadata (names, synonyms, aggregatable and
groupable flags) the planner uses to resolve free-text references.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_GLOSSARY_PATH = Path(__file__).parent / "config" / "business_glossary.yaml"


@dataclass(frozen=True)
class RelatedTable:
    """A table reachable from another through a join column."""

    table: str
    relationship: str
    join_column: str


@dataclass(frozen=True)
class TableMetadata:
    """Business metadata for a table."""

    table_name: str
    business_name: str
    description: str = ""
    category: str = "crm"
    common_queries: tuple = ()
    related_tables: tuple = ()


@dataclass(frozen=True)
class ColumnMetadata:
    """Business metadata for a column."""

    column_name: str
    business_name: str
    description: str = ""
    data_category: str = "text"
    aggregatable: bool = False
    groupable: bool = False
    synonyms: tuple = ()


@dataclass(frozen=True)
class BusinessTermMapping:
    """A domain term mapped onto the schema."""

    term: str
    table: str
    column: Optional[str] = None
    sql_expression: Optional[str] = None
    description: str = ""


@dataclass
class GlossaryData:
    """Raw glossary content, keyed for lookup."""

    tables: dict[str, TableMetadata] = field(default_factory=dict)
    columns: dict[str, dict[str, ColumnMetadata]] = field(default_factory=dict)
    terms: dict[str, BusinessTermMapping] = field(default_factory=dict)


class BusinessGlossary:
    """
    Read-only business glossary loaded from YAML.

    The glossary is static for the lifetime of the process and safe to
    share between concurrent requests.
    """

    def __init__(
        self,
        glossary_path: Optional[str] = None,
        data: Optional[GlossaryData] = None,
    ):
        """
        Initialize the glossary.

        Args:
            glossary_path: Path to a glossary YAML file
            data: Optional pre-built glossary content (takes precedence)
        """
        if data is not None:
            self._data = data
        else:
            self._data = self._load(glossary_path or str(DEFAULT_GLOSSARY_PATH))

        self._term_patterns = {
            term: re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)
            for term in self._data.terms
        }

        logger.info(
            f"BusinessGlossary initialized with {len(self._data.terms)} terms "
            f"and {len(self._data.tables)} tables"
        )

    @classmethod
    def from_dict(cls, raw: dict) -> "BusinessGlossary":
        """Build a glossary from an already-parsed YAML document."""
        return cls(data=cls._parse(raw))

    @classmethod
    def _load(cls, path: str) -> GlossaryData:
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load glossary from {path}: {e}")
            return GlossaryData()
        return cls._parse(raw)

    @staticmethod
    def _parse(raw: dict) -> GlossaryData:
        data = GlossaryData()

        for table_name, info in (raw.get("tables") or {}).items():
            data.tables[table_name] = TableMetadata(
                table_name=table_name,
                business_name=info.get("business_name", table_name),
                description=info.get("description", ""),
                category=info.get("category", "crm"),
                common_queries=tuple(info.get("common_queries", [])),
                related_tables=tuple(
                    RelatedTable(
                        table=r["table"],
                        relationship=r.get("relationship", ""),
                        join_column=r.get("join_column", ""),
                    )
                    for r in info.get("related_tables", [])
                ),
            )

        for table_name, columns in (raw.get("columns") or {}).items():
            data.columns[table_name] = {
                column_name: ColumnMetadata(
                    column_name=column_name,
                    business_name=info.get("business_name", column_name),
                    description=info.get("description", ""),
                    data_category=info.get("data_category", "text"),
                    aggregatable=bool(info.get("aggregatable", False)),
                    groupable=bool(info.get("groupable", False)),
                    synonyms=tuple(info.get("synonyms", [])),
                )
                for column_name, info in columns.items()
            }

        for term, info in (raw.get("terms") or {}).items():
            data.terms[term.lower()] = BusinessTermMapping(
                term=term.lower(),
                table=info["table"],
                column=info.get("column"),
                sql_expression=info.get("sql_expression"),
                description=info.get("description", ""),
            )

        return data

    def get_table_metadata(self, table_name: str) -> Optional[TableMetadata]:
        return self._data.tables.get(table_name)

    def get_column_metadata(
        self, table_name: str, column_name: str
    ) -> Optional[ColumnMetadata]:
        return self._data.columns.get(table_name, {}).get(column_name)

    def get_business_term(self, term: str) -> Optional[BusinessTermMapping]:
        return self._data.terms.get(term.lower())

    def all_terms(self) -> list[str]:
        """All glossary terms in declaration order."""
        return list(self._data.terms.keys())

    def all_tables(self) -> list[str]:
        return list(self._data.tables.keys())

    def find_terms_in_text(self, text: str) -> list[BusinessTermMapping]:
        """Glossary terms mentioned in ``text`` as whole words, in declaration order."""
        return [
            self._data.terms[term]
            for term, pattern in self._term_patterns.items()
            if pattern.search(text)
        ]

    def find_table_by_business_name(self, business_name: str) -> Optional[str]:
        """Resolve a business name or term (e.g. "customers") to a table."""
        lowered = business_name.lower().strip()

        mapping = self._data.terms.get(lowered)
        if mapping:
            return mapping.table

        for table_name, metadata in self._data.tables.items():
            if lowered in metadata.business_name.lower():
                return table_name

        return None

    def find_column_by_synonym(self, table_name: str, synonym: str) -> Optional[str]:
        """Resolve a business name or synonym to the actual column of ``table_name``."""
        lowered = synonym.lower().strip()
        for column_name, metadata in self._data.columns.get(table_name, {}).items():
            if column_name.lower() == lowered:
                return column_name
            if metadata.business_name.lower() == lowered:
                return column_name
            if any(s.lower() == lowered for s in metadata.synonyms):
                return column_name
        return None

    def get_aggregatable_columns(self, table_name: str) -> list[str]:
        return [
            name
            for name, metadata in self._data.columns.get(table_name, {}).items()
            if metadata.aggregatable
        ]

    def get_groupable_columns(self, table_name: str) -> list[str]:
        return [
            name
            for name, metadata in self._data.columns.get(table_name, {}).items()
            if metadata.groupable
        ]

    def format_for_prompt(self) -> str:
        """Render the business terminology for the generation prompt."""
        lines = []
        for term, mapping in self._data.terms.items():
            target = mapping.table + (f".{mapping.column}" if mapping.column else "")
            lines.append(f'"{term}" → {target}')
            if mapping.sql_expression:
                lines.append(f"  SQL: {mapping.sql_expression}")
        return "\n".join(lines)
