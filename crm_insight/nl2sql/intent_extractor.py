"""
Query Intent Extractor for NL2SQL planning.

Parses a free-text business question into a structured QueryIntent using
ordered keyword families and the business glossary. Extraction never fails:
whenever a default has to be applied the decision is recorded in
``QueryIntent.ambiguities`` and processing continues.
"""

import calendar
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

from .glossary import BusinessGlossary

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_TABLE = "deals"

QUERY_TYPE_PATTERNS = [
    ("ranking", re.compile(r"\b(?:top|bottom|best|worst|highest|lowest)\b", re.IGNORECASE)),
    ("distribution", re.compile(r"\b(?:distribution|breakdown|composition|spread)\b", re.IGNORECASE)),
    (
        "trend",
        re.compile(
            r"\b(?:trend|trends|over time|by month|by week|by day|monthly|weekly|daily|timeline)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "comparison",
        re.compile(
            r"\b(?:compare|versus|vs|between|difference)\b\s+\w+(?:\s+\w+)*?\s+(?:and|vs|versus)\s+\w+",
            re.IGNORECASE,
        ),
    ),
    (
        "aggregation",
        re.compile(
            r"\b(?:total|sum|count|average|avg|mean|max|maximum|min|minimum)\s+(?:of\s+)?\w+"
            r"|\b(?:by|per|for each|grouped by|group by|broken down by|split by)\s+\w+",
            re.IGNORECASE,
        ),
    ),
]

GROUP_BY_PATTERN = re.compile(
    r"\b(?:grouped by|group by|broken down by|split by|for each|by|per)\s+(\w+)",
    re.IGNORECASE,
)

# Dimension word -> (column, table). An empty table means "the primary entity".
DIMENSION_MAP = {
    "stage": ("stage", "deals"),
    "status": ("stage", "deals"),
    "owner": ("owner", "deals"),
    "rep": ("owner", "deals"),
    "month": ("closeDate", "deals"),
    "quarter": ("closeDate", "deals"),
    "year": ("closeDate", "deals"),
    "industry": ("industry", "accounts"),
    "type": ("type", "activities"),
    "category": ("category", ""),
    "account": ("accountId", "deals"),
    "company": ("accountId", "deals"),
}

LIMIT_PATTERN = re.compile(r"\b(?:top|bottom|first|last)\s+(\d+)\b", re.IGNORECASE)
GREATER_THAN_PATTERN = re.compile(
    r"\b(?:greater than|more than|above|over)\s+\$?(\d[\d,]*(?:\.\d+)?)", re.IGNORECASE
)
LESS_THAN_PATTERN = re.compile(
    r"\b(?:less than|below|under)\s+\$?(\d[\d,]*(?:\.\d+)?)", re.IGNORECASE
)
LAST_N_DAYS_PATTERN = re.compile(r"\b(?:last|past)\s+(\d+)\s+days?\b", re.IGNORECASE)
LAST_N_MONTHS_PATTERN = re.compile(r"\b(?:last|past)\s+(\d+)\s+months?\b", re.IGNORECASE)


@dataclass
class IntentEntities:
    """Primary and related tables mentioned in the question."""

    primary: str = ""
    related: list[str] = field(default_factory=list)


@dataclass
class IntentMetric:
    """A requested measure."""

    name: str
    aggregation: str
    column: Optional[str] = None


@dataclass
class IntentDimension:
    """A requested grouping dimension."""

    column: str
    table: str = ""


@dataclass
class IntentFilter:
    """A requested row filter."""

    column: str
    operator: str
    value: Any


@dataclass
class TimeRange:
    """A concrete date window resolved from a relative phrase."""

    start: date
    end: date
    relative: str


@dataclass
class IntentOrderBy:
    """Requested ordering direction."""

    column: str
    direction: str


@dataclass
class QueryIntent:
    """Structured extraction of what a natural-language question requests."""

    query_type: str = "detail"
    entities: IntentEntities = field(default_factory=IntentEntities)
    metrics: list[IntentMetric] = field(default_factory=list)
    dimensions: list[IntentDimension] = field(default_factory=list)
    filters: list[IntentFilter] = field(default_factory=list)
    time_range: Optional[TimeRange] = None
    limit: Optional[int] = None
    order_by: Optional[IntentOrderBy] = None
    ambiguities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        result = asdict(self)
        if self.time_range:
            result["time_range"] = {
                "start": self.time_range.start.isoformat(),
                "end": self.time_range.end.isoformat(),
                "relative": self.time_range.relative,
            }
        return result


class IntentExtractor:
    """
    Extracts a QueryIntent from free text.

    The extractor is stateless apart from the read-only glossary and may be
    shared between concurrent requests.
    """

    def __init__(self, glossary: Optional[BusinessGlossary] = None):
        self.glossary = glossary or BusinessGlossary()

    def extract(self, text: str, today: Optional[date] = None) -> QueryIntent:
        """
        Extract the intent of a question.

        Args:
            text: The natural language question
            today: Reference date for relative time ranges (defaults to today)

        Returns:
            QueryIntent with defaults applied and recorded
        """
        today = today or date.today()
        lowered = text.lower()

        intent = QueryIntent(
            query_type=self.detect_query_type(text),
            entities=self._extract_entities(lowered),
            metrics=self._extract_metrics(lowered),
            dimensions=self._extract_dimensions(text),
            filters=self._extract_filters(lowered),
            time_range=self._extract_time_range(lowered, today),
            limit=self._extract_limit(text),
            order_by=self._extract_order_by(lowered),
        )

        if not intent.metrics and intent.query_type == "aggregation":
            intent.metrics.append(IntentMetric(name="count", aggregation="COUNT", column="*"))

        self._resolve_with_glossary(intent)
        self._apply_defaults(intent)

        logger.info(
            f"Extracted intent: type={intent.query_type}, "
            f"primary={intent.entities.primary}, "
            f"metrics={len(intent.metrics)}, dimensions={len(intent.dimensions)}"
        )
        if intent.ambiguities:
            logger.debug("Intent ambiguities: %s", "; ".join(intent.ambiguities))

        return intent

    def detect_query_type(self, text: str) -> str:
        """Classify the question; the first matching family wins."""
        for query_type, pattern in QUERY_TYPE_PATTERNS:
            if pattern.search(text):
                return query_type
        return "detail"

    def _extract_entities(self, lowered: str) -> IntentEntities:
        entities = IntentEntities()

        for mapping in self.glossary.find_terms_in_text(lowered):
            if not entities.primary:
                entities.primary = mapping.table
            elif mapping.table != entities.primary and mapping.table not in entities.related:
                entities.related.append(mapping.table)

        if not entities.primary:
            for table_name in self.glossary.all_tables():
                metadata = self.glossary.get_table_metadata(table_name)
                business_name = metadata.business_name.lower() if metadata else ""
                if re.search(rf"\b{re.escape(table_name.lower())}\b", lowered) or (
                    business_name and business_name in lowered
                ):
                    entities.primary = table_name
                    break

        if not entities.primary and re.search(r"\b(?:sales|revenue|pipeline)\b", lowered):
            entities.primary = DEFAULT_PRIMARY_TABLE

        return entities

    def _extract_metrics(self, lowered: str) -> list[IntentMetric]:
        metrics = []

        if re.search(r"\bcount\b|\bnumber of\b|\bhow many\b", lowered):
            metrics.append(IntentMetric(name="count", aggregation="COUNT", column="*"))

        if re.search(r"\b(?:total|sum)\b", lowered) and re.search(
            r"\b(?:revenue|amount|value)\b", lowered
        ):
            metrics.append(IntentMetric(name="total_amount", aggregation="SUM", column="amount"))

        if re.search(r"\b(?:average|avg|mean)\b", lowered) and re.search(
            r"\b(?:deal|deals|amount|value)\b", lowered
        ):
            metrics.append(IntentMetric(name="avg_amount", aggregation="AVG", column="amount"))

        if re.search(r"\b(?:highest|maximum|max)\b", lowered):
            metrics.append(IntentMetric(name="max_value", aggregation="MAX", column="amount"))

        if re.search(r"\b(?:lowest|minimum|min)\b", lowered):
            metrics.append(IntentMetric(name="min_value", aggregation="MIN", column="amount"))

        return metrics

    def _extract_dimensions(self, text: str) -> list[IntentDimension]:
        dimensions = []
        for match in GROUP_BY_PATTERN.finditer(text):
            word = match.group(1).lower()
            column, table = DIMENSION_MAP.get(word, (word, ""))
            dimensions.append(IntentDimension(column=column, table=table))
        return dimensions

    def _extract_filters(self, lowered: str) -> list[IntentFilter]:
        filters = []

        if "closed won" in lowered:
            filters.append(IntentFilter(column="stage", operator="=", value="Closed Won"))
        if "closed lost" in lowered:
            filters.append(IntentFilter(column="stage", operator="=", value="Closed Lost"))
        if re.search(r"\b(?:open|pipeline)\b", lowered):
            filters.append(
                IntentFilter(column="stage", operator="NOT IN", value=["Closed Won", "Closed Lost"])
            )

        greater = GREATER_THAN_PATTERN.search(lowered)
        if greater:
            filters.append(
                IntentFilter(column="amount", operator=">", value=_parse_amount(greater.group(1)))
            )

        less = LESS_THAN_PATTERN.search(lowered)
        if less:
            filters.append(
                IntentFilter(column="amount", operator="<", value=_parse_amount(less.group(1)))
            )

        return filters

    def _extract_time_range(self, lowered: str, today: date) -> Optional[TimeRange]:
        if re.search(r"\bthis month\b", lowered):
            start = today.replace(day=1)
            return TimeRange(start, _month_end(start), "this_month")

        if re.search(r"\blast month\b", lowered):
            start = _add_months(today.replace(day=1), -1)
            return TimeRange(start, _month_end(start), "last_month")

        if re.search(r"\bthis quarter\b", lowered):
            start = _quarter_start(today)
            return TimeRange(start, _month_end(_add_months(start, 2)), "this_quarter")

        if re.search(r"\blast quarter\b", lowered):
            start = _add_months(_quarter_start(today), -3)
            return TimeRange(start, _month_end(_add_months(start, 2)), "last_quarter")

        if re.search(r"\bthis year\b|\bytd\b|\byear to date\b", lowered):
            return TimeRange(date(today.year, 1, 1), date(today.year, 12, 31), "this_year")

        if re.search(r"\blast year\b", lowered):
            year = today.year - 1
            return TimeRange(date(year, 1, 1), date(year, 12, 31), "last_year")

        if re.search(r"\btoday\b", lowered):
            return TimeRange(today, today, "today")

        if re.search(r"\byesterday\b", lowered):
            yesterday = today - timedelta(days=1)
            return TimeRange(yesterday, yesterday, "yesterday")

        days = LAST_N_DAYS_PATTERN.search(lowered)
        if days:
            count = int(days.group(1))
            return TimeRange(today - timedelta(days=count), today, f"last_{count}_days")

        months = LAST_N_MONTHS_PATTERN.search(lowered)
        if months:
            count = int(months.group(1))
            return TimeRange(_add_months(today, -count), today, f"last_{count}_months")

        return None

    def _extract_limit(self, text: str) -> Optional[int]:
        match = LIMIT_PATTERN.search(text)
        return int(match.group(1)) if match else None

    def _extract_order_by(self, lowered: str) -> Optional[IntentOrderBy]:
        if re.search(r"\b(?:top|highest|most)\b", lowered):
            return IntentOrderBy(column="amount", direction="DESC")
        if re.search(r"\b(?:bottom|lowest|least)\b", lowered):
            return IntentOrderBy(column="amount", direction="ASC")
        return None

    def _resolve_with_glossary(self, intent: QueryIntent) -> None:
        """Map metric and dimension words onto real column names."""
        primary = intent.entities.primary
        if not primary:
            return

        for metric in intent.metrics:
            if metric.column and metric.column != "*":
                actual = self.glossary.find_column_by_synonym(primary, metric.column)
                if actual:
                    metric.column = actual

        for dimension in intent.dimensions:
            table = dimension.table or primary
            actual = self.glossary.find_column_by_synonym(table, dimension.column)
            if actual:
                dimension.column = actual

    def _apply_defaults(self, intent: QueryIntent) -> None:
        if not intent.entities.primary:
            intent.entities.primary = DEFAULT_PRIMARY_TABLE
            intent.ambiguities.append(
                f"No entity mentioned; defaulted primary table to '{DEFAULT_PRIMARY_TABLE}'"
            )

        if intent.dimensions and not intent.metrics:
            intent.metrics.append(IntentMetric(name="count", aggregation="COUNT", column="*"))
            intent.ambiguities.append("Dimensions without a metric; defaulted to COUNT(*)")

        for dimension in intent.dimensions:
            if not dimension.table:
                dimension.table = intent.entities.primary
                intent.ambiguities.append(
                    f"Dimension '{dimension.column}' has no owning table; "
                    f"assigned to '{intent.entities.primary}'"
                )

        if intent.order_by and intent.order_by.column == "amount" and intent.entities.primary != "deals":
            intent.ambiguities.append(
                "Ordering defaulted to 'amount', which may not exist on "
                f"'{intent.entities.primary}'"
            )


def _parse_amount(raw: str) -> float:
    return float(raw.replace(",", ""))


def _month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def _add_months(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    last_day = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day.day, last_day))


def _quarter_start(day: date) -> date:
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)
