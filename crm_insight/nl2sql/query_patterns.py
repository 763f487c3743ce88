"""
Query Pattern Library for deterministic NL2SQL fast paths.

Each pattern pairs a matcher with a plan builder for one common phrasing
("sales by stage", "top 10 deals by amount", ...). Patterns only build
single-table plans: questions that look like they need a JOIN are routed
to the AI plan generator instead.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from .glossary import BusinessGlossary
from .query_plan import (
    TENANT_COLUMN,
    GroupByItem,
    OrderByItem,
    PlanColumn,
    PlanCondition,
    QueryContext,
    QueryPlan,
)

logger = logging.getLogger(__name__)

JOIN_INDICATORS = [
    "with account",
    "with customer",
    "with contact",
    "and their",
    "including",
    "joined with",
    "join",
    "by industry",
    "by account",
    "customer name",
    "account name",
    "contact name",
    "from different",
    "across tables",
    "related",
]

ENTITY_TABLES = {
    "deals": "deals",
    "deal": "deals",
    "opportunities": "deals",
    "pipeline": "deals",
    "sales": "deals",
    "accounts": "accounts",
    "customers": "accounts",
    "companies": "accounts",
    "contacts": "contacts",
    "activities": "activities",
}

# Metric phrase -> (table, column, aggregation)
METRIC_MAP = {
    "sales": ("deals", "amount", "SUM"),
    "revenue": ("deals", "amount", "SUM"),
    "deals": ("deals", "*", "COUNT"),
    "count": ("deals", "*", "COUNT"),
    "opportunities": ("deals", "*", "COUNT"),
    "customers": ("accounts", "*", "COUNT"),
    "accounts": ("accounts", "*", "COUNT"),
    "contacts": ("contacts", "*", "COUNT"),
    "activities": ("activities", "*", "COUNT"),
}

# Dimension phrase -> (table, column, date part)
DIMENSION_MAP = {
    "stage": ("deals", "stage", None),
    "status": ("deals", "stage", None),
    "owner": ("deals", "owner", None),
    "rep": ("deals", "owner", None),
    "month": ("deals", "closeDate", "month"),
    "year": ("deals", "closeDate", "year"),
    "type": ("activities", "type", None),
}

_LEAD_VERBS = r"(?:show|get|display|list|give me)?\s*(?:me\s+)?(?:the\s+)?"

METRIC_BY_DIMENSION = re.compile(
    rf"^\s*{_LEAD_VERBS}(.+?)\s+(?:grouped by|for each|by|per)\s+(.+?)\s*\??$",
    re.IGNORECASE,
)
TOP_N = re.compile(
    r"\b(top|bottom|best|worst|highest|lowest)\s+(?:(\d+)\s+)?(.+?)(?:\s+by\s+(.+?))?\s*\??$",
    re.IGNORECASE,
)
DISTRIBUTION = re.compile(
    r"\b(?:distribution|breakdown|composition|spread)\b(?:\s+of)?\s*(.*?)(?:\s+by\s+(.+?))?\s*\??$",
    re.IGNORECASE,
)
TREND = re.compile(
    r"\b(trend|over time|timeline|by month|by week|by day|monthly|weekly|daily)\b",
    re.IGNORECASE,
)
SIMPLE_COUNT = re.compile(r"\b(?:how many|count of|count|number of|total)\s+(.+?)\s*\??$", re.IGNORECASE)
COMPARISON = re.compile(
    r"\b(?:compare|versus|vs\.?|difference between)\s+(.+?)\s+(?:and|vs\.?|versus|with)\s+(.+)",
    re.IGNORECASE,
)

_RANKING_WORDS = re.compile(r"\b(?:top|bottom|best|worst|highest|lowest)\b", re.IGNORECASE)
_DISTRIBUTION_WORDS = re.compile(r"\b(?:distribution|breakdown|composition|spread)\b", re.IGNORECASE)


@dataclass
class QueryPattern:
    """A named fast-path template."""

    name: str
    description: str
    matches: Callable[[str], bool]
    build_plan: Callable[[str, QueryContext], Optional[QueryPlan]]
    examples: list[str] = field(default_factory=list)


class QueryPatternLibrary:
    """
    Ordered registry of deterministic query patterns.

    The first matching pattern wins. Every built plan carries the tenant
    condition for the requesting context.
    """

    def __init__(self, glossary: Optional[BusinessGlossary] = None):
        self.glossary = glossary or BusinessGlossary()
        self.patterns: list[QueryPattern] = [
            QueryPattern(
                name="metric_by_dimension",
                description="Aggregate a metric grouped by a dimension",
                matches=self._matches_metric_by_dimension,
                build_plan=self._build_metric_by_dimension,
                examples=["sales by stage", "deals by owner", "revenue per rep"],
            ),
            QueryPattern(
                name="top_n_ranking",
                description="Get top N records ordered by a metric",
                matches=lambda text: bool(TOP_N.search(text)),
                build_plan=self._build_top_n,
                examples=[
                    "top 10 deals by amount",
                    "bottom 5 accounts by revenue",
                    "highest 20 opportunities",
                ],
            ),
            QueryPattern(
                name="distribution",
                description="Show distribution or breakdown of entities",
                matches=lambda text: bool(DISTRIBUTION.search(text)),
                build_plan=self._build_distribution,
                examples=[
                    "distribution of deals by stage",
                    "breakdown of activities by type",
                    "pipeline composition",
                ],
            ),
            QueryPattern(
                name="trend",
                description="Show trend of metrics over time",
                matches=lambda text: bool(TREND.search(text)),
                build_plan=self._build_trend,
                examples=["revenue trend over time", "monthly sales", "deals by month"],
            ),
            QueryPattern(
                name="simple_count",
                description="Count total number of entities",
                matches=lambda text: bool(SIMPLE_COUNT.search(text)),
                build_plan=self._build_simple_count,
                examples=["how many deals", "count of customers", "total opportunities"],
            ),
            QueryPattern(
                name="comparison",
                description="Compare metrics between periods or categories",
                matches=lambda text: bool(COMPARISON.search(text)),
                build_plan=self._build_comparison,
                examples=[
                    "compare this month vs last month",
                    "sales this quarter versus last quarter",
                ],
            ),
        ]

    def get_all_patterns(self) -> list[QueryPattern]:
        return list(self.patterns)

    def find_matching_pattern(self, text: str) -> Optional[QueryPattern]:
        for pattern in self.patterns:
            if pattern.matches(text):
                return pattern
        return None

    def build_query_plan(self, text: str, context: QueryContext) -> Optional[QueryPlan]:
        """
        Build a plan from the first matching pattern.

        Args:
            text: The natural language question
            context: Requesting tenant and caller

        Returns:
            A tenant-scoped QueryPlan, or None when the question needs a JOIN
            or no pattern matches
        """
        if self.requires_join(text):
            logger.info("Query requires JOIN, skipping pattern matching")
            return None

        pattern = self.find_matching_pattern(text)
        if pattern is None:
            return None

        logger.info(f"Using query pattern '{pattern.name}'")
        plan = pattern.build_plan(text, context)
        if plan is None:
            logger.info(f"Pattern '{pattern.name}' cannot answer on a single table, skipping")
            return None
        if not plan.has_tenant_condition(context.tenant_id):
            plan.conditions.append(_tenant_condition(plan.primary_table, context))
        return plan

    @staticmethod
    def requires_join(text: str) -> bool:
        lowered = text.lower()
        return any(indicator in lowered for indicator in JOIN_INDICATORS)

    def _matches_metric_by_dimension(self, text: str) -> bool:
        if _RANKING_WORDS.search(text) or _DISTRIBUTION_WORDS.search(text) or TREND.search(text):
            return False
        return bool(METRIC_BY_DIMENSION.search(text))

    def _build_metric_by_dimension(self, text: str, context: QueryContext) -> Optional[QueryPlan]:
        match = METRIC_BY_DIMENSION.search(text)
        metric = match.group(1).strip().lower()
        dimension = match.group(2).strip().lower()

        table, column, aggregation = METRIC_MAP.get(metric, ("deals", "*", "COUNT"))
        resolved = self._resolve_dimension(dimension, table)
        if resolved is None:
            return None
        dim_table, dim_column, date_part = resolved

        return QueryPlan(
            primary_table=table,
            columns=[
                PlanColumn(table=dim_table, column=dim_column, date_part=date_part),
                PlanColumn(
                    table=table,
                    column=column,
                    aggregation=aggregation,
                    alias=re.sub(r"\W+", "_", metric),
                ),
            ],
            group_by=[GroupByItem(table=dim_table, column=dim_column, date_part=date_part)],
            conditions=[_tenant_condition(table, context)],
        )

    def _build_top_n(self, text: str, context: QueryContext) -> QueryPlan:
        match = TOP_N.search(text)
        keyword = match.group(1).lower()
        limit = int(match.group(2)) if match.group(2) else 10
        entity = match.group(3).strip().lower()
        metric = (match.group(4) or "amount").strip().lower()

        table = ENTITY_TABLES.get(entity, "deals")
        order_column = self.glossary.find_column_by_synonym(table, metric) or metric
        direction = "DESC" if keyword in ("top", "best", "highest") else "ASC"

        return QueryPlan(
            primary_table=table,
            columns=[
                PlanColumn(table=table, column="id"),
                PlanColumn(table=table, column="name"),
                PlanColumn(table=table, column=order_column),
            ],
            conditions=[_tenant_condition(table, context)],
            order_by=[OrderByItem(table=table, column=order_column, direction=direction)],
            limit=limit,
        )

    def _build_distribution(self, text: str, context: QueryContext) -> Optional[QueryPlan]:
        match = DISTRIBUTION.search(text)
        entity = match.group(1).strip().lower()
        dimension = (match.group(2) or "").strip().lower()

        table = ENTITY_TABLES.get(entity, "deals")
        if dimension:
            resolved = self._resolve_dimension(dimension, table)
            if resolved is None:
                return None
            dim_table, dim_column, date_part = resolved
        else:
            dim_table, dim_column, date_part = table, "stage" if table == "deals" else "industry", None

        return QueryPlan(
            primary_table=table,
            columns=[
                PlanColumn(table=dim_table, column=dim_column, date_part=date_part),
                PlanColumn(table=table, column="*", aggregation="COUNT", alias="count"),
            ],
            group_by=[GroupByItem(table=dim_table, column=dim_column, date_part=date_part)],
            conditions=[_tenant_condition(table, context)],
            order_by=[OrderByItem(table=None, column="count", direction="DESC")],
            visualization="pie",
        )

    def _build_trend(self, text: str, context: QueryContext) -> QueryPlan:
        lowered = text.lower()
        metric = "revenue"
        for word in ("activities", "deals", "sales", "revenue"):
            if re.search(rf"\b{word}\b", lowered):
                metric = word
                break

        if metric == "activities":
            table, date_column, column, aggregation = "activities", "dueDate", "*", "COUNT"
        elif metric == "deals":
            table, date_column, column, aggregation = "deals", "closeDate", "*", "COUNT"
        else:
            table, date_column, column, aggregation = "deals", "closeDate", "amount", "SUM"

        if re.search(r"\b(?:year|yearly|annual)\b", lowered):
            date_part = "year"
        elif re.search(r"\b(?:month|monthly)\b", lowered):
            date_part = "month"
        else:
            date_part = "day"

        return QueryPlan(
            primary_table=table,
            columns=[
                PlanColumn(table=table, column=date_column, alias="period", date_part=date_part),
                PlanColumn(table=table, column=column, aggregation=aggregation, alias=metric),
            ],
            group_by=[GroupByItem(table=table, column=date_column, date_part=date_part)],
            conditions=[_tenant_condition(table, context)],
            order_by=[OrderByItem(table=None, column="period", direction="ASC")],
            visualization="line",
        )

    def _build_simple_count(self, text: str, context: QueryContext) -> QueryPlan:
        match = SIMPLE_COUNT.search(text)
        entity = match.group(1).strip().lower()
        table = ENTITY_TABLES.get(entity.split()[0] if entity else "", "deals")

        return QueryPlan(
            primary_table=table,
            columns=[PlanColumn(table=table, column="*", aggregation="COUNT", alias="total_count")],
            conditions=[_tenant_condition(table, context)],
        )

    def _build_comparison(self, text: str, context: QueryContext) -> QueryPlan:
        # TODO: build period-over-period plans once the time range is carried into patterns
        return QueryPlan(
            primary_table="deals",
            columns=[
                PlanColumn(table="deals", column="stage"),
                PlanColumn(table="deals", column="amount", aggregation="SUM", alias="total_amount"),
            ],
            group_by=[GroupByItem(table="deals", column="stage")],
            conditions=[_tenant_condition("deals", context)],
            visualization="bar",
        )

    def _resolve_dimension(
        self, dimension: str, default_table: str
    ) -> Optional[tuple[str, str, Optional[str]]]:
        """Resolve a dimension phrase on ``default_table``, or None when it lives elsewhere."""
        mapped = DIMENSION_MAP.get(dimension)
        if mapped is not None and mapped[0] == default_table:
            return mapped
        column = self.glossary.find_column_by_synonym(default_table, dimension)
        if column is None:
            return None
        return default_table, column, None


def _tenant_condition(table: str, context: QueryContext) -> PlanCondition:
    return PlanCondition(table=table, column=TENANT_COLUMN, operator="=", value=context.tenant_id)
