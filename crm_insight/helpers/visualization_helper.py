"""Visualization helper for NL2SQL query plans.

Suggests a chart type for a question, first from its wording and then from
the structure of the plan that answers it.
"""

import logging
import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..nl2sql.query_plan import QueryPlan

logger = logging.getLogger(__name__)

# Chart type constants
CHART_TYPES = {
    "bar": "bar",
    "line": "line",
    "pie": "pie",
    "scatter": "scatter",
    "table": "table",
}

EXPLICIT_CHART_PATTERN = re.compile(r"\b(pie|bar|line)\s+(?:chart|graph)s?\b", re.IGNORECASE)

SCATTER_KEYWORDS = ["scatter", "correlation"]
TABLE_KEYWORDS = ["table", "list"]
TREND_KEYWORDS = ["trend", "over time", "monthly"]
DISTRIBUTION_KEYWORDS = ["distribution", "breakdown", "percentage"]
COMPARISON_KEYWORDS = ["comparison", "by", "per"]

TEMPORAL_HINTS = ["date", "month", "year", "period"]
CATEGORICAL_HINTS = ["stage", "status", "type", "category"]


def detect_visualization(question: str) -> Optional[str]:
    """
    Suggest a chart type from the wording of a question.

    An explicit "<type> chart" request wins, then scatter and table
    requests, then the implicit trend / distribution / comparison wording.

    Args:
        question: Natural language question

    Returns:
        Chart type or None when the wording gives no hint
    """
    explicit = EXPLICIT_CHART_PATTERN.search(question)
    if explicit:
        return CHART_TYPES[explicit.group(1).lower()]

    question_lower = question.lower()
    for keywords, chart_type in (
        (SCATTER_KEYWORDS, "scatter"),
        (TABLE_KEYWORDS, "table"),
        (TREND_KEYWORDS, "line"),
        (DISTRIBUTION_KEYWORDS, "pie"),
        (COMPARISON_KEYWORDS, "bar"),
    ):
        if _contains_any(question_lower, keywords):
            return CHART_TYPES[chart_type]

    return None


def suggest_visualization_for_plan(plan: "QueryPlan") -> str:
    """Infer a chart type from the shape of a plan."""
    if not plan.has_aggregation():
        return CHART_TYPES["table"]

    has_time_column = any(
        col.date_part or _contains_any(col.column.lower(), TEMPORAL_HINTS)
        for col in plan.non_aggregated_columns()
    )
    if has_time_column:
        return CHART_TYPES["line"]

    if len(plan.group_by) == 1:
        if _contains_any(plan.group_by[0].column.lower(), CATEGORICAL_HINTS):
            return CHART_TYPES["pie"]
        return CHART_TYPES["bar"]
    if plan.group_by:
        return CHART_TYPES["bar"]

    return CHART_TYPES["table"]


def _contains_any(text: str, keywords: list[str]) -> bool:
    return any(re.search(rf"\b{re.escape(kw)}\b", text) for kw in keywords)
