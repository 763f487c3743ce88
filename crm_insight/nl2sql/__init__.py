"""
NL2SQL planning module for CRM Insight.

This module turns natural language questions into tenant-scoped query plans
and compiles them into parameterized, dialect-correct SQL. The end-to-end
pipeline lives in ``crm_insight.nl2sql.pipeline``.
"""

from .dialects import SQLDialect, get_dialect
from .errors import (
    GenerationError,
    NL2SQLError,
    PermissionDeniedError,
    PlanValidationError,
    SQLAssemblyError,
)
from .glossary import BusinessGlossary
from .intent_extractor import IntentExtractor, QueryIntent
from .plan_generator import AIPlanGenerator, GeneratedPlan, NL2SQLConfig
from .plan_validator import PlanValidator, ValidationReport, ValidationResult, ValidatorConfig
from .prompt_builder import PromptBuilder, PromptConfig
from .query_patterns import QueryPatternLibrary
from .query_plan import QueryContext, QueryPlan
from .sql_builder import SQLBuilder, SQLResult

__all__ = [
    # Errors
    "NL2SQLError",
    "GenerationError",
    "PlanValidationError",
    "PermissionDeniedError",
    "SQLAssemblyError",
    # Plans
    "QueryPlan",
    "QueryContext",
    # Intent and patterns
    "IntentExtractor",
    "QueryIntent",
    "QueryPatternLibrary",
    "BusinessGlossary",
    # Plan Generator
    "AIPlanGenerator",
    "GeneratedPlan",
    "NL2SQLConfig",
    "PromptBuilder",
    "PromptConfig",
    # Plan Validator
    "PlanValidator",
    "ValidationReport",
    "ValidationResult",
    "ValidatorConfig",
    # SQL Builder
    "SQLBuilder",
    "SQLResult",
    "SQLDialect",
    "get_dialect",
]
