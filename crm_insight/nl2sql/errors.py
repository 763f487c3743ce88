"""
Error types for the NL2SQL planning pipeline.

Only permission and SQL assembly failures reach the caller. Generation
failures are absorbed by the heuristic fallback plan, and schema mismatches
are repaired by the validator and recorded as corrections.
"""

from typing import Any, Optional


class NL2SQLError(Exception):
    """Base exception for the query planning pipeline."""

    error_code = "nl2sql_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class GenerationError(NL2SQLError):
    """Raised when the structured-generation service fails or returns an invalid plan."""

    error_code = "generation_failure"


class PlanValidationError(NL2SQLError):
    """Raised when a plan cannot be repaired against the schema registry."""

    error_code = "plan_validation_failure"


class PermissionDeniedError(NL2SQLError):
    """Raised when the caller may not read a table or field used by the plan."""

    error_code = "permission_denied"


class SQLAssemblyError(NL2SQLError):
    """Raised when a plan would force an unparameterized value or untraceable SQL into the output."""

    error_code = "sql_assembly_invariant_violation"
