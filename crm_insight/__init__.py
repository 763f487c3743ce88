"""CRM Insight: natural language questions to safe, parameterized SQL."""

__version__ = "0.1.0"
