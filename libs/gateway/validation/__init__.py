"""
Validation module - Schemas and validate-and-repair for structured AI output.

Contains:
- schemas: TokenPack, ResearchReport, AuditReport, CompressionSummary
- ValidationResult, SchemaViolation, ValidatorStats: Validation dataclasses
- SchemaValidator: Validation, deterministic repair, model-assisted repair
"""

from libs.gateway.validation.schemas import (
    AuditReport,
    CompressionSummary,
    ResearchReport,
    SCHEMAS,
    TokenPack,
)
from libs.gateway.validation.validation_result import (
    MAX_REPAIR_ATTEMPTS,
    SchemaViolation,
    ValidationResult,
    ValidatorStats,
)
from libs.gateway.validation.schema_validator import SchemaValidator, field_completeness

__all__ = [
    "AuditReport",
    "CompressionSummary",
    "ResearchReport",
    "SCHEMAS",
    "TokenPack",
    "MAX_REPAIR_ATTEMPTS",
    "SchemaViolation",
    "ValidationResult",
    "ValidatorStats",
    "SchemaValidator",
    "field_completeness",
]
