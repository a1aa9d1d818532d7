"""
Validation result dataclasses.

Contains:
- SchemaViolation: One schema error, classified for repair
- ValidationResult: Outcome of validate-and-repair
- ValidatorStats: Running counters for the validator
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

# Default max deterministic repair passes
MAX_REPAIR_ATTEMPTS = 3


@dataclass
class SchemaViolation:
    """
    A single schema error with the data needed to repair it.
    """
    path: str  # dotted path, e.g. tokens.colors[0].value
    loc: tuple = ()
    message: str = ""
    severity: str = "medium"  # low, medium, high, critical
    code: str = ""  # pydantic error type
    suggestion: str = ""
    auto_fixable: bool = False
    ctx: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.path}: {self.message} ({self.code})"


@dataclass
class ValidationResult:
    """Result of validating (and possibly repairing) a payload."""
    valid: bool
    data: Optional[Any] = None
    errors: list[SchemaViolation] = field(default_factory=list)
    repaired: bool = False
    confidence: float = 0.0
    repair_attempts: int = 0
    ai_repaired: bool = False

    @property
    def error_messages(self) -> list[str]:
        return [error.describe() for error in self.errors]


@dataclass
class ValidatorStats:
    total: int = 0
    valid: int = 0
    repaired: int = 0
    failed: int = 0
    ai_repairs: int = 0
    error_codes: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_validations": self.total,
            "valid": self.valid,
            "repaired": self.repaired,
            "failed": self.failed,
            "ai_repairs": self.ai_repairs,
            "success_rate": round((self.valid / self.total) * 100, 1) if self.total else 0.0,
            "common_errors": self.error_codes.most_common(10),
        }
