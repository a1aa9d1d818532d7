"""Custom exceptions for the design token pipeline."""

from typing import Any, Optional


class PipelineError(Exception):
    """Base exception for the design token pipeline."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigurationError(PipelineError):
    """Missing or malformed configuration (model registry, settings)."""

    pass


class ExtractionError(PipelineError):
    """A single extraction strategy failed."""

    def __init__(
        self,
        message: str,
        strategy: str,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.strategy = strategy


class StrategyTimeoutError(ExtractionError):
    """A strategy or scan exceeded its time limit."""

    def __init__(
        self,
        strategy: str,
        timeout_ms: float,
        context: Optional[dict[str, Any]] = None,
    ):
        message = f"Strategy {strategy} timeout after {timeout_ms:.0f}ms"
        super().__init__(message, strategy, context)
        self.timeout_ms = timeout_ms


class FetchError(PipelineError):
    """HTTP fetch of a page or stylesheet failed."""

    def __init__(
        self,
        url: str,
        status: Optional[int] = None,
        reason: str = "",
        context: Optional[dict[str, Any]] = None,
    ):
        label = f"HTTP {status}" if status else "network error"
        message = f"{label} {reason} fetching {url}".replace("  ", " ")
        super().__init__(message, context)
        self.url = url
        self.status = status


class CircuitOpenError(PipelineError):
    """Recovery strategy blocked by an open circuit breaker."""

    def __init__(self, strategy: str, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Circuit breaker open for {strategy}", context)
        self.strategy = strategy


class LLMError(PipelineError):
    """LLM-related errors."""

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, context)
        self.status = status

    @property
    def retryable(self) -> bool:
        """Timeouts, rate limits and server errors are worth another attempt."""
        if self.status is not None:
            return self.status == 429 or self.status >= 500
        lowered = self.message.lower()
        return any(marker in lowered for marker in ("timeout", "rate limit", "connection"))


class SchemaValidationError(PipelineError):
    """Structured AI output failed schema validation."""

    def __init__(
        self,
        message: str,
        errors: Optional[list[str]] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.errors = errors or []


class BudgetExceededError(PipelineError):
    """Cost budget exceeded."""

    def __init__(
        self,
        phase: str,
        budget: float,
        actual: float,
        context: Optional[dict[str, Any]] = None,
    ):
        message = f"Phase {phase} exceeded cost budget: ${actual:.4f}/${budget:.4f}"
        super().__init__(message, context)
        self.phase = phase
        self.budget = budget
        self.actual = actual
