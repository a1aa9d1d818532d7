"""
Gateway - AI processing layer between extraction and the model backend.

This module is organized as:
- gateway_cache: Semantic response cache with operation-specific TTLs
- ai_gateway: Cache-aware, retrying adapter over the completion client
- validation/: Output schemas and validate-and-repair
- two_phase_processor: Compress -> deduplicate -> organize -> validate

Note: libs/llm provides the completion client, model catalog and model selection.
"""

from libs.gateway.ai_gateway import AIGateway, GatewayResponse, GatewayUsage
from libs.gateway.gateway_cache import CacheablePrompt, CachedResponse, GatewayCache
from libs.gateway.two_phase_processor import (
    AuditOutcome,
    PhaseResult,
    TwoPhaseConfig,
    TwoPhaseProcessor,
    TwoPhaseResult,
)
from libs.gateway.validation import SchemaValidator, ValidationResult

__all__ = [
    # Gateway
    "AIGateway",
    "GatewayResponse",
    "GatewayUsage",
    # Cache
    "CacheablePrompt",
    "CachedResponse",
    "GatewayCache",
    # Two-phase processing
    "AuditOutcome",
    "PhaseResult",
    "TwoPhaseConfig",
    "TwoPhaseProcessor",
    "TwoPhaseResult",
    # Validation
    "SchemaValidator",
    "ValidationResult",
]
