"""Model profile catalog.

Profiles come from config/model-registry.yaml so that cost, context size and
quality characteristics live in configuration rather than in scoring code.
"""

import logging
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel, Field

from libs.core.config import load_model_registry
from libs.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Operation -> specialization tag used for candidate filtering
OPERATION_CATEGORIES = {
    "organize-pack": "organization",
    "research": "research",
    "audit": "quality-assurance",
    "compress": "compression",
    "embed": "extraction",
    "classify": "organization",
}

COMPRESSION_CAPABLE_TAGS = ("compression", "large-context")


class PerformanceProfile(BaseModel):
    avg_latency_ms: float = 3000
    reliability: float = 0.9
    json_accuracy: float = 0.85
    consistency: float = 0.8
    cost_efficiency: float = 0.8


class ModelProfile(BaseModel):
    """One AI backend's cost, context size and quality characteristics."""

    name: str
    provider: str = "unknown"
    cost_per_million_in: float
    cost_per_million_out: float
    max_context_tokens: int
    max_output_tokens: int = 4096
    specializations: list[str] = Field(default_factory=list)
    performance: PerformanceProfile = Field(default_factory=PerformanceProfile)

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.cost_per_million_in
            + output_tokens / 1_000_000 * self.cost_per_million_out
        )

    def is_specialized_for(self, operation: str) -> bool:
        category = OPERATION_CATEGORIES.get(operation, "organization")
        return operation in self.specializations or category in self.specializations

    @property
    def compression_capable(self) -> bool:
        return any(tag in self.specializations for tag in COMPRESSION_CAPABLE_TAGS)


class ModelCatalog:
    """Read-only collection of model profiles keyed by name."""

    def __init__(self, profiles: list[ModelProfile], default_model: Optional[str] = None):
        if not profiles:
            raise ConfigurationError("Model catalog is empty")
        self._profiles = {profile.name: profile for profile in profiles}
        self.default_model = default_model if default_model in self._profiles else profiles[0].name

    @classmethod
    def from_registry(cls, path: Optional[Path] = None) -> "ModelCatalog":
        registry = load_model_registry(path)
        return cls.from_dict(registry)

    @classmethod
    def from_dict(cls, registry: dict[str, Any]) -> "ModelCatalog":
        models = registry.get("models") or {}
        profiles = [ModelProfile(name=name, **config) for name, config in models.items()]
        logger.info(f"[ModelCatalog] Loaded {len(profiles)} model profiles")
        return cls(profiles, registry.get("default_model"))

    def get(self, name: str) -> Optional[ModelProfile]:
        return self._profiles.get(name)

    def require(self, name: str) -> ModelProfile:
        profile = self._profiles.get(name)
        if profile is None:
            raise ConfigurationError(f"Unknown model: {name}", {"known": list(self._profiles)})
        return profile

    def largest_context(self) -> ModelProfile:
        return max(self._profiles.values(), key=lambda p: p.max_context_tokens)

    def most_reliable(self) -> ModelProfile:
        return max(self._profiles.values(), key=lambda p: p.performance.reliability)

    def names(self) -> list[str]:
        return list(self._profiles)

    def __iter__(self) -> Iterator[ModelProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, name: str) -> bool:
        return name in self._profiles
