"""
Two-phase AI processing of extracted design data.

Phase 1 (optional): compress oversized payloads with a cheap model.
Phase 2: organize the (compressed, deduplicated) data into a TokenPack with
a model picked by the SmartModelSelector, then validate and repair it.

State machine: sized -> [compressed] -> deduplicated -> organized ->
validated -> done | failed. Every failure path ends in a result; the
processor only raises for programming errors in its collaborators.
"""

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from libs.compression.cost_optimizer import CostOptimizer
from libs.core.config import PipelineSettings
from libs.core.exceptions import PipelineError
from libs.core.models import TokenItem
from libs.dedup.embedding_deduplicator import DeduplicationResult, EmbeddingDeduplicator
from libs.gateway.validation.schema_validator import SchemaValidator
from libs.gateway.validation.schemas import AuditReport, CompressionSummary, TokenPack
from libs.gateway.validation.validation_result import ValidationResult
from libs.llm.model_selector import SelectionCriteria, SmartModelSelector
from libs.llm.recipes import RecipeLoader

logger = logging.getLogger(__name__)

# Dedup output replaces the payload only above this reduction (percent)
DEDUP_MIN_REDUCTION = 10.0

SIMPLIFIED_MAX_CHARS = 5000
SIMPLIFIED_QUALITY = 60.0
REPAIR_QUALITY_PENALTY = 15.0
REPAIRED_QUALITY_FLOOR = 50.0

# Non-critical audits are skipped below this budget (USD)
AUDIT_MIN_BUDGET = 0.15
AUDIT_SAMPLE_CHARS = 5000

FALLBACK_STRATEGIES = ("skip-compression", "aggressive-compression", "emergency-fallback")


@dataclass
class TwoPhaseConfig:
    compression_threshold: int = 200_000
    max_phase1_cost: float = 0.02
    max_phase2_cost: float = 0.08
    quality_target: int = 80
    fallback_strategy: str = "skip-compression"

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "TwoPhaseConfig":
        return cls(
            compression_threshold=settings.compression_threshold,
            max_phase1_cost=settings.max_phase1_cost,
            max_phase2_cost=settings.max_phase2_cost,
            quality_target=settings.quality_target,
            fallback_strategy=settings.fallback_strategy,
        )


@dataclass
class PhaseResult:
    phase: str  # compression, organization, organization-simplified, audit
    model: str
    input_size: int
    output_size: int = 0
    cost_usd: float = 0.0
    latency_ms: float = 0.0
    quality: float = 0.0
    success: bool = False
    error: Optional[str] = None
    data: Optional[Any] = None
    cached: bool = False


@dataclass
class Optimization:
    tokens_reduced: int = 0
    cost_saved: float = 0.0
    quality_maintained: float = 0.0
    strategies_used: list[str] = field(default_factory=list)


@dataclass
class TwoPhaseResult:
    success: bool
    data: Any
    phases: list[PhaseResult] = field(default_factory=list)
    total_cost: float = 0.0
    total_latency_ms: float = 0.0
    optimization: Optimization = field(default_factory=Optimization)
    fallback_used: bool = False
    state: str = "sized"
    validation: Optional[ValidationResult] = None
    deduplication: Optional[DeduplicationResult] = None

    @property
    def quality(self) -> float:
        return self.optimization.quality_maintained

    @property
    def models_used(self) -> list[str]:
        return [phase.model for phase in self.phases if phase.success]


@dataclass
class AuditOutcome:
    report: Optional[dict[str, Any]]
    cost: float = 0.0
    recommendations: list[str] = field(default_factory=list)
    skipped: bool = False
    success: bool = False


# =============================================================================
# Candidate tokens for deduplication
# =============================================================================


def _token_section(data: Any) -> Optional[dict]:
    """The dict holding colors/typography/spacing: ``tokens``, ``essentials`` or the payload itself."""
    if not isinstance(data, dict):
        return None
    for key in ("tokens", "essentials"):
        if isinstance(data.get(key), dict):
            return data[key]
    return data


def _entries(container: Any, key: str) -> Optional[list]:
    if isinstance(container, list):
        return container
    if isinstance(container, dict) and isinstance(container.get(key), list):
        return container[key]
    return None


def _entry(item: Any, value_key: str) -> tuple[Optional[str], int]:
    if isinstance(item, dict):
        value = item.get(value_key, item.get("value"))
        usage = item.get("usage", item.get("count", 1))
    else:
        value, usage = item, 1
    if value is None or value == "":
        return None, 0
    try:
        usage = max(1, int(usage))
    except (TypeError, ValueError):
        usage = 1
    return str(value), usage


# (section key, nested list key, value key, token type, id prefix, unit suffix)
CANDIDATE_SOURCES = (
    ("colors", None, "value", "color", "color", ""),
    ("typography", "families", "family", "typography", "font", ""),
    ("spacing", "scale", "px", "spacing", "spacing", "px"),
)


def candidate_tokens(data: Any) -> tuple[list[TokenItem], dict[str, tuple[list, int]]]:
    """
    Build TokenItems from the color, font family and spacing lists of a payload.

    Returns the items and an index of ``id -> (source list, position)`` used to
    write survivors back.
    """
    section = _token_section(data)
    if section is None:
        return [], {}

    tokens: list[TokenItem] = []
    index: dict[str, tuple[list, int]] = {}
    for key, nested, value_key, token_type, prefix, unit in CANDIDATE_SOURCES:
        entries = _entries(section.get(key), nested) if nested else _entries(section.get(key), key)
        if not entries:
            continue
        for position, item in enumerate(entries):
            value, usage = _entry(item, value_key)
            if value is None:
                continue
            if unit and not value.endswith(unit):
                value = f"{value}{unit}"
            token_id = f"{prefix}-{position}"
            tokens.append(
                TokenItem(
                    id=token_id,
                    name=token_id,
                    value=value,
                    type=token_type,
                    usage=usage,
                    confidence=80.0,
                )
            )
            index[token_id] = (entries, position)
    return tokens, index


def apply_deduplication(data: dict, result: DeduplicationResult) -> dict:
    """Copy of ``data`` with only surviving candidates in each token list."""
    updated = copy.deepcopy(data)
    _, index = candidate_tokens(updated)
    keep = {token.id for token in result.deduplicated}

    removals: dict[int, tuple[list, set]] = {}
    for token_id, (entries, position) in index.items():
        if token_id not in keep:
            removals.setdefault(id(entries), (entries, set()))[1].add(position)
    for entries, positions in removals.values():
        entries[:] = [item for i, item in enumerate(entries) if i not in positions]

    updated["_deduplication"] = {
        "applied": True,
        "reduction": result.reduction,
        "duplicates_found": len(result.duplicates),
        "clusters_created": len(result.clusters),
    }
    return updated


# =============================================================================
# Compression prompt hints
# =============================================================================


def key_patterns(data: Any) -> list[str]:
    section = _token_section(data) or {}
    patterns = []
    colors = _entries(section.get("colors"), "colors")
    if colors:
        patterns.append(f"{len(colors)} colors")
    families = _entries(section.get("typography"), "families")
    if families:
        patterns.append(f"{len(families)} font families")
    scale = _entries(section.get("spacing"), "scale")
    if scale:
        patterns.append(f"{len(scale)} spacing values")
    frameworks = (data.get("frameworks") or {}).get("detected") if isinstance(data, dict) else None
    if frameworks:
        patterns.append(f"frameworks: {', '.join(str(f) for f in frameworks[:3])}")
    return patterns


def critical_elements(data: Any) -> list[str]:
    if not isinstance(data, dict):
        return []
    elements = []
    section = _token_section(data) or {}
    for key in ("colors", "typography", "spacing"):
        if section.get(key):
            elements.append(f"{key} tokens")
    if data.get("accessibility"):
        elements.append("contrast issues")
    if data.get("components"):
        elements.append("component patterns")
    if data.get("brand"):
        elements.append("brand identity")
    return elements


# =============================================================================
# Processor
# =============================================================================


class TwoPhaseProcessor:
    """Compress, deduplicate, organize and validate extracted design data."""

    def __init__(
        self,
        gateway: Any,
        optimizer: CostOptimizer,
        selector: SmartModelSelector,
        validator: SchemaValidator,
        recipes: RecipeLoader,
        deduplicator: Optional[EmbeddingDeduplicator] = None,
        config: Optional[TwoPhaseConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.optimizer = optimizer
        self.selector = selector
        self.validator = validator
        self.recipes = recipes
        self.deduplicator = deduplicator
        self.config = config or TwoPhaseConfig()
        self._clock = clock
        self._stats = {
            "total_processed": 0,
            "successful": 0,
            "compression_used": 0,
            "fallbacks": 0,
            "total_cost": 0.0,
            "quality_sum": 0.0,
        }

    def update_config(self, **changes: Any) -> TwoPhaseConfig:
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise PipelineError(f"Unknown two-phase setting: {key}", {"setting": key})
            if key == "fallback_strategy" and value not in FALLBACK_STRATEGIES:
                raise PipelineError(f"Unknown fallback strategy: {value}", {"allowed": list(FALLBACK_STRATEGIES)})
            setattr(self.config, key, value)
        return self.config

    async def process(
        self,
        extracted_data: Any,
        url: str,
        intent: str = "component-authoring",
        priority: str = "normal",
        budget: Optional[float] = None,
        quality: str = "standard",
        cacheable: bool = True,
        compression_threshold: Optional[int] = None,
    ) -> TwoPhaseResult:
        started = self._clock()
        self._stats["total_processed"] += 1
        result = TwoPhaseResult(success=False, data=None)
        strategies = result.optimization.strategies_used

        try:
            original_size = self.optimizer.count_payload_tokens(extracted_data).count
            data = extracted_data
            compressed_size: Optional[int] = None
            threshold = compression_threshold or self.config.compression_threshold
            logger.info(f"[TwoPhase] {url}: {original_size} tokens (threshold {threshold})")

            # Phase 1: compression
            if original_size > threshold:
                data, compressed_size = await self._run_compression(extracted_data, url, original_size, result, cacheable)
                if data is None:
                    return self._finish(result, started, url, emergency_reason="compression failed")
                if compressed_size is not None:
                    self._stats["compression_used"] += 1
                    result.state = "compressed"

            # Deduplication
            data = await self._run_deduplication(data, result)
            result.state = "deduplicated"

            # Phase 2: organization
            organization = await self._organize(data, url, intent, priority, budget, quality, strategies, cacheable)
            result.phases.append(organization)
            if not organization.success:
                logger.warning(f"[TwoPhase] Organization via {organization.model} failed: {organization.error}")
                organization = await self._organize_simplified(data, url, cacheable)
                result.phases.append(organization)
                result.fallback_used = True
                self._stats["fallbacks"] += 1
                if not organization.success:
                    strategies.append("emergency-fallback")
                    return self._finish(result, started, url, emergency_reason="organization failed")
                strategies.append("simplified-organization")
            result.state = "organized"

            # Validation
            validation = await self.validator.validate_with_repair(
                organization.data, TokenPack, operation="organize-pack"
            )
            result.validation = validation
            if not validation.valid:
                strategies.append("validation-fallback")
                payload = self.validator.create_emergency_fallback("organize-pack", url)
                payload["_validationErrors"] = validation.error_messages
                result.data = payload
                result.state = "failed"
                result.fallback_used = True
                return self._finish(result, started, url)
            if validation.repaired:
                organization.quality = max(REPAIRED_QUALITY_FLOOR, organization.quality - REPAIR_QUALITY_PENALTY)
                strategies.append("schema-repair")
            result.state = "validated"

            # Optimization summary
            if compressed_size is not None:
                result.optimization.tokens_reduced = max(0, original_size - compressed_size)
                result.optimization.cost_saved = self.optimizer.estimate_cost(
                    organization.model, result.optimization.tokens_reduced
                )
            result.data = validation.data
            result.success = True
            result.state = "done"
            return self._finish(result, started, url)

        except PipelineError as e:
            logger.error(f"[TwoPhase] Processing failed for {url}: {e}")
            return self._finish(result, started, url, emergency_reason=str(e))

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _run_compression(
        self, data: Any, url: str, original_size: int, result: TwoPhaseResult, cacheable: bool = True
    ) -> tuple[Optional[Any], Optional[int]]:
        """(data, compressed size); data is None when the emergency strategy applies."""
        strategies = result.optimization.strategies_used
        recipe = self.recipes.load("compress")
        estimate = self.optimizer.estimate_cost(recipe.model, original_size, recipe.max_tokens)

        if estimate > self.config.max_phase1_cost:
            logger.warning(
                f"[TwoPhase] AI compression estimate ${estimate:.4f} exceeds "
                f"${self.config.max_phase1_cost:.4f}, compressing deterministically"
            )
            phase = None
        else:
            phase = await self._compress(data, url, original_size, cacheable)
            result.phases.append(phase)
            if phase.success:
                strategies.append("compression")
                return phase.data, phase.output_size

        strategy = "aggressive-compression" if phase is None else self.config.fallback_strategy
        if phase is not None:
            logger.warning(f"[TwoPhase] Compression failed ({phase.error}), applying {strategy}")

        if strategy == "aggressive-compression":
            compressed = self.optimizer.deterministic_compress(data)
            strategies.append("deterministic-compression")
            return compressed, self.optimizer.count_payload_tokens(compressed).count
        if strategy == "emergency-fallback":
            strategies.append("emergency-fallback")
            return None, None
        strategies.append("skip-compression")
        return data, None

    async def _compress(self, data: Any, url: str, original_size: int, cacheable: bool = True) -> PhaseResult:
        recipe = self.recipes.load("compress")
        phase = PhaseResult(phase="compression", model=recipe.model, input_size=original_size)
        prompt = recipe.render(
            estimated_tokens=original_size,
            key_patterns=", ".join(key_patterns(data)) or "none detected",
            critical_elements=", ".join(critical_elements(data)) or "none detected",
            data=json.dumps(data, indent=2, default=str),
        )
        try:
            response = await self.gateway.request(
                prompt,
                model=recipe.model,
                operation="compress",
                schema=CompressionSummary,
                system_prompt=recipe.system_prompt,
                max_tokens=recipe.max_tokens,
                temperature=recipe.temperature,
                url=url,
                cacheable=cacheable,
            )
        except PipelineError as e:
            phase.error = str(e)
            return phase

        phase.model = response.model
        phase.data = response.data
        phase.output_size = self.optimizer.count_payload_tokens(response.data).count
        phase.cached = response.cached
        phase.cost_usd = response.usage.estimated_cost
        phase.latency_ms = response.latency_ms
        phase.quality = response.quality
        phase.success = True
        logger.info(
            f"[TwoPhase] Compressed {original_size} -> {phase.output_size} tokens via {phase.model} "
            f"(${phase.cost_usd:.4f})"
        )
        return phase

    async def _run_deduplication(self, data: Any, result: TwoPhaseResult) -> Any:
        if self.deduplicator is None:
            return data
        candidates, _ = candidate_tokens(data)
        if len(candidates) < 2:
            return data

        dedup = await self.deduplicator.deduplicate(candidates)
        result.deduplication = dedup
        percentage = dedup.reduction.get("percentage", 0.0)
        if percentage <= DEDUP_MIN_REDUCTION:
            logger.debug(f"[TwoPhase] Dedup reduction {percentage:.1f}% below threshold, keeping data")
            return data

        result.optimization.strategies_used.append("deduplication")
        logger.info(
            f"[TwoPhase] Dedup removed {int(dedup.reduction.get('count', 0))} of {len(candidates)} candidates "
            f"({percentage:.1f}%)"
        )
        return apply_deduplication(data, dedup)

    async def _organize(
        self,
        data: Any,
        url: str,
        intent: str,
        priority: str,
        budget: Optional[float],
        quality: str,
        strategies: list[str],
        cacheable: bool = True,
    ) -> PhaseResult:
        size = self.optimizer.count_payload_tokens(data).count
        criteria = SelectionCriteria(
            input_size=size,
            operation="organize-pack",
            priority=priority,
            budget=budget,
            quality=quality,
        )
        recommendation = self.selector.select(criteria)

        if recommendation.estimated_cost > self.config.max_phase2_cost:
            logger.warning(
                f"[TwoPhase] Organization estimate ${recommendation.estimated_cost:.4f} exceeds "
                f"${self.config.max_phase2_cost:.4f}, compressing payload first"
            )
            data = self.optimizer.deterministic_compress(data)
            strategies.append("budget-compression")
            size = self.optimizer.count_payload_tokens(data).count

        recipe = self.recipes.load("organize-pack")
        phase = PhaseResult(phase="organization", model=recommendation.model, input_size=size)
        prompt = recipe.render(url=url, intent=intent, data=json.dumps(data, indent=2, default=str))
        try:
            response = await self.gateway.request(
                prompt,
                model=recommendation.model,
                operation="organize-pack",
                system_prompt=recipe.system_prompt,
                max_tokens=recipe.max_tokens,
                temperature=recipe.temperature,
                url=url,
                priority=priority,
                cacheable=cacheable,
            )
        except PipelineError as e:
            phase.error = str(e)
            self.selector.record_outcome(recommendation.model, "organize-pack", False)
            return phase

        self._fill_phase(phase, response)
        self.selector.record_outcome(
            phase.model, "organize-pack", True, phase.latency_ms, phase.quality, phase.cost_usd
        )
        return phase

    async def _organize_simplified(self, data: Any, url: str, cacheable: bool = True) -> PhaseResult:
        recipe = self.recipes.load("organize-simplified")
        sample = json.dumps(data, default=str)[:SIMPLIFIED_MAX_CHARS]
        phase = PhaseResult(
            phase="organization-simplified",
            model=recipe.model,
            input_size=self.optimizer.count_tokens(sample).count,
        )
        try:
            response = await self.gateway.request(
                recipe.render(url=url, data=sample),
                model=recipe.model,
                operation="organize-pack",
                system_prompt=recipe.system_prompt,
                max_tokens=recipe.max_tokens,
                temperature=recipe.temperature,
                url=url,
                cacheable=cacheable,
            )
        except PipelineError as e:
            phase.error = str(e)
            logger.error(f"[TwoPhase] Simplified organization failed: {e}")
            return phase

        self._fill_phase(phase, response)
        phase.quality = SIMPLIFIED_QUALITY
        return phase

    def _fill_phase(self, phase: PhaseResult, response: Any) -> None:
        phase.model = response.model
        phase.data = response.data
        phase.output_size = response.usage.output_tokens
        phase.cost_usd = response.usage.estimated_cost
        phase.latency_ms = response.latency_ms
        phase.quality = response.quality
        phase.cached = response.cached
        phase.success = True

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    async def quality_audit(
        self,
        token_pack: Any,
        original_data: Any,
        url: Optional[str] = None,
        critical: bool = False,
        budget: Optional[float] = None,
    ) -> AuditOutcome:
        """Premium audit of an organized pack; never raises."""
        if not critical and budget is not None and budget < AUDIT_MIN_BUDGET:
            logger.info(f"[TwoPhase] Audit skipped: budget ${budget:.2f} below ${AUDIT_MIN_BUDGET:.2f}")
            return AuditOutcome(
                report=None,
                skipped=True,
                recommendations=["Consider a premium audit for critical scans"],
            )

        recipe = self.recipes.load("audit")
        prompt = recipe.render(
            url=url or "",
            data=json.dumps(token_pack, indent=2, default=str),
            sample=json.dumps(original_data, default=str)[:AUDIT_SAMPLE_CHARS],
        )
        try:
            response = await self.gateway.request(
                prompt,
                model=recipe.model,
                operation="audit",
                schema=AuditReport,
                system_prompt=recipe.system_prompt,
                max_tokens=recipe.max_tokens,
                temperature=recipe.temperature,
                url=url,
                priority="critical" if critical else "high",
            )
        except PipelineError as e:
            logger.warning(f"[TwoPhase] Audit failed, manual review needed: {e}")
            return AuditOutcome(
                report=self.validator.create_emergency_fallback("audit"),
                recommendations=["Manual quality review recommended"],
            )

        self._stats["total_cost"] += response.usage.estimated_cost
        report = response.data
        recommendations = [
            item.get("description", "")
            for item in report.get("recommendations", [])
            if isinstance(item, dict)
        ]
        return AuditOutcome(
            report=report,
            cost=response.usage.estimated_cost,
            recommendations=recommendations,
            success=True,
        )

    # -------------------------------------------------------------------------
    # Results and stats
    # -------------------------------------------------------------------------

    def _finish(
        self,
        result: TwoPhaseResult,
        started: float,
        url: str,
        emergency_reason: Optional[str] = None,
    ) -> TwoPhaseResult:
        if emergency_reason is not None:
            result.success = False
            result.state = "failed"
            result.fallback_used = True
            result.data = self.validator.create_emergency_fallback("organize-pack", url)
            logger.warning(f"[TwoPhase] Emergency payload for {url}: {emergency_reason}")

        if any(phase.cached for phase in result.phases):
            result.optimization.strategies_used.append("cache")
        result.total_cost = sum(phase.cost_usd for phase in result.phases)
        result.total_latency_ms = (self._clock() - started) * 1000
        qualities = [phase.quality for phase in result.phases if phase.success]
        result.optimization.quality_maintained = sum(qualities) / len(qualities) if qualities else 0.0

        self._stats["total_cost"] += result.total_cost
        if result.success:
            self._stats["successful"] += 1
            self._stats["quality_sum"] += result.optimization.quality_maintained
        logger.info(
            f"[TwoPhase] {url}: {result.state}, ${result.total_cost:.4f}, "
            f"quality {result.optimization.quality_maintained:.0f}, "
            f"strategies={result.optimization.strategies_used}"
        )
        return result

    def processing_stats(self) -> dict[str, Any]:
        processed = self._stats["total_processed"]
        successful = self._stats["successful"]
        return {
            "total_processed": processed,
            "successful": successful,
            "compression_used": self._stats["compression_used"],
            "compression_rate": self._stats["compression_used"] / processed if processed else 0.0,
            "fallbacks": self._stats["fallbacks"],
            "total_cost": self._stats["total_cost"],
            "average_cost": self._stats["total_cost"] / processed if processed else 0.0,
            "average_quality": self._stats["quality_sum"] / successful if successful else 0.0,
        }
