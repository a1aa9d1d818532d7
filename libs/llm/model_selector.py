"""
Smart model selection.

Scores every catalog profile against the request (operation, input size,
priority, budget, quality tier, speed) and returns the best candidate with
up to three ranked alternatives and optimization hints.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from libs.llm.model_catalog import ModelCatalog, ModelProfile

logger = logging.getLogger(__name__)

QUALITY_MULTIPLIERS = {"basic": 0.8, "standard": 1.0, "premium": 1.2}
BUDGET_TIERS = {"free": 0.01, "basic": 0.05, "pro": 0.15, "enterprise": 0.50}
HISTORY_LIMIT = 1000
MIN_HISTORY_SAMPLES = 5


@dataclass
class SelectionCriteria:
    input_size: int
    operation: str
    output_size: Optional[int] = None
    priority: str = "normal"
    budget: Optional[float] = None
    quality: str = "standard"
    speed: str = "normal"
    retry_attempt: int = 0
    previous_model: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def is_retry(self) -> bool:
        return self.retry_attempt > 0


@dataclass
class ComplexityAnalysis:
    score: float
    level: str
    reasoning: list[str] = field(default_factory=list)


@dataclass
class Alternative:
    model: str
    confidence: float
    cost_difference: float
    quality_trade: float


@dataclass
class OptimizationHints:
    compression_needed: bool = False
    batching_possible: bool = False
    caching_recommended: bool = False


@dataclass
class ModelRecommendation:
    model: str
    confidence: float
    reasoning: list[str]
    estimated_cost: float
    estimated_latency_ms: int
    alternatives: list[Alternative] = field(default_factory=list)
    optimizations: OptimizationHints = field(default_factory=OptimizationHints)


@dataclass
class _Outcome:
    model: str
    operation: str
    success: bool
    latency_ms: float
    quality: Optional[float]
    cost: float
    at: float


class SmartModelSelector:
    """Chooses the cheapest capable model profile for an AI operation."""

    def __init__(self, catalog: ModelCatalog):
        self.catalog = catalog
        self._history: deque = deque(maxlen=HISTORY_LIMIT)
        self._selections: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, criteria: SelectionCriteria) -> ModelRecommendation:
        try:
            complexity = self.analyze_complexity(criteria)
            candidates = self._candidates(criteria)

            scored = []
            for profile in candidates:
                scored.append(
                    (
                        self._score(profile, criteria, complexity),
                        profile,
                    )
                )
            # Stable: equal scores keep catalog order
            scored.sort(key=lambda item: item[0], reverse=True)
            best_score, best = scored[0]
            best_cost = self.estimate_cost(best, criteria)

            alternatives = [
                Alternative(
                    model=profile.name,
                    confidence=round(score, 1),
                    cost_difference=self.estimate_cost(profile, criteria) - best_cost,
                    quality_trade=self._quality_trade(best, profile, criteria.operation),
                )
                for score, profile in scored[1:4]
            ]

            recommendation = ModelRecommendation(
                model=best.name,
                confidence=round(best_score, 1),
                reasoning=self._reasoning(best, criteria, complexity),
                estimated_cost=best_cost,
                estimated_latency_ms=self.estimate_latency(best, criteria, complexity),
                alternatives=alternatives,
                optimizations=self._optimizations(best, criteria),
            )
        except Exception as e:
            logger.error(f"[ModelSelector] Selection failed, using default model: {e}")
            return ModelRecommendation(
                model=self.catalog.default_model,
                confidence=50,
                reasoning=["Fallback selection due to error"],
                estimated_cost=0.05,
                estimated_latency_ms=3000,
                optimizations=OptimizationHints(
                    compression_needed=criteria.input_size > 200_000,
                    caching_recommended=True,
                ),
            )

        self._selections[recommendation.model] = self._selections.get(recommendation.model, 0) + 1
        logger.debug(
            f"[ModelSelector] {criteria.operation} ({criteria.input_size} tokens, {criteria.priority}) "
            f"-> {recommendation.model} ({recommendation.confidence:.0f})"
        )
        return recommendation

    def analyze_complexity(self, criteria: SelectionCriteria) -> ComplexityAnalysis:
        size = criteria.input_size
        if size < 10_000:
            score = 20
        elif size < 50_000:
            score = 40
        elif size < 200_000:
            score = 60
        elif size < 500_000:
            score = 80
        else:
            score = 95

        if score >= 80:
            level = "extreme"
        elif score >= 65:
            level = "complex"
        elif score >= 45:
            level = "moderate"
        else:
            level = "simple"

        reasoning = []
        if score > 70:
            reasoning.append("Large dataset requires models with bigger context windows")
        if level == "extreme":
            reasoning.append("Extreme complexity favors the most consistent models")
        return ComplexityAnalysis(score=score, level=level, reasoning=reasoning)

    def _candidates(self, criteria: SelectionCriteria) -> list[ModelProfile]:
        fitting = [p for p in self.catalog if criteria.input_size <= p.max_context_tokens * 0.9]
        if not fitting:
            fitting = [p for p in self.catalog if p.compression_capable] or list(self.catalog)

        specialized = [p for p in fitting if p.is_specialized_for(criteria.operation)]
        return specialized or fitting

    def _score(self, profile: ModelProfile, criteria: SelectionCriteria, complexity: ComplexityAnalysis) -> float:
        perf = profile.performance
        score = 50.0

        utilization = criteria.input_size / profile.max_context_tokens
        if utilization < 0.5:
            score += 15
        elif utilization < 0.8:
            score += 10
        elif utilization < 0.95:
            score += 5
        else:
            score -= 20

        if profile.is_specialized_for(criteria.operation):
            score += 20

        tier = QUALITY_MULTIPLIERS.get(criteria.quality, 1.0)
        score += (perf.json_accuracy * 100 * tier - 80) * 0.3

        if criteria.priority == "critical":
            score += perf.reliability * 20
        elif criteria.priority == "low":
            score += perf.cost_efficiency * 15

        if criteria.speed == "fast":
            score += max(0.0, 5000 - perf.avg_latency_ms) / 5000 * 20

        if criteria.budget:
            cost = self.estimate_cost(profile, criteria)
            if cost <= criteria.budget:
                score += 15
            else:
                score -= (cost / criteria.budget - 1) * 30

        if complexity.level == "extreme":
            score += (perf.consistency - 0.8) * 25
        elif complexity.level == "simple":
            score += perf.cost_efficiency * 20

        success_rate = self._success_rate(profile.name, criteria.operation)
        if success_rate is not None:
            score += (success_rate - 0.5) * 20

        if criteria.is_retry:
            if criteria.previous_model == profile.name:
                score -= 30
            else:
                score += 10

        return max(0.0, min(100.0, score))

    def _reasoning(self, profile: ModelProfile, criteria: SelectionCriteria, complexity: ComplexityAnalysis) -> list[str]:
        reasons = list(complexity.reasoning)
        utilization = criteria.input_size / profile.max_context_tokens
        if utilization < 0.5:
            reasons.append(f"Comfortable context window utilization ({utilization:.0%})")
        elif utilization > 0.9:
            reasons.append(f"High context utilization ({utilization:.0%}) - near capacity")

        if profile.is_specialized_for(criteria.operation):
            reasons.append(f"Specialized for {criteria.operation} operations")

        cost = self.estimate_cost(profile, criteria)
        if cost < 0.02:
            reasons.append("Very cost-effective for this operation")
        elif cost > 0.10:
            reasons.append("Higher cost but premium quality")

        if profile.performance.json_accuracy > 0.9:
            reasons.append("High JSON accuracy for structured output")
        if profile.performance.reliability > 0.95:
            reasons.append("Excellent reliability for production use")
        return reasons

    def _optimizations(self, profile: ModelProfile, criteria: SelectionCriteria) -> OptimizationHints:
        return OptimizationHints(
            compression_needed=criteria.input_size > profile.max_context_tokens * 0.8,
            batching_possible=criteria.operation in ("embed", "classify"),
            caching_recommended=criteria.operation == "organize-pack" and criteria.input_size < 100_000,
        )

    def _quality_trade(self, best: ModelProfile, other: ModelProfile, operation: str) -> float:
        quality_best = best.performance.json_accuracy + (0.1 if operation in best.specializations else 0)
        quality_other = other.performance.json_accuracy + (0.1 if operation in other.specializations else 0)
        return round((quality_best - quality_other) * 100, 1)

    # ------------------------------------------------------------------
    # Estimates
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_output_size(criteria: SelectionCriteria) -> int:
        if criteria.output_size is not None:
            return criteria.output_size
        return int(min(4000, criteria.input_size * 0.1))

    def estimate_cost(self, profile: ModelProfile, criteria: SelectionCriteria) -> float:
        return profile.estimate_cost(criteria.input_size, self.estimate_output_size(criteria))

    def estimate_latency(
        self,
        profile: ModelProfile,
        criteria: SelectionCriteria,
        complexity: Optional[ComplexityAnalysis] = None,
    ) -> int:
        size_multiplier = max(1.0, criteria.input_size / 50_000)
        complexity_multiplier = 1.3 if complexity and complexity.level == "extreme" else 1.0
        return round(profile.performance.avg_latency_ms * size_multiplier * complexity_multiplier)

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    def select_fallback(self, criteria: SelectionCriteria, failed_model: str, error_kind: str) -> ModelRecommendation:
        """Re-select after ``failed_model`` failed with an error of ``error_kind``."""
        lowered = error_kind.lower()
        retry = SelectionCriteria(
            input_size=criteria.input_size,
            operation=criteria.operation,
            output_size=criteria.output_size,
            priority=criteria.priority,
            budget=criteria.budget,
            quality=criteria.quality,
            speed=criteria.speed,
            retry_attempt=criteria.retry_attempt + 1,
            previous_model=failed_model,
            error_kind=error_kind,
        )
        if "context" in lowered or "too large" in lowered:
            retry.operation = "compress"
        elif "timeout" in lowered:
            retry.speed = "fast"
            retry.quality = "basic"
        elif "format" in lowered or "json" in lowered:
            retry.quality = "premium"
        return self.select(retry)

    def select_for_budget_tier(self, tier: str, operation: str, input_size: int) -> ModelRecommendation:
        quality = "basic" if tier == "free" else "premium" if tier == "enterprise" else "standard"
        return self.select(
            SelectionCriteria(
                input_size=input_size,
                operation=operation,
                budget=BUDGET_TIERS.get(tier, BUDGET_TIERS["basic"]),
                quality=quality,
            )
        )

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        model: str,
        operation: str,
        success: bool,
        latency_ms: float = 0.0,
        quality: Optional[float] = None,
        cost: float = 0.0,
    ) -> None:
        self._history.append(
            _Outcome(model, operation, success, latency_ms, quality, cost, time.time())
        )

    def _success_rate(self, model: str, operation: str) -> Optional[float]:
        outcomes = [o for o in self._history if o.model == model and o.operation == operation]
        if len(outcomes) < MIN_HISTORY_SAMPLES:
            return None
        return sum(1 for o in outcomes if o.success) / len(outcomes)

    def performance_report(self) -> dict:
        report: dict[str, dict] = {}
        for outcome in self._history:
            stats = report.setdefault(
                outcome.model,
                {"requests": 0, "successes": 0, "total_cost": 0.0, "total_latency_ms": 0.0, "qualities": []},
            )
            stats["requests"] += 1
            stats["successes"] += int(outcome.success)
            stats["total_cost"] += outcome.cost
            stats["total_latency_ms"] += outcome.latency_ms
            if outcome.quality is not None:
                stats["qualities"].append(outcome.quality)

        for stats in report.values():
            qualities = stats.pop("qualities")
            stats["success_rate"] = stats["successes"] / stats["requests"]
            stats["avg_latency_ms"] = stats["total_latency_ms"] / stats["requests"]
            stats["avg_quality"] = sum(qualities) / len(qualities) if qualities else None

        return {"selections": dict(self._selections), "models": report}
