"""
Pipeline Orchestrator - website URL to validated design token package.

Phases (overall progress):
- extraction      0-40%   strategy engine, then fallback recovery of failed strategies
- ai-processing  45-85%   deduplication, two-phase processing, optional audit
- validation        90%   token pack validation, result assembly
- completed        100%

process_website never raises: a catastrophic failure returns status "failed"
with the emergency token pack and the error messages.
"""

import asyncio
import calendar
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from libs.core.exceptions import PipelineError
from libs.core.logging_config import log_phase
from libs.core.models import ExtractionResult, ProgressSink, ScanContext, ScanOptions, ScanResult, ScanStatus
from libs.core.progress import notify_progress
from libs.extraction.fallback_orchestrator import FallbackOrchestrator
from libs.extraction.recovery import HEURISTIC_RECOVERIES
from libs.extraction.strategy_engine import ExtractionStrategyEngine, aggregate_results
from libs.gateway.two_phase_processor import (
    AuditOutcome,
    TwoPhaseProcessor,
    TwoPhaseResult,
    apply_deduplication,
    candidate_tokens,
)
from libs.gateway.validation.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)

# Share of the budget given to two-phase processing; the rest is kept for the audit
AI_BUDGET_SHARE = 0.8
AUDIT_MIN_BUDGET = 0.10
# Orchestrator-level dedup replaces the payload above this reduction (percent)
DEDUP_MIN_REDUCTION = 5.0
CONFIDENCE_WITHOUT_AI = 0.7

BASIC_COLOR_LIMIT = 20
BASIC_FONT_LIMIT = 5
BASIC_SPACING_LIMIT = 15
W3C_SCHEMA_URL = "https://design-tokens.github.io/community-group/format/"

QUALITY_BUCKETS = ((90, "90-100"), (80, "80-89"), (70, "70-79"), (60, "60-69"), (0, "0-59"))
# Finished runs kept for analytics()
HISTORY_LIMIT = 1000


@dataclass
class PipelineOptions:
    fallbacks_enabled: bool = True
    max_retries: int = 3
    ai_enabled: bool = True
    compression_threshold: int = 200_000
    deduplication_enabled: bool = True
    quality_audit: bool = False
    max_budget: float = 0.15
    priority: str = "normal"  # low, normal, high, critical
    quality_target: int = 80
    intent: str = "component-authoring"  # component-authoring, marketing-site
    cache_enabled: bool = True
    scan: ScanOptions = field(default_factory=ScanOptions)

    @property
    def quality_level(self) -> str:
        if self.quality_target >= 90:
            return "premium"
        if self.quality_target < 75:
            return "basic"
        return "standard"


@dataclass
class PipelineProgress:
    phase: str = "extraction"  # extraction, ai-processing, validation, completed, failed
    overall_progress: float = 0.0
    current_step: str = "Initializing extraction..."
    elapsed_ms: float = 0.0
    costs: dict[str, float] = field(default_factory=lambda: {"extraction": 0.0, "ai_processing": 0.0, "total": 0.0})
    metrics: dict[str, int] = field(
        default_factory=lambda: {
            "tokens_extracted": 0,
            "strategies_completed": 0,
            "fallbacks_used": 0,
            "cache_hits": 0,
        }
    )

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineResult:
    url: str
    status: str
    token_set: dict[str, Any]
    layout_data: dict[str, Any] = field(default_factory=dict)
    brand_data: dict[str, Any] = field(default_factory=dict)
    accessibility_report: dict[str, Any] = field(default_factory=dict)
    prompt_pack: dict[str, Any] = field(default_factory=dict)
    quality_audit: Optional[dict[str, Any]] = None
    extraction_metadata: dict[str, Any] = field(default_factory=dict)
    ai_metadata: dict[str, Any] = field(default_factory=dict)
    confidence: int = 0
    completeness: int = 0
    reliability: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ActivePipeline:
    url: str
    options: PipelineOptions
    progress: PipelineProgress
    started: float


@dataclass
class BatchScanResult:
    url: str
    result: Optional[PipelineResult] = None
    error: Optional[str] = None
    cost: float = 0.0


def _clamp(value: float) -> int:
    return round(max(0.0, min(100.0, value)))


def final_status(scan: ScanResult, recovered: list[ExtractionResult]) -> ScanStatus:
    """Scan status after recovery.

    A failed scan becomes partial only when a recovery actually extracted
    styles; URL heuristics and category defaults do not count.
    """
    if scan.status == ScanStatus.FAILED and any(
        r.success and r.strategy_name not in HEURISTIC_RECOVERIES for r in recovered
    ):
        return ScanStatus.PARTIAL
    return scan.status


# =============================================================================
# Scores
# =============================================================================


def overall_confidence(data_quality: float, ai_result: Optional[TwoPhaseResult]) -> int:
    if ai_result is not None and ai_result.success:
        return _clamp((data_quality + ai_result.quality) / 2)
    return _clamp(data_quality * CONFIDENCE_WITHOUT_AI)


def completeness_score(results: list[ExtractionResult], ai_result: Optional[TwoPhaseResult]) -> int:
    score = 50.0
    if results:
        score += sum(1 for r in results if r.success) / len(results) * 30
    if ai_result is not None and ai_result.success:
        score += 20
    return _clamp(score)


def reliability_score(fallbacks_triggered: int, ai_result: Optional[TwoPhaseResult]) -> int:
    score = 70.0 - fallbacks_triggered * 5
    if ai_result is not None:
        if ai_result.success and not ai_result.fallback_used:
            score += 20
        if "cache" in ai_result.optimization.strategies_used:
            score += 10
    return _clamp(score)


# =============================================================================
# Token set without AI
# =============================================================================


def basic_token_set(scan: ScanResult, aggregated: dict[str, Any]) -> dict[str, Any]:
    """W3C-format token set built straight from the extraction aggregate."""
    tokens = aggregated.get("tokens") or {}
    token_set: dict[str, Any] = {
        "$schema": W3C_SCHEMA_URL,
        "$metadata": {
            "name": scan.domain,
            "version": "1.0.0",
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "source": {
                "url": scan.url,
                "extractedAt": datetime.fromtimestamp(scan.metadata.finished_at, timezone.utc).isoformat(),
            },
            "tools": {"extractor": "strategy-engine", "generator": "basic-token-generator"},
        },
    }

    colors = tokens.get("colors") or []
    if colors:
        token_set["color"] = {
            f"color-{i}": _w3c_token("color", color.get("value"), color.get("usage", 1), 75, f"Color extracted from {scan.domain}")
            for i, color in enumerate(colors[:BASIC_COLOR_LIMIT], start=1)
        }

    families = (tokens.get("typography") or {}).get("families") or []
    if families:
        token_set["typography"] = {
            f"font-{i}": _w3c_token("fontFamily", [font.get("family")], font.get("usage", 1), 70, f"Font family from {scan.domain}")
            for i, font in enumerate(families[:BASIC_FONT_LIMIT], start=1)
        }

    scale = (tokens.get("spacing") or {}).get("scale") or []
    if scale:
        token_set["dimension"] = {
            f"space-{i}": _w3c_token("dimension", f"{_px(space)}px", _usage(space), 65, f"Spacing value from {scan.domain}")
            for i, space in enumerate(scale[:BASIC_SPACING_LIMIT], start=1)
        }
    return token_set


def _w3c_token(token_type: str, value: Any, usage: Any, confidence: int, description: str) -> dict[str, Any]:
    return {
        "$type": token_type,
        "$value": value,
        "$description": description,
        "$extensions": {
            "contextds.usage": usage,
            "contextds.confidence": confidence,
            "contextds.source": "deterministic-extraction",
        },
    }


def _px(space: Any) -> Any:
    value = space.get("px") if isinstance(space, dict) else space
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _usage(space: Any) -> int:
    return space.get("usage", 1) if isinstance(space, dict) else 1


# =============================================================================
# Orchestrator
# =============================================================================


class PipelineOrchestrator:
    """
    Root of the pipeline. Sequences extraction, recovery and AI processing.

    Usage:
        orchestrator = build_orchestrator()
        result = await orchestrator.process_website("https://example.com")
    """

    def __init__(
        self,
        engine: ExtractionStrategyEngine,
        fallback: FallbackOrchestrator,
        processor: TwoPhaseProcessor,
        validator: SchemaValidator,
        cache: Any = None,
        resources: Sequence[Any] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.fallback = fallback
        self.processor = processor
        self.validator = validator
        self.cache = cache
        # Objects with an async close(), released by close()
        self.resources = list(resources)
        self._sleep = sleep
        self._clock = clock
        self._active: dict[str, ActivePipeline] = {}
        self._history: deque = deque(maxlen=HISTORY_LIMIT)

    async def process_website(
        self,
        url: str,
        options: Optional[PipelineOptions] = None,
        on_progress: Optional[ProgressSink] = None,
    ) -> PipelineResult:
        options = options or PipelineOptions()
        pipeline_id = f"pipeline_{uuid.uuid4().hex[:12]}"
        started = self._clock()
        progress = PipelineProgress()
        self._active[pipeline_id] = ActivePipeline(url, options, progress, started)

        def report(phase: Optional[str] = None, overall: Optional[float] = None, step: Optional[str] = None):
            if phase is not None:
                progress.phase = phase
            if overall is not None:
                progress.overall_progress = overall
            if step is not None:
                progress.current_step = step
            progress.elapsed_ms = (self._clock() - started) * 1000
            notify_progress(on_progress, progress.snapshot())

        try:
            log_phase(logger, pipeline_id, "extraction", "start")
            scan, results, recovered = await self._extraction_phase(url, options, progress, report)
            aggregated = aggregate_results(results)
            status = final_status(scan, recovered)
            log_phase(logger, pipeline_id, "extraction", status.value, (self._clock() - started) * 1000)

            ai_result: Optional[TwoPhaseResult] = None
            audit: Optional[AuditOutcome] = None
            dedup_applied = False
            errors: list[str] = []
            if status == ScanStatus.FAILED:
                errors.append("All extraction strategies failed")
            elif options.ai_enabled:
                log_phase(logger, pipeline_id, "ai-processing", "start")
                ai_result, audit, dedup_applied = await self._ai_phase(url, aggregated, options, progress, report)
                if not ai_result.success:
                    errors.append(f"AI processing failed: {ai_result.state}")
                log_phase(logger, pipeline_id, "ai-processing", ai_result.state, (self._clock() - started) * 1000)

            report("validation", 90, "Validating results...")
            result = await self._assemble(
                url, scan, status, results, recovered, aggregated, options, ai_result, audit, dedup_applied, started
            )
            result.errors.extend(errors)

            report("completed", 100, "Pipeline completed")
            log_phase(logger, pipeline_id, "pipeline", result.status, (self._clock() - started) * 1000)
            self._record(result, started)
            return result

        except Exception as e:
            logger.error(f"[Pipeline] {pipeline_id} failed for {url}: {e}", exc_info=True)
            report("failed", step=f"Pipeline failed: {e}")
            result = PipelineResult(
                url=url,
                status=ScanStatus.FAILED.value,
                token_set=self.validator.create_emergency_fallback("organize-pack", url),
                errors=[str(e) or type(e).__name__],
            )
            self._record(result, started)
            return result

        finally:
            self._active.pop(pipeline_id, None)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _extraction_phase(
        self,
        url: str,
        options: PipelineOptions,
        progress: PipelineProgress,
        report: Callable[..., None],
    ) -> tuple[ScanResult, list[ExtractionResult], list[ExtractionResult]]:
        report("extraction", 0, "Starting comprehensive scan...")

        def on_strategy(event: dict[str, Any]) -> None:
            total = event.get("total") or 1
            index = event.get("index", 0)
            progress.metrics["strategies_completed"] = index
            report(overall=index / total * 40, step=event.get("step"))

        scan_options = replace(options.scan, retry_attempts=options.max_retries)
        context = ScanContext.for_url(url, options=scan_options, progress_sink=on_strategy)
        if self.engine.user_agent:
            context = context.with_changes(user_agent=self.engine.user_agent)
        scan = await self.engine.run_context(context)
        progress.metrics["strategies_completed"] = len(scan.strategies)
        progress.metrics["cache_hits"] = sum(1 for r in scan.strategies if r.performance.cache_hit)

        recovered: list[ExtractionResult] = []
        if options.fallbacks_enabled and scan.failed:
            report(step="Applying fallback strategies...")
            recovery_context = context.with_changes(progress_sink=lambda event: report(step=event.get("step")))
            try:
                recovered = await self.fallback.recover(scan.failed, recovery_context)
            except PipelineError as e:
                logger.warning(f"[Pipeline] Fallback recovery failed for {url}: {e}")
            progress.metrics["fallbacks_used"] = len(recovered)

        report(overall=40, step="Extraction completed")
        return scan, scan.strategies + recovered, recovered

    async def _ai_phase(
        self,
        url: str,
        aggregated: dict[str, Any],
        options: PipelineOptions,
        progress: PipelineProgress,
        report: Callable[..., None],
    ) -> tuple[TwoPhaseResult, Optional[AuditOutcome], bool]:
        report("ai-processing", 45, "Analyzing extracted data...")

        data = aggregated
        dedup_applied = False
        candidates, _ = candidate_tokens(aggregated)
        progress.metrics["tokens_extracted"] = len(candidates)
        deduplicator = self.processor.deduplicator
        if options.deduplication_enabled and deduplicator is not None and len(candidates) > 1:
            report(overall=50, step="Deduplicating tokens...")
            dedup = await deduplicator.deduplicate(candidates)
            if dedup.reduction.get("percentage", 0.0) > DEDUP_MIN_REDUCTION:
                data = apply_deduplication(aggregated, dedup)
                dedup_applied = True
                progress.metrics["tokens_extracted"] = len(dedup.deduplicated)

        report(overall=60, step="Processing with AI models...")
        ai_result = await self.processor.process(
            data,
            url,
            intent=options.intent,
            priority=options.priority,
            budget=options.max_budget * AI_BUDGET_SHARE,
            quality=options.quality_level,
            cacheable=options.cache_enabled,
            compression_threshold=options.compression_threshold,
        )
        progress.costs["ai_processing"] = ai_result.total_cost
        progress.costs["total"] = progress.costs["extraction"] + ai_result.total_cost

        audit: Optional[AuditOutcome] = None
        if options.quality_audit and ai_result.success and options.max_budget > AUDIT_MIN_BUDGET:
            report(overall=80, step="Performing quality audit...")
            audit = await self.processor.quality_audit(
                ai_result.data,
                aggregated,
                url=url,
                critical=options.priority == "critical",
                budget=options.max_budget,
            )
            progress.costs["ai_processing"] += audit.cost
            progress.costs["total"] += audit.cost

        progress.metrics["cache_hits"] += sum(1 for phase in ai_result.phases if phase.cached)
        report(overall=85, step="AI processing completed")
        return ai_result, audit, dedup_applied

    async def _assemble(
        self,
        url: str,
        scan: ScanResult,
        status: ScanStatus,
        results: list[ExtractionResult],
        recovered: list[ExtractionResult],
        aggregated: dict[str, Any],
        options: PipelineOptions,
        ai_result: Optional[TwoPhaseResult],
        audit: Optional[AuditOutcome],
        dedup_applied: bool,
        started: float,
    ) -> PipelineResult:
        errors: list[str] = []
        prompt_pack: dict[str, Any] = {}
        ai_cost = (ai_result.total_cost if ai_result else 0.0) + (audit.cost if audit else 0.0)

        if ai_result is not None and ai_result.success:
            validation = await self.validator.validate_token_pack(ai_result.data)
            if validation.valid:
                token_set = validation.data
                prompt_pack = token_set.get("mappingHints") or {}
                models_used = ai_result.models_used
            else:
                logger.warning(f"[Pipeline] Final token pack invalid for {url}, using emergency fallback")
                errors.extend(validation.error_messages)
                token_set = self.validator.create_emergency_fallback("organize-pack", url)
                models_used = ["emergency-fallback"]
        elif status == ScanStatus.FAILED:
            token_set = self.validator.create_emergency_fallback("organize-pack", url)
            models_used = ["none"]
        else:
            token_set = basic_token_set(scan, aggregated)
            models_used = ["none"]

        strategies_used = ai_result.optimization.strategies_used if ai_result else []
        ai_metadata = {
            "models_used": models_used,
            "total_cost_usd": round(ai_cost, 6),
            "compression_used": any(s in strategies_used for s in ("compression", "deterministic-compression")),
            "deduplication_applied": dedup_applied or "deduplication" in strategies_used,
            "cache_hit_rate": self.cache.hit_rate if self.cache is not None and options.cache_enabled else 0.0,
            "strategies_used": list(strategies_used),
        }

        return PipelineResult(
            url=url,
            status=status.value,
            token_set=token_set,
            layout_data=aggregated.get("layout") or {},
            brand_data=aggregated.get("brand") or {},
            accessibility_report=aggregated.get("accessibility") or {},
            prompt_pack=prompt_pack,
            quality_audit=audit.report if audit else None,
            extraction_metadata={
                "strategies_used": scan.metadata.strategies_used,
                "fallbacks_triggered": scan.metadata.fallbacks_triggered,
                "recovered_strategies": [r.strategy_name for r in recovered if r.success],
                "data_quality": scan.metadata.data_quality,
                "duration_ms": scan.metadata.duration_ms,
            },
            ai_metadata=ai_metadata,
            confidence=overall_confidence(scan.metadata.data_quality, ai_result),
            completeness=completeness_score(results, ai_result),
            reliability=reliability_score(len(scan.metadata.fallbacks_triggered), ai_result),
            errors=errors,
        )

    # -------------------------------------------------------------------------
    # Presets
    # -------------------------------------------------------------------------

    async def quick_scan(self, url: str, on_progress: Optional[ProgressSink] = None) -> PipelineResult:
        options = PipelineOptions(max_budget=0.05, priority="low", quality_audit=False, deduplication_enabled=False)
        return await self.process_website(url, options, on_progress)

    async def premium_scan(self, url: str, on_progress: Optional[ProgressSink] = None) -> PipelineResult:
        options = PipelineOptions(
            max_budget=0.50,
            priority="critical",
            quality_audit=True,
            deduplication_enabled=True,
            quality_target=95,
        )
        return await self.process_website(url, options, on_progress)

    async def budget_aware_scan(
        self,
        url: str,
        monthly_budget: float,
        current_spend: float,
        on_progress: Optional[ProgressSink] = None,
        today: Optional[date] = None,
    ) -> PipelineResult:
        """Scan with half of the remaining daily budget, capped at the default scan budget."""
        today = today or date.today()
        days_left = calendar.monthrange(today.year, today.month)[1] - today.day
        daily_budget = (monthly_budget - current_spend) / max(1, days_left)
        budget = max(0.0, min(PipelineOptions.max_budget, daily_budget * 0.5))

        quality = "basic" if budget < 0.05 else "premium" if budget > 0.25 else "standard"
        options = PipelineOptions(
            max_budget=budget,
            priority="normal",
            quality_audit=quality == "premium",
            quality_target={"premium": 90, "basic": 70}.get(quality, 80),
        )
        logger.info(f"[Pipeline] Budget-aware scan of {url}: ${budget:.4f} ({quality})")
        return await self.process_website(url, options, on_progress)

    async def batch_scan(
        self,
        urls: list[str],
        max_concurrency: int = 3,
        total_budget: float = 1.0,
        delay_s: float = 1.0,
        priority: str = "low",
    ) -> list[BatchScanResult]:
        """Scan URLs in concurrent groups, splitting ``total_budget`` evenly."""
        if not urls:
            return []
        budget = total_budget / len(urls)
        options = PipelineOptions(max_budget=budget, priority=priority, quality_audit=False)

        outcomes = await self.processor.optimizer.batch_process(
            urls,
            lambda url: self.process_website(url, options),
            concurrency=max_concurrency,
            delay_s=delay_s,
            sleep=self._sleep,
        )

        batch: list[BatchScanResult] = []
        for url, outcome in zip(urls, outcomes):
            result = outcome["result"]
            if result is None:
                batch.append(BatchScanResult(url=url, error=outcome["error"]))
            else:
                batch.append(
                    BatchScanResult(
                        url=url,
                        result=result,
                        error="; ".join(result.errors) or None,
                        cost=result.ai_metadata.get("total_cost_usd", 0.0),
                    )
                )
        return batch

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def active_pipelines(self) -> dict[str, ActivePipeline]:
        return dict(self._active)

    def _record(self, result: PipelineResult, started: float) -> None:
        self._history.append(
            {
                "status": result.status,
                "duration_ms": (self._clock() - started) * 1000,
                "cost": result.ai_metadata.get("total_cost_usd", 0.0),
                "confidence": result.confidence,
            }
        )

    def analytics(self) -> dict[str, Any]:
        total = len(self._history)
        distribution = {label: 0 for _, label in QUALITY_BUCKETS}
        for run in self._history:
            label = next(label for floor, label in QUALITY_BUCKETS if run["confidence"] >= floor)
            distribution[label] += 1

        return {
            "total_completed": total,
            "average_duration_ms": sum(r["duration_ms"] for r in self._history) / total if total else 0.0,
            "success_rate": (
                sum(1 for r in self._history if r["status"] != ScanStatus.FAILED.value) / total * 100 if total else 0.0
            ),
            "average_cost": sum(r["cost"] for r in self._history) / total if total else 0.0,
            "quality_distribution": distribution,
            "active": len(self._active),
            "processing": self.processor.processing_stats(),
        }

    async def close(self) -> None:
        for resource in [self.processor.gateway, *self.resources]:
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"[Pipeline] Error closing {type(resource).__name__}: {e}")
        if self.cache is not None:
            removed = await self.cache.optimize()
            logger.info(f"[Pipeline] Closed; cache optimize removed {removed}")
