"""
Multi-strategy extraction engine.

Runs every registered strategy against one URL in priority order, with
per-strategy caching, retries with exponential backoff and a per-try timeout.
A failing strategy is recorded and never stops the scan.

Status:
    completed  succeeded / total >= 0.7
    partial    at least one strategy succeeded
    failed     none succeeded
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from libs.core.exceptions import ExtractionError, StrategyTimeoutError
from libs.core.logging_config import log_strategy
from libs.core.models import (
    ExtractionResult,
    ProgressSink,
    ScanContext,
    ScanMetadata,
    ScanOptions,
    ScanResult,
    ScanStatus,
    StrategyPerformance,
)
from libs.core.progress import notify_progress
from libs.extraction.strategies import ExtractionStrategy

logger = logging.getLogger(__name__)

COMPLETED_RATIO = 0.7
SCAN_TIMEOUT_ERROR = "scan timeout"

# Relative importance of each strategy's data; unknown strategies get DEFAULT_WEIGHT
STRATEGY_WEIGHTS = {
    "static-css-extraction": 0.2,
    "computed-styles-extraction": 0.2,
    "component-pattern-analysis": 0.15,
    "brand-analysis": 0.1,
    "accessibility-analysis": 0.1,
    "framework-specific-extraction": 0.1,
    "performance-analysis": 0.1,
    "visual-screenshot-analysis": 0.05,
}
DEFAULT_WEIGHT = 0.05

Sleep = Callable[[float], Awaitable[Any]]


def scan_status(results: list[ExtractionResult]) -> ScanStatus:
    succeeded = sum(1 for r in results if r.success)
    if not results or succeeded == 0:
        return ScanStatus.FAILED
    if succeeded / len(results) >= COMPLETED_RATIO:
        return ScanStatus.COMPLETED
    return ScanStatus.PARTIAL


def data_quality(results: list[ExtractionResult]) -> float:
    """Weighted share (0-100) of strategies that succeeded."""
    total = sum(STRATEGY_WEIGHTS.get(r.strategy_name, DEFAULT_WEIGHT) for r in results)
    if total == 0:
        return 0.0
    achieved = sum(STRATEGY_WEIGHTS.get(r.strategy_name, DEFAULT_WEIGHT) for r in results if r.success)
    return round(achieved / total * 100, 2)


# =============================================================================
# Aggregation
# =============================================================================


def empty_aggregate() -> dict[str, Any]:
    return {
        "css": {"sources": [], "custom_properties": {}, "media_queries": [], "keyframes": [], "fonts": []},
        "tokens": {"colors": [], "typography": {}, "spacing": {}, "radius": [], "shadows": [], "layout": {}},
        "components": {},
        "brand": {},
        "accessibility": {},
        "frameworks": {"detected": [], "evidence": []},
        "performance": {},
        "layout": {},
    }


def _merge_usage(existing: list[dict], incoming: list[dict], key: str) -> list[dict]:
    merged: dict[Any, dict] = {item[key]: dict(item) for item in existing}
    for item in incoming:
        if item[key] in merged:
            merged[item[key]]["usage"] = merged[item[key]].get("usage", 0) + item.get("usage", 0)
        else:
            merged[item[key]] = dict(item)
    return sorted(merged.values(), key=lambda i: i.get("usage", 0), reverse=True)


def _merge_tokens(target: dict[str, Any], css: dict[str, Any], tokens: dict[str, Any]) -> None:
    target["colors"] = _merge_usage(target["colors"], tokens.get("colors", []), "value")
    target["radius"] = _merge_usage(target["radius"], tokens.get("radius", []), "value")
    target["shadows"] = _merge_usage(target["shadows"], tokens.get("shadows", []), "value")

    typography = tokens.get("typography") or {}
    current = target["typography"]
    if typography:
        current["families"] = _merge_usage(current.get("families", []), typography.get("families", []), "family")
        current["sizes"] = sorted(
            _merge_usage(current.get("sizes", []), typography.get("sizes", []), "px"), key=lambda s: s["px"]
        )
        current["weights"] = list(dict.fromkeys(current.get("weights", []) + typography.get("weights", [])))
        current["line_heights"] = list(
            dict.fromkeys(current.get("line_heights", []) + typography.get("line_heights", []))
        )

    spacing = tokens.get("spacing") or {}
    if spacing.get("scale"):
        scale = sorted(
            _merge_usage(target["spacing"].get("scale", []), spacing["scale"], "px"), key=lambda s: s["px"]
        )
        target["spacing"] = {**spacing, "scale": scale}

    css["custom_properties"].update(tokens.get("custom_properties", {}))
    css["media_queries"] = sorted(set(css["media_queries"]) | set(tokens.get("breakpoints", [])))
    css["keyframes"] = sorted(set(css["keyframes"]) | set(tokens.get("keyframes", [])))


def aggregate_results(results: list[ExtractionResult]) -> dict[str, Any]:
    """Merge the data of successful results into one aggregate document.

    CSS sources and token candidates are merged from any result carrying them
    (so recovery results feed the same sections); analysis sections are keyed
    by strategy name.
    """
    aggregated = empty_aggregate()
    css, tokens = aggregated["css"], aggregated["tokens"]
    seen_sources: set[str] = set()

    for result in results:
        if not result.success or not result.data:
            continue
        data = result.data

        for source in data.get("sources", []):
            if source.get("sha256") not in seen_sources:
                seen_sources.add(source.get("sha256"))
                css["sources"].append(source)
        css["fonts"].extend(data.get("fonts", []))
        if isinstance(data.get("custom_properties"), dict):
            css["custom_properties"].update(data["custom_properties"])
        if data.get("tokens"):
            _merge_tokens(tokens, css, data["tokens"])

        name = result.strategy_name
        if name == "component-pattern-analysis":
            aggregated["components"] = data
        elif name == "brand-analysis":
            aggregated["brand"] = data
        elif name == "accessibility-analysis":
            aggregated["accessibility"] = data
        elif name == "framework-specific-extraction":
            detected = aggregated["frameworks"]["detected"]
            detected.extend(f for f in data.get("detected", []) if f not in detected)
            aggregated["frameworks"]["evidence"].extend(data.get("evidence", []))
        elif name == "performance-analysis":
            aggregated["performance"] = data
        elif name == "visual-screenshot-analysis":
            aggregated["layout"] = {"screenshots": data.get("screenshots", [])}
            tokens["layout"] = {
                shot["viewport"]: shot.get("analysis") or {} for shot in data.get("screenshots", [])
            }
        elif name == "custom-properties-extraction":
            for prop in data.get("properties", []):
                css["custom_properties"].setdefault(prop["name"], prop["value"])

    return aggregated


# =============================================================================
# Engine
# =============================================================================


class ExtractionStrategyEngine:
    """
    Runs a registry of extraction strategies against a URL.

    Usage:
        engine = ExtractionStrategyEngine(default_strategies(browser, collector))
        result = await engine.run_all("https://example.com")
    """

    def __init__(
        self,
        strategies: list[ExtractionStrategy],
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        user_agent: Optional[str] = None,
    ):
        self.strategies = sorted(strategies, key=lambda s: s.priority)
        self._sleep = sleep
        self._clock = clock
        self.user_agent = user_agent
        # (strategy, url, options hash) -> successful ExtractionResult
        self._cache: dict[str, ExtractionResult] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    async def run_all(
        self,
        url: str,
        options: Optional[ScanOptions] = None,
        on_progress: Optional[ProgressSink] = None,
    ) -> ScanResult:
        kwargs = {"user_agent": self.user_agent} if self.user_agent else {}
        context = ScanContext.for_url(url, options=options, progress_sink=on_progress, **kwargs)
        return await self.run_context(context)

    async def run_context(self, context: ScanContext) -> ScanResult:
        started_at = time.time()
        start = self._clock()
        options = context.options
        deadline = start + options.scan_timeout_ms / 1000 if options.scan_timeout_ms else None

        strategies = [s for s in self.strategies if s.enabled(options)]
        logger.info(f"[StrategyEngine] Scanning {context.url} with {len(strategies)} strategies")

        results: list[ExtractionResult] = []
        for index, strategy in enumerate(strategies):
            if deadline is not None and self._clock() >= deadline:
                logger.warning(f"[StrategyEngine] Scan deadline reached, skipping {strategy.name}")
                results.append(ExtractionResult(strategy.name, False, error=SCAN_TIMEOUT_ERROR))
                continue

            notify_progress(
                context.progress_sink,
                {"step": f"Running {strategy.name}", "strategy": strategy.name, "index": index, "total": len(strategies)},
            )
            result = await self.execute_with_retry(strategy, context, deadline)
            results.append(result)

        finished_at = time.time()
        hits = sum(1 for r in results if r.performance.cache_hit)
        status = scan_status(results)
        metadata = ScanMetadata(
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=(self._clock() - start) * 1000,
            strategies_used=[r.strategy_name for r in results],
            fallbacks_triggered=[r.strategy_name for r in results if not r.success],
            data_quality=data_quality(results),
            cache_efficiency=round(hits / len(results) * 100, 2) if results else 0.0,
        )
        logger.info(
            f"[StrategyEngine] {context.url} {status.value}: "
            f"{sum(1 for r in results if r.success)}/{len(results)} succeeded, quality={metadata.data_quality}"
        )
        return ScanResult(
            url=context.url,
            domain=context.domain,
            status=status,
            strategies=results,
            aggregated_data=aggregate_results(results),
            metadata=metadata,
        )

    async def execute_with_retry(
        self,
        strategy: ExtractionStrategy,
        context: ScanContext,
        deadline: Optional[float] = None,
    ) -> ExtractionResult:
        """Run one strategy with cache lookup, retries and a per-try timeout."""
        options = context.options
        cache_key = f"{strategy.name}-{context.url}-{options.options_hash()}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return ExtractionResult(
                cached.strategy_name,
                cached.success,
                cached.data,
                cached.error,
                StrategyPerformance(0.0, cached.performance.data_size_bytes, cache_hit=True),
            )

        attempts = max(1, options.retry_attempts)
        last_error = "unknown error"
        for attempt in range(1, attempts + 1):
            timeout_ms = options.timeout_ms
            if deadline is not None:
                timeout_ms = min(timeout_ms, max(0.0, (deadline - self._clock()) * 1000))
            started = self._clock()
            try:
                outcome = await self._run_once(strategy, context, timeout_ms)
            except ExtractionError as e:
                last_error = e.message
            except Exception as e:
                last_error = str(e) or type(e).__name__
            else:
                elapsed_ms = (self._clock() - started) * 1000
                log_strategy(logger, strategy.name, outcome.success, elapsed_ms, attempt)
                result = ExtractionResult(
                    strategy.name,
                    outcome.success,
                    outcome.data,
                    outcome.error,
                    StrategyPerformance(elapsed_ms, _data_size(outcome.data), cache_hit=False),
                )
                if outcome.success:
                    self._cache[cache_key] = result
                return result

            elapsed_ms = (self._clock() - started) * 1000
            log_strategy(logger, strategy.name, False, elapsed_ms, attempt)
            logger.warning(f"[StrategyEngine] {strategy.name} attempt {attempt}/{attempts} failed: {last_error}")

            if attempt < attempts:
                if deadline is not None and self._clock() >= deadline:
                    break
                await self._sleep(2**attempt)

        return ExtractionResult(strategy.name, False, error=last_error)

    async def _run_once(self, strategy: ExtractionStrategy, context: ScanContext, timeout_ms: float):
        if timeout_ms <= 0:
            raise StrategyTimeoutError(strategy.name, timeout_ms)
        try:
            return await asyncio.wait_for(strategy.run(context), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise StrategyTimeoutError(strategy.name, timeout_ms)


def _data_size(data: Optional[dict[str, Any]]) -> int:
    if not data:
        return 0
    return len(json.dumps(data, default=str))
