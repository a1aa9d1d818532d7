"""
Rule-based recovery for failed extraction strategies.

For each failed result the matching rules are tried in declaration order,
skipping any whose recovery strategy is blocked by the circuit breaker. Each
rule gets up to ``max_attempts`` attempts with ``backoff_multiplier ** (attempt - 1)``
seconds between them; the first success wins. Failures that
match no rule, or exhaust every matching rule, fall through to the generic
chain (partial reconstruction, cached approximation, URL heuristics), so every
failure yields some recovered result.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from libs.core.models import ExtractionResult, ScanContext, StrategyPerformance
from libs.core.progress import notify_progress
from libs.extraction.circuit_breaker import CircuitBreaker
from libs.extraction.recovery import GenericRecovery, RecoveryStrategy

logger = logging.getLogger(__name__)

BOT_USER_AGENT = "Mozilla/5.0 (compatible; ContextDS-Bot/1.0)"
MIN_COMPUTED_ELEMENTS = 10
FALLTHROUGH_CHAIN = ("partial-data-reconstruction", "cached-approximation")


@dataclass(frozen=True)
class FallbackRule:
    name: str
    trigger: Callable[[ExtractionResult], bool]
    recovery_strategy: str
    max_attempts: int
    backoff_multiplier: float
    context_transform: Optional[Callable[[ScanContext], ScanContext]] = None


def _error(result: ExtractionResult) -> str:
    return result.error or ""


def _has(*markers: str) -> Callable[[ExtractionResult], bool]:
    def trigger(result: ExtractionResult) -> bool:
        text = _error(result).lower()
        return any(marker.lower() in text for marker in markers)

    return trigger


def _static_timeout(result: ExtractionResult) -> bool:
    return result.strategy_name == "static-css-extraction" and "timeout" in _error(result).lower()


def _network(result: ExtractionResult) -> bool:
    error = _error(result)
    lowered = error.lower()
    return "network" in lowered or "timeout" in lowered or "ERR_" in error


def _sparse_computed(result: ExtractionResult) -> bool:
    return (
        result.strategy_name == "computed-styles-extraction"
        and (result.data or {}).get("elements", 0) < MIN_COMPUTED_ELEMENTS
    )


def _scale_timeout(factor: int) -> Callable[[ScanContext], ScanContext]:
    def transform(context: ScanContext) -> ScanContext:
        return context.with_changes(options={"timeout_ms": context.options.timeout_ms * factor})

    return transform


def _bot_agent(context: ScanContext) -> ScanContext:
    return context.with_changes(user_agent=BOT_USER_AGENT)


DEFAULT_RULES = (
    FallbackRule("static-timeout", _static_timeout, "lightweight-css-extraction", 2, 1.5, _scale_timeout(2)),
    FallbackRule("browser-crash", _has("browser", "chromium"), "headless-fallback", 3, 2, _bot_agent),
    FallbackRule("network-error", _network, "proxy-extraction", 2, 3),
    FallbackRule("sparse-computed", _sparse_computed, "spa-aware-extraction", 2, 1.5, _scale_timeout(3)),
    FallbackRule("blocked", _has("403", "captcha", "blocked"), "stealth-extraction", 1, 5),
    FallbackRule("rate-limited", _has("429", "rate limit"), "delayed-extraction", 3, 10),
)


class FallbackOrchestrator:
    """
    Turns failed extraction results into recovered results.

    Usage:
        fallback = FallbackOrchestrator(default_recoveries(browser, collector, asyncio.sleep))
        recovered = await fallback.recover(scan.failed, context)
    """

    def __init__(
        self,
        recoveries: dict[str, RecoveryStrategy],
        rules: tuple = DEFAULT_RULES,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.recoveries = recoveries
        self.rules = rules
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self._sleep = sleep
        self._clock = clock
        self._generic = GenericRecovery()

    def matching_rules(self, failed: ExtractionResult) -> list[FallbackRule]:
        return [rule for rule in self.rules if rule.trigger(failed)]

    async def recover(self, failed_results: list[ExtractionResult], context: ScanContext) -> list[ExtractionResult]:
        recovered: list[ExtractionResult] = []
        for failed in failed_results:
            notify_progress(context.progress_sink, {"step": f"Attempting recovery for {failed.strategy_name}"})
            result = await self._recover_one(failed, context)
            recovered.append(result)
        logger.info(f"[Fallback] Recovered {len(recovered)} of {len(failed_results)} failed strategies")
        return recovered

    async def _recover_one(self, failed: ExtractionResult, context: ScanContext) -> ExtractionResult:
        for rule in self.matching_rules(failed):
            recovery = self.recoveries.get(rule.recovery_strategy)
            if recovery is None:
                continue
            if not self.breaker.allow(recovery.name):
                logger.warning(f"[Fallback] Circuit open for {recovery.name}, skipping rule {rule.name}")
                continue

            rule_context = rule.context_transform(context) if rule.context_transform else context
            result = await self._attempt(recovery, failed, rule_context, rule.max_attempts, rule.backoff_multiplier)
            if result is not None:
                return result

        for name in FALLTHROUGH_CHAIN:
            recovery = self.recoveries.get(name)
            if recovery is None or not self.breaker.allow(name):
                continue
            result = await self._attempt(recovery, failed, context, 1, 1)
            if result is not None:
                return result

        outcome = await self._generic.recover(failed, context)
        return ExtractionResult(self._generic.name, outcome.success, outcome.data, outcome.error)

    async def _attempt(
        self,
        recovery: RecoveryStrategy,
        failed: ExtractionResult,
        context: ScanContext,
        max_attempts: int,
        backoff_multiplier: float,
    ) -> Optional[ExtractionResult]:
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await self._sleep(backoff_multiplier ** (attempt - 1))

            started = self._clock()
            try:
                outcome = await recovery.recover(failed, context)
            except Exception as e:
                self.breaker.record_failure(recovery.name)
                logger.warning(f"[Fallback] {recovery.name} attempt {attempt}/{max_attempts} failed: {e}")
                continue

            if outcome.success:
                self.breaker.record_success(recovery.name)
                logger.info(f"[Fallback] {failed.strategy_name} recovered by {recovery.name} (attempt {attempt})")
                return ExtractionResult(
                    recovery.name,
                    True,
                    outcome.data,
                    None,
                    StrategyPerformance(duration_ms=(self._clock() - started) * 1000),
                )

            self.breaker.record_failure(recovery.name)
            logger.warning(f"[Fallback] {recovery.name} attempt {attempt}/{max_attempts} unsuccessful: {outcome.error}")
        return None
