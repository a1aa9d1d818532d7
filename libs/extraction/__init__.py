"""Website style extraction: strategies, engine, recovery and circuit breaker."""

from libs.extraction.browser import BrowserSession, PlaywrightBrowser
from libs.extraction.circuit_breaker import BreakerState, CircuitBreaker
from libs.extraction.css_sources import CssSource, CssSourceCollector
from libs.extraction.fallback_orchestrator import DEFAULT_RULES, FallbackOrchestrator, FallbackRule
from libs.extraction.recovery import RecoveryStrategy, analyze_url, default_recoveries
from libs.extraction.strategies import ExtractionStrategy, StrategyOutcome, default_strategies
from libs.extraction.strategy_engine import ExtractionStrategyEngine, aggregate_results, data_quality, scan_status

__all__ = [
    "BrowserSession",
    "PlaywrightBrowser",
    "BreakerState",
    "CircuitBreaker",
    "CssSource",
    "CssSourceCollector",
    "DEFAULT_RULES",
    "FallbackOrchestrator",
    "FallbackRule",
    "RecoveryStrategy",
    "analyze_url",
    "default_recoveries",
    "ExtractionStrategy",
    "StrategyOutcome",
    "default_strategies",
    "ExtractionStrategyEngine",
    "aggregate_results",
    "data_quality",
    "scan_status",
]
