"""
Recovery strategies used by the fallback orchestrator.

A recovery strategy receives the failed ``ExtractionResult`` plus a (possibly
transformed) ``ScanContext`` and returns a ``StrategyOutcome``. Raising is
allowed; the orchestrator treats it as a failed attempt.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from libs.core.models import ExtractionResult, ScanContext
from libs.extraction.css_analysis import analyze_css
from libs.extraction.css_sources import BROWSER_USER_AGENT, CssSourceCollector
from libs.extraction.strategies import StrategyOutcome

logger = logging.getLogger(__name__)

STEALTH_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Upgrade-Insecure-Requests": "1",
}

SPA_SETTLE_MS = 3000
DELAYED_EXTRACTION_S = 5.0
PARTIAL_FIELDS = ("sources", "tokens", "custom_properties", "components")
PARTIAL_COMPLETENESS_THRESHOLD = 0.3


# =============================================================================
# URL heuristics
# =============================================================================

HOST_FRAMEWORKS = {
    "vercel.app": "Next.js",
    "netlify.app": "React/Vue",
    "github.io": "Jekyll/Static",
    "wordpress.com": "WordPress",
    "myshopify.com": "Shopify",
    "shopify.com": "Shopify",
    "webflow.io": "Webflow",
}

CATEGORY_KEYWORDS = (
    ("ecommerce", ("shop", "store", "buy")),
    ("content", ("blog", "news", "media")),
    ("saas", ("app", "platform", "tool")),
    ("creative", ("design", "studio", "creative")),
)

COMPLEXITY_KEYWORDS = (
    ("high", ("app", "platform", "dashboard", "admin")),
    ("medium", ("shop", "store", "blog", "portfolio")),
    ("low", ("landing", "coming-soon", "maintenance")),
)

CATEGORY_DEFAULTS = {
    "ecommerce": {"colors": ["#000000", "#ffffff", "#e11d48"], "spacing": ["4px", "8px", "16px", "24px"]},
    "content": {"colors": ["#111827", "#ffffff", "#2563eb"], "spacing": ["8px", "16px", "24px", "32px"]},
    "saas": {"colors": ["#0f172a", "#ffffff", "#3b82f6"], "spacing": ["4px", "8px", "16px", "32px"]},
    "creative": {"colors": ["#000000", "#ffffff", "#f59e0b"], "spacing": ["8px", "16px", "32px", "64px"]},
    "general": {"colors": ["#000000", "#ffffff", "#f8f9fa"], "spacing": ["8px", "16px", "24px", "32px"]},
}


def categorize_domain(domain: str) -> str:
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in domain for keyword in keywords):
            return category
    return "general"


def guess_framework(domain: str) -> Optional[str]:
    for suffix, framework in HOST_FRAMEWORKS.items():
        if domain == suffix or domain.endswith("." + suffix):
            return framework
    return None


def estimate_complexity(domain: str) -> str:
    for level, keywords in COMPLEXITY_KEYWORDS:
        if any(keyword in domain for keyword in keywords):
            return level
    return "medium"


def analyze_url(domain: str) -> dict[str, Any]:
    """What can be inferred about a site from its host name alone."""
    parts = domain.split(".")
    return {
        "domain": domain,
        "tld": parts[-1] if parts else "",
        "subdomain": parts[0] if len(parts) > 2 else None,
        "likely_framework": guess_framework(domain),
        "estimated_complexity": estimate_complexity(domain),
        "category": categorize_domain(domain),
    }


def merge_partial_data(fragments: list[dict[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for fragment in fragments:
        for key, value in fragment.items():
            if isinstance(value, list):
                merged[key] = merged.get(key, []) + value
            elif isinstance(value, dict):
                merged[key] = {**merged.get(key, {}), **value}
            else:
                merged[key] = value
    return merged


def partial_completeness(fragments: list[dict[str, Any]]) -> float:
    found = sum(1 for field in PARTIAL_FIELDS if any(fragment.get(field) for fragment in fragments))
    return found / len(PARTIAL_FIELDS)


# =============================================================================
# Recovery strategies
# =============================================================================


class RecoveryStrategy:
    name: str = "recovery"

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        raise NotImplementedError


class LightweightCssRecovery(RecoveryStrategy):
    """Static HTML + stylesheet fetch with the scan's own user agent."""

    name = "lightweight-css-extraction"

    def __init__(self, collector: CssSourceCollector, user_agent: Optional[str] = None):
        self.collector = collector
        self.user_agent = user_agent

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        sources = await self.collector.collect_static(context.url, self.user_agent or context.user_agent)
        if not sources:
            return StrategyOutcome(False, error="No CSS sources found")
        return StrategyOutcome(
            True,
            {
                "recovered_from": failed.strategy_name,
                "sources": [s.to_dict() for s in sources],
                "fonts": self.collector.collect_fonts(sources),
                "tokens": analyze_css(s.content for s in sources),
            },
        )


class ProxyRecovery(LightweightCssRecovery):
    """Re-fetch through the plain HTTP client with a desktop browser identity.

    No proxy server is involved: the request leaves from the same client, only
    the user agent changes. The name matches the fallback rule that selects it.
    """

    name = "proxy-extraction"

    def __init__(self, collector: CssSourceCollector):
        super().__init__(collector, user_agent=BROWSER_USER_AGENT)


class DelayedRecovery(LightweightCssRecovery):
    """Wait out a rate limit, then fetch statically."""

    name = "delayed-extraction"

    def __init__(
        self,
        collector: CssSourceCollector,
        sleep: Callable[[float], Awaitable[Any]],
        delay_s: float = DELAYED_EXTRACTION_S,
    ):
        super().__init__(collector)
        self._sleep = sleep
        self.delay_s = delay_s

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        await self._sleep(self.delay_s)
        return await super().recover(failed, context)


class BrowserRecovery(RecoveryStrategy):
    """Computed-style capture in a fresh browser session with adjusted settings."""

    name = "headless-fallback"
    stealth = False
    settle_ms = 0

    def __init__(self, browser, collector: CssSourceCollector):
        self.browser = browser
        self.collector = collector

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        session = await self.browser.new_session(
            user_agent=context.user_agent,
            stealth=self.stealth,
            extra_headers=STEALTH_HEADERS if self.stealth else None,
            timeout_ms=context.options.timeout_ms,
        )
        try:
            collected = await self.collector.collect_computed(
                session, context.url, context.options.timeout_ms, settle_ms=self.settle_ms
            )
        finally:
            await session.close()

        sources = collected["sources"]
        if not sources:
            return StrategyOutcome(False, error="No computed styles captured")
        return StrategyOutcome(
            True,
            {
                "recovered_from": failed.strategy_name,
                "sources": [s.to_dict() for s in sources],
                "custom_properties": collected["custom_properties"],
                "elements": len(collected["component_styles"]),
                "tokens": analyze_css(s.content for s in sources),
            },
        )


class SpaAwareRecovery(BrowserRecovery):
    name = "spa-aware-extraction"
    settle_ms = SPA_SETTLE_MS


class StealthRecovery(BrowserRecovery):
    name = "stealth-extraction"
    stealth = True


class CachedApproximationRecovery(RecoveryStrategy):
    """Low-confidence defaults for the domain's category."""

    name = "cached-approximation"

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        heuristics = analyze_url(context.domain)
        defaults = CATEGORY_DEFAULTS[heuristics["category"]]
        return StrategyOutcome(
            True,
            {
                "recovered_from": failed.strategy_name,
                "source": self.name,
                "url_analysis": heuristics,
                "approximated_tokens": {
                    "colors": list(defaults["colors"]),
                    "typography": ["system-ui", "Arial", "Helvetica"],
                    "spacing": list(defaults["spacing"]),
                },
                "confidence": 0.3,
            },
        )


class PartialReconstructionRecovery(RecoveryStrategy):
    """Merge whatever partial data the failed result carried."""

    name = "partial-data-reconstruction"

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        fragments = [failed.data] if failed.data else []
        if not fragments:
            return StrategyOutcome(False, error="No partial data available for reconstruction")

        completeness = partial_completeness(fragments)
        data = {
            "recovered_from": failed.strategy_name,
            "source": self.name,
            "merged_data": merge_partial_data(fragments),
            "completeness": completeness,
            "confidence": 0.6,
        }
        success = completeness > PARTIAL_COMPLETENESS_THRESHOLD
        return StrategyOutcome(success, data, None if success else "Partial data too incomplete")


class GenericRecovery(RecoveryStrategy):
    """Last resort: URL heuristics. Always succeeds."""

    name = "generic-recovery"

    async def recover(self, failed: ExtractionResult, context: ScanContext) -> StrategyOutcome:
        return StrategyOutcome(True, {"recovered_from": failed.strategy_name, **analyze_url(context.domain)})


# Succeed from the URL alone; their data never counts as extracted styles
HEURISTIC_RECOVERIES = frozenset({CachedApproximationRecovery.name, GenericRecovery.name})


def default_recoveries(browser, collector: CssSourceCollector, sleep) -> dict[str, RecoveryStrategy]:
    strategies = [
        LightweightCssRecovery(collector),
        BrowserRecovery(browser, collector),
        ProxyRecovery(collector),
        SpaAwareRecovery(browser, collector),
        StealthRecovery(browser, collector),
        DelayedRecovery(collector, sleep),
        CachedApproximationRecovery(),
        PartialReconstructionRecovery(),
    ]
    return {strategy.name: strategy for strategy in strategies}
