"""
Unit tests for the pipeline root.

Tests libs/pipeline/orchestrator.py and libs/pipeline/factory.py
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from libs.compression.cost_optimizer import CostOptimizer
from libs.core.config import Settings
from libs.core.exceptions import LLMError
from libs.dedup.embedding_deduplicator import DeduplicationResult
from libs.extraction.fallback_orchestrator import FallbackOrchestrator
from libs.extraction.recovery import RecoveryStrategy
from libs.extraction.strategies import ExtractionStrategy, StrategyOutcome
from libs.extraction.strategy_engine import ExtractionStrategyEngine
from libs.gateway.gateway_cache import GatewayCache
from libs.gateway.two_phase_processor import Optimization, PhaseResult, TwoPhaseProcessor, TwoPhaseResult
from libs.gateway.validation import SchemaValidator
from libs.llm.model_selector import SmartModelSelector
from libs.pipeline import PipelineOptions, PipelineOrchestrator, PipelineResult, build_orchestrator
from libs.pipeline import orchestrator as orchestrator_module
from libs.pipeline.orchestrator import (
    W3C_SCHEMA_URL,
    completeness_score,
    overall_confidence,
    reliability_score,
)

STATIC_DATA = {
    "sources": [{"url": "https://acme.com/main.css", "sha256": "a1b2", "content": ".btn{padding:8px}"}],
    "tokens": {
        "colors": [{"value": "#3b82f6", "usage": 12}, {"value": "#ffffff", "usage": 30}],
        "typography": {"families": [{"family": "Inter", "usage": 4}]},
        "spacing": {"scale": [{"px": 8, "usage": 5}, {"px": 16.0, "usage": 3}], "base": 8},
    },
}

AUDIT_REPORT = {"overall": {"score": 88}, "recommendations": [{"description": "Document hover states"}]}


class ScriptedRecovery(RecoveryStrategy):
    def __init__(self, name, outcome):
        self.name = name
        self.outcome = outcome

    async def recover(self, failed, context):
        return self.outcome


class ScriptedStrategy(ExtractionStrategy):
    def __init__(self, name, priority, outcome=None):
        self.name = name
        self.priority = priority
        self.outcome = outcome or StrategyOutcome(True, {})

    async def run(self, context):
        return self.outcome


def healthy_strategies():
    # 3 of 4 succeed: completed, data quality 0.4 / 0.45 = 88.89
    return [
        ScriptedStrategy("static-css-extraction", 1, StrategyOutcome(True, STATIC_DATA)),
        ScriptedStrategy("brand-analysis", 7, StrategyOutcome(True, {"tone": "friendly"})),
        ScriptedStrategy("accessibility-analysis", 8, StrategyOutcome(True, {"landmarks": 3})),
        ScriptedStrategy("visual-screenshot-analysis", 10, StrategyOutcome(False, error="nothing found")),
    ]


@pytest.fixture
def make_orchestrator(mock_gateway, catalog, recipes, fake_clock, no_sleep):
    """Factory for orchestrators over scripted strategies and the mock gateway."""

    def factory(strategies=None, deduplicator=None, engine=None, recoveries=None):
        validator = SchemaValidator(clock=fake_clock)
        processor = TwoPhaseProcessor(
            mock_gateway,
            CostOptimizer(catalog),
            SmartModelSelector(catalog),
            validator,
            recipes,
            deduplicator=deduplicator,
            clock=fake_clock,
        )
        return PipelineOrchestrator(
            engine or ExtractionStrategyEngine(strategies or healthy_strategies(), sleep=no_sleep, clock=fake_clock),
            FallbackOrchestrator(recoveries or {}, sleep=no_sleep, clock=fake_clock),
            processor,
            validator,
            cache=GatewayCache(clock=fake_clock),
            sleep=no_sleep,
            clock=fake_clock,
        )

    return factory


@pytest.fixture
def gateway_answers(mock_gateway, make_response, valid_token_pack):
    """Answer organize-pack and audit requests; ``failing`` operations raise."""

    def install(failing=()):
        async def respond(prompt, model=None, operation=None, **kwargs):
            if operation in failing:
                raise LLMError(f"{operation} backend unavailable", status=503)
            if operation == "audit":
                return make_response(AUDIT_REPORT, model="claude-3.7-sonnet", cost=0.05)
            return make_response(valid_token_pack)

        mock_gateway.request.side_effect = respond

    return install


def operations(mock_gateway):
    return [c.kwargs["operation"] for c in mock_gateway.request.await_args_list]


class TestWithoutAI:
    """Test the deterministic path."""

    @pytest.mark.asyncio
    async def test_w3c_token_set_from_extraction(self, make_orchestrator, mock_gateway):
        result = await make_orchestrator().process_website("https://acme.com", PipelineOptions(ai_enabled=False))

        assert result.status == "completed"
        token_set = result.token_set
        assert token_set["$schema"] == W3C_SCHEMA_URL
        assert token_set["$metadata"]["name"] == "acme.com"
        assert token_set["color"]["color-1"]["$value"] == "#ffffff"
        assert token_set["color"]["color-1"]["$extensions"]["contextds.usage"] == 30
        assert token_set["typography"]["font-1"]["$value"] == ["Inter"]
        assert token_set["dimension"]["space-2"]["$value"] == "16px"
        assert result.ai_metadata["models_used"] == ["none"]
        assert result.ai_metadata["total_cost_usd"] == 0.0
        assert result.brand_data == {"tone": "friendly"}
        assert result.extraction_metadata["fallbacks_triggered"] == ["visual-screenshot-analysis"]
        assert result.extraction_metadata["recovered_strategies"] == ["generic-recovery"]
        # 88.89 x 0.7
        assert result.confidence == 62
        # 4 of 5 results (including the recovery) succeeded
        assert result.completeness == 74
        assert result.reliability == 65
        mock_gateway.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_heuristic_recovery_keeps_failed_status(self, make_orchestrator):
        strategies = [
            ScriptedStrategy("static-css-extraction", 1, StrategyOutcome(False, error="network error")),
            ScriptedStrategy("brand-analysis", 7, StrategyOutcome(False, error="network error")),
        ]

        result = await make_orchestrator(strategies).process_website("https://acme.com", PipelineOptions(ai_enabled=False))

        assert result.status == "failed"
        assert result.extraction_metadata["recovered_strategies"] == ["generic-recovery", "generic-recovery"]
        assert result.token_set["metadata"]["name"] == "Fallback Design Tokens"
        assert result.token_set["metadata"]["url"] == "https://acme.com"
        assert "All extraction strategies failed" in result.errors

    @pytest.mark.asyncio
    async def test_extracting_recovery_upgrades_failed_scan(self, make_orchestrator):
        strategies = [ScriptedStrategy("static-css-extraction", 1, StrategyOutcome(False, error="network error"))]
        recoveries = {"proxy-extraction": ScriptedRecovery("proxy-extraction", StrategyOutcome(True, STATIC_DATA))}

        result = await make_orchestrator(strategies, recoveries=recoveries).process_website(
            "https://acme.com", PipelineOptions(ai_enabled=False)
        )

        assert result.status == "partial"
        assert result.extraction_metadata["recovered_strategies"] == ["proxy-extraction"]
        assert result.token_set["$schema"] == W3C_SCHEMA_URL

    @pytest.mark.asyncio
    async def test_failed_scan_skips_ai(self, make_orchestrator, mock_gateway):
        strategies = [ScriptedStrategy("static-css-extraction", 1, StrategyOutcome(False, error="network error"))]

        result = await make_orchestrator(strategies).process_website("https://acme.com")

        assert result.status == "failed"
        assert result.ai_metadata["models_used"] == ["none"]
        mock_gateway.request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_scan_without_fallbacks(self, make_orchestrator):
        strategies = [ScriptedStrategy("static-css-extraction", 1, StrategyOutcome(False, error="No CSS sources found"))]
        options = PipelineOptions(ai_enabled=False, fallbacks_enabled=False)

        result = await make_orchestrator(strategies).process_website("https://acme.com", options)

        assert result.status == "failed"
        assert result.extraction_metadata["recovered_strategies"] == []
        assert result.token_set["metadata"]["name"] == "Fallback Design Tokens"


class TestWithAI:
    """Test runs that go through two-phase processing."""

    @pytest.mark.asyncio
    async def test_validated_pack(self, make_orchestrator, gateway_answers, mock_gateway):
        gateway_answers()

        result = await make_orchestrator().process_website("https://acme.com")

        assert result.status == "completed"
        assert result.token_set["metadata"]["name"] == "Acme Design Tokens"
        assert result.prompt_pack == result.token_set["mappingHints"]
        assert result.ai_metadata["models_used"] == ["gpt-5-mini"]
        assert result.ai_metadata["total_cost_usd"] == 0.001
        assert not result.ai_metadata["compression_used"]
        assert result.quality_audit is None
        # (88.89 + 92) / 2
        assert result.confidence == 90
        assert result.completeness == 94
        assert result.reliability == 85
        assert result.errors == []
        assert operations(mock_gateway) == ["organize-pack"]

    @pytest.mark.asyncio
    async def test_options_reach_processor(self, make_orchestrator, valid_token_pack):
        orchestrator = make_orchestrator()
        orchestrator.processor = MagicMock()
        orchestrator.processor.deduplicator = None
        orchestrator.processor.process = AsyncMock(
            return_value=TwoPhaseResult(
                success=True,
                data=valid_token_pack,
                phases=[PhaseResult("organization", "gpt-4.1-mini", 100, quality=90, success=True)],
                optimization=Optimization(quality_maintained=90),
            )
        )
        options = PipelineOptions(max_budget=0.5, priority="high", quality_target=92, cache_enabled=False)

        result = await orchestrator.process_website("https://acme.com", options)

        kwargs = orchestrator.processor.process.await_args.kwargs
        assert kwargs["budget"] == pytest.approx(0.4)
        assert kwargs["priority"] == "high"
        assert kwargs["quality"] == "premium"
        assert kwargs["cacheable"] is False
        assert kwargs["compression_threshold"] == 200_000
        assert result.ai_metadata["models_used"] == ["gpt-4.1-mini"]
        assert result.ai_metadata["cache_hit_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_ai_failure_keeps_deterministic_tokens(self, make_orchestrator, gateway_answers):
        gateway_answers(failing=("organize-pack",))

        result = await make_orchestrator().process_website("https://acme.com")

        assert result.status == "completed"
        assert result.token_set["$schema"] == W3C_SCHEMA_URL
        assert result.errors == ["AI processing failed: failed"]
        assert result.ai_metadata["models_used"] == ["none"]
        assert result.confidence == 62

    @pytest.mark.asyncio
    async def test_quality_audit(self, make_orchestrator, gateway_answers, mock_gateway):
        gateway_answers()

        result = await make_orchestrator().process_website(
            "https://acme.com", PipelineOptions(quality_audit=True, max_budget=0.5)
        )

        assert operations(mock_gateway) == ["organize-pack", "audit"]
        assert result.quality_audit == AUDIT_REPORT
        assert result.ai_metadata["total_cost_usd"] == pytest.approx(0.051)

    @pytest.mark.asyncio
    async def test_audit_needs_budget(self, make_orchestrator, gateway_answers, mock_gateway):
        gateway_answers()

        await make_orchestrator().process_website("https://acme.com", PipelineOptions(quality_audit=True, max_budget=0.1))

        assert operations(mock_gateway) == ["organize-pack"]

    @pytest.mark.asyncio
    async def test_deduplication_before_processing(self, make_orchestrator, gateway_answers, mock_gateway):
        gateway_answers()

        async def deduplicate(tokens):
            keep = [t for t in tokens if t.value != "#3b82f6"]
            count = len(tokens) - len(keep)
            return DeduplicationResult(
                tokens, keep, [], reduction={"count": count, "percentage": round(count / len(tokens) * 100, 2)}
            )

        deduplicator = MagicMock()
        deduplicator.deduplicate = AsyncMock(side_effect=deduplicate)
        snapshots = []

        result = await make_orchestrator(deduplicator=deduplicator).process_website(
            "https://acme.com", on_progress=snapshots.append
        )

        assert result.ai_metadata["deduplication_applied"]
        assert "#3b82f6" not in mock_gateway.request.await_args.args[0]
        assert snapshots[-1]["metrics"]["tokens_extracted"] == 4


class TestFailureAndProgress:
    """Test the never-raise contract and progress delivery."""

    @pytest.mark.asyncio
    async def test_crash_returns_emergency_pack(self, make_orchestrator):
        engine = MagicMock()
        engine.user_agent = None
        engine.run_context = AsyncMock(side_effect=RuntimeError("browser pool exhausted"))
        orchestrator = make_orchestrator(engine=engine)
        snapshots = []

        result = await orchestrator.process_website("https://acme.com", on_progress=snapshots.append)

        assert result.status == "failed"
        assert result.token_set["metadata"]["name"] == "Fallback Design Tokens"
        assert result.errors == ["browser pool exhausted"]
        assert snapshots[-1]["phase"] == "failed"
        assert orchestrator.active_pipelines() == {}
        assert orchestrator.analytics()["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_progress_phases(self, make_orchestrator, gateway_answers):
        gateway_answers()
        snapshots = []

        await make_orchestrator().process_website("https://acme.com", on_progress=snapshots.append)

        phases = [s["phase"] for s in snapshots]
        assert phases[0] == "extraction"
        assert "ai-processing" in phases
        assert phases[-2:] == ["validation", "completed"]
        overall = [s["overall_progress"] for s in snapshots]
        assert overall == sorted(overall)
        assert overall[-1] == 100
        assert "Attempting recovery for visual-screenshot-analysis" in [s["current_step"] for s in snapshots]
        assert snapshots[-1]["metrics"]["strategies_completed"] == 4

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, make_orchestrator):
        received = []

        async def on_progress(snapshot):
            received.append(snapshot["phase"])

        await make_orchestrator().process_website("https://acme.com", PipelineOptions(ai_enabled=False), on_progress)
        await asyncio.sleep(0)

        assert received[-1] == "completed"

    @pytest.mark.asyncio
    async def test_raising_progress_callback_is_ignored(self, make_orchestrator):
        def on_progress(snapshot):
            raise ValueError("dashboard disconnected")

        result = await make_orchestrator().process_website(
            "https://acme.com", PipelineOptions(ai_enabled=False), on_progress
        )

        assert result.status == "completed"


class TestPresets:
    """Test quick, premium, budget-aware and batch scans."""

    @pytest.fixture
    def orchestrator(self, make_orchestrator):
        """Orchestrator whose process_website only records its options."""
        orchestrator = make_orchestrator()
        orchestrator.process_website = AsyncMock(return_value=PipelineResult("https://acme.com", "completed", {}))
        return orchestrator

    def options(self, orchestrator):
        return orchestrator.process_website.await_args.args[1]

    @pytest.mark.asyncio
    async def test_quick_scan(self, orchestrator):
        await orchestrator.quick_scan("https://acme.com")

        options = self.options(orchestrator)
        assert options.max_budget == 0.05
        assert options.priority == "low"
        assert not options.deduplication_enabled

    @pytest.mark.asyncio
    async def test_premium_scan(self, orchestrator):
        await orchestrator.premium_scan("https://acme.com")

        options = self.options(orchestrator)
        assert options.quality_audit
        assert options.priority == "critical"
        assert options.quality_level == "premium"

    @pytest.mark.asyncio
    async def test_budget_aware_standard(self, orchestrator):
        # 39 left over 13 days, half of 3.00 capped at 0.15
        await orchestrator.budget_aware_scan("https://acme.com", 100, 61, today=date(2026, 10, 18))

        options = self.options(orchestrator)
        assert options.max_budget == 0.15
        assert options.quality_target == 80
        assert not options.quality_audit

    @pytest.mark.asyncio
    async def test_budget_aware_basic(self, orchestrator):
        await orchestrator.budget_aware_scan("https://acme.com", 10, 9.87, today=date(2026, 10, 18))

        options = self.options(orchestrator)
        assert options.max_budget == pytest.approx(0.005)
        assert options.quality_target == 70
        assert options.quality_level == "basic"

    @pytest.mark.asyncio
    async def test_budget_aware_overspent(self, orchestrator):
        await orchestrator.budget_aware_scan("https://acme.com", 10, 12, today=date(2026, 10, 31))

        assert self.options(orchestrator).max_budget == 0.0

    @pytest.mark.asyncio
    async def test_batch_scan(self, orchestrator, no_sleep):
        async def scan(url, options):
            if "broken" in url:
                raise RuntimeError("scan crashed")
            result = PipelineResult(url, "completed", {}, ai_metadata={"total_cost_usd": 0.02})
            if "slow" in url:
                result.errors.append("AI processing failed: failed")
            return result

        orchestrator.process_website.side_effect = scan
        urls = ["https://acme.com", "https://slow.dev", "https://broken.io"]

        batch = await orchestrator.batch_scan(urls, max_concurrency=2, total_budget=0.9)

        assert [b.url for b in batch] == urls
        assert batch[0].error is None
        assert batch[0].cost == 0.02
        assert batch[1].error == "AI processing failed: failed"
        assert batch[2].result is None
        assert batch[2].error == "scan crashed"
        assert self.options(orchestrator).max_budget == pytest.approx(0.3)
        assert no_sleep.await_args_list == [call(1.0)]

    @pytest.mark.asyncio
    async def test_batch_scan_empty(self, orchestrator):
        assert await orchestrator.batch_scan([]) == []


class TestMonitoring:
    """Test analytics and shutdown."""

    @pytest.mark.asyncio
    async def test_analytics(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.process_website("https://acme.com", PipelineOptions(ai_enabled=False))

        analytics = orchestrator.analytics()

        assert analytics["total_completed"] == 1
        assert analytics["success_rate"] == 100.0
        assert analytics["quality_distribution"]["60-69"] == 1
        assert analytics["active"] == 0
        assert analytics["processing"]["total_processed"] == 0

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, make_orchestrator, monkeypatch):
        monkeypatch.setattr(orchestrator_module, "HISTORY_LIMIT", 2)
        orchestrator = make_orchestrator()
        for _ in range(3):
            await orchestrator.process_website("https://acme.com", PipelineOptions(ai_enabled=False))

        assert orchestrator.analytics()["total_completed"] == 2

    @pytest.mark.asyncio
    async def test_close_releases_resources(self, make_orchestrator, mock_gateway):
        broken = MagicMock()
        broken.close = AsyncMock(side_effect=RuntimeError("already closed"))
        browser = MagicMock()
        browser.close = AsyncMock()
        orchestrator = make_orchestrator()
        orchestrator.resources = [broken, browser]

        await orchestrator.close()

        mock_gateway.close.assert_awaited_once()
        browser.close.assert_awaited_once()


class TestScores:
    """Test the result score helpers."""

    def test_confidence(self):
        assert overall_confidence(80, None) == 56
        failed = TwoPhaseResult(success=False, data=None)
        assert overall_confidence(80, failed) == 56

    def test_completeness(self):
        assert completeness_score([], None) == 50

    def test_reliability(self):
        cached = TwoPhaseResult(success=True, data={}, optimization=Optimization(strategies_used=["cache"]))

        assert reliability_score(0, cached) == 100
        assert reliability_score(2, None) == 60
        assert reliability_score(20, None) == 0

    @pytest.mark.parametrize("target,level", [(95, "premium"), (90, "premium"), (80, "standard"), (75, "standard"), (74, "basic")])
    def test_quality_level(self, target, level):
        assert PipelineOptions(quality_target=target).quality_level == level


class TestFactory:
    """Test default wiring."""

    def test_build_with_injected_services(self, catalog):
        llm_client = MagicMock()
        llm_client.close = AsyncMock()

        orchestrator = build_orchestrator(
            settings=Settings(),
            http=MagicMock(),
            browser=MagicMock(),
            llm_client=llm_client,
            embedder=MagicMock(),
            catalog=catalog,
        )

        assert isinstance(orchestrator, PipelineOrchestrator)
        assert len(orchestrator.engine.strategies) == 10
        assert orchestrator.engine.strategies[0].name == "static-css-extraction"
        assert orchestrator.processor.deduplicator is not None
        assert orchestrator.processor.validator.gateway is orchestrator.processor.gateway
        assert orchestrator.resources == []
        assert orchestrator.cache.profile == "default"
