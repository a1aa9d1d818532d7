"""
Unit tests for smart model selection.

Tests libs/llm/model_selector.py
"""

import pytest

from libs.llm.model_selector import SelectionCriteria, SmartModelSelector


@pytest.fixture
def selector(catalog):
    """Selector over the shipped model registry."""
    return SmartModelSelector(catalog)


class TestSelection:
    """Test candidate filtering and scoring."""

    def test_audit_goes_to_quality_assurance_model(self, selector):
        recommendation = selector.select(SelectionCriteria(input_size=20_000, operation="audit"))

        assert recommendation.model == "claude-3.7-sonnet"
        assert "Specialized for audit operations" in recommendation.reasoning

    def test_critical_audit_without_budget_is_most_reliable(self, selector, catalog):
        recommendation = selector.select(
            SelectionCriteria(input_size=20_000, operation="audit", priority="critical")
        )

        assert recommendation.model == catalog.most_reliable().name
        assert recommendation.model == "claude-3.7-sonnet"

    def test_small_organization_prefers_cheap_specialist(self, selector):
        recommendation = selector.select(SelectionCriteria(input_size=20_000, operation="organize-pack"))

        assert recommendation.model == "gpt-5-mini"
        assert recommendation.confidence == 100.0
        assert [alt.model for alt in recommendation.alternatives] == ["gpt-4.1-mini"]
        assert recommendation.optimizations.caching_recommended
        assert not recommendation.optimizations.compression_needed

    def test_oversized_input_uses_compression_capable_model(self, selector):
        recommendation = selector.select(SelectionCriteria(input_size=2_000_000, operation="compress"))

        assert recommendation.model == "gpt-5-nano"
        assert recommendation.optimizations.compression_needed

    def test_embedding_can_batch(self, selector):
        recommendation = selector.select(SelectionCriteria(input_size=1_000, operation="embed"))

        assert recommendation.optimizations.batching_possible

    def test_selection_error_falls_back_to_default(self, selector, monkeypatch):
        def broken(criteria):
            raise RuntimeError("scoring failed")

        monkeypatch.setattr(selector, "analyze_complexity", broken)

        recommendation = selector.select(SelectionCriteria(input_size=300_000, operation="organize-pack"))

        assert recommendation.model == "gpt-5-mini"
        assert recommendation.confidence == 50
        assert recommendation.reasoning == ["Fallback selection due to error"]
        assert recommendation.optimizations.compression_needed

    def test_budget_tier(self, selector):
        recommendation = selector.select_for_budget_tier("free", "organize-pack", 20_000)

        assert recommendation.model == "gpt-5-mini"
        assert recommendation.estimated_cost <= 0.01


class TestComplexity:
    """Test size-based complexity levels and estimates."""

    @pytest.mark.parametrize(
        "size,score,level",
        [
            (5_000, 20, "simple"),
            (20_000, 40, "simple"),
            (100_000, 60, "moderate"),
            (300_000, 80, "extreme"),
            (600_000, 95, "extreme"),
        ],
    )
    def test_levels(self, selector, size, score, level):
        complexity = selector.analyze_complexity(SelectionCriteria(input_size=size, operation="organize-pack"))

        assert (complexity.score, complexity.level) == (score, level)

    def test_output_size_estimate(self):
        assert SmartModelSelector.estimate_output_size(SelectionCriteria(input_size=10_000, operation="x")) == 1000
        assert SmartModelSelector.estimate_output_size(SelectionCriteria(input_size=900_000, operation="x")) == 4000
        assert SmartModelSelector.estimate_output_size(SelectionCriteria(1, "x", output_size=77)) == 77

    def test_latency_estimate(self, selector, catalog):
        criteria = SelectionCriteria(input_size=300_000, operation="organize-pack")
        complexity = selector.analyze_complexity(criteria)

        assert selector.estimate_latency(catalog.require("gpt-5-mini"), criteria, complexity) == 19500


class TestFallbackAndLearning:
    """Test re-selection after failures and outcome history."""

    def test_format_error_avoids_failed_model(self, selector):
        criteria = SelectionCriteria(input_size=20_000, operation="organize-pack")

        recommendation = selector.select_fallback(criteria, "gpt-5-mini", "invalid JSON format")

        assert recommendation.model == "gpt-4.1-mini"

    def test_context_error_switches_to_compression(self, selector):
        criteria = SelectionCriteria(input_size=20_000, operation="organize-pack")

        recommendation = selector.select_fallback(criteria, "gpt-5-mini", "context length exceeded")

        assert recommendation.model == "gpt-5-nano"

    def test_poor_history_lowers_score(self, selector):
        for _ in range(5):
            selector.record_outcome("gpt-5-mini", "organize-pack", success=False, latency_ms=1000, cost=0.01)

        recommendation = selector.select(SelectionCriteria(input_size=20_000, operation="organize-pack"))

        assert recommendation.model == "gpt-4.1-mini"

    def test_performance_report(self, selector):
        selector.select(SelectionCriteria(input_size=20_000, operation="audit"))
        selector.record_outcome("claude-3.7-sonnet", "audit", success=True, latency_ms=4000, quality=90, cost=0.2)
        selector.record_outcome("claude-3.7-sonnet", "audit", success=False, latency_ms=2000, cost=0.1)

        report = selector.performance_report()

        assert report["selections"] == {"claude-3.7-sonnet": 1}
        claude = report["models"]["claude-3.7-sonnet"]
        assert claude["requests"] == 2
        assert claude["success_rate"] == 0.5
        assert claude["avg_latency_ms"] == 3000
        assert claude["avg_quality"] == 90
        assert claude["total_cost"] == pytest.approx(0.3)
