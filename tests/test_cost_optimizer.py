"""
Unit tests for token accounting and compression.

Tests libs/compression/cost_optimizer.py
"""

from unittest.mock import call

import pytest

from libs.compression import cost_optimizer
from libs.compression.cost_optimizer import CostOptimizer, detect_scale


class WhitespaceEncoder:
    """Stands in for the tiktoken encoding: one token per word."""

    def encode(self, text, disallowed_special=()):
        return text.split()


@pytest.fixture
def optimizer(catalog):
    """CostOptimizer over the shipped model registry."""
    return CostOptimizer(catalog)


class TestTokenCounting:
    """Test exact and approximate token counts."""

    def test_approximation_without_model(self, optimizer):
        counted = optimizer.count_tokens("abcdefgh")

        assert counted.count == 2
        assert not counted.exact
        assert counted.characters == 8
        # Default model (gpt-5-mini) input pricing
        assert counted.estimated_cost_usd == pytest.approx(2 / 1_000_000 * 0.25)

    def test_exact_for_openai_models(self, optimizer, monkeypatch):
        monkeypatch.setattr(cost_optimizer, "_ENCODER", WhitespaceEncoder())

        counted = optimizer.count_tokens("hello design tokens", "gpt-5-mini")

        assert counted.count == 3
        assert counted.exact

    def test_approximation_for_other_models(self, optimizer, monkeypatch):
        monkeypatch.setattr(cost_optimizer, "_ENCODER", WhitespaceEncoder())

        counted = optimizer.count_tokens("hello design tokens", "claude-3.7-sonnet")

        assert counted.count == 5
        assert not counted.exact

    def test_encoder_unavailable_falls_back(self, optimizer, monkeypatch):
        monkeypatch.setattr(cost_optimizer, "_ENCODER", False)

        counted = optimizer.count_tokens("hello design tokens", "gpt-5-mini")

        assert counted.count == 5
        assert not counted.exact

    def test_counts_are_cached(self, optimizer):
        first = optimizer.count_tokens("same text", "gemini-2.5-flash-lite")
        second = optimizer.count_tokens("same text", "gemini-2.5-flash-lite")

        assert first is second

    def test_payload_tokens_use_indented_json(self, optimizer):
        # '{\n  "a": 1\n}' is 12 characters
        assert optimizer.count_payload_tokens({"a": 1}).count == 3


class TestCostEstimates:
    """Test per-model and per-operation cost estimation."""

    def test_estimate_cost(self, optimizer):
        assert optimizer.estimate_cost("claude-3.7-sonnet", 1_000_000, 1_000_000) == pytest.approx(18.0)

    def test_compression_prefers_specialized_model(self, optimizer):
        estimate = optimizer.estimate_operation_cost("compress", 100_000)

        assert estimate["recommended_model"] == "gpt-5-nano"
        assert estimate["estimated_cost"] == pytest.approx(0.0058)
        assert estimate["alternatives"][0]["model"] == "gpt-5-nano"
        costs = [alt["cost"] for alt in estimate["alternatives"]]
        assert costs == sorted(costs)

    def test_oversized_input_skips_models_that_do_not_fit(self, optimizer):
        estimate = optimizer.estimate_operation_cost("compress", 300_000)

        assert estimate["recommended_model"] == "gemini-2.5-flash-lite"


class TestTextCompression:
    """Test lossy text compression."""

    def test_empty_text(self, optimizer):
        result = optimizer.compress("")

        assert result.quality == 100.0
        assert result.reduction == 0.0
        assert result.strategies_applied == []

    def test_redundant_lines_removed_and_critical_kept(self, optimizer):
        text = "\n".join(["colors: #3b82f6 primary"] + ["div.item { margin: 4px; }"] * 200)

        result = optimizer.compress(text)

        assert "colors: #3b82f6 primary" in result.compressed
        assert result.strategies_applied[0].startswith("remove-redundancy")
        assert result.reduction > 0.9
        assert result.compressed_tokens < result.original_tokens
        # 50 + 4 x 10 preserved, -20 for over-aggressive reduction
        assert result.quality == 70.0

    def test_failure_falls_back_to_truncation(self, optimizer, monkeypatch):
        def broken(text, preserve):
            raise ValueError("bad pattern")

        monkeypatch.setattr(optimizer, "_remove_redundancy", broken)
        text = "\n".join(["spacing: 4px 8px"] + [f"line {i}" for i in range(20)])

        result = optimizer.compress(text, target_ratio=0.5)

        assert result.strategies_applied == ["truncation"]
        assert result.quality == 60.0
        assert result.compressed.startswith("spacing: 4px 8px")
        assert "line 9" in result.compressed
        assert "line 10" not in result.compressed
        assert result.compressed.endswith("[Content compressed for cost optimization]")


class TestDeterministicCompression:
    """Test structural compression of payloads."""

    def test_long_lists_are_summarized(self, optimizer):
        data = {
            "colors": ["#%06x" % i for i in range(20)],
            "spacing": ["4px", "8px"],
            "nested": {"sizes": [f"{i * 4}px" for i in range(1, 13)]},
            "name": "acme",
        }

        compressed = optimizer.deterministic_compress(data)

        colors = compressed["colors"]
        assert colors["summary"] == "20 items"
        assert colors["samples"] == data["colors"][:5]
        assert colors["unique_count"] == 20
        assert colors["patterns"]["color_types"]["hex"] == 20
        assert compressed["spacing"] == ["4px", "8px"]
        sizes = compressed["nested"]["sizes"]["patterns"]["spacing"]
        assert sizes["range"] == {"min": 4.0, "max": 48.0}
        assert sizes["scale"] == {"type": "multiplicative", "base": 4}
        assert compressed["name"] == "acme"

    def test_typography_patterns(self, optimizer):
        patterns = optimizer.extract_patterns(
            [{"family": "Inter", "size": "16px"}, {"family": "Inter", "size": "24px"}, {"family": "Mono"}]
        )

        assert patterns["typography"] == {"families": ["Inter", "Mono"], "size_range": {"min": 16.0, "max": 24.0}}

    @pytest.mark.parametrize(
        "values,expected",
        [
            ([1, 2], {"type": "arbitrary"}),
            ([8, 16, 24], {"type": "multiplicative", "base": 8}),
            ([16, 32, 48, 64], {"type": "multiplicative", "base": 16}),
            ([4, 8, 12], {"type": "multiplicative", "base": 4}),
            ([3, 6, 12, 24], {"type": "geometric", "ratio": 2.0}),
            ([3, 7, 50], {"type": "arbitrary"}),
        ],
    )
    def test_detect_scale(self, values, expected):
        assert detect_scale(values) == expected


class TestBatchProcess:
    """Test grouped concurrent processing."""

    @pytest.mark.asyncio
    async def test_groups_with_pause_and_isolated_failures(self, optimizer, no_sleep):
        async def worker(item):
            if item == 3:
                raise RuntimeError("scan failed")
            return item * 2

        results = await optimizer.batch_process([1, 2, 3, 4, 5], worker, concurrency=2, delay_s=0.5, sleep=no_sleep)

        assert [r["result"] for r in results] == [2, 4, None, 8, 10]
        assert results[2]["error"] == "scan failed"
        assert no_sleep.await_args_list == [call(0.5), call(0.5)]
