"""
Unit tests for the gateway response cache.

Tests libs/gateway/gateway_cache.py
"""

from unittest.mock import AsyncMock

import pytest

from libs.gateway.gateway_cache import (
    CacheablePrompt,
    GatewayCache,
    fingerprint_similarity,
    semantic_features,
)

HOUR_S = 3600


def prompt(user, operation="organize-pack", model="gpt-5-mini", **kwargs):
    return CacheablePrompt(
        system_prompt="You organize design tokens.",
        user_prompt=user,
        model=model,
        operation=operation,
        parameters={"temperature": 0.3, "max_tokens": 4096},
        **kwargs,
    )


def colors_prompt(count, domain="acme.com"):
    palette = " ".join(f"#{i:06x}" for i in range(count))
    return prompt(f"Organize tokens for {domain}: {palette}")


@pytest.fixture
def cache(fake_clock):
    """Default-profile cache on a fake clock."""
    return GatewayCache(clock=fake_clock)


class TestKeys:
    """Test semantic key generation."""

    def test_key_layout(self, cache):
        key = cache.generate_key(prompt("Organize tokens for acme.com"))

        parts = key.split("|")
        assert len(parts) == 6
        assert parts[:3] == ["gpt-5-mini", "organize-pack", "1.0.0"]
        assert parts[3].startswith("sys:")
        assert parts[4].startswith("user:")
        assert parts[5].startswith("params:")

    def test_order_and_whitespace_do_not_change_key(self, cache):
        a = prompt("Organize tokens for acme.com: #111111 #222222 16px")
        b = prompt("acme.com   #222222\n16px  #111111 organize these tokens")

        assert cache.generate_key(a) == cache.generate_key(b)

    def test_plain_text_fingerprint_normalizes_whitespace(self, cache):
        a = prompt("compress   this\n data", operation="compress")
        b = prompt("compress this data", operation="compress")
        c = prompt("compress that data", operation="compress")

        assert cache.generate_key(a) == cache.generate_key(b)
        assert cache.generate_key(a) != cache.generate_key(c)

    def test_parameters_change_key(self, cache):
        a = prompt("Organize tokens for acme.com")
        b = prompt("Organize tokens for acme.com")
        b.parameters = {"temperature": 0.9}

        assert cache.generate_key(a) != cache.generate_key(b)

    def test_semantic_features(self):
        features = semantic_features("Tokens for https://www.acme.com using Tailwind: 12px 16px", "organize-pack")

        assert features == ["domain:www.acme.com", "framework:tailwind", "spacing:0"]

    def test_fingerprint_similarity(self):
        assert fingerprint_similarity(("colors:5", "domain:acme.com"), ("colors:10", "domain:acme.com")) == 1.0
        assert fingerprint_similarity(("colors:5", "domain:acme.com"), ("colors:20", "domain:acme.com")) == 0.5
        assert fingerprint_similarity((), ()) == 0.0


class TestGetPut:
    """Test storage, hits and expiry."""

    @pytest.mark.asyncio
    async def test_put_then_hit(self, cache):
        p = prompt("Organize tokens for acme.com")
        key = await cache.put(p, {"tokens": []}, {"cost": 0.002})

        entry = await cache.get(p)

        assert entry.key == key
        assert entry.response == {"tokens": []}
        assert entry.hit_count == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_ttl_is_per_operation(self, cache, fake_clock):
        p = prompt("Organize tokens for acme.com")
        await cache.put(p, {"tokens": []})

        fake_clock.advance(24 * HOUR_S - 1)
        assert await cache.get(p) is not None

        fake_clock.advance(1)
        assert await cache.get(p) is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_hits_do_not_extend_ttl(self, cache, fake_clock):
        p = prompt("compress this", operation="compress")
        await cache.put(p, "short")

        fake_clock.advance(2 * HOUR_S)
        assert await cache.get(p) is not None
        fake_clock.advance(HOUR_S)

        assert await cache.get(p) is None

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, cache, fake_clock):
        p = prompt("Organize tokens for acme.com", ttl_ms=1000)
        await cache.put(p, {})

        fake_clock.advance(1)

        assert await cache.get(p) is None

    @pytest.mark.asyncio
    async def test_non_cacheable(self, cache):
        p = prompt("Organize tokens for acme.com", cacheable=False)

        assert await cache.put(p, {}) is None
        assert await cache.get(p) is None
        assert len(cache) == 0
        assert cache.analytics()["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_eviction_keeps_most_recent(self, fake_clock):
        cache = GatewayCache(clock=fake_clock, max_entries=2)
        prompts = [prompt(f"compress item {i}", operation="compress") for i in range(3)]
        for p in prompts:
            await cache.put(p, {"item": p.user_prompt})
            fake_clock.advance(1)

        assert len(cache) == 2
        assert await cache.get(prompts[0]) is None
        assert await cache.get(prompts[2]) is not None


class TestSimilarity:
    """Test the near-match index."""

    @pytest.mark.asyncio
    async def test_similar_fingerprint_hits(self, cache):
        await cache.put(colors_prompt(5), {"tokens": "five"})

        entry = await cache.get(colors_prompt(10))

        assert entry is not None
        assert entry.response == {"tokens": "five"}
        assert cache.analytics()["similar_hits"] == 1

    @pytest.mark.asyncio
    async def test_other_domain_does_not_match(self, cache):
        await cache.put(colors_prompt(5), {"tokens": "five"})

        assert await cache.get(colors_prompt(5, domain="other.org")) is None

    @pytest.mark.asyncio
    async def test_other_model_does_not_match(self, cache):
        await cache.put(colors_prompt(5), {"tokens": "five"})
        other = colors_prompt(10)
        other.model = "gpt-4.1-mini"

        assert await cache.get(other) is None

    @pytest.mark.asyncio
    async def test_development_profile_disables_similarity(self, fake_clock):
        cache = GatewayCache(profile="development", clock=fake_clock)
        await cache.put(colors_prompt(5), {"tokens": "five"})

        assert await cache.get(colors_prompt(10)) is None
        assert cache.ttl_for("organize-pack") == 30 * 60 * 1000

    def test_unknown_profile_uses_default(self, fake_clock):
        cache = GatewayCache(profile="staging", clock=fake_clock)

        assert cache.profile == "default"
        assert cache.ttl_for("organize-pack") == 24 * HOUR_S * 1000


class TestMaintenance:
    """Test invalidation, optimization and warming."""

    @pytest.mark.asyncio
    async def test_invalidate_by_domain(self, cache):
        await cache.put(prompt("Organize tokens for acme.com"), {})
        await cache.put(prompt("Organize tokens for other.org"), {})

        assert await cache.invalidate(domain="acme.com") == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_invalidate_by_age(self, cache, fake_clock):
        await cache.put(prompt("Organize tokens for acme.com"), {})
        fake_clock.advance(10)

        assert await cache.invalidate(max_age_ms=20_000) == 0
        assert await cache.invalidate(max_age_ms=5_000) == 1

    @pytest.mark.asyncio
    async def test_invalidate_by_operation(self, cache):
        await cache.put(prompt("Organize tokens for acme.com"), {})
        await cache.put(prompt("compress this", operation="compress"), {})

        assert await cache.invalidate(operation="compress") == 1

    @pytest.mark.asyncio
    async def test_optimize_removes_expired(self, cache, fake_clock):
        await cache.put(prompt("compress this", operation="compress"), {"a": 1})
        await cache.put(prompt("Organize tokens for acme.com"), {"b": 2})
        fake_clock.advance(4 * HOUR_S)

        result = await cache.optimize()

        assert result == {"entries_removed": 1, "space_saved": len('{"a": 1}') * 2}
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_warm_skips_existing_entries(self, cache):
        producer = AsyncMock(return_value=({"tokens": []}, {"cost": 0.01}))

        first = await cache.warm(["acme.com", "other.org"], ["organize-pack"], producer)
        second = await cache.warm(["acme.com", "other.org"], ["organize-pack"], producer)

        assert first == {"warmed": 2, "failed": 0}
        assert second == {"warmed": 0, "failed": 0}
        assert producer.await_count == 2

    @pytest.mark.asyncio
    async def test_warm_counts_failures(self, cache):
        producer = AsyncMock(side_effect=RuntimeError("backend down"))

        result = await cache.warm(["acme.com"], ["organize-pack"], producer)

        assert result == {"warmed": 0, "failed": 1}
        assert len(cache) == 0


class TestAnalytics:
    """Test hit-rate and health reporting."""

    @pytest.mark.asyncio
    async def test_analytics(self, cache):
        p = prompt("Organize tokens for acme.com")
        await cache.put(p, {}, {"cost": 0.004})
        await cache.get(p)
        await cache.get(prompt("Organize tokens for other.org"))

        analytics = cache.analytics()

        assert analytics["total_requests"] == 2
        assert analytics["cache_hits"] == 1
        assert analytics["cache_misses"] == 1
        assert analytics["hit_rate"] == 50.0
        assert analytics["cost_savings"] == 0.004
        assert analytics["hot_prompts"][0]["hits"] == 1

    def test_empty_cache_is_healthy(self, cache):
        health = cache.health_check()

        assert health["healthy"]
        assert cache.stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_low_hit_rate_is_reported(self, cache):
        for i in range(5):
            await cache.get(prompt(f"compress item {i}", operation="compress"))

        health = cache.health_check()

        assert not health["healthy"]
        assert "Low cache hit rate" in health["issues"]

    @pytest.mark.asyncio
    async def test_stale_entries_are_reported(self, cache, fake_clock):
        await cache.put(prompt("research storybook", operation="research"), {})
        fake_clock.advance(25 * HOUR_S)

        health = cache.health_check()

        assert "Many stale cache entries" in health["issues"]
