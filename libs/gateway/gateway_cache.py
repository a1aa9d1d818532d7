"""
Gateway Cache - semantics-aware cache for AI responses.

Keys combine model, operation, recipe version, a hash of the system prompt,
a hash of the user prompt's semantic fingerprint and a hash of the sampling
parameters:

    gpt-5-mini|organize-pack|1.0.0|sys:1a2b3c4d|user:0f1e2d3c4b5a|params:9a8b7c

The fingerprint is a sorted list of features pulled from the user prompt
(domain, bucketed color/px counts, framework hints for organize-pack; artifact
or scope words for research/audit; a whitespace-normalized text hash for
everything else), so prompts that differ only in ordering or whitespace land
on the same key. A second index lets near-identical fingerprints (>= 85%
shared features, same model and operation) reuse an entry.

TTL is per operation, fixed at write time and never extended by hits.
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
DEFAULT_TTL_MS = 12 * HOUR_MS
SIMILARITY_THRESHOLD = 0.85
MAX_ENTRIES = 1000
HOT_PROMPT_LIMIT = 10

TTL_PROFILES = {
    "default": {
        "organize-pack": 24 * HOUR_MS,
        "research": 7 * DAY_MS,
        "audit": 12 * HOUR_MS,
        "compress": 3 * HOUR_MS,
        "embed": 30 * DAY_MS,
        "classify": 12 * HOUR_MS,
    },
    "production": {
        "organize-pack": 6 * HOUR_MS,
        "research": 24 * HOUR_MS,
        "audit": 3 * HOUR_MS,
        "compress": 1 * HOUR_MS,
        "embed": 7 * DAY_MS,
        "classify": 12 * HOUR_MS,
    },
    "development": {
        "organize-pack": 30 * 60 * 1000,
        "research": HOUR_MS,
        "audit": 15 * 60 * 1000,
        "compress": 10 * 60 * 1000,
        "embed": HOUR_MS,
        "classify": 30 * 60 * 1000,
    },
}

DOMAIN_RE = re.compile(r"(?:https?://)?([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
HEX_COLOR_RE = re.compile(r"#[0-9a-fA-F]{6}")
PX_RE = re.compile(r"\d+px")
WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class CacheablePrompt:
    """A prompt as seen by the cache."""
    system_prompt: str
    user_prompt: str
    model: str
    operation: str
    parameters: dict[str, Any] = field(default_factory=dict)  # temperature, max_tokens, response_format
    version: str = "1.0.0"
    cacheable: bool = True
    ttl_ms: Optional[int] = None


@dataclass
class CachedResponse:
    response: Any
    content_hash: str
    created_at: float  # clock seconds
    usage: dict[str, float]  # input_tokens, output_tokens, cost
    operation: str
    model: str = ""
    key: str = ""
    features: tuple = ()
    ttl_ms: int = DEFAULT_TTL_MS
    hit_count: int = 0
    last_accessed_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now >= self.created_at + self.ttl_ms / 1000


def _md5(text: str, length: int) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:length]


# =============================================================================
# Semantic fingerprint
# =============================================================================


def semantic_features(user_prompt: str, operation: str) -> list[str]:
    """Order- and whitespace-insensitive features of a user prompt, sorted."""
    features = []
    lowered = user_prompt.lower()

    if operation == "organize-pack":
        domain = DOMAIN_RE.search(user_prompt)
        if domain:
            features.append(f"domain:{domain.group(1).lower()}")
        colors = len(HEX_COLOR_RE.findall(user_prompt))
        if colors:
            features.append(f"colors:{colors // 5 * 5}")
        lengths = len(PX_RE.findall(user_prompt))
        if lengths:
            features.append(f"spacing:{lengths // 10 * 10}")
        for framework in ("tailwind", "material"):
            if framework in lowered:
                features.append(f"framework:{framework}")
    elif operation == "research":
        for artifact, label in (("storybook", "storybook"), ("github", "github"), ("documentation", "docs")):
            if artifact in lowered:
                features.append(f"artifact:{label}")
    elif operation == "audit":
        for scope in ("accessibility", "consistency", "naming"):
            if scope in lowered:
                features.append(f"scope:{scope}")

    if not features:
        normalized = WHITESPACE_RE.sub(" ", user_prompt).strip()
        features.append(f"text:{_md5(normalized, 16)}")
    return sorted(features)


def _features_similar(a: str, b: str) -> bool:
    if a == b:
        return True
    kind_a, _, value_a = a.partition(":")
    kind_b, _, value_b = b.partition(":")
    if kind_a != kind_b:
        return False
    if kind_a == "colors":
        return abs(int(value_a) - int(value_b)) <= 5
    if kind_a == "spacing":
        return abs(int(value_a) - int(value_b)) <= 10
    if kind_a == "domain":
        return value_a.split(".")[-2:] == value_b.split(".")[-2:]
    return False


def fingerprint_similarity(a: tuple, b: tuple) -> float:
    """Share of features in ``a`` that have an equal or similar feature in ``b``."""
    total = max(len(a), len(b))
    if not total:
        return 0.0
    matches = sum(1 for feature in a if any(_features_similar(feature, other) for other in b))
    return matches / total


# =============================================================================
# Cache
# =============================================================================


class GatewayCache:
    """
    In-process response cache for the AI gateway.

    Features:
    - Semantic keys (fingerprinted user prompts)
    - Similarity index per model/operation
    - Per-operation TTL with production/development presets
    - Hit tracking, savings and hot-prompt analytics
    """

    def __init__(
        self,
        profile: str = "default",
        clock: Callable[[], float] = time.time,
        max_entries: int = MAX_ENTRIES,
    ):
        self._clock = clock
        self.max_entries = max_entries
        self._entries: dict[str, CachedResponse] = {}
        self._lock = asyncio.Lock()
        self._requests = 0
        self._hits = 0
        self._misses = 0
        self._similar_hits = 0
        self._savings = 0.0
        self.configure(profile)

    def configure(self, profile: str) -> None:
        if profile not in TTL_PROFILES:
            logger.warning(f"[GatewayCache] Unknown profile '{profile}', using default")
            profile = "default"
        self.profile = profile
        self.ttl_by_operation = dict(TTL_PROFILES[profile])
        # Near matches make results harder to predict while iterating on prompts
        self.semantic_similarity = profile != "development"

    def ttl_for(self, operation: str) -> int:
        return self.ttl_by_operation.get(operation, DEFAULT_TTL_MS)

    def generate_key(self, prompt: CacheablePrompt) -> str:
        features = semantic_features(prompt.user_prompt, prompt.operation)
        params = json.dumps(prompt.parameters, sort_keys=True, default=str)
        return "|".join(
            [
                prompt.model,
                prompt.operation,
                prompt.version,
                f"sys:{_md5(prompt.system_prompt, 8)}",
                f"user:{_md5('|'.join(features), 12)}",
                f"params:{_md5(params, 6)}",
            ]
        )

    async def get(self, prompt: CacheablePrompt) -> Optional[CachedResponse]:
        """Exact key within TTL, else a similar fingerprint, else None."""
        async with self._lock:
            self._requests += 1
            if not prompt.cacheable:
                self._misses += 1
                return None

            now = self._clock()
            key = self.generate_key(prompt)
            entry = self._entries.get(key)
            if entry is not None and entry.expired(now):
                del self._entries[key]
                logger.debug(f"[GatewayCache] Evicted expired entry {key[:40]}")
                entry = None

            if entry is None and self.semantic_similarity:
                entry = self._find_similar(prompt, now)
                if entry is not None:
                    self._similar_hits += 1

            if entry is None:
                self._misses += 1
                logger.debug(f"[GatewayCache] Miss: {prompt.operation} ({prompt.model})")
                return None

            entry.hit_count += 1
            entry.last_accessed_at = now
            self._hits += 1
            self._savings += entry.usage.get("cost", 0.0)
            logger.info(f"[GatewayCache] Hit: {prompt.operation} ({prompt.model}), hits={entry.hit_count}")
            return entry

    def _find_similar(self, prompt: CacheablePrompt, now: float) -> Optional[CachedResponse]:
        features = tuple(semantic_features(prompt.user_prompt, prompt.operation))
        best, best_score = None, 0.0
        for entry in self._entries.values():
            if entry.model != prompt.model or entry.operation != prompt.operation or entry.expired(now):
                continue
            score = fingerprint_similarity(features, entry.features)
            if score >= SIMILARITY_THRESHOLD and score > best_score:
                best, best_score = entry, score
        return best

    async def put(self, prompt: CacheablePrompt, response: Any, usage: Optional[dict[str, float]] = None) -> Optional[str]:
        """Store ``response``; returns the key, or None for non-cacheable prompts."""
        if not prompt.cacheable:
            return None

        key = self.generate_key(prompt)
        content_hash = hashlib.sha256(json.dumps(response, sort_keys=True, default=str).encode("utf-8")).hexdigest()
        async with self._lock:
            now = self._clock()
            self._entries[key] = CachedResponse(
                response=response,
                content_hash=content_hash,
                created_at=now,
                usage=dict(usage or {}),
                operation=prompt.operation,
                model=prompt.model,
                key=key,
                features=tuple(semantic_features(prompt.user_prompt, prompt.operation)),
                ttl_ms=prompt.ttl_ms or self.ttl_for(prompt.operation),
                last_accessed_at=now,
            )
            if len(self._entries) > self.max_entries:
                self._evict_least_recent()
        logger.debug(f"[GatewayCache] Stored {prompt.operation} ({prompt.model}) as {key[:40]}")
        return key

    def _evict_least_recent(self) -> None:
        overflow = len(self._entries) - self.max_entries
        oldest = sorted(self._entries.values(), key=lambda e: e.last_accessed_at)[:overflow]
        for entry in oldest:
            del self._entries[entry.key]

    async def invalidate(
        self,
        operation: Optional[str] = None,
        model: Optional[str] = None,
        domain: Optional[str] = None,
        max_age_ms: Optional[int] = None,
    ) -> int:
        """Drop matching entries; with ``max_age_ms`` only those older than it."""
        async with self._lock:
            now = self._clock()
            doomed = []
            for key, entry in self._entries.items():
                if operation and entry.operation != operation:
                    continue
                if model and entry.model != model:
                    continue
                if domain and f"domain:{domain.lower()}" not in entry.features:
                    continue
                if max_age_ms is not None and (now - entry.created_at) * 1000 <= max_age_ms:
                    continue
                doomed.append(key)
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info(f"[GatewayCache] Invalidated {len(doomed)} entries")
        return len(doomed)

    async def optimize(self) -> dict[str, int]:
        """Evict expired entries."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            freed = 0
            for key in expired:
                freed += self._entry_size(self._entries.pop(key))
        return {"entries_removed": len(expired), "space_saved": freed}

    async def warm(
        self,
        domains: list[str],
        operations: list[str],
        producer: Callable[[CacheablePrompt], Awaitable[tuple[Any, dict[str, float]]]],
        model: str = "gpt-5-mini",
    ) -> dict[str, int]:
        """Pre-populate common domain/operation prompts using ``producer``."""
        warmed = failed = 0
        for domain in domains[:10]:
            for operation in operations:
                prompt = self.warming_prompt(domain, operation, model)
                if await self.get(prompt) is not None:
                    continue
                try:
                    response, usage = await producer(prompt)
                except Exception as e:
                    logger.warning(f"[GatewayCache] Warming failed for {domain}:{operation}: {e}")
                    failed += 1
                    continue
                await self.put(prompt, response, usage)
                warmed += 1
        logger.info(f"[GatewayCache] Warmed {warmed} entries ({failed} failed)")
        return {"warmed": warmed, "failed": failed}

    @staticmethod
    def warming_prompt(domain: str, operation: str, model: str = "gpt-5-mini") -> CacheablePrompt:
        user_prompts = {
            "organize-pack": f"Organize design tokens for {domain} with standard color, typography, and spacing tokens.",
            "research": f"Research design system artifacts for {domain}: storybook, github and documentation.",
            "audit": f"Audit token pack quality for {domain} focusing on consistency and accessibility.",
            "compress": f"Compress design analysis data for {domain} while preserving essential patterns.",
        }
        return CacheablePrompt(
            system_prompt=f"Design token {operation} for warm-up",
            user_prompt=user_prompts.get(operation, user_prompts["organize-pack"]),
            model=model,
            operation=operation,
            parameters={"temperature": 0.3, "max_tokens": 4096},
        )

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return (self._hits / total) * 100 if total else 0.0

    def analytics(self) -> dict[str, Any]:
        hot = sorted(self._entries.values(), key=lambda e: e.hit_count, reverse=True)[:HOT_PROMPT_LIMIT]
        return {
            "total_requests": self._requests,
            "cache_hits": self._hits,
            "similar_hits": self._similar_hits,
            "cache_misses": self._misses,
            "hit_rate": round(self.hit_rate, 1),
            "cost_savings": round(self._savings, 6),
            "hot_prompts": [
                {"key": f"{e.key[:16]}...", "hits": e.hit_count, "operation": e.operation} for e in hot
            ],
        }

    def stats(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        if not entries:
            return {"size": 0, "memory_usage": 0, "oldest_entry": 0, "newest_entry": 0, "average_hits": 0}
        created = [e.created_at for e in entries]
        return {
            "size": len(entries),
            "memory_usage": sum(self._entry_size(e) for e in entries),
            "oldest_entry": min(created),
            "newest_entry": max(created),
            "average_hits": sum(e.hit_count for e in entries) / len(entries),
        }

    def health_check(self) -> dict[str, Any]:
        issues, recommendations = [], []
        stats = self.stats()

        if self._requests and self.hit_rate < 20:
            issues.append("Low cache hit rate")
            recommendations.append("Review caching strategy and TTL settings")
        elif self.hit_rate > 80:
            recommendations.append("Excellent cache performance, consider expanding cache scope")

        if stats["memory_usage"] > 100 * 1024 * 1024:
            issues.append("High memory usage")
            recommendations.append("Lower max_entries or shorten TTLs")

        now = self._clock()
        stale = sum(1 for e in self._entries.values() if (now - e.created_at) * 1000 > DAY_MS)
        if stale > len(self._entries) * 0.3:
            issues.append("Many stale cache entries")
            recommendations.append("Reduce TTL or run optimize() more often")

        return {
            "healthy": not issues,
            "issues": issues,
            "recommendations": recommendations,
            "performance": {"hit_rate": self.hit_rate, "memory_usage": stats["memory_usage"]},
        }

    @staticmethod
    def _entry_size(entry: CachedResponse) -> int:
        return len(json.dumps(entry.response, default=str)) * 2

    def __len__(self) -> int:
        return len(self._entries)
