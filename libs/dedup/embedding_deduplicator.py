"""
Embedding-based token deduplication.

Pipeline for one candidate token list:
    1. canonical text per token (see token_features.embedding_text)
    2. embeddings in batches of 100, cached by sha256 of the text
    3. greedy duplicate grouping with per-type cosine thresholds
    4. k-means clusters over the remaining tokens
    5. per-type semantic groups with relationship suggestions

Tokens are visited heaviest first (usage x confidence, ties keep input order),
so a group's seed is always its canonical token and every surviving pair is
below threshold. Running the deduplicator on its own output changes nothing.

If any embedding batch fails the result falls back to exact ``type:value``
matching and ``fallback_used`` is set.
"""

import asyncio
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional

import numpy as np

from libs.core.models import TokenItem
from libs.dedup import token_features
from libs.dedup.kmeans import cluster_count, kmeans
from libs.extraction.css_analysis import rgb_distance

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
BATCH_DELAY_S = 0.2
MIN_TOKENS_FOR_CLUSTERING = 6
RELATIONSHIP_THRESHOLD = 0.7
MAX_RELATIONSHIPS = 20
VISUAL_MATCH_DISTANCE = 30

# Cost model for reduction estimates: tokens per item and $/1M input tokens
TOKENS_PER_ITEM = 50
INPUT_COST_PER_MILLION = 0.25

SIMILARITY_THRESHOLDS = {
    "color": 0.85,
    "typography": 0.80,
    "spacing": 0.90,
    "component": 0.75,
}
DEFAULT_THRESHOLD = 0.80
CROSS_TYPE_THRESHOLD = 0.95


@dataclass
class TokenEmbedding:
    token_id: str
    vector: np.ndarray
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DuplicateGroup:
    canonical: TokenItem
    duplicates: list[TokenItem]
    similarity: float
    reason: str  # exact-match | semantic-match | visual-match
    suggestion: dict[str, str]


@dataclass
class TokenCluster:
    id: str
    centroid: list[float]
    members: list[TokenItem]
    theme: str
    characteristics: list[str]
    suggested_name: str


@dataclass
class SemanticGroup:
    type: str
    tokens: list[TokenItem]
    relationships: list[dict[str, Any]]
    similarity: float
    suggestions: dict[str, list[str]]


@dataclass
class DeduplicationResult:
    original: list[TokenItem]
    deduplicated: list[TokenItem]
    duplicates: list[DuplicateGroup]
    clusters: list[TokenCluster] = field(default_factory=list)
    semantic_groups: list[SemanticGroup] = field(default_factory=list)
    reduction: dict[str, float] = field(default_factory=dict)
    fallback_used: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def cosine_similarity(a, b) -> float:
    """Cosine similarity; 0.0 when either vector is zero."""
    a, b = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def similarity_threshold(type_a: str, type_b: str) -> float:
    if type_a != type_b:
        return CROSS_TYPE_THRESHOLD
    return SIMILARITY_THRESHOLDS.get(type_a, DEFAULT_THRESHOLD)


def reduction_stats(original: list[TokenItem], deduplicated: list[TokenItem]) -> dict[str, float]:
    count = len(original) - len(deduplicated)
    return {
        "count": count,
        "percentage": round(count / len(original) * 100, 2) if original else 0.0,
        "cost_savings": count * TOKENS_PER_ITEM / 1_000_000 * INPUT_COST_PER_MILLION,
    }


def _visit_order(tokens: list[TokenItem]) -> list[int]:
    return sorted(range(len(tokens)), key=lambda i: -tokens[i].weight)


def _duplicate_reason(canonical: TokenItem, duplicates: list[TokenItem]) -> str:
    if any(dup.value == canonical.value for dup in duplicates):
        return "exact-match"
    if canonical.type == "color":
        for dup in duplicates:
            distance = rgb_distance(canonical.value, dup.value)
            if distance is not None and distance < VISUAL_MATCH_DISTANCE:
                return "visual-match"
    return "semantic-match"


def _suggestion(canonical: TokenItem, reason: str) -> dict[str, str]:
    if reason == "exact-match":
        return {"name": canonical.name, "consolidation": "remove"}
    if reason == "visual-match" and canonical.type == "color":
        return {"name": token_features.semantic_color_name(canonical.value), "consolidation": "merge"}
    return {"name": canonical.name, "consolidation": "alias"}


class EmbeddingDeduplicator:
    """
    Usage:
        dedup = EmbeddingDeduplicator(EmbeddingClient())
        result = await dedup.deduplicate(tokens)
    """

    def __init__(
        self,
        embedder,
        batch_size: int = BATCH_SIZE,
        batch_delay_s: float = BATCH_DELAY_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[np.random.Generator] = None,
    ):
        self.embedder = embedder
        self.batch_size = batch_size
        self.batch_delay_s = batch_delay_s
        self._sleep = sleep
        self._rng = rng or np.random.default_rng()
        self._cache: dict[str, np.ndarray] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def deduplicate(self, tokens: list[TokenItem]) -> DeduplicationResult:
        if not tokens:
            return DeduplicationResult([], [], [], reduction=reduction_stats([], []))

        try:
            embeddings = await self.embed_tokens(tokens)
        except Exception as e:
            logger.warning(f"[Dedup] Embedding failed, using exact value matching: {e}")
            return self.fallback_deduplicate(tokens)

        duplicates, absorbed = self.find_duplicates(tokens, embeddings)
        deduplicated = [t for t in tokens if t.id not in absorbed]
        kept = [e for e in embeddings if e.token_id not in absorbed]

        clusters = self.cluster(deduplicated, kept)
        groups = self.semantic_groups(deduplicated, kept)
        reduction = reduction_stats(tokens, deduplicated)
        logger.info(
            f"[Dedup] {len(tokens)} -> {len(deduplicated)} tokens "
            f"({reduction['percentage']}% reduction, {len(duplicates)} groups, {len(clusters)} clusters)"
        )
        return DeduplicationResult(tokens, deduplicated, duplicates, clusters, groups, reduction)

    # =========================================================================
    # Embeddings
    # =========================================================================

    async def embed_tokens(self, tokens: list[TokenItem]) -> list[TokenEmbedding]:
        texts = [token_features.embedding_text(t) for t in tokens]
        keys = [hashlib.sha256(text.encode()).hexdigest() for text in texts]

        missing = list(dict.fromkeys(key_text for key_text in zip(keys, texts) if key_text[0] not in self._cache))
        for start in range(0, len(missing), self.batch_size):
            if start:
                await self._sleep(self.batch_delay_s)
            batch = missing[start : start + self.batch_size]
            vectors = await self.embedder.embed([text for _, text in batch])
            if len(vectors) != len(batch):
                raise ValueError(f"Expected {len(batch)} embeddings, got {len(vectors)}")
            for (key, _), vector in zip(batch, vectors):
                self._cache[key] = np.asarray(vector, dtype=float)

        return [
            TokenEmbedding(
                token_id=token.id,
                vector=self._cache[key],
                text=text,
                metadata={"value": token.value, "type": token.type, "usage": token.usage, "confidence": token.confidence},
            )
            for token, key, text in zip(tokens, keys, texts)
        ]

    # =========================================================================
    # Duplicates
    # =========================================================================

    def find_duplicates(
        self, tokens: list[TokenItem], embeddings: list[TokenEmbedding]
    ) -> tuple[list[DuplicateGroup], set[str]]:
        """Greedy grouping; returns the groups and the ids of absorbed tokens."""
        groups: list[DuplicateGroup] = []
        processed: set[int] = set()
        absorbed: set[str] = set()
        order = _visit_order(tokens)

        for position, i in enumerate(order):
            if i in processed:
                continue
            processed.add(i)
            canonical = tokens[i]
            member_indices, scores = [], []
            for j in order[position + 1 :]:
                if j in processed:
                    continue
                score = cosine_similarity(embeddings[i].vector, embeddings[j].vector)
                if score > similarity_threshold(canonical.type, tokens[j].type):
                    member_indices.append(j)
                    scores.append(score)
                    processed.add(j)

            if member_indices:
                members = [tokens[j] for j in sorted(member_indices)]
                absorbed.update(m.id for m in members)
                reason = _duplicate_reason(canonical, members)
                groups.append(
                    DuplicateGroup(
                        canonical=canonical,
                        duplicates=members,
                        similarity=round(float(np.mean(scores)) * 100, 2),
                        reason=reason,
                        suggestion=_suggestion(canonical, reason),
                    )
                )
        return groups, absorbed

    def fallback_deduplicate(self, tokens: list[TokenItem]) -> DeduplicationResult:
        """Exact ``type:value`` matching, canonical = heaviest (ties keep earlier)."""
        buckets: dict[str, list[int]] = {}
        for i in _visit_order(tokens):
            buckets.setdefault(f"{tokens[i].type}:{tokens[i].value}", []).append(i)

        groups, absorbed = [], set()
        for indices in buckets.values():
            if len(indices) < 2:
                continue
            canonical = tokens[indices[0]]
            members = [tokens[i] for i in sorted(indices[1:])]
            absorbed.update(m.id for m in members)
            groups.append(
                DuplicateGroup(canonical, members, 100.0, "exact-match", {"name": canonical.name, "consolidation": "remove"})
            )

        deduplicated = [t for t in tokens if t.id not in absorbed]
        return DeduplicationResult(
            tokens, deduplicated, groups, reduction=reduction_stats(tokens, deduplicated), fallback_used=True
        )

    # =========================================================================
    # Clusters and semantic groups
    # =========================================================================

    def cluster(self, tokens: list[TokenItem], embeddings: list[TokenEmbedding]) -> list[TokenCluster]:
        if len(tokens) < MIN_TOKENS_FOR_CLUSTERING:
            return []

        vectors = np.vstack([e.vector for e in embeddings])
        labels, centroids = kmeans(vectors, cluster_count(len(tokens)), rng=self._rng)

        clusters = []
        for index, centroid in enumerate(centroids):
            members = [i for i, label in enumerate(labels) if label == index]
            if not members:
                continue
            member_tokens = [tokens[i] for i in members]
            texts = [embeddings[i].text for i in members]
            clusters.append(
                TokenCluster(
                    id=f"cluster-{index}",
                    centroid=centroid.tolist(),
                    members=member_tokens,
                    theme=token_features.cluster_theme(texts),
                    characteristics=token_features.cluster_characteristics(member_tokens, texts),
                    suggested_name=token_features.cluster_name(member_tokens, texts),
                )
            )
        return clusters

    def semantic_groups(self, tokens: list[TokenItem], embeddings: list[TokenEmbedding]) -> list[SemanticGroup]:
        by_type: dict[str, list[int]] = {}
        for i, token in enumerate(tokens):
            by_type.setdefault(token.type, []).append(i)

        groups = []
        for kind, indices in by_type.items():
            if len(indices) < 2:
                continue
            members = [tokens[i] for i in indices]
            relationships = self._relationships([embeddings[i] for i in indices])
            groups.append(
                SemanticGroup(
                    type=kind,
                    tokens=members,
                    relationships=relationships,
                    similarity=self._group_similarity(members),
                    suggestions=self._group_suggestions(kind, members, relationships),
                )
            )
        return groups

    @staticmethod
    def _relationships(embeddings: list[TokenEmbedding]) -> list[dict[str, Any]]:
        found = []
        for i, a in enumerate(embeddings):
            for b in embeddings[i + 1 :]:
                score = cosine_similarity(a.vector, b.vector)
                if score > RELATIONSHIP_THRESHOLD:
                    found.append({"from": a.token_id, "to": b.token_id, "type": _relationship_type(a.text, b.text, score), "strength": score})
        found.sort(key=lambda r: r["strength"], reverse=True)
        return found[:MAX_RELATIONSHIPS]

    @staticmethod
    def _group_similarity(tokens: list[TokenItem]) -> float:
        scores = [
            token_features.text_similarity(f"{a.name} {a.value}", f"{b.name} {b.value}")
            for i, a in enumerate(tokens)
            for b in tokens[i + 1 :]
        ]
        return round(sum(scores) / len(scores) * 100, 2) if scores else 100.0

    @staticmethod
    def _group_suggestions(kind: str, tokens: list[TokenItem], relationships: list[dict]) -> dict[str, list[str]]:
        suggestions: dict[str, list[str]] = {"naming": [], "organization": [], "consolidation": []}
        if kind == "color":
            suggestions["naming"].append("Use semantic names (primary, secondary, accent)")
            suggestions["organization"].append("Group by purpose (brand, semantic, neutral)")
            if len(tokens) > 20:
                suggestions["consolidation"].append("Consider consolidating similar shades")
        elif kind == "typography":
            suggestions["naming"].append("Use scale-based names (text-xs, text-sm, text-base)")
            suggestions["organization"].append("Organize by hierarchy level and purpose")
        elif kind == "spacing":
            suggestions["naming"].append("Use size-based names (space-xs, space-sm, space-md)")
            suggestions["organization"].append("Maintain consistent scale ratios")

        if any(r["strength"] > 0.9 for r in relationships):
            suggestions["consolidation"].append("Consider merging very similar tokens")
        return suggestions


VARIANT_PAIRS = (("primary", "secondary"), ("light", "dark"), ("small", "large"))


def _relationship_type(text_a: str, text_b: str, score: float) -> str:
    a, b = text_a.lower(), text_b.lower()
    if any((x in a and y in b) or (y in a and x in b) for x, y in VARIANT_PAIRS):
        return "variant"
    name_a = a.split(" | ")[0].replace("name: ", "")
    name_b = b.split(" | ")[0].replace("name: ", "")
    if name_a and name_b and (name_a in name_b or name_b in name_a):
        return "derived"
    if score > 0.9:
        return "similar"
    return "complement"
