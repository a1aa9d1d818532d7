"""Token deduplication and clustering over embeddings."""

from libs.dedup.embedding_deduplicator import (
    DeduplicationResult,
    DuplicateGroup,
    EmbeddingDeduplicator,
    SemanticGroup,
    TokenCluster,
    TokenEmbedding,
    cosine_similarity,
)
from libs.dedup.kmeans import cluster_count, kmeans

__all__ = [
    "DeduplicationResult",
    "DuplicateGroup",
    "EmbeddingDeduplicator",
    "SemanticGroup",
    "TokenCluster",
    "TokenEmbedding",
    "cosine_similarity",
    "cluster_count",
    "kmeans",
]
