"""Small k-means over embedding vectors (numpy, seedable)."""

from typing import Optional

import numpy as np

MAX_ITERATIONS = 20
CONVERGENCE_TOLERANCE = 0.01


def cluster_count(n: int) -> int:
    """k = clamp(n // 8, 3, 12), never more than n."""
    return min(n, max(3, min(12, n // 8)))


def kmeans(
    vectors: np.ndarray,
    k: int,
    rng: Optional[np.random.Generator] = None,
    max_iterations: int = MAX_ITERATIONS,
    tolerance: float = CONVERGENCE_TOLERANCE,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Cluster the rows of ``vectors`` into ``k`` groups.

    Centroids start at ``k`` distinct random rows. Iteration stops when no
    centroid moves more than ``tolerance`` (Euclidean) or after
    ``max_iterations``. A centroid that loses all members stays where it was.

    Returns:
        (labels, centroids): labels has shape (n,), centroids (k, dim)
    """
    if vectors.ndim != 2 or len(vectors) == 0:
        raise ValueError("kmeans needs a non-empty 2-D array")
    rng = rng or np.random.default_rng()
    k = min(k, len(vectors))

    centroids = vectors[rng.choice(len(vectors), size=k, replace=False)].astype(float)
    labels = np.zeros(len(vectors), dtype=int)

    for _ in range(max_iterations):
        distances = np.linalg.norm(vectors[:, None, :] - centroids[None, :, :], axis=2)
        labels = distances.argmin(axis=1)

        updated = centroids.copy()
        for index in range(k):
            members = vectors[labels == index]
            if len(members):
                updated[index] = members.mean(axis=0)

        movement = np.linalg.norm(updated - centroids, axis=1).max()
        centroids = updated
        if movement < tolerance:
            break

    return labels, centroids
