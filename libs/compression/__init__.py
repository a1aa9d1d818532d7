"""Token counting and payload compression.

Usage:
    from libs.compression import CostOptimizer

    optimizer = CostOptimizer(catalog)
    count = optimizer.count_tokens(text, model="gpt-5-mini")
    if count.count > threshold:
        result = optimizer.compress(text, preserve=("colors", "typography"))
"""

from libs.compression.cost_optimizer import (
    CompressionResult,
    CostOptimizer,
    TokenCount,
    approximate_tokens,
    detect_scale,
)

__all__ = [
    "CompressionResult",
    "CostOptimizer",
    "TokenCount",
    "approximate_tokens",
    "detect_scale",
]
