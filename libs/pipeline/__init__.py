"""Pipeline root: website URL to validated design token package.

Usage:
    from libs.pipeline import build_orchestrator

    orchestrator = build_orchestrator()
    result = await orchestrator.process_website("https://example.com")
    await orchestrator.close()
"""

from libs.pipeline.factory import build_orchestrator
from libs.pipeline.orchestrator import (
    BatchScanResult,
    PipelineOptions,
    PipelineOrchestrator,
    PipelineProgress,
    PipelineResult,
    basic_token_set,
)

__all__ = [
    "BatchScanResult",
    "PipelineOptions",
    "PipelineOrchestrator",
    "PipelineProgress",
    "PipelineResult",
    "basic_token_set",
    "build_orchestrator",
]
