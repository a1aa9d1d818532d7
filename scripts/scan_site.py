#!/usr/bin/env python
"""
Scan one or more websites and print their design token packages.

Usage:
    python scripts/scan_site.py https://example.com
    python scripts/scan_site.py https://a.com https://b.com --budget 0.30
    python scripts/scan_site.py https://example.com --priority critical --audit
    python scripts/scan_site.py https://example.com --no-ai --json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from libs.core.config import get_settings
from libs.core.logging_config import get_logger, setup_logging
from libs.core.models import ScanOptions
from libs.pipeline import PipelineOptions, PipelineResult, build_orchestrator

logger = get_logger("scan_site")


def print_progress(snapshot: dict) -> None:
    print(f"  [{snapshot['overall_progress']:5.1f}%] {snapshot['phase']}: {snapshot['current_step']}", file=sys.stderr)


def print_summary(result: PipelineResult) -> None:
    meta = result.extraction_metadata
    ai = result.ai_metadata
    print("=" * 60)
    print(f"{result.url}: {result.status}")
    print("=" * 60)
    print(f"  Strategies: {len(meta.get('strategies_used', []))} run, "
          f"{len(meta.get('fallbacks_triggered', []))} failed, "
          f"{len(meta.get('recovered_strategies', []))} recovered")
    print(f"  Data quality: {meta.get('data_quality', 0):.1f}")
    if ai:
        print(f"  Models: {', '.join(ai.get('models_used', []))}")
        print(f"  AI cost: ${ai.get('total_cost_usd', 0):.4f}")
        print(f"  Compression: {ai.get('compression_used')}  Dedup: {ai.get('deduplication_applied')}")
    print(f"  Confidence: {result.confidence}  Completeness: {result.completeness}  "
          f"Reliability: {result.reliability}")
    if result.quality_audit:
        overall = result.quality_audit.get("overall", {})
        print(f"  Audit: {overall.get('score')} ({overall.get('status')})")
    for error in result.errors:
        print(f"  ! {error}")
    print()


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    budget = args.budget if args.budget is not None else settings.pipeline.max_budget
    orchestrator = build_orchestrator(settings)
    logger.info(f"[ScanSite] Scanning {len(args.urls)} URL(s), budget ${budget:.2f} per scan")
    try:
        if len(args.urls) == 1:
            options = PipelineOptions(
                ai_enabled=not args.no_ai,
                max_budget=budget,
                priority=args.priority,
                quality_audit=args.audit,
                quality_target=settings.pipeline.quality_target,
                compression_threshold=settings.pipeline.compression_threshold,
                max_retries=settings.extraction.retry_attempts,
                scan=ScanOptions(
                    timeout_ms=settings.extraction.timeout_ms,
                    scan_timeout_ms=settings.extraction.scan_timeout_ms,
                ),
            )
            results = [
                await orchestrator.process_website(
                    args.urls[0], options, on_progress=None if args.json else print_progress
                )
            ]
        else:
            batch = await orchestrator.batch_scan(
                args.urls,
                max_concurrency=args.concurrency,
                total_budget=budget * len(args.urls),
                priority=args.priority,
            )
            results = [item.result for item in batch if item.result is not None]
            for item in batch:
                if item.result is None:
                    print(f"{item.url}: {item.error}", file=sys.stderr)
    finally:
        await orchestrator.close()

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2, default=str))
    else:
        for result in results:
            print_summary(result)

    failed = sum(1 for r in results if r.status == "failed")
    return 0 if results and failed == 0 else 1


def main():
    parser = argparse.ArgumentParser(description="Extract design tokens from websites")
    parser.add_argument("urls", nargs="+", help="Website URLs to scan")
    parser.add_argument(
        "--budget",
        "-b",
        type=float,
        default=None,
        help="AI budget per scan in USD (default: PIPELINE_MAX_BUDGET or 0.15)",
    )
    parser.add_argument(
        "--priority",
        "-p",
        choices=["low", "normal", "high", "critical"],
        default="normal",
        help="Processing priority (default: normal)",
    )
    parser.add_argument(
        "--audit",
        action="store_true",
        help="Run the premium quality audit (single URL only)",
    )
    parser.add_argument(
        "--no-ai",
        action="store_true",
        help="Skip AI processing and build tokens from extraction only",
    )
    parser.add_argument(
        "--concurrency",
        "-c",
        type=int,
        default=3,
        help="Concurrent scans when several URLs are given (default: 3)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print full results as JSON",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: LOG_LEVEL or WARNING)",
    )
    args = parser.parse_args()

    setup_logging(level=args.log_level or get_settings().log_level, log_to_file=False)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
