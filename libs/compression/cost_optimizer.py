"""Cost optimizer: token accounting and lossy prompt compression.

Token counts are exact (tiktoken) for OpenAI-family models and a character
ratio approximation otherwise. Compression runs a fixed sequence of text
reductions and stops as soon as the cumulative reduction reaches the target,
keeping lines that mention the named critical fields.
"""

import asyncio
import json
import logging
import math
import re
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import tiktoken

from libs.llm.model_catalog import ModelCatalog, ModelProfile

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TOKEN_CACHE_SIZE = 2000
DEFAULT_PRESERVE = ("colors", "typography", "spacing", "accessibility")

CSS_DECLARATION_RE = re.compile(r"([a-zA-Z-]+):\s*([^;{}\n]+);")
COLOR_RE = re.compile(r"#[0-9a-fA-F]{6}\b|rgba?\([^)]+\)")
PX_RE = re.compile(r"\b\d+px\b")
TOKEN_LINE_RE = re.compile(r"(?:colors?|typography|spacing|shadows?|radius|motion):\s*[^\n]+", re.IGNORECASE)
FRAMEWORK_RE = re.compile(r"(?:tailwind|bootstrap|material|chakra|ant|semantic)[^.\n]*\.", re.IGNORECASE)
A11Y_RE = re.compile(r"(?:contrast|wcag|aria|semantic|accessibility)[^.\n]*\.", re.IGNORECASE)
COMPONENT_RE = re.compile(r"(?:button|form|card|navigation|modal)[^.\n]*\.", re.IGNORECASE)

_ENCODER = None


def _get_encoder():
    """cl100k_base encoder, loaded on first use. None when unavailable (offline)."""
    global _ENCODER
    if _ENCODER is None:
        try:
            _ENCODER = tiktoken.get_encoding("cl100k_base")
        except Exception as e:
            logger.warning(f"[CostOptimizer] tiktoken encoding unavailable, using approximation: {e}")
            _ENCODER = False
    return _ENCODER or None


def approximate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class TokenCount:
    count: int
    estimated_cost_usd: float
    model: Optional[str] = None
    exact: bool = False
    characters: int = 0


@dataclass
class CompressionResult:
    """Result of a text compression.

    Attributes:
        reduction: fraction of characters removed (0-1)
        quality: 0-100 preservation score
    """

    original: str
    compressed: str
    original_tokens: int
    compressed_tokens: int
    reduction: float
    quality: float
    strategies_applied: list[str] = field(default_factory=list)
    preserved: tuple = DEFAULT_PRESERVE


class CostOptimizer:
    """Estimates token volume and cost per model profile; compresses payloads."""

    def __init__(self, catalog: ModelCatalog):
        self.catalog = catalog
        self._token_cache: "OrderedDict[str, TokenCount]" = OrderedDict()

    # ------------------------------------------------------------------
    # Token accounting
    # ------------------------------------------------------------------

    def count_tokens(self, text: str, model: Optional[str] = None) -> TokenCount:
        """Count tokens of ``text`` for ``model`` (approximate when ``model`` is None)."""
        cache_key = f"{model}:{text[:100]}:{len(text)}"
        cached = self._token_cache.get(cache_key)
        if cached is not None:
            return cached

        exact = False
        count = approximate_tokens(text)
        if model and ("gpt" in model or "openai" in model):
            encoder = _get_encoder()
            if encoder is not None:
                count = len(encoder.encode(text, disallowed_special=()))
                exact = True

        profile = self._profile(model)
        result = TokenCount(
            count=count,
            estimated_cost_usd=count / 1_000_000 * profile.cost_per_million_in,
            model=model,
            exact=exact,
            characters=len(text),
        )

        self._token_cache[cache_key] = result
        if len(self._token_cache) > TOKEN_CACHE_SIZE:
            self._token_cache.popitem(last=False)
        return result

    def count_payload_tokens(self, data: Any, model: Optional[str] = None) -> TokenCount:
        return self.count_tokens(json.dumps(data, indent=2, default=str), model)

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int = 0) -> float:
        return self._profile(model).estimate_cost(input_tokens, output_tokens)

    def estimate_operation_cost(self, operation: str, input_tokens: int, output_tokens: int = 2000) -> dict:
        """Cost of ``operation`` on every catalog model, cheapest first."""
        estimates = sorted(
            (
                {
                    "model": profile.name,
                    "cost": profile.estimate_cost(input_tokens, output_tokens),
                    "specialized": profile.is_specialized_for(operation),
                    "fits": input_tokens <= profile.max_context_tokens * 0.9,
                }
                for profile in self.catalog
            ),
            key=lambda e: e["cost"],
        )
        fitting = [e for e in estimates if e["fits"]] or estimates
        recommended = next((e for e in fitting if e["specialized"]), fitting[0])
        return {
            "estimated_cost": recommended["cost"],
            "recommended_model": recommended["model"],
            "alternatives": estimates,
        }

    def _profile(self, model: Optional[str]) -> ModelProfile:
        profile = self.catalog.get(model) if model else None
        return profile or self.catalog.require(self.catalog.default_model)

    # ------------------------------------------------------------------
    # Text compression
    # ------------------------------------------------------------------

    def compress(
        self,
        text: str,
        preserve: tuple = DEFAULT_PRESERVE,
        target_ratio: float = 0.3,
    ) -> CompressionResult:
        """Compress ``text`` toward ``target_ratio`` of its original size."""
        preserve = tuple(p.lower() for p in preserve)
        original_tokens = approximate_tokens(text)
        if not text:
            return CompressionResult(text, text, 0, 0, 0.0, 100.0, [], preserve)

        target_reduction = 1 - target_ratio
        steps: list[tuple[str, Callable[[str, tuple], str]]] = [
            ("remove-redundancy", self._remove_redundancy),
            ("summarize-repetitive-data", self._summarize_repetitive),
            ("compress-css-data", self._compress_css_sections),
            ("consolidate-patterns", self._consolidate_patterns),
            ("extract-key-insights", self._extract_key_insights),
        ]

        try:
            compressed = text
            applied = []
            for name, step in steps:
                before = len(compressed)
                compressed = step(compressed, preserve)
                if len(compressed) < before:
                    applied.append(f"{name}: {(before - len(compressed)) / before:.1%}")
                if (len(text) - len(compressed)) / len(text) >= target_reduction:
                    break

            reduction = max(0.0, (len(text) - len(compressed)) / len(text))
            quality = self._assess_quality(text, compressed, preserve, reduction)
        except Exception as e:
            logger.warning(f"[CostOptimizer] Compression failed, truncating instead: {e}")
            compressed = self._truncate(text, preserve, target_reduction)
            applied = ["truncation"]
            reduction = max(0.0, (len(text) - len(compressed)) / len(text))
            quality = 60.0

        return CompressionResult(
            original=text,
            compressed=compressed,
            original_tokens=original_tokens,
            compressed_tokens=approximate_tokens(compressed),
            reduction=reduction,
            quality=quality,
            strategies_applied=applied,
            preserved=preserve,
        )

    @staticmethod
    def _is_critical(line: str, preserve: tuple) -> bool:
        lowered = line.lower()
        return any(element in lowered for element in preserve)

    def _remove_redundancy(self, text: str, preserve: tuple) -> str:
        seen = set()
        kept = []
        for line in text.split("\n"):
            if self._is_critical(line, preserve):
                kept.append(line)
                continue
            signature = re.sub(r"\s+", " ", line.strip().lower())[:50]
            if signature not in seen:
                seen.add(signature)
                kept.append(line)
        return "\n".join(kept)

    def _summarize_repetitive(self, text: str, preserve: tuple) -> str:
        values: dict[str, list[str]] = {}
        for prop, value in CSS_DECLARATION_RE.findall(text):
            bucket = values.setdefault(prop, [])
            value = value.strip()
            if value not in bucket:
                bucket.append(value)

        summaries = []
        for prop, unique in values.items():
            if len(unique) > 10:
                summaries.append(f"{prop}: {', '.join(unique[:3])} ... ({len(unique)} total values)")
            elif len(unique) > 1:
                summaries.append(f"{prop}: {', '.join(unique)}")

        if not summaries:
            return text
        stripped = re.sub(r"\n{3,}", "\n\n", CSS_DECLARATION_RE.sub("", text))
        return stripped + "\nCSS PROPERTY SUMMARY:\n" + "\n".join(summaries) + "\n"

    def _compress_css_sections(self, text: str, preserve: tuple) -> str:
        sections = []
        for section in re.split(r"\n\n+", text):
            if self._is_critical(section, preserve):
                sections.append(section)
            elif "{" in section and "}" in section:
                rule_count = len(re.findall(r"\{[^}]*\}", section))
                properties = list(OrderedDict.fromkeys(re.findall(r"([a-zA-Z-]+):", section)))
                sections.append(
                    f"CSS Section: {rule_count} rules, {len(properties)} unique properties, "
                    f"key patterns: {', '.join(properties[:5])}"
                )
            else:
                sections.append(section[:200] + "..." if len(section) > 200 else section)
        return "\n\n".join(sections)

    def _consolidate_patterns(self, text: str, preserve: tuple) -> str:
        counts = Counter(COLOR_RE.findall(text) + PX_RE.findall(text))
        frequent = [(pattern, count) for pattern, count in counts.items() if count > 5]
        if not frequent:
            return text

        compressed = text
        for pattern, _count in frequent:
            # Collapse runs of the same repeated value into one reference
            compressed = re.sub(f"(?:{re.escape(pattern)}[\\s,;]*){{2,}}", f"[{pattern}] ", compressed)
        summary = "\n".join(f"{pattern} (used {count} times)" for pattern, count in frequent[:20])
        return compressed + "\nFREQUENT PATTERNS:\n" + summary + "\n"

    def _extract_key_insights(self, text: str, preserve: tuple) -> str:
        insights = (
            TOKEN_LINE_RE.findall(text)[:20]
            + FRAMEWORK_RE.findall(text)[:5]
            + A11Y_RE.findall(text)[:10]
            + COMPONENT_RE.findall(text)[:15]
        )
        if insights:
            return (
                "KEY INSIGHTS SUMMARY:\n"
                + "\n".join(insights)
                + f"\n\n[Original content compressed - {len(text)} chars reduced to key insights]"
            )
        return text[: int(len(text) * 0.3)] + "\n\n[Content truncated for cost optimization]"

    def _truncate(self, text: str, preserve: tuple, target_reduction: float) -> str:
        lines = text.split("\n")
        critical = [line for line in lines if self._is_critical(line, preserve)]
        remaining = [line for line in lines if not self._is_critical(line, preserve)]
        kept = remaining[: int(len(remaining) * (1 - target_reduction))]
        return "\n".join(critical) + "\n\n" + "\n".join(kept) + "\n\n[Content compressed for cost optimization]"

    @staticmethod
    def _assess_quality(original: str, compressed: str, preserve: tuple, reduction: float) -> float:
        quality = 50.0
        original_lower = original.lower()
        compressed_lower = compressed.lower()
        for element in preserve:
            before = original_lower.count(element)
            after = compressed_lower.count(element)
            rate = after / before if before else 1.0
            quality += min(10.0, rate * 10)

        if reduction > 0.9:
            quality -= 20
        elif reduction < 0.3:
            quality -= 10

        if "SUMMARY" in compressed or "PATTERNS" in compressed:
            quality += 15

        return max(0.0, min(100.0, quality))

    # ------------------------------------------------------------------
    # Structured (deterministic) compression
    # ------------------------------------------------------------------

    def deterministic_compress(self, data: Any) -> Any:
        """Replace long arrays with summaries and samples, recursively."""
        if not isinstance(data, dict):
            return data

        compressed = {}
        for key, value in data.items():
            if isinstance(value, list):
                if len(value) > 10:
                    compressed[key] = {
                        "summary": f"{len(value)} items",
                        "samples": value[:5],
                        "patterns": self.extract_patterns(value),
                        "unique_count": len(
                            {json.dumps(v, sort_keys=True, default=str) if isinstance(v, (dict, list)) else v for v in value}
                        ),
                    }
                else:
                    compressed[key] = value
            elif isinstance(value, dict):
                compressed[key] = self.deterministic_compress(value)
            else:
                compressed[key] = value
        return compressed

    def extract_patterns(self, items: list) -> dict:
        patterns: dict[str, Any] = {}
        strings = [item for item in items if isinstance(item, str)]

        hex_colors = [s for s in strings if "#" in s]
        rgb_colors = [s for s in strings if "rgb" in s]
        if hex_colors or rgb_colors:
            patterns["color_types"] = {
                "hex": len(hex_colors),
                "rgb": len(rgb_colors),
                "samples": hex_colors[:3] + rgb_colors[:2],
            }

        px_values = sorted(
            value for value in (_parse_number(s) for s in strings if "px" in s) if value is not None
        )
        if px_values:
            patterns["spacing"] = {
                "range": {"min": px_values[0], "max": px_values[-1]},
                "scale": detect_scale(px_values),
                "common": [value for value, _ in Counter(px_values).most_common(5)],
            }

        typography = [item for item in items if isinstance(item, dict) and item.get("family")]
        if typography:
            sizes = [s for s in (_parse_number(str(item.get("size", ""))) for item in typography) if s is not None]
            patterns["typography"] = {
                "families": list(OrderedDict.fromkeys(item["family"] for item in typography)),
                "size_range": {"min": min(sizes), "max": max(sizes)} if sizes else None,
            }
        return patterns

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    async def batch_process(
        self,
        items: list,
        worker: Callable[[Any], Awaitable[Any]],
        concurrency: int = 3,
        delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> list[dict]:
        """Run ``worker`` over ``items`` in concurrent groups with a pause between groups."""
        results: list[dict] = []
        for start in range(0, len(items), concurrency):
            group = items[start : start + concurrency]
            outcomes = await asyncio.gather(*(worker(item) for item in group), return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    logger.warning(f"[CostOptimizer] Batch item failed: {outcome}")
                    results.append({"result": None, "error": str(outcome)})
                else:
                    results.append({"result": outcome, "error": None})
            if start + concurrency < len(items):
                await sleep(delay_s)
        return results


def _parse_number(value: str) -> Optional[float]:
    match = re.match(r"\s*(-?\d+(?:\.\d+)?)", value)
    return float(match.group(1)) if match else None


def detect_scale(values: list[float]) -> dict:
    """Classify a sorted numeric scale as multiplicative, geometric or arbitrary."""
    if len(values) < 3:
        return {"type": "arbitrary"}

    for base in (16, 8, 4):
        if all(v % base == 0 for v in values):
            return {"type": "multiplicative", "base": base}

    ratios = [values[i] / values[i - 1] for i in range(1, len(values)) if values[i - 1]]
    if ratios:
        average = sum(ratios) / len(ratios)
        if all(abs(r - average) < 0.2 for r in ratios):
            return {"type": "geometric", "ratio": round(average, 2)}

    return {"type": "arbitrary"}
