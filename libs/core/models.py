"""Shared data models for the design token pipeline."""

import hashlib
import json
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlparse

DEFAULT_USER_AGENT = "ContextDS/1.0 (+https://contextds.com/bot)"


# =============================================================================
# Enums
# =============================================================================

class ScanStatus(str, Enum):
    """Overall status of one extraction scan or pipeline run."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class Priority(str, Enum):
    """Caller priority; drives model selection and budget behaviour."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class Operation(str, Enum):
    """AI operations routed through the gateway."""

    ORGANIZE_PACK = "organize-pack"
    RESEARCH = "research"
    AUDIT = "audit"
    COMPRESS = "compress"
    EMBED = "embed"
    CLASSIFY = "classify"


class TokenType(str, Enum):
    COLOR = "color"
    TYPOGRAPHY = "typography"
    SPACING = "spacing"
    COMPONENT = "component"
    SHADOW = "shadow"
    RADIUS = "radius"


# =============================================================================
# Extraction
# =============================================================================

@dataclass(frozen=True)
class StrategyPerformance:
    duration_ms: float = 0.0
    data_size_bytes: int = 0
    cache_hit: bool = False


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of one strategy run within one scan. Immutable."""

    strategy_name: str
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    performance: StrategyPerformance = field(default_factory=StrategyPerformance)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Viewport:
    name: str
    width: int
    height: int


DEFAULT_VIEWPORTS = (
    Viewport("mobile", 360, 640),
    Viewport("tablet", 768, 1024),
    Viewport("desktop", 1280, 720),
    Viewport("large", 1920, 1080),
)


@dataclass
class ScanOptions:
    """Per-scan extraction switches."""

    include_computed: bool = True
    analyze_components: bool = True
    extract_brand: bool = True
    analyze_accessibility: bool = True
    detect_frameworks: bool = True
    capture_screenshots: bool = True
    follow_internal_links: bool = True
    max_pages: int = 5
    timeout_ms: int = 30000
    retry_attempts: int = 3
    scan_timeout_ms: Optional[int] = None

    def options_hash(self) -> str:
        """Stable short hash of the option values, used in strategy cache keys."""
        payload = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()[:12]


class ScanCache:
    """Per-scan key/value map shared by every strategy of one scan.

    Writers own their keys; a repeated write simply overwrites with an
    equivalent value.
    """

    def __init__(self):
        self._entries: dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._entries.get(key)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


ProgressSink = Callable[[dict[str, Any]], Any]


@dataclass
class ScanContext:
    """Everything a strategy needs to know about the scan it belongs to."""

    url: str
    domain: str
    user_agent: str = DEFAULT_USER_AGENT
    viewports: tuple = DEFAULT_VIEWPORTS
    options: ScanOptions = field(default_factory=ScanOptions)
    shared_cache: ScanCache = field(default_factory=ScanCache)
    progress_sink: Optional[ProgressSink] = None

    @classmethod
    def for_url(
        cls,
        url: str,
        options: Optional[ScanOptions] = None,
        progress_sink: Optional[ProgressSink] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> "ScanContext":
        return cls(
            url=url,
            domain=urlparse(url).hostname or url,
            user_agent=user_agent,
            options=options or ScanOptions(),
            progress_sink=progress_sink,
        )

    def with_changes(self, **changes: Any) -> "ScanContext":
        """Copy of this context (same shared cache) with some fields replaced.

        Option overrides can be passed as ``options={...}``.
        """
        option_changes = changes.pop("options", None)
        if option_changes:
            changes["options"] = replace(self.options, **option_changes)
        return replace(self, **changes)


@dataclass
class ScanMetadata:
    started_at: float
    finished_at: float
    duration_ms: float
    strategies_used: list[str] = field(default_factory=list)
    fallbacks_triggered: list[str] = field(default_factory=list)
    data_quality: float = 0.0
    cache_efficiency: float = 0.0


@dataclass
class ScanResult:
    url: str
    domain: str
    status: ScanStatus
    strategies: list[ExtractionResult]
    aggregated_data: dict[str, Any]
    metadata: ScanMetadata

    @property
    def failed(self) -> list[ExtractionResult]:
        return [r for r in self.strategies if not r.success]

    @property
    def succeeded(self) -> list[ExtractionResult]:
        return [r for r in self.strategies if r.success]


# =============================================================================
# Tokens
# =============================================================================

@dataclass
class TokenItem:
    """One candidate design token. Identity is ``id``."""

    id: str
    name: str
    value: str
    type: str
    usage: int = 1
    confidence: float = 50.0
    source: str = "extraction"

    @property
    def weight(self) -> float:
        """Canonical selection weight (usage x confidence)."""
        return self.usage * self.confidence
