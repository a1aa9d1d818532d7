"""
Pydantic schemas for structured AI output.

Wire format is camelCase (``extractedAt``, ``mappingHints``); models accept
either the alias or the field name. Unknown keys are kept.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

VERSION_PATTERN = r"^\d+\.\d+\.\d+$"
URL_PATTERN = r"^https?://\S+$"
COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$|^rgb\(|^hsl\(|^oklch\("
DIMENSION_PATTERN = r"^\d+(\.\d+)?(px|rem|em|%)$"


class SchemaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# =============================================================================
# Token pack (organize-pack)
# =============================================================================


class PackMetadata(SchemaModel):
    name: str = Field(min_length=1)
    version: str = Field(pattern=VERSION_PATTERN)
    description: str = Field(min_length=10)
    url: str = Field(pattern=URL_PATTERN)
    extracted_at: datetime
    confidence: float = Field(ge=0, le=100)
    strategies: Optional[list[str]] = None
    data_quality: Optional[float] = Field(default=None, ge=0, le=100)


class ColorAccessibility(SchemaModel):
    contrast_ratio: Optional[float] = Field(default=None, ge=1, le=21)
    wcag_level: Optional[Literal["AA", "AAA", "fail"]] = None
    suggestions: Optional[list[str]] = None


class ColorToken(SchemaModel):
    name: str = Field(min_length=1)
    value: str = Field(pattern=COLOR_PATTERN)
    type: Literal["color"]
    semantic: Optional[
        Literal["primary", "secondary", "accent", "neutral", "success", "warning", "error", "info"]
    ] = None
    usage: float = Field(ge=1)
    confidence: float = Field(ge=0, le=100)
    accessibility: Optional[ColorAccessibility] = None


class TypographyToken(SchemaModel):
    name: str = Field(min_length=1)
    value: str = Field(min_length=1)
    type: Literal["typography"]
    property: Literal["font-family", "font-size", "font-weight", "line-height"]
    role: Optional[Literal["primary", "secondary", "accent", "monospace", "display"]] = None
    usage: float = Field(ge=1)
    confidence: float = Field(ge=0, le=100)


class SpacingToken(SchemaModel):
    name: str = Field(min_length=1)
    value: str = Field(pattern=DIMENSION_PATTERN)
    type: Literal["spacing"]
    scale: Optional[float] = None
    consistency: Optional[float] = Field(default=None, ge=0, le=100)
    usage: float = Field(ge=1)
    confidence: float = Field(ge=0, le=100)


class RadiusToken(SchemaModel):
    name: str = Field(min_length=1)
    value: str = Field(pattern=DIMENSION_PATTERN)
    type: Literal["radius"]
    usage: float = Field(ge=1)
    confidence: float = Field(ge=0, le=100)


class ShadowToken(SchemaModel):
    name: str = Field(min_length=1)
    value: str = Field(min_length=1)
    type: Literal["shadow"]
    elevation: Optional[float] = Field(default=None, ge=0, le=10)
    usage: float = Field(ge=1)
    confidence: float = Field(ge=0, le=100)


class MotionToken(SchemaModel):
    name: str = Field(min_length=1)
    value: str = Field(min_length=1)
    type: Literal["motion"]
    property: Literal["duration", "timing-function", "delay"]
    usage: float = Field(ge=1)
    confidence: float = Field(ge=0, le=100)


class PackTokens(SchemaModel):
    colors: list[ColorToken]
    typography: list[TypographyToken]
    spacing: list[SpacingToken]
    radius: Optional[list[RadiusToken]] = None
    shadows: Optional[list[ShadowToken]] = None
    motion: Optional[list[MotionToken]] = None


class TailwindHints(SchemaModel):
    colors: str = Field(min_length=10)
    spacing: str = Field(min_length=10)
    typography: str = Field(min_length=10)
    border_radius: Optional[str] = None
    box_shadow: Optional[str] = None
    animation: Optional[str] = None


class CssVariableHints(SchemaModel):
    recommendation: str = Field(min_length=20)
    example: str = Field(min_length=10)
    naming: Optional[str] = None


class FrameworkHints(SchemaModel):
    detected: Optional[list[str]] = None
    specific: Optional[str] = None
    integration: Optional[str] = Field(default=None, min_length=20)


class MappingHints(SchemaModel):
    tailwind: TailwindHints
    css_variables: CssVariableHints
    framework: Optional[FrameworkHints] = None


class Guidelines(SchemaModel):
    usage: list[str] = Field(min_length=1)
    pitfalls: list[str] = Field(min_length=1)
    accessibility: list[str]
    performance: list[str]
    best_practices: Optional[list[str]] = None


class PackQuality(SchemaModel):
    score: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0, le=100)
    completeness: float = Field(ge=0, le=100)
    issues: list[str]
    recommendations: Optional[list[str]] = None


class TokenPack(SchemaModel):
    metadata: PackMetadata
    tokens: PackTokens
    mapping_hints: MappingHints
    guidelines: Guidelines
    quality: PackQuality


# =============================================================================
# Research
# =============================================================================


class ResearchFindings(SchemaModel):
    official_tokens: list[str]
    documented_patterns: list[str]
    gaps: list[str]
    inconsistencies: list[str]
    framework_evidence: Optional[list[str]] = None


class ResearchValidation(SchemaModel):
    extracted_vs_documented: float = Field(ge=0, le=100)
    naming_alignment: float = Field(ge=0, le=100)
    value_accuracy: float = Field(ge=0, le=100)


class ResearchRecommendations(SchemaModel):
    token_improvements: list[str]
    naming_adjustments: list[str]
    framework_optimizations: list[str]
    accessibility_improvements: Optional[list[str]] = None


class ResearchSource(SchemaModel):
    type: Literal["documentation", "storybook", "github", "figma", "npm"]
    url: str = Field(pattern=URL_PATTERN)
    relevance: float = Field(ge=0, le=100)
    last_checked: Optional[datetime] = None


class ResearchReport(SchemaModel):
    findings: ResearchFindings
    validation: ResearchValidation
    recommendations: ResearchRecommendations
    confidence: float = Field(ge=0, le=100)
    sources: list[ResearchSource]


# =============================================================================
# Audit
# =============================================================================

Level = Literal["low", "medium", "high", "critical"]


class AuditOverall(SchemaModel):
    score: float = Field(ge=0, le=100)
    status: Literal["excellent", "good", "needs-improvement", "poor"]
    summary: str = Field(min_length=20)
    confidence: float = Field(ge=0, le=100)


class AuditCategory(SchemaModel):
    score: float = Field(ge=0, le=100)
    issues: list[str]


class NamingCategory(AuditCategory):
    consistency: float = Field(ge=0, le=100)


class AccessibilityCategory(AuditCategory):
    wcag_compliance: Optional[Literal["A", "AA", "AAA", "fail"]] = None


class ConsistencyCategory(AuditCategory):
    patterns: Optional[list[str]] = None


class CompletenessCategory(AuditCategory):
    missing: Optional[list[str]] = None


class AuditCategories(SchemaModel):
    naming: NamingCategory
    accessibility: AccessibilityCategory
    consistency: ConsistencyCategory
    completeness: CompletenessCategory


class AuditRecommendation(SchemaModel):
    priority: Level
    category: str
    description: str = Field(min_length=10)
    solution: str = Field(min_length=10)
    impact: Optional[Literal["minor", "moderate", "major", "critical"]] = None


class ActionItem(SchemaModel):
    task: str
    priority: Level
    effort: Optional[Literal["small", "medium", "large"]] = None


class AuditReport(SchemaModel):
    overall: AuditOverall
    categories: AuditCategories
    recommendations: list[AuditRecommendation]
    red_flags: list[str]
    action_items: Optional[list[ActionItem]] = None


# =============================================================================
# Compression
# =============================================================================


class CompressionSummary(SchemaModel):
    summary: dict[str, Any]
    essentials: dict[str, Any]
    patterns: dict[str, Any] = Field(default_factory=dict)
    accessibility: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


SCHEMAS = {
    "organize-pack": TokenPack,
    "research": ResearchReport,
    "audit": AuditReport,
    "compress": CompressionSummary,
}
