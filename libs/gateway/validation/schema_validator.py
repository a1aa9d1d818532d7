"""
Schema validation with deterministic auto-repair.

Structured AI output is validated against a pydantic schema. Violations are
classified by pydantic error type; the auto-fixable ones are repaired in
passes (one strategy per violation, first match wins) and the payload is
re-validated after every pass. Whatever is still broken after the last pass
gets one model-assisted repair through the gateway.

Repair strategies, in order:
1. default-fill      missing fields, too-short strings (schema-derived defaults)
2. type coercion     "42" -> 42, ["a", "b"] -> "a, b"
3. format fix        url, datetime, semver, color, css dimension
4. range clamp       ge/le/gt/lt bounds, over-long strings
5. array normalize   wrap scalars, pad to min length, truncate to max length
6. enum remap        mapping table, fallback, first allowed option
7. structural        rebuild non-object sections (tokens, metadata, root)
"""

import copy
import json
import logging
import re
import time
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_snake
from pydantic.fields import FieldInfo

from libs.core.exceptions import PipelineError
from libs.extraction.css_analysis import normalize_color
from libs.gateway.validation.schemas import (
    AuditReport,
    COLOR_PATTERN,
    DIMENSION_PATTERN,
    ResearchReport,
    TokenPack,
    URL_PATTERN,
    VERSION_PATTERN,
)
from libs.gateway.validation.validation_result import (
    MAX_REPAIR_ATTEMPTS,
    SchemaViolation,
    ValidationResult,
    ValidatorStats,
)
from libs.llm.recipes import RecipeLoader

logger = logging.getLogger(__name__)

MISSING = object()
CONFIDENCE_PENALTY_PER_REPAIR = 15
URL_RE = re.compile(URL_PATTERN)
NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
UNIT_RE = re.compile(r"(px|rem|em|%)\s*$")
EXPECTED_RE = re.compile(r"'([^']*)'")

DEFAULT_FILL_CODES = {"missing", "string_too_short"}
NUMBER_CODES = {"int_parsing", "int_type", "int_from_float", "float_parsing", "float_type"}
COERCION_CODES = NUMBER_CODES | {"string_type", "bool_parsing", "bool_type"}
DATETIME_CODES = {"datetime_parsing", "datetime_from_date_parsing", "datetime_type"}
FORMAT_CODES = DATETIME_CODES | {"string_pattern_mismatch", "url_parsing", "url_scheme"}
RANGE_CODES = {"greater_than_equal", "less_than_equal", "greater_than", "less_than", "string_too_long"}
ARRAY_CODES = {"list_type", "too_short", "too_long"}
ENUM_CODES = {"literal_error", "enum"}
STRUCTURAL_CODES = {"model_type", "model_attributes_type", "dict_type"}
AUTO_FIXABLE_CODES = (
    DEFAULT_FILL_CODES | COERCION_CODES | FORMAT_CODES | RANGE_CODES | ARRAY_CODES | ENUM_CODES | STRUCTURAL_CODES
)

PLACEHOLDER_TEXT = "Auto-generated value, review before use"

# Scalar defaults by field alias; applied only when the type matches
DEFAULT_VALUES: dict[str, Any] = {
    "name": "untitled",
    "version": "1.0.0",
    "description": "Auto-generated description",
    "url": "https://example.com",
    "category": "general",
    "confidence": 50,
    "score": 50,
    "completeness": 50,
    "consistency": 50,
    "relevance": 50,
    "usage": 1,
}

# Token value defaults by owning model
VALUE_DEFAULTS = {
    "ColorToken": "#000000",
    "TypographyToken": "system-ui",
    "SpacingToken": "8px",
    "RadiusToken": "8px",
    "ShadowToken": "none",
    "MotionToken": "200ms",
}

# Items used to pad string lists, by list field alias
LIST_ITEM_DEFAULTS = {
    "usage": "Use design tokens consistently across components",
    "pitfalls": "Avoid hardcoded values that bypass the token set",
    "accessibility": "Verify color contrast manually",
    "performance": "Prefer CSS custom properties over duplicated literals",
    "issues": "Manual review required",
    "recommendations": "Review generated tokens before use",
}

ENUM_MAPPINGS = {
    "priority": {"urgent": "high", "important": "high", "normal": "medium", "minor": "low"},
    "status": {"ok": "good", "bad": "poor", "great": "excellent", "fair": "needs-improvement"},
    "semantic": {"brand": "primary", "danger": "error", "warn": "warning", "gray": "neutral", "grey": "neutral"},
}
ENUM_FALLBACKS = {"priority": "medium", "status": "good"}

TOKEN_SECTIONS = {
    "color": "colors",
    "typography": "typography",
    "spacing": "spacing",
    "radius": "radius",
    "shadow": "shadows",
    "motion": "motion",
}

SUGGESTIONS = {
    "missing": "Add the required field",
    "string_too_short": "Provide at least {min_length} characters",
    "string_too_long": "Shorten to at most {max_length} characters",
    "string_pattern_mismatch": "Match the expected format {pattern}",
    "greater_than_equal": "Use a value >= {ge}",
    "less_than_equal": "Use a value <= {le}",
    "too_short": "Provide at least {min_length} items",
    "too_long": "Provide at most {max_length} items",
    "literal_error": "Use one of: {expected}",
    "model_type": "Provide an object",
    "list_type": "Provide an array",
}


# =============================================================================
# Schema introspection
# =============================================================================


@dataclass
class FieldSpec:
    """Where a pydantic error location points in the schema."""
    key: Any
    annotation: Any
    owner: Optional[type] = None
    info: Optional[FieldInfo] = None
    parent: Optional[str] = None  # list field alias when key is an index


def _unwrap(annotation: Any) -> Any:
    """Optional[X] -> X."""
    if get_origin(annotation) is Union:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        return args[0] if args else annotation
    return annotation


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def _find_field(model: type, key: str) -> tuple[Optional[str], Optional[FieldInfo]]:
    for name, info in model.model_fields.items():
        if key in (name, info.alias):
            return name, info
    return None, None


def resolve_field(schema: type, loc: tuple) -> Optional[FieldSpec]:
    """Walk ``loc`` through the schema; None when it leaves the schema."""
    spec = FieldSpec(key=None, annotation=schema)
    for part in loc:
        annotation = _unwrap(spec.annotation)
        if isinstance(part, int):
            if get_origin(annotation) is not list:
                return None
            parent = spec.key if isinstance(spec.key, str) else spec.parent
            spec = FieldSpec(key=part, annotation=get_args(annotation)[0], parent=parent)
            continue
        if not _is_model(annotation):
            return None
        _, info = _find_field(annotation, part)
        if info is None:
            return None
        spec = FieldSpec(key=part, annotation=info.annotation, owner=annotation, info=info)
    spec.annotation = _unwrap(spec.annotation)
    return spec


def _constraint(info: Optional[FieldInfo], name: str) -> Any:
    if info is None:
        return None
    for item in info.metadata:
        value = getattr(item, name, None)
        if value is not None:
            return value
    return None


def _past_open_bound(bound: float, step: int, inclusive: Any, exclusive: Any) -> float:
    """One unit past an exclusive ``bound``, or the midpoint when that crosses the far bound."""
    candidate = bound + step
    if inclusive is not None and (candidate - inclusive) * step > 0:
        return (bound + inclusive) / 2
    if exclusive is not None and (candidate - exclusive) * step >= 0:
        return (bound + exclusive) / 2
    return candidate


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    match = NUMBER_RE.search(str(value)) if value is not None else None
    return float(match.group(0)) if match else None


# =============================================================================
# Payload navigation
# =============================================================================


def _resolve_key(container: dict, key: Any) -> Any:
    if key in container or not isinstance(key, str):
        return key
    snake = to_snake(key)
    return snake if snake in container else key


def _get_at(data: Any, loc: tuple) -> Any:
    current = data
    for part in loc:
        if isinstance(current, dict):
            part = _resolve_key(current, part)
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and isinstance(part, int) and 0 <= part < len(current):
            current = current[part]
        else:
            return MISSING
    return current


def _set_at(data: Any, loc: tuple, value: Any) -> bool:
    parent = _get_at(data, loc[:-1])
    last = loc[-1]
    if isinstance(parent, dict):
        parent[_resolve_key(parent, last)] = value
        return True
    if isinstance(parent, list) and isinstance(last, int) and 0 <= last < len(parent):
        parent[last] = value
        return True
    return False


def format_path(loc: tuple) -> str:
    path = ""
    for part in loc:
        path += f"[{part}]" if isinstance(part, int) else (f".{part}" if path else str(part))
    return path or "root"


# =============================================================================
# Violation classification
# =============================================================================


def classify_severity(loc: tuple, code: str) -> str:
    if not loc:
        return "critical"
    if "metadata" in loc or "url" in loc:
        return "high"
    if code in COERCION_CODES or code in STRUCTURAL_CODES or code == "list_type":
        return "high"
    if code in ENUM_CODES or code in {"string_too_short", "string_too_long"}:
        return "low"
    return "medium"


def suggest_fix(code: str, ctx: dict) -> str:
    template = SUGGESTIONS.get(code)
    if template is None:
        return "Check the value type and format"
    try:
        return template.format(**ctx)
    except (KeyError, IndexError):
        return template.split(" {")[0]


@dataclass
class Guardrails:
    max_repair_attempts: int = MAX_REPAIR_ATTEMPTS
    ai_repair_enabled: bool = True


# =============================================================================
# Validator
# =============================================================================


class SchemaValidator:
    """Validates structured output and repairs it when it can."""

    def __init__(
        self,
        gateway: Any = None,
        recipes: Optional[RecipeLoader] = None,
        max_repair_attempts: int = MAX_REPAIR_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        # gateway is set after construction when the gateway itself needs a validator
        self.gateway = gateway
        self.recipes = recipes
        self.guardrails = Guardrails(max_repair_attempts=max_repair_attempts)
        self._clock = clock
        self._stats = ValidatorStats()
        self._strategies = (
            self._fill_default,
            self._coerce_type,
            self._fix_format,
            self._clamp_range,
            self._normalize_array,
            self._remap_enum,
            self._rebuild_structure,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def validate_with_repair(
        self,
        data: Any,
        schema: type,
        allow_repair: bool = True,
        max_attempts: Optional[int] = None,
        operation: Optional[str] = None,
    ) -> ValidationResult:
        limit = self.guardrails.max_repair_attempts if max_attempts is None else max_attempts
        label = operation or schema.__name__
        self._stats.total += 1

        current = copy.deepcopy(data)
        attempts = 0
        while True:
            model, violations = self.check(current, schema)
            if model is not None:
                return self._accept(model, schema, attempts, label)
            if not allow_repair or attempts >= limit:
                break
            fixable = [v for v in violations if v.auto_fixable]
            if not fixable:
                break
            current, applied = self._repair_pass(current, fixable, schema)
            if not applied:
                break
            attempts += 1
            logger.debug(f"[SchemaValidator] {label}: repair pass {attempts} fixed {applied}/{len(violations)}")

        self._stats.error_codes.update(v.code for v in violations)

        if allow_repair:
            candidate = await self._model_repair(current, schema, violations)
            if candidate is not None:
                model, _ = self.check(candidate, schema)
                if model is not None:
                    self._stats.ai_repairs += 1
                    result = self._accept(model, schema, attempts + 1, label)
                    result.ai_repaired = True
                    return result

        self._stats.failed += 1
        logger.warning(
            f"[SchemaValidator] {label}: invalid after {attempts} repair passes "
            f"({len(violations)} violations, first: {violations[0].describe() if violations else '-'})"
        )
        return ValidationResult(
            valid=False,
            data=current,
            errors=violations,
            repaired=False,
            confidence=0.0,
            repair_attempts=attempts,
        )

    async def validate_token_pack(self, data: Any) -> ValidationResult:
        return await self.validate_with_repair(data, TokenPack, operation="organize-pack")

    async def validate_research(self, data: Any) -> ValidationResult:
        return await self.validate_with_repair(data, ResearchReport, operation="research")

    async def validate_audit(self, data: Any) -> ValidationResult:
        return await self.validate_with_repair(data, AuditReport, operation="audit")

    async def validate_with_versioning(self, data: Any, schema: type, version: str = "1.0.0") -> ValidationResult:
        """Migrate an older payload layout up to ``version`` before validating."""
        migrated = copy.deepcopy(data)
        target = _version_tuple(version)
        if isinstance(migrated, dict):
            for migration_version, migrate in MIGRATIONS:
                if _version_tuple(migration_version) <= target:
                    migrate(migrated)
        return await self.validate_with_repair(migrated, schema)

    def check(self, data: Any, schema: type) -> tuple[Optional[BaseModel], list[SchemaViolation]]:
        """Plain validation: (model, []) or (None, violations)."""
        try:
            return schema.model_validate(data), []
        except ValidationError as e:
            return None, self.parse_errors(e)

    def parse_errors(self, error: ValidationError) -> list[SchemaViolation]:
        violations = []
        for item in error.errors(include_url=False):
            loc = tuple(item["loc"])
            code = item["type"]
            ctx = dict(item.get("ctx") or {})
            violations.append(
                SchemaViolation(
                    path=format_path(loc),
                    loc=loc,
                    message=item["msg"],
                    severity=classify_severity(loc, code),
                    code=code,
                    suggestion=suggest_fix(code, ctx),
                    auto_fixable=code in AUTO_FIXABLE_CODES,
                    ctx=ctx,
                )
            )
        return violations

    def create_emergency_fallback(self, operation: str, url: Optional[str] = None) -> dict[str, Any]:
        """Minimal schema-valid payload for when generation and repair both fail."""
        url = url if url and URL_RE.match(url) else DEFAULT_VALUES["url"]

        if operation == "organize-pack":
            return {
                "metadata": {
                    "name": "Fallback Design Tokens",
                    "version": "1.0.0",
                    "description": "Emergency fallback token pack",
                    "url": url,
                    "extractedAt": self._now(),
                    "confidence": 25,
                },
                "tokens": {
                    "colors": [
                        {
                            "name": "primary",
                            "value": "#3b82f6",
                            "type": "color",
                            "semantic": "primary",
                            "usage": 1,
                            "confidence": 25,
                        }
                    ],
                    "typography": [
                        {
                            "name": "font-base",
                            "value": "system-ui, -apple-system, sans-serif",
                            "type": "typography",
                            "property": "font-family",
                            "usage": 1,
                            "confidence": 25,
                        }
                    ],
                    "spacing": [
                        {"name": "space-md", "value": "16px", "type": "spacing", "usage": 1, "confidence": 25}
                    ],
                },
                "mappingHints": {
                    "tailwind": {
                        "colors": "Configure in tailwind.config.js theme.colors",
                        "spacing": "Use theme.spacing for consistent spacing",
                        "typography": "Configure fontFamily in theme",
                    },
                    "cssVariables": {
                        "recommendation": "Define design tokens as CSS custom properties on :root",
                        "example": "--color-primary: #3b82f6;",
                    },
                },
                "guidelines": {
                    "usage": ["Manual review required: automated extraction failed"],
                    "pitfalls": ["These are placeholder values only"],
                    "accessibility": ["Verify color contrast manually"],
                    "performance": ["Optimize after manual review"],
                },
                "quality": {
                    "score": 25,
                    "confidence": 25,
                    "completeness": 30,
                    "issues": ["Automated extraction failed", "Manual review required"],
                },
            }

        if operation == "audit":
            category = {"score": 50, "issues": ["Manual review required"]}
            return {
                "overall": {
                    "score": 50,
                    "status": "needs-improvement",
                    "summary": "Manual review required: automated audit unavailable",
                    "confidence": 0,
                },
                "categories": {
                    "naming": dict(category, consistency=50),
                    "accessibility": dict(category),
                    "consistency": dict(category),
                    "completeness": dict(category),
                },
                "recommendations": [],
                "redFlags": [],
            }

        if operation == "research":
            return {
                "findings": {"officialTokens": [], "documentedPatterns": [], "gaps": [], "inconsistencies": []},
                "validation": {"extractedVsDocumented": 0, "namingAlignment": 0, "valueAccuracy": 0},
                "recommendations": {"tokenImprovements": [], "namingAdjustments": [], "frameworkOptimizations": []},
                "confidence": 0,
                "sources": [],
            }

        return {"error": "No fallback available", "operation": operation}

    def update_guardrails(self, **changes: Any) -> Guardrails:
        known = {f.name for f in fields(Guardrails)}
        unknown = set(changes) - known
        if unknown:
            logger.warning(f"[SchemaValidator] Ignoring unknown guardrails: {sorted(unknown)}")
        self.guardrails = replace(self.guardrails, **{k: v for k, v in changes.items() if k in known})
        return self.guardrails

    def stats(self) -> dict[str, Any]:
        return self._stats.to_dict()

    # -------------------------------------------------------------------------
    # Acceptance and confidence
    # -------------------------------------------------------------------------

    def _accept(self, model: BaseModel, schema: type, attempts: int, label: str) -> ValidationResult:
        data = model.model_dump(mode="json", by_alias=True, exclude_none=True)
        self._stats.valid += 1
        if attempts:
            self._stats.repaired += 1
            logger.info(f"[SchemaValidator] {label}: valid after {attempts} repair(s)")
        penalty = max(0, 100 - CONFIDENCE_PENALTY_PER_REPAIR * attempts)
        return ValidationResult(
            valid=True,
            data=data,
            repaired=attempts > 0,
            confidence=round(penalty * field_completeness(data, schema), 1),
            repair_attempts=attempts,
        )

    # -------------------------------------------------------------------------
    # Deterministic repair
    # -------------------------------------------------------------------------

    def _repair_pass(self, data: Any, violations: list[SchemaViolation], schema: type) -> tuple[Any, int]:
        repaired = copy.deepcopy(data)
        applied = 0
        for violation in violations:
            spec = resolve_field(schema, violation.loc)
            current = _get_at(repaired, violation.loc)
            for strategy in self._strategies:
                value = strategy(violation, current, spec)
                if value is MISSING:
                    continue
                if not violation.loc:
                    repaired = value
                    applied += 1
                elif _set_at(repaired, violation.loc, value):
                    applied += 1
                break
        return repaired, applied

    def _fill_default(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        if violation.code not in DEFAULT_FILL_CODES or spec is None:
            return MISSING
        default = self.default_value(spec)
        if violation.code == "string_too_short" and isinstance(current, str) and current.strip():
            return f"{current.strip()}: {default}"
        return default

    def _coerce_type(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        code = violation.code
        if code not in COERCION_CODES:
            return MISSING
        if code in NUMBER_CODES:
            number = _parse_number(current) if current is not MISSING else None
            if number is None:
                return self.default_value(spec) if spec else 0
            return int(round(number)) if code.startswith("int") else number
        if code == "string_type":
            if current is MISSING or current is None:
                return self.default_value(spec) if spec else ""
            if isinstance(current, list):
                return ", ".join(str(item) for item in current)
            if isinstance(current, dict):
                return json.dumps(current)
            return str(current)
        return str(current).strip().lower() in ("true", "1", "yes", "on")

    def _fix_format(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        if violation.code not in FORMAT_CODES:
            return MISSING
        if violation.code in DATETIME_CODES:
            return self._now()

        pattern = violation.ctx.get("pattern")
        text = "" if current is MISSING or current is None else str(current).strip()
        key = spec.key if spec else None

        if pattern == URL_PATTERN or key == "url" or violation.code.startswith("url"):
            candidate = text.replace(" ", "")
            if candidate and not candidate.startswith(("http://", "https://")):
                candidate = f"https://{candidate.lstrip('/')}"
            return candidate if candidate and URL_RE.match(candidate) else DEFAULT_VALUES["url"]
        if pattern == VERSION_PATTERN:
            parts = NUMBER_RE.findall(text.replace(".", " "))[:3]
            if not parts:
                return DEFAULT_VALUES["version"]
            return ".".join(str(abs(int(float(p)))) for p in parts + ["0"] * (3 - len(parts)))
        if pattern == COLOR_PATTERN:
            return normalize_color(text) or VALUE_DEFAULTS["ColorToken"]
        if pattern == DIMENSION_PATTERN:
            number = _parse_number(text)
            if number is None:
                return VALUE_DEFAULTS["SpacingToken"]
            unit = UNIT_RE.search(text)
            return f"{abs(number):g}{unit.group(1) if unit else 'px'}"
        return self.default_value(spec) if spec else MISSING

    def _clamp_range(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        code, ctx = violation.code, violation.ctx
        if code not in RANGE_CODES:
            return MISSING
        if code == "string_too_long":
            return str(current)[: ctx.get("max_length", len(str(current)))]
        if code == "greater_than_equal":
            return ctx["ge"]
        if code == "less_than_equal":
            return ctx["le"]
        info = spec.info if spec else None
        if code == "greater_than":
            return _past_open_bound(ctx["gt"], 1, _constraint(info, "le"), _constraint(info, "lt"))
        return _past_open_bound(ctx["lt"], -1, _constraint(info, "ge"), _constraint(info, "gt"))

    def _normalize_array(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        code, ctx = violation.code, violation.ctx
        if code not in ARRAY_CODES:
            return MISSING
        if code == "list_type":
            if current is MISSING or current is None:
                return []
            if isinstance(current, dict):
                # {"primary": {...}} -> [{"name": "primary", ...}]
                return [
                    dict(value, name=value.get("name", key)) if isinstance(value, dict) else {"name": key, "value": value}
                    for key, value in current.items()
                ]
            if isinstance(current, (tuple, set)):
                return list(current)
            return [current]
        items = list(current) if isinstance(current, list) else []
        if code == "too_long":
            return items[: ctx.get("max_length", len(items))]
        item_spec = None
        if spec is not None and get_origin(spec.annotation) is list:
            item_spec = FieldSpec(key=None, annotation=_unwrap(get_args(spec.annotation)[0]), parent=spec.key)
        while len(items) < ctx.get("min_length", 1):
            items.append(self.default_value(item_spec) if item_spec else PLACEHOLDER_TEXT)
        return items

    def _remap_enum(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        if violation.code not in ENUM_CODES:
            return MISSING
        if spec is not None and get_origin(spec.annotation) is Literal:
            allowed = list(get_args(spec.annotation))
        else:
            allowed = EXPECTED_RE.findall(str(violation.ctx.get("expected", "")))

        value = "" if current is MISSING or current is None else str(current).strip().lower()
        for candidate in (value, re.sub(r"[\s_]+", "-", value)):
            if candidate in allowed:
                return candidate

        key = spec.key if spec else violation.loc[-1]
        mapped = ENUM_MAPPINGS.get(key, {}).get(value)
        if mapped in allowed:
            return mapped
        fallback = ENUM_FALLBACKS.get(key)
        if fallback in allowed:
            return fallback
        return allowed[0] if allowed else MISSING

    def _rebuild_structure(self, violation: SchemaViolation, current: Any, spec: Optional[FieldSpec]) -> Any:
        if violation.code not in STRUCTURAL_CODES or spec is None:
            return MISSING
        if get_origin(spec.annotation) is dict:
            return {} if current is MISSING or current is None else {"value": current}
        if not _is_model(spec.annotation):
            return MISSING
        model = spec.annotation

        if isinstance(current, str):
            try:
                parsed = json.loads(current)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return parsed

        rebuilt = self.default_model(model)
        if spec.key == "tokens" and isinstance(current, list):
            for item in current:
                section = TOKEN_SECTIONS.get(str(item.get("type", "")).lower()) if isinstance(item, dict) else None
                if section:
                    rebuilt.setdefault(section, []).append(item)
        elif isinstance(current, str) and current.strip():
            for slot in ("value", "name", "summary"):
                if slot in model.model_fields:
                    rebuilt[slot] = current.strip()
                    break
        return rebuilt

    # -------------------------------------------------------------------------
    # Schema-derived defaults
    # -------------------------------------------------------------------------

    def default_value(self, spec: FieldSpec) -> Any:
        annotation = _unwrap(spec.annotation)
        origin = get_origin(annotation)
        key, info = spec.key, spec.info

        if origin is Literal:
            return get_args(annotation)[0]
        if _is_model(annotation):
            return self.default_model(annotation)
        if origin is list or annotation is list:
            args = get_args(annotation)
            item = FieldSpec(key=None, annotation=_unwrap(args[0]) if args else str, parent=key)
            return [self.default_value(item) for _ in range(_constraint(info, "min_length") or 0)]
        if origin is dict or annotation is dict:
            return {}
        if annotation is datetime:
            return self._now()
        if annotation is bool:
            return False
        if annotation in (int, float):
            value = DEFAULT_VALUES.get(key)
            if not isinstance(value, (int, float)):
                value = _constraint(info, "ge") or 0
            upper = _constraint(info, "le")
            return min(value, upper) if upper is not None else value
        if annotation is str:
            value = None
            if key == "value" and spec.owner is not None:
                value = VALUE_DEFAULTS.get(spec.owner.__name__)
            if value is None and isinstance(DEFAULT_VALUES.get(key), str):
                value = DEFAULT_VALUES[key]
            if value is None:
                value = LIST_ITEM_DEFAULTS.get(spec.parent, PLACEHOLDER_TEXT)
            min_length = _constraint(info, "min_length") or 0
            return value if len(value) >= min_length else f"{value}: {PLACEHOLDER_TEXT}"
        return None

    def default_model(self, model: type) -> dict[str, Any]:
        """Dict (by alias) holding a default for every required field of ``model``."""
        return {
            info.alias or name: self.default_value(
                FieldSpec(key=info.alias or name, annotation=info.annotation, owner=model, info=info)
            )
            for name, info in model.model_fields.items()
            if info.is_required()
        }

    # -------------------------------------------------------------------------
    # Model-assisted repair
    # -------------------------------------------------------------------------

    async def _model_repair(self, data: Any, schema: type, violations: list[SchemaViolation]) -> Optional[Any]:
        if self.gateway is None or not self.guardrails.ai_repair_enabled:
            return None
        try:
            recipe = (self.recipes or RecipeLoader()).load("repair")
            prompt = recipe.render(
                schema=json.dumps(schema.model_json_schema(by_alias=True)),
                violations="\n".join(f"- {v.describe()}: {v.suggestion}" for v in violations),
                data=json.dumps(data, indent=2, default=str),
            )
            response = await self.gateway.request(
                prompt=prompt,
                model=recipe.model,
                operation="repair",
                system_prompt=recipe.system_prompt,
                max_tokens=recipe.max_tokens,
                temperature=recipe.temperature,
                cacheable=False,
            )
        except PipelineError as e:
            logger.warning(f"[SchemaValidator] Model-assisted repair failed: {e}")
            return None
        return response.data

    def _now(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()


def field_completeness(data: Any, schema: type) -> float:
    """Share of the schema's top-level fields that carry a non-empty value."""
    names = [info.alias or name for name, info in schema.model_fields.items()]
    if not names or not isinstance(data, dict):
        return 0.0
    present = sum(1 for name in names if data.get(name) not in (None, "", [], {}))
    return present / len(names)


# =============================================================================
# Payload migrations
# =============================================================================


def _version_tuple(version: str) -> tuple:
    return tuple(int(part) for part in re.findall(r"\d+", version)[:3])


def _add_quality(data: dict) -> None:
    data.setdefault("quality", {"score": 75, "confidence": 75, "completeness": 75, "issues": []})


def _move_framework(data: dict) -> None:
    if "framework" not in data:
        return
    framework = data.pop("framework")
    if isinstance(framework, list):
        framework = {"detected": framework}
    elif isinstance(framework, str):
        framework = {"specific": framework}
    hints = data.setdefault("mappingHints", {})
    if isinstance(hints, dict):
        hints.setdefault("framework", framework)


MIGRATIONS = (
    ("1.1.0", _add_quality),
    ("2.0.0", _move_framework),
)
