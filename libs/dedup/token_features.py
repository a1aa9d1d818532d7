"""
Text features for design tokens.

Builds the canonical text that gets embedded for each token and the
word-frequency helpers used to label clusters.
"""

import re
from collections import Counter
from typing import Optional

from libs.core.models import TokenItem
from libs.extraction.css_analysis import parse_color

WORD_RE = re.compile(r"[a-z]+")


def color_features(value: str) -> str:
    rgb = parse_color(value)
    if rgb is None:
        return ""
    r, g, b = rgb
    features = [brightness_label(brightness(rgb))]

    if r > 200 and g < 100 and b < 100:
        features.append("red dominant")
    elif g > 200 and r < 100 and b < 100:
        features.append("green dominant")
    elif b > 200 and r < 100 and g < 100:
        features.append("blue dominant")
    elif r > 200 and g > 200 and b < 100:
        features.append("yellow dominant")
    elif abs(r - g) < 30 and abs(g - b) < 30:
        features.append("neutral gray")

    high, low = max(rgb), min(rgb)
    saturation = 0 if high == 0 else (high - low) / high
    if saturation > 0.7:
        features.append("highly saturated")
    elif saturation > 0.3:
        features.append("moderately saturated")
    else:
        features.append("low saturation")
    return " ".join(features)


def brightness(rgb: tuple[int, int, int]) -> float:
    r, g, b = rgb
    return (r * 299 + g * 587 + b * 114) / 1000


def brightness_label(value: float) -> str:
    if value > 240:
        return "very light"
    if value > 180:
        return "light"
    if value > 80:
        return "medium"
    if value > 40:
        return "dark"
    return "very dark"


def typography_features(name: str, value: str) -> str:
    lowered, lowered_name = value.lower(), name.lower()
    features = []
    if "serif" in lowered and "sans" not in lowered:
        features.append("serif font")
    elif "sans" in lowered:
        features.append("sans-serif font")
    elif "mono" in lowered:
        features.append("monospace font")

    if "display" in lowered or "headline" in lowered:
        features.append("display font")
    if "primary" in lowered_name or "main" in lowered_name:
        features.append("primary typography")
    if "secondary" in lowered_name or "body" in lowered_name:
        features.append("body typography")
    if "heading" in lowered_name or "title" in lowered_name:
        features.append("heading typography")
    return " ".join(features)


def spacing_features(value: str) -> str:
    match = re.match(r"\s*(-?[\d.]+)", value)
    if not match:
        return ""
    number = float(match.group(1))
    if number <= 4:
        size = "extra small spacing"
    elif number <= 8:
        size = "small spacing"
    elif number <= 16:
        size = "medium spacing"
    elif number <= 32:
        size = "large spacing"
    else:
        size = "extra large spacing"

    if number % 8 == 0:
        grid = "8px grid system"
    elif number % 4 == 0:
        grid = "4px grid system"
    else:
        grid = "arbitrary spacing"
    return f"{size} {grid}"


COMPONENT_KINDS = (("button", "button component"), ("card", "card component"), ("input", "form input"), ("nav", "navigation component"))
COMPONENT_VARIANTS = (
    (("primary",), "primary variant"),
    (("secondary",), "secondary variant"),
    (("large", "lg"), "large size"),
    (("small", "sm"), "small size"),
)


def component_features(name: str) -> str:
    lowered = name.lower()
    features = [label for marker, label in COMPONENT_KINDS if marker in lowered]
    features += [label for markers, label in COMPONENT_VARIANTS if any(m in lowered for m in markers)]
    return " ".join(features)


def embedding_text(token: TokenItem) -> str:
    """Canonical ``name: .. | value: .. | type: ..`` text plus type and usage features."""
    parts = [f"name: {token.name}", f"value: {token.value}", f"type: {token.type}"]

    kind = token.type.lower()
    if kind == "color":
        parts.append(color_features(token.value))
    elif kind == "typography":
        parts.append(typography_features(token.name, token.value))
    elif kind == "spacing":
        parts.append(spacing_features(token.value))
    elif kind == "component":
        parts.append(component_features(token.name))

    if token.usage > 10:
        parts.append("frequently used")
    if token.usage < 3:
        parts.append("rarely used")
    if token.confidence > 90:
        parts.append("high confidence")
    if token.confidence < 50:
        parts.append("low confidence")
    return " | ".join(part for part in parts if part)


def semantic_color_name(value: str) -> str:
    rgb = parse_color(value)
    if rgb is None:
        return "color"
    r, g, b = rgb
    level = brightness(rgb)

    if r > 200 and g < 100 and b < 100:
        return "red-light" if level > 150 else "red-dark"
    if g > 200 and r < 100 and b < 100:
        return "green-light" if level > 150 else "green-dark"
    if b > 200 and r < 100 and g < 100:
        return "blue-light" if level > 150 else "blue-dark"
    if abs(r - g) < 30 and abs(g - b) < 30:
        for floor, name in ((240, "gray-50"), (200, "gray-100"), (150, "gray-300"), (100, "gray-500"), (50, "gray-700")):
            if level > floor:
                return name
        return "gray-900"
    return "accent"


def common_words(texts: list[str], limit: int = 5) -> list[str]:
    """Words (3+ letters) appearing more than once across ``texts``, most frequent first."""
    counts: Counter = Counter()
    for text in texts:
        counts.update(word for word in WORD_RE.findall(text.lower()) if len(word) > 2)
    return [word for word, count in counts.most_common() if count > 1][:limit]


def text_similarity(a: str, b: str) -> float:
    words_a, words_b = set(a.lower().split()), set(b.lower().split())
    union = words_a | words_b
    return len(words_a & words_b) / len(union) if union else 0.0


CLUSTER_THEMES = (
    (("primary", "brand"), "Brand Colors"),
    (("gray", "neutral"), "Neutral Palette"),
    (("spacing", "margin"), "Spacing System"),
    (("font", "typography"), "Typography Scale"),
    (("button", "component"), "Component Styles"),
)


def cluster_theme(texts: list[str]) -> str:
    words = common_words(texts)
    for markers, theme in CLUSTER_THEMES:
        if any(marker in words for marker in markers):
            return theme
    return "Design Elements"


def cluster_characteristics(tokens: list[TokenItem], texts: list[str]) -> list[str]:
    traits = []
    if sum(1 for t in tokens if t.usage > 10) > len(tokens) * 0.5:
        traits.append("frequently-used")
    if sum(1 for t in tokens if t.confidence > 80) > len(tokens) * 0.7:
        traits.append("high-confidence")

    types = list(dict.fromkeys(t.type for t in tokens))
    traits.append(f"{types[0]}-only" if len(types) == 1 else "mixed-types")

    lowered = [text.lower() for text in texts]
    if any("primary" in text or "main" in text for text in lowered):
        traits.append("primary-elements")
    if any("large" in text or "small" in text for text in lowered):
        traits.append("size-variants")
    return traits


def cluster_name(tokens: list[TokenItem], texts: list[str]) -> str:
    words = common_words(texts)
    kind: Optional[str] = tokens[0].type if tokens else "token"
    return f"{words[0]}-{kind}" if words else f"{kind}-cluster"
