"""Derive design-token candidates from raw CSS text.

Pure functions over strings: color palette, typography, spacing scale, radii,
shadows, custom properties, breakpoints and keyframes, plus color math
(WCAG contrast) used by the accessibility strategy.
"""

import re
from collections import Counter
from typing import Any, Iterable, Optional

from libs.compression.cost_optimizer import detect_scale

HEX_RE = re.compile(r"#(?:[0-9a-fA-F]{8}|[0-9a-fA-F]{6}|[0-9a-fA-F]{3,4})\b")
RGB_RE = re.compile(r"rgba?\(\s*(\d{1,3})[\s,]+(\d{1,3})[\s,]+(\d{1,3})(?:[\s,/]+([\d.]+%?))?\s*\)")
HSL_RE = re.compile(r"hsla?\(\s*([\d.]+)(?:deg)?[\s,]+([\d.]+)%[\s,]+([\d.]+)%(?:[\s,/]+([\d.]+%?))?\s*\)")
DECLARATION_RE = re.compile(r"(?<![\w-])([a-zA-Z-]+|--[\w-]+)\s*:\s*([^;{}]+)")
FONT_FAMILY_RE = re.compile(r"font-family\s*:\s*([^;{}]+)", re.IGNORECASE)
FONT_SIZE_RE = re.compile(r"font-size\s*:\s*([\d.]+(?:px|rem|em))", re.IGNORECASE)
FONT_WEIGHT_RE = re.compile(r"font-weight\s*:\s*(\d{3}|bold|normal)", re.IGNORECASE)
LINE_HEIGHT_RE = re.compile(r"line-height\s*:\s*([\d.]+(?:px|rem|em)?)", re.IGNORECASE)
SPACING_RE = re.compile(r"(?:margin|padding|gap)(?:-[a-z]+)?\s*:\s*([^;{}]+)", re.IGNORECASE)
RADIUS_RE = re.compile(r"border-radius\s*:\s*([^;{}]+)", re.IGNORECASE)
SHADOW_RE = re.compile(r"box-shadow\s*:\s*([^;{}]+)", re.IGNORECASE)
CUSTOM_PROP_RE = re.compile(r"(--[\w-]+)\s*:\s*([^;{}]+)")
MEDIA_RE = re.compile(r"@media[^{]*\(\s*(?:min|max)-width\s*:\s*([\d.]+)(px|em|rem)\s*\)", re.IGNORECASE)
KEYFRAMES_RE = re.compile(r"@(?:-webkit-)?keyframes\s+([\w-]+)", re.IGNORECASE)
LENGTH_RE = re.compile(r"(-?[\d.]+)(px|rem|em)\b")

GENERIC_FAMILIES = {"serif", "sans-serif", "monospace", "cursive", "fantasy", "system-ui", "inherit", "initial"}


# =============================================================================
# Color math
# =============================================================================

def parse_color(value: str) -> Optional[tuple[int, int, int]]:
    """Parse hex/rgb/hsl into an RGB tuple; None when not a plain color."""
    value = value.strip().lower()
    hex_match = HEX_RE.fullmatch(value)
    if hex_match:
        digits = value[1:]
        if len(digits) in (3, 4):
            digits = "".join(c * 2 for c in digits[:3])
        return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)

    rgb_match = RGB_RE.fullmatch(value)
    if rgb_match:
        return tuple(min(255, int(rgb_match.group(i))) for i in (1, 2, 3))

    hsl_match = HSL_RE.fullmatch(value)
    if hsl_match:
        hue, sat, light = (float(hsl_match.group(i)) for i in (1, 2, 3))
        return hsl_to_rgb(hue, sat / 100, light / 100)
    return None


def hsl_to_rgb(hue: float, saturation: float, lightness: float) -> tuple[int, int, int]:
    chroma = (1 - abs(2 * lightness - 1)) * saturation
    x = chroma * (1 - abs((hue / 60) % 2 - 1))
    m = lightness - chroma / 2
    sector = int(hue // 60) % 6
    r, g, b = [(chroma, x, 0), (x, chroma, 0), (0, chroma, x), (0, x, chroma), (x, 0, chroma), (chroma, 0, x)][sector]
    return round((r + m) * 255), round((g + m) * 255), round((b + m) * 255)


def to_hex(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def normalize_color(value: str) -> Optional[str]:
    rgb = parse_color(value)
    return to_hex(rgb) if rgb else None


def relative_luminance(rgb: tuple[int, int, int]) -> float:
    def channel(c: int) -> float:
        c = c / 255
        return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4

    r, g, b = (channel(c) for c in rgb)
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def contrast_ratio(foreground: str, background: str) -> Optional[float]:
    """WCAG 2.x contrast ratio between two CSS colors."""
    fg, bg = parse_color(foreground), parse_color(background)
    if fg is None or bg is None:
        return None
    lighter, darker = sorted((relative_luminance(fg), relative_luminance(bg)), reverse=True)
    return round((lighter + 0.05) / (darker + 0.05), 2)


def rgb_distance(a: str, b: str) -> Optional[float]:
    rgb_a, rgb_b = parse_color(a), parse_color(b)
    if rgb_a is None or rgb_b is None:
        return None
    return sum((x - y) ** 2 for x, y in zip(rgb_a, rgb_b)) ** 0.5


def to_px(value: float, unit: str, root_size: float = 16.0) -> float:
    return value * root_size if unit in ("rem", "em") else value


# =============================================================================
# Token derivation
# =============================================================================

def extract_colors(css: str) -> Counter:
    """Count colors used in declaration values (``#id`` selectors are ignored)."""
    colors: Counter = Counter()
    values = "\n".join(value for _prop, value in DECLARATION_RE.findall(css))
    for match in HEX_RE.finditer(values):
        normalized = normalize_color(match.group(0))
        if normalized:
            colors[normalized] += 1
    for match in RGB_RE.finditer(values):
        if match.group(4) in ("0", "0%"):
            continue
        colors[to_hex(tuple(min(255, int(match.group(i))) for i in (1, 2, 3)))] += 1
    for match in HSL_RE.finditer(values):
        if match.group(4) in ("0", "0%"):
            continue
        hue, sat, light = (float(match.group(i)) for i in (1, 2, 3))
        colors[to_hex(hsl_to_rgb(hue, sat / 100, light / 100))] += 1
    return colors


def extract_typography(css: str) -> dict[str, Any]:
    families: Counter = Counter()
    for value in FONT_FAMILY_RE.findall(css):
        primary = value.split(",")[0].strip().strip("'\"")
        if primary and primary.lower() not in GENERIC_FAMILIES and not primary.startswith("var("):
            families[primary] += 1

    sizes: Counter = Counter()
    for value in FONT_SIZE_RE.findall(css):
        match = LENGTH_RE.match(value)
        if match:
            sizes[round(to_px(float(match.group(1)), match.group(2)), 2)] += 1

    weights = Counter(w.lower() for w in FONT_WEIGHT_RE.findall(css))
    line_heights = Counter(LINE_HEIGHT_RE.findall(css))

    return {
        "families": [{"family": name, "usage": count} for name, count in families.most_common()],
        "sizes": [{"px": size, "usage": count} for size, count in sorted(sizes.items())],
        "weights": [w for w, _ in weights.most_common()],
        "line_heights": [lh for lh, _ in line_heights.most_common(10)],
    }


def extract_spacing(css: str) -> dict[str, Any]:
    values: Counter = Counter()
    for declaration in SPACING_RE.findall(css):
        for number, unit in LENGTH_RE.findall(declaration):
            px = round(to_px(float(number), unit), 2)
            if 0 < px <= 256:
                values[px] += 1

    scale = sorted(values)
    on_grid = [v for v in scale if v % 4 == 0]
    return {
        "scale": [{"px": v, "usage": values[v]} for v in scale],
        "base": 8 if scale and all(v % 8 == 0 for v in scale) else 4 if on_grid else None,
        "consistency": round(len(on_grid) / len(scale) * 100) if scale else 0,
        "pattern": detect_scale(scale),
    }


def extract_radii(css: str) -> list[dict[str, Any]]:
    radii = Counter(value.strip() for value in RADIUS_RE.findall(css) if value.strip() not in ("0", "0px"))
    return [{"value": value, "usage": count} for value, count in radii.most_common(12)]


def extract_shadows(css: str) -> list[dict[str, Any]]:
    shadows = Counter(value.strip() for value in SHADOW_RE.findall(css) if value.strip() != "none")
    return [{"value": value, "usage": count} for value, count in shadows.most_common(10)]


def extract_custom_properties(css: str) -> dict[str, str]:
    props: dict[str, str] = {}
    for name, value in CUSTOM_PROP_RE.findall(css):
        props.setdefault(name, value.strip())
    return props


def extract_breakpoints(css: str) -> list[int]:
    points = {round(to_px(float(number), unit)) for number, unit in MEDIA_RE.findall(css)}
    return sorted(points)


def extract_keyframes(css: str) -> list[str]:
    return sorted(set(KEYFRAMES_RE.findall(css)))


def analyze_css(blocks: Iterable[str]) -> dict[str, Any]:
    """Aggregate token candidates from several CSS blocks."""
    css = "\n".join(blocks)
    colors = extract_colors(css)
    return {
        "colors": [{"value": value, "usage": count} for value, count in colors.most_common()],
        "typography": extract_typography(css),
        "spacing": extract_spacing(css),
        "radius": extract_radii(css),
        "shadows": extract_shadows(css),
        "custom_properties": extract_custom_properties(css),
        "breakpoints": extract_breakpoints(css),
        "keyframes": extract_keyframes(css),
    }
