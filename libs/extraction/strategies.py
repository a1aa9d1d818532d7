"""
Extraction strategies.

Each strategy is one independent technique for pulling style data from a
page. ``run`` returns a ``StrategyOutcome``; raising is reserved for
infrastructure failures (timeouts, browser crashes, HTTP blocks) so the engine
can retry and the fallback layer can match on the error text.

Default order (priority):
    1  static-css-extraction          HTTP + stylesheet fetch
    2  computed-styles-extraction     coverage, :root props, component styles
    3  runtime-css-detection          CSS-in-JS (styled-components, emotion)
    4  framework-specific-extraction  class prefixes and CSS signatures
    5  custom-properties-extraction   root and inline custom properties
    6  component-pattern-analysis     buttons, forms, navigation, cards
    7  brand-analysis                 logo, hero colors, heading font, tone
    8  accessibility-analysis         landmarks, ARIA, contrast, headings
    9  performance-analysis           stylesheet/image/font usage
    10 visual-screenshot-analysis     per-viewport screenshot + layout stats
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from libs.core.models import ScanContext, ScanOptions
from libs.extraction.css_analysis import analyze_css, contrast_ratio
from libs.extraction.css_sources import CssSourceCollector

logger = logging.getLogger(__name__)


@dataclass
class StrategyOutcome:
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class ExtractionStrategy:
    """Base class: a named, prioritized extraction technique."""

    name: str = "strategy"
    priority: int = 100

    def enabled(self, options: ScanOptions) -> bool:
        return True

    async def run(self, context: ScanContext) -> StrategyOutcome:
        raise NotImplementedError


class BrowserStrategy(ExtractionStrategy):
    """Strategy that analyzes the rendered page in its own browser session."""

    wait_until = "networkidle"

    def __init__(self, browser):
        self.browser = browser

    async def run(self, context: ScanContext) -> StrategyOutcome:
        session = await self.browser.new_session(user_agent=context.user_agent, timeout_ms=context.options.timeout_ms)
        try:
            await session.goto(context.url, wait_until=self.wait_until, timeout_ms=context.options.timeout_ms)
            return await self.analyze(session, context)
        finally:
            await session.close()

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        raise NotImplementedError


# =============================================================================
# 1-2: CSS source strategies
# =============================================================================


class StaticCssStrategy(ExtractionStrategy):
    name = "static-css-extraction"
    priority = 1

    def __init__(self, collector: CssSourceCollector):
        self.collector = collector

    async def run(self, context: ScanContext) -> StrategyOutcome:
        sources = await self.collector.collect_static(context.url)
        if not sources:
            return StrategyOutcome(False, error="No CSS sources found")
        return StrategyOutcome(
            True,
            {
                "sources": [s.to_dict() for s in sources],
                "fonts": self.collector.collect_fonts(sources),
                "tokens": analyze_css(s.content for s in sources),
            },
        )


class ComputedStylesStrategy(ExtractionStrategy):
    name = "computed-styles-extraction"
    priority = 2

    def __init__(self, browser, collector: CssSourceCollector):
        self.browser = browser
        self.collector = collector

    def enabled(self, options: ScanOptions) -> bool:
        return options.include_computed

    async def run(self, context: ScanContext) -> StrategyOutcome:
        session = await self.browser.new_session(user_agent=context.user_agent, timeout_ms=context.options.timeout_ms)
        try:
            collected = await self.collector.collect_computed(session, context.url, context.options.timeout_ms)
        finally:
            await session.close()

        sources = collected["sources"]
        data = {
            "sources": [s.to_dict() for s in sources],
            "custom_properties": collected["custom_properties"],
            "elements": len(collected["component_styles"]),
            "component_styles": collected["component_styles"],
            "tokens": analyze_css(s.content for s in sources),
        }
        return StrategyOutcome(bool(sources), data, None if sources else "No computed styles captured")


# =============================================================================
# 3-10: rendered-page analysis
# =============================================================================

RUNTIME_SCRIPT = """
() => {
  const collect = (selector, test) => Array.from(document.querySelectorAll(selector)).slice(0, 50)
    .map(el => ({ element: el.tagName.toLowerCase(), classes: Array.from(el.classList).filter(test) }))
    .filter(entry => entry.classes.length > 0);
  return {
    styled_components: collect('[class*="sc-"]', c => c.includes('sc-')),
    emotion_styles: collect('[class*="css-"]', c => c.startsWith('css-')),
    css_in_js: Array.from(document.querySelectorAll('style[data-styled], style[data-emotion]')).map(style => ({
      framework: style.hasAttribute('data-styled') ? 'styled-components' : 'emotion',
      content: (style.textContent || '').slice(0, 20000),
      size: (style.textContent || '').length,
    })),
  };
}
"""


class RuntimeCssStrategy(BrowserStrategy):
    name = "runtime-css-detection"
    priority = 3

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        data = await session.evaluate(RUNTIME_SCRIPT)
        found = any(data.get(key) for key in ("styled_components", "emotion_styles", "css_in_js"))
        if data.get("css_in_js"):
            data["tokens"] = analyze_css(block["content"] for block in data["css_in_js"])
        return StrategyOutcome(found, data, None if found else "No runtime CSS detected")


FRAMEWORK_SCRIPT = """
() => {
  const classes = Array.from(document.querySelectorAll('[class]'))
    .flatMap(el => typeof el.className === 'string' ? el.className.split(/\\s+/) : []);
  let css = '';
  for (const sheet of Array.from(document.styleSheets)) {
    try { for (const rule of Array.from(sheet.cssRules || [])) css += rule.cssText + '\\n'; } catch (e) {}
    if (css.length > 500000) break;
  }
  return {
    classes: classes.slice(0, 5000),
    markers: {
      material: !!document.querySelector('[class*="MuiButton"], [class*="MuiTypography"]'),
      chakra: !!document.querySelector('[class*="chakra"]'),
      antd: !!document.querySelector('[class*="ant-"]'),
    },
    css,
  };
}
"""

TAILWIND_PREFIXES = ("flex", "grid", "bg-", "text-", "p-", "m-", "w-", "h-")
BOOTSTRAP_CLASSES = ("container", "row", "col-", "btn", "navbar", "card")
CSS_SIGNATURES = {
    "tailwind": (r"@tailwind", r"--tw-", r"theme\("),
    "bootstrap": (r"@import.*bootstrap", r"--bs-", r"\.navbar-expand"),
    "bulma": (r"@import.*bulma", r"\.column\b", r"\.hero\b"),
    "foundation": (r"@import.*foundation", r"\.grid-container"),
}


def detect_frameworks(classes: list[str], css: str, markers: dict[str, bool]) -> dict[str, Any]:
    """Framework detection from class names, DOM markers and stylesheet text."""
    detected: list[str] = []
    evidence: list[str] = []
    class_set = set(classes)

    tailwind_hits = [p for p in TAILWIND_PREFIXES if any(c == p or c.startswith(p) for c in class_set)]
    if len(tailwind_hits) >= 3:
        detected.append("tailwind")
        evidence.append(f"Tailwind classes detected: {', '.join(tailwind_hits[:5])}")

    bootstrap_hits = [b for b in BOOTSTRAP_CLASSES if any(c == b or c.startswith(b) for c in class_set)]
    if len(bootstrap_hits) >= 2:
        detected.append("bootstrap")
        evidence.append(f"Bootstrap classes detected: {', '.join(bootstrap_hits)}")

    for marker, label in (("material", "Material-UI"), ("chakra", "Chakra UI"), ("antd", "Ant Design")):
        if markers.get(marker):
            detected.append(marker)
            evidence.append(f"{label} components detected")

    for framework, signatures in CSS_SIGNATURES.items():
        hits = [sig for sig in signatures if re.search(sig, css)]
        if hits:
            if framework not in detected:
                detected.append(framework)
            evidence.append(f"{framework} CSS signatures: {', '.join(hits)}")

    return {"detected": detected, "evidence": evidence}


class FrameworkStrategy(BrowserStrategy):
    name = "framework-specific-extraction"
    priority = 4

    def enabled(self, options: ScanOptions) -> bool:
        return options.detect_frameworks

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        raw = await session.evaluate(FRAMEWORK_SCRIPT)
        data = detect_frameworks(raw.get("classes", []), raw.get("css", ""), raw.get("markers", {}))
        found = bool(data["evidence"])
        return StrategyOutcome(found, data, None if found else "No framework signatures")


CUSTOM_PROPS_SCRIPT = """
() => {
  const properties = [];
  const styles = getComputedStyle(document.documentElement);
  for (let i = 0; i < styles.length; i++) {
    const prop = styles[i];
    if (prop.startsWith('--')) properties.push({ name: prop, value: styles.getPropertyValue(prop).trim(), scope: 'root' });
  }
  document.querySelectorAll('[style*="--"]').forEach(el => {
    const inline = el.getAttribute('style') || '';
    (inline.match(/--[\\w-]+:\\s*[^;]+/g) || []).forEach(match => {
      const idx = match.indexOf(':');
      properties.push({ name: match.slice(0, idx).trim(), value: match.slice(idx + 1).trim(),
                        scope: 'component', element: el.tagName.toLowerCase() });
    });
  });
  return properties.slice(0, 1000);
}
"""

TOKEN_HINTS = ("color", "size", "space", "font", "radius", "shadow")


class CustomPropertiesStrategy(BrowserStrategy):
    name = "custom-properties-extraction"
    priority = 5

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        properties = await session.evaluate(CUSTOM_PROPS_SCRIPT) or []
        data = {
            "properties": properties,
            "design_tokens": [p for p in properties if any(hint in p["name"] for hint in TOKEN_HINTS)],
        }
        return StrategyOutcome(bool(properties), data, None if properties else "No custom properties")


COMPONENTS_SCRIPT = """
() => {
  const pick = (el, props) => { const c = getComputedStyle(el); const out = {};
    props.forEach(p => out[p] = c.getPropertyValue(p)); return out; };
  const patterns = { buttons: [], forms: [], navigation: [], cards: [] };
  Array.from(document.querySelectorAll('button, [role="button"], .btn, [class*="button"]')).slice(0, 20).forEach(btn => {
    patterns.buttons.push({
      variant: (typeof btn.className === 'string' && btn.className.trim()) || 'default',
      styles: pick(btn, ['background-color', 'color', 'padding', 'border-radius', 'font-size', 'font-weight', 'border']),
      text: (btn.textContent || '').trim().slice(0, 60),
      disabled: btn.hasAttribute('disabled'),
    });
  });
  document.querySelectorAll('form').forEach(form => {
    const inputs = form.querySelectorAll('input, textarea, select').length;
    const labels = form.querySelectorAll('label').length;
    patterns.forms.push({ input_count: inputs, has_labels: labels > 0,
      has_validation: !!form.querySelector('[aria-invalid], .error, .invalid'),
      label_ratio: inputs ? labels / inputs : 1 });
  });
  document.querySelectorAll('nav, [role="navigation"], .navbar, .nav').forEach(nav => {
    const c = getComputedStyle(nav);
    patterns.navigation.push({ type: nav.tagName.toLowerCase(),
      item_count: nav.querySelectorAll('a, [role="link"]').length,
      responsive: c.display === 'flex' || c.display === 'grid',
      styles: pick(nav, ['background-color', 'padding', 'position']) });
  });
  Array.from(document.querySelectorAll('.card, [class*="card"], .panel, [class*="panel"]')).slice(0, 10).forEach(card => {
    patterns.cards.push({ styles: pick(card, ['background-color', 'border-radius', 'box-shadow', 'padding']),
      has_image: !!card.querySelector('img'), has_button: !!card.querySelector('button, [role="button"]') });
  });
  return patterns;
}
"""


class ComponentPatternStrategy(BrowserStrategy):
    name = "component-pattern-analysis"
    priority = 6

    def enabled(self, options: ScanOptions) -> bool:
        return options.analyze_components

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        data = await session.evaluate(COMPONENTS_SCRIPT) or {}
        found = any(data.get(key) for key in ("buttons", "forms", "navigation", "cards"))
        return StrategyOutcome(found, data, None if found else "No component patterns")


BRAND_SCRIPT = """
() => {
  const logos = [];
  ['img[alt*="logo" i]', '.logo img', '[class*="logo"] img', 'header img', '.brand img'].forEach(sel =>
    document.querySelectorAll(sel).forEach(img => { const src = img.getAttribute('src'); if (src) logos.push(src); }));
  const primary = [], secondary = [];
  document.querySelectorAll('header, .hero, [class*="hero"], main > section:first-child').forEach(section => {
    const c = getComputedStyle(section);
    if (c.backgroundColor && c.backgroundColor !== 'rgba(0, 0, 0, 0)' && c.backgroundColor !== 'transparent') primary.push(c.backgroundColor);
    if (c.color && c.color !== 'rgba(0, 0, 0, 0)') secondary.push(c.color);
  });
  const heading = document.querySelector('h1, h2');
  return {
    logo_urls: Array.from(new Set(logos)).slice(0, 10),
    primary_colors: primary, secondary_colors: secondary,
    heading_font: heading ? getComputedStyle(heading).fontFamily : '',
    body_font: getComputedStyle(document.body).fontFamily,
    text: (document.body.innerText || '').toLowerCase().slice(0, 50000),
  };
}
"""

CASUAL_WORDS = ("hey", "awesome", "cool", "fun", "amazing", "love", "!")
PROFESSIONAL_WORDS = ("solution", "enterprise", "professional", "industry", "platform")


def infer_tone(text: str) -> str:
    casual = sum(1 for word in CASUAL_WORDS if word in text)
    professional = sum(1 for word in PROFESSIONAL_WORDS if word in text)
    if casual > professional:
        return "casual"
    if "minimal" in text or "clean" in text:
        return "minimal"
    return "professional"


class BrandStrategy(BrowserStrategy):
    name = "brand-analysis"
    priority = 7

    def enabled(self, options: ScanOptions) -> bool:
        return options.extract_brand

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        raw = await session.evaluate(BRAND_SCRIPT) or {}
        data = {
            "logo": {"urls": raw.get("logo_urls", [])},
            "brand_colors": {
                "primary": list(dict.fromkeys(raw.get("primary_colors", []))),
                "secondary": list(dict.fromkeys(raw.get("secondary_colors", []))),
            },
            "typography": {"primary": raw.get("heading_font", ""), "secondary": raw.get("body_font", "")},
            "tone": infer_tone(raw.get("text", "")),
        }
        found = bool(data["logo"]["urls"] or data["brand_colors"]["primary"])
        return StrategyOutcome(found, data, None if found else "No brand signals")


A11Y_SCRIPT = """
() => {
  const q = s => document.querySelectorAll(s).length;
  const levels = Array.from(document.querySelectorAll('h1, h2, h3, h4, h5, h6')).map(h => parseInt(h.tagName[1]));
  let ordered = true;
  for (let i = 1; i < levels.length; i++) if (levels[i] > levels[i - 1] + 1) ordered = false;
  const pairs = {};
  Array.from(document.querySelectorAll('p, span, h1, h2, h3, h4, h5, h6, a, button, li')).slice(0, 150).forEach(el => {
    let bg = 'rgba(0, 0, 0, 0)', node = el;
    while (node && (bg === 'rgba(0, 0, 0, 0)' || bg === 'transparent')) { bg = getComputedStyle(node).backgroundColor; node = node.parentElement; }
    if (bg === 'rgba(0, 0, 0, 0)' || bg === 'transparent') bg = 'rgb(255, 255, 255)';
    const key = getComputedStyle(el).color + '|' + bg;
    if (!pairs[key]) pairs[key] = el.tagName.toLowerCase();
  });
  return {
    skip_links: !!document.querySelector('a[href="#main"], a[href="#content"], a[href="#main-content"]'),
    landmarks: q('main, nav, header, footer, [role="main"], [role="navigation"], [role="banner"], [role="contentinfo"]'),
    labels: q('[aria-label], [aria-labelledby]'),
    descriptions: q('[aria-describedby]'),
    live_regions: q('[aria-live]'),
    heading_order: ordered,
    list_usage: q('ul, ol') > 0,
    table_headers: q('th') > 0,
    inputs: q('input:not([type="hidden"]), textarea, select'),
    form_labels: q('label'),
    images: q('img'),
    images_with_alt: q('img[alt]'),
    pairs: Object.entries(pairs).map(([key, element]) => { const [fg, bg] = key.split('|'); return { fg, bg, element }; }),
  };
}
"""


def build_contrast_report(pairs: list[dict[str, str]]) -> dict[str, Any]:
    checks = []
    for pair in pairs:
        ratio = contrast_ratio(pair["fg"], pair["bg"])
        if ratio is None:
            continue
        checks.append(
            {
                "foreground": pair["fg"],
                "background": pair["bg"],
                "element": pair.get("element"),
                "ratio": ratio,
                "passes": {"aa": ratio >= 4.5, "aaa": ratio >= 7.0},
            }
        )
    return {
        "total_pairs": len(checks),
        "aa_compliant": sum(1 for c in checks if c["passes"]["aa"]),
        "aaa_compliant": sum(1 for c in checks if c["passes"]["aaa"]),
        "violations": [c for c in checks if not c["passes"]["aa"]][:20],
    }


class AccessibilityStrategy(BrowserStrategy):
    name = "accessibility-analysis"
    priority = 8

    def enabled(self, options: ScanOptions) -> bool:
        return options.analyze_accessibility

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        raw = await session.evaluate(A11Y_SCRIPT) or {}
        inputs = raw.get("inputs", 0)
        data = {
            "focus_management": {"skip_links": raw.get("skip_links", False)},
            "aria": {
                "landmarks": raw.get("landmarks", 0),
                "labels": raw.get("labels", 0),
                "descriptions": raw.get("descriptions", 0),
                "live_regions": raw.get("live_regions", 0),
            },
            "contrast": build_contrast_report(raw.get("pairs", [])),
            "semantic_html": {
                "heading_structure": raw.get("heading_order", True),
                "list_usage": raw.get("list_usage", False),
                "table_headers": raw.get("table_headers", False),
                "form_labels": raw.get("form_labels", 0) >= inputs * 0.8,
            },
            "images": {"total": raw.get("images", 0), "with_alt": raw.get("images_with_alt", 0)},
        }
        return StrategyOutcome(True, data)


PERFORMANCE_SCRIPT = """
() => {
  let rules = 0, external = 0, inline = 0;
  for (const sheet of Array.from(document.styleSheets)) {
    try { rules += (sheet.cssRules || []).length; } catch (e) {}
    if (sheet.href) external++; else inline++;
  }
  const families = new Set();
  Array.from(document.querySelectorAll('body *')).slice(0, 3000).forEach(el => families.add(getComputedStyle(el).fontFamily));
  return {
    css: { rule_count: rules, external_sheets: external, inline_styles: inline },
    images: { total: document.querySelectorAll('img').length,
              lazy_loaded: document.querySelectorAll('img[loading="lazy"]').length,
              webp: document.querySelectorAll('img[src*=".webp"], source[type="image/webp"]').length },
    fonts: { families: Array.from(families).slice(0, 50),
             preloaded: document.querySelectorAll('link[rel="preload"][as="font"]').length },
  };
}
"""


class PerformanceStrategy(BrowserStrategy):
    name = "performance-analysis"
    priority = 9

    async def analyze(self, session, context: ScanContext) -> StrategyOutcome:
        data = await session.evaluate(PERFORMANCE_SCRIPT) or {}
        data.setdefault("fonts", {})["family_count"] = len(data.get("fonts", {}).get("families", []))
        return StrategyOutcome(True, data)


VISUAL_SCRIPT = """
() => {
  const visible = Array.from(document.querySelectorAll('body *')).slice(0, 5000).filter(el => {
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0 && r.top < window.innerHeight && r.bottom > 0;
  });
  let maxWidth = 0;
  document.querySelectorAll('.container, [class*="container"], main, .content').forEach(el => {
    const w = parseFloat(getComputedStyle(el).maxWidth); if (w && w > maxWidth) maxWidth = w;
  });
  return {
    page_height: document.documentElement.scrollHeight,
    visible_elements: visible.length,
    above_fold: visible.filter(el => el.getBoundingClientRect().bottom <= window.innerHeight).length,
    has_grid: !!document.querySelector('[style*="grid"], .grid'),
    has_flex: !!document.querySelector('[style*="flex"], .flex'),
    max_content_width: maxWidth || window.innerWidth,
  };
}
"""


class VisualScreenshotStrategy(ExtractionStrategy):
    name = "visual-screenshot-analysis"
    priority = 10

    def __init__(self, browser, embed_images: bool = False):
        self.browser = browser
        self.embed_images = embed_images

    def enabled(self, options: ScanOptions) -> bool:
        return options.capture_screenshots

    async def run(self, context: ScanContext) -> StrategyOutcome:
        screenshots = []
        for viewport in context.viewports:
            session = await self.browser.new_session(
                user_agent=context.user_agent,
                viewport={"width": viewport.width, "height": viewport.height},
                timeout_ms=context.options.timeout_ms,
            )
            try:
                await session.goto(context.url, timeout_ms=context.options.timeout_ms)
                image = await session.screenshot(full_page=True)
                analysis = await session.evaluate(VISUAL_SCRIPT)
            finally:
                await session.close()

            entry = {"viewport": viewport.name, "bytes": len(image), "analysis": analysis}
            if self.embed_images:
                entry["image"] = "data:image/png;base64," + base64.b64encode(image).decode()
            screenshots.append(entry)

        return StrategyOutcome(bool(screenshots), {"screenshots": screenshots})


def default_strategies(browser, collector: CssSourceCollector) -> list[ExtractionStrategy]:
    """The standard ten strategies, in priority order."""
    strategies = [
        StaticCssStrategy(collector),
        ComputedStylesStrategy(browser, collector),
        RuntimeCssStrategy(browser),
        FrameworkStrategy(browser),
        CustomPropertiesStrategy(browser),
        ComponentPatternStrategy(browser),
        BrandStrategy(browser),
        AccessibilityStrategy(browser),
        PerformanceStrategy(browser),
        VisualScreenshotStrategy(browser),
    ]
    return sorted(strategies, key=lambda s: s.priority)
