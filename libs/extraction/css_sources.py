"""
CSS source collection.

Two techniques feed the extraction strategies:

- static: fetch the page HTML over HTTP, collect inline ``<style>`` blocks and
  linked stylesheets (fetched with bounded concurrency);
- computed: render the page in the browser and capture used CSS (coverage),
  ``:root`` custom properties and computed styles of representative
  components.

Every block is trimmed and content-hashed; duplicates (same sha256) are kept
once.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from libs.core.exceptions import FetchError

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36 ContextDS/1.0 (+https://contextds.com/bot)"
)

STATUS_MESSAGES = {
    403: "blocked: site blocks automated scanners",
    404: "page not found",
    429: "rate limit: please try again later",
    500: "site server error",
    503: "site temporarily unavailable",
}

# Coverage limits
MAX_COVERAGE_ENTRIES = 100
MAX_RANGES_PER_ENTRY = 50
MAX_SOURCE_BYTES = 1024 * 1024
MAX_TOTAL_COVERAGE_BYTES = 10 * 1024 * 1024

# Custom property limits
MAX_CUSTOM_PROPERTIES = 200
MAX_CUSTOM_PROPERTY_LENGTH = 500

EMPTY_COMPUTED_VALUES = {"", "none", "0px", "auto", "normal"}

FONT_FACE_RE = re.compile(r"@font-face\s*\{([^}]*)\}", re.IGNORECASE)
DECLARATION_RE = re.compile(r"([a-zA-Z-]+)\s*:\s*([^;]+);?")
URL_RE = re.compile(r"url\(\s*['\"]?([^'\")]+)['\"]?\s*\)")


@dataclass(frozen=True)
class CssSource:
    """One trimmed, content-hashed block of style text."""

    kind: str  # inline | link | computed | coverage | runtime
    content: str
    sha256: str
    bytes: int
    url: Optional[str] = None

    @classmethod
    def create(cls, kind: str, content: str, url: Optional[str] = None) -> "CssSource":
        normalized = content.strip()
        encoded = normalized.encode("utf-8")
        return cls(
            kind=kind,
            content=normalized,
            sha256=hashlib.sha256(encoded).hexdigest(),
            bytes=len(encoded),
            url=url,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "url": self.url, "bytes": self.bytes, "sha256": self.sha256, "content": self.content}


def dedupe_sources(sources: list[CssSource]) -> list[CssSource]:
    unique: dict[str, CssSource] = {}
    for source in sources:
        unique.setdefault(source.sha256, source)
    return list(unique.values())


def page_headers(url: str, user_agent: str = BROWSER_USER_AGENT) -> dict[str, str]:
    origin = "{0.scheme}://{0.netloc}".format(urlparse(url))
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Upgrade-Insecure-Requests": "1",
        "Referer": origin,
    }


def stylesheet_headers(url: str, referer: Optional[str], user_agent: str = BROWSER_USER_AGENT) -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/css,*/*;q=0.1",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": referer or url,
    }


async def fetch_html(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[dict[str, str]] = None,
    timeout_s: float = 30.0,
) -> tuple[str, str]:
    """GET ``url``; returns ``(html, final_url)``. HTTP failures raise FetchError."""
    try:
        response = await client.get(url, headers=headers or page_headers(url), timeout=timeout_s, follow_redirects=True)
    except httpx.TimeoutException as e:
        raise FetchError(url, reason=f"timeout: {e}") from e
    except httpx.RequestError as e:
        raise FetchError(url, reason=f"network error: {e}") from e

    if response.status_code >= 400:
        raise FetchError(url, response.status_code, STATUS_MESSAGES.get(response.status_code, ""))
    return response.text, str(response.url)


def parse_html_styles(html: str, base_url: str) -> tuple[list[str], list[str]]:
    """Return ``(inline_style_blocks, absolute_stylesheet_urls)`` from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")

    inline = [tag.get_text() for tag in soup.find_all("style") if tag.get_text().strip()]

    links = []
    for tag in soup.find_all("link", href=True):
        rel = tag.get("rel") or []
        rel = [r.lower() for r in (rel if isinstance(rel, list) else [rel])]
        if "stylesheet" in rel:
            links.append(urljoin(base_url, tag["href"]))
    return inline, list(dict.fromkeys(links))


def parse_font_faces(sources: list[CssSource]) -> list[dict[str, Any]]:
    """Collect ``@font-face`` rules (family, src URLs, weight, style, display)."""
    fonts = []
    for source in sources:
        for block in FONT_FACE_RE.findall(source.content):
            face: dict[str, Any] = {"src": []}
            for prop, value in DECLARATION_RE.findall(block):
                prop = prop.lower()
                value = value.strip()
                if prop == "font-family":
                    face["family"] = value.strip("'\"")
                elif prop == "src":
                    face["src"] = URL_RE.findall(value)
                elif prop in ("font-weight", "font-style", "font-display"):
                    face[prop.replace("font-", "")] = value
            if face.get("family") and face["src"]:
                fonts.append(face)
    return fonts


# =============================================================================
# Browser scripts
# =============================================================================

CUSTOM_PROPERTIES_SCRIPT = """
([maxProps, maxLength]) => {
  const styles = window.getComputedStyle(document.documentElement);
  const props = {};
  let count = 0;
  for (let i = 0; i < styles.length && count < maxProps; i++) {
    const prop = styles[i];
    if (prop.startsWith('--')) {
      const value = styles.getPropertyValue(prop).trim();
      if (value && value.length < maxLength) { props[prop] = value; count++; }
    }
  }
  return props;
}
"""

COMPONENT_STYLES_SCRIPT = """
(maxElements) => {
  const results = [];
  let processed = 0;
  const props = ['font-size', 'font-family', 'font-weight', 'line-height', 'letter-spacing',
    'text-transform', 'padding', 'margin', 'gap', 'display', 'border', 'border-radius',
    'border-color', 'color', 'background-color', 'background-image', 'box-shadow',
    'opacity', 'transition', 'cursor', 'max-width'];
  const groups = [
    ['button, [role="button"], .btn, .button, [type="button"], [type="submit"]', 'button', 20],
    ['input, textarea, select, .input, .form-control', 'input', 15],
    ['.card, .panel, .box, [class*="card"]', 'card', 10],
    ['.badge, .tag, .chip, .label, [class*="badge"]', 'badge', 10],
    ['a[href], .link', 'link', 15],
    ['h1, h2, h3, h4, h5, h6', 'heading', 20],
    ['.alert, .notification, .toast, .message, [role="alert"]', 'alert', 5],
    ['.container, .wrapper, .content, main, [class*="container"]', 'container', 5],
  ];
  for (const [query, element, limit] of groups) {
    document.querySelectorAll(query).forEach((el, idx) => {
      if (idx >= limit || processed >= maxElements) return;
      const computed = window.getComputedStyle(el);
      const cls = typeof el.className === 'string' && el.className.trim()
        ? '.' + el.className.trim().split(/\\s+/).join('.') : '';
      const styles = {};
      for (const prop of props) styles[prop] = computed.getPropertyValue(prop);
      results.push({ selector: (el.tagName.toLowerCase() + cls).substring(0, 100), element, styles });
      processed++;
    });
  }
  return results;
}
"""

MAX_DOM_ELEMENTS = 5000

SCROLL_SCRIPT = """
() => new Promise(resolve => {
  let y = 0;
  const step = () => {
    y += window.innerHeight;
    window.scrollTo(0, y);
    if (y < document.body.scrollHeight && y < 20000) setTimeout(step, 100); else { window.scrollTo(0, 0); resolve(y); }
  };
  step();
})
"""


# =============================================================================
# Collector
# =============================================================================


class CssSourceCollector:
    """Collects style-text blocks from a page, statically and in the browser."""

    def __init__(self, http: httpx.AsyncClient, stylesheet_concurrency: int = 6, timeout_s: float = 30.0):
        self.http = http
        self.stylesheet_concurrency = stylesheet_concurrency
        self.timeout_s = timeout_s

    async def collect_static(self, url: str, user_agent: str = BROWSER_USER_AGENT) -> list[CssSource]:
        html, final_url = await fetch_html(self.http, url, page_headers(url, user_agent), self.timeout_s)
        inline_blocks, stylesheet_urls = parse_html_styles(html, final_url)

        sources = [CssSource.create("inline", block) for block in inline_blocks]

        semaphore = asyncio.Semaphore(self.stylesheet_concurrency)

        async def fetch_stylesheet(sheet_url: str) -> Optional[CssSource]:
            async with semaphore:
                try:
                    response = await self.http.get(
                        sheet_url,
                        headers=stylesheet_headers(sheet_url, final_url, user_agent),
                        timeout=self.timeout_s,
                        follow_redirects=True,
                    )
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    logger.warning(f"[CssSources] Failed to fetch stylesheet {sheet_url}: {e}")
                    return None
                return CssSource.create("link", response.text, sheet_url)

        fetched = await asyncio.gather(*(fetch_stylesheet(u) for u in stylesheet_urls))
        sources.extend(source for source in fetched if source is not None)

        unique = dedupe_sources([s for s in sources if s.content])
        logger.info(
            f"[CssSources] Static: {len(inline_blocks)} inline, {len(stylesheet_urls)} linked, "
            f"{len(unique)} unique sources from {url}"
        )
        return unique

    async def collect_computed(
        self, session, url: str, timeout_ms: int = 30000, settle_ms: int = 0
    ) -> dict[str, Any]:
        """Render ``url`` in ``session`` and capture used CSS, custom properties and component styles.

        Returns ``{"sources": [CssSource], "custom_properties": {...}, "component_styles": [...]}``.
        A non-zero ``settle_ms`` scrolls the page and waits for late client-side rendering.
        """
        await session.start_coverage()
        await session.goto(url, timeout_ms=timeout_ms)
        if settle_ms:
            await session.evaluate(SCROLL_SCRIPT)
            await session.wait(settle_ms)
        coverage = await session.stop_coverage()

        sources = self._coverage_sources(coverage)

        custom_properties = await session.evaluate(
            CUSTOM_PROPERTIES_SCRIPT, [MAX_CUSTOM_PROPERTIES, MAX_CUSTOM_PROPERTY_LENGTH]
        ) or {}
        if custom_properties:
            body = "\n".join(f"  {prop}: {value};" for prop, value in custom_properties.items())
            sources.append(CssSource.create("computed", f":root {{\n{body}\n}}"))

        component_styles = await session.evaluate(COMPONENT_STYLES_SCRIPT, MAX_DOM_ELEMENTS) or []
        blocks = []
        for entry in component_styles:
            rules = [
                f"  {prop}: {value};"
                for prop, value in entry.get("styles", {}).items()
                if value and value.strip() not in EMPTY_COMPUTED_VALUES
            ]
            if rules:
                blocks.append(f"{entry.get('selector') or entry.get('element')} {{\n" + "\n".join(rules) + "\n}")
        if blocks:
            sources.append(CssSource.create("computed", "\n\n".join(blocks)))

        logger.info(
            f"[CssSources] Computed: {len(coverage)} coverage entries, {len(custom_properties)} custom props, "
            f"{len(component_styles)} component elements from {url}"
        )
        return {
            "sources": dedupe_sources(sources),
            "custom_properties": custom_properties,
            "component_styles": component_styles,
        }

    def collect_fonts(self, sources: list[CssSource]) -> list[dict[str, Any]]:
        return parse_font_faces(sources)

    @staticmethod
    def _coverage_sources(coverage: list[dict[str, Any]]) -> list[CssSource]:
        sources = []
        total = 0
        for entry in coverage[:MAX_COVERAGE_ENTRIES]:
            text = entry.get("text", "")
            used = "\n".join(
                text[r["start"] : r["end"]] for r in entry.get("ranges", [])[:MAX_RANGES_PER_ENTRY]
            ).strip()
            if not used:
                continue
            used = used.encode("utf-8")[:MAX_SOURCE_BYTES].decode("utf-8", errors="ignore")
            if total + len(used) > MAX_TOTAL_COVERAGE_BYTES:
                logger.warning("[CssSources] Coverage size limit reached")
                break
            total += len(used)
            sources.append(CssSource.create("coverage", used, entry.get("url")))
        return sources
