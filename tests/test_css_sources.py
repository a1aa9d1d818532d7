"""
Unit tests for CSS source collection.

Tests libs/extraction/css_sources.py
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from libs.core.exceptions import FetchError
from libs.extraction.css_sources import (
    CssSource,
    CssSourceCollector,
    dedupe_sources,
    parse_font_faces,
    parse_html_styles,
)

PAGE = """<html><head>
<style>body { color: #111; }</style>
<style>  body { color: #111; }  </style>
<link rel="stylesheet" href="/main.css">
<link rel="stylesheet" href="/main.css">
<link rel="stylesheet" href="https://cdn.acme.com/missing.css">
<link rel="icon" href="/favicon.ico">
</head><body><h1>Acme</h1></body></html>"""


def make_client(routes, seen=None):
    """httpx client whose responses come from ``routes`` (url -> (status, text) or exception)."""

    def handler(request):
        if seen is not None:
            seen.append(request)
        route = routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, Exception):
            raise route
        status, text = route
        return httpx.Response(status, text=text)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def session():
    """Browser session double with coverage, custom properties and component styles."""
    session = MagicMock()
    session.start_coverage = AsyncMock()
    session.goto = AsyncMock()
    session.wait = AsyncMock()
    session.stop_coverage = AsyncMock(
        return_value=[
            {
                "url": "https://acme.com/app.css",
                "text": ".a{color:red}.b{color:blue}",
                "ranges": [{"start": 0, "end": 13}],
            },
            {"url": "https://acme.com/unused.css", "text": ".x{}", "ranges": []},
        ]
    )
    session.evaluate = AsyncMock(
        side_effect=[
            {"--brand": "#3b82f6"},
            [
                {
                    "selector": "button.btn",
                    "element": "button",
                    "styles": {"color": "#fff", "padding": "0px", "background-color": "#3b82f6"},
                }
            ],
        ]
    )
    return session


class TestCssSource:
    """Test source normalization and dedupe."""

    def test_create_trims_and_hashes(self):
        a = CssSource.create("inline", "  a{}  ")
        b = CssSource.create("link", "a{}", "https://acme.com/a.css")

        assert a.content == "a{}"
        assert a.bytes == 3
        assert a.sha256 == b.sha256

    def test_dedupe_keeps_first(self):
        a = CssSource.create("inline", "a{}")
        b = CssSource.create("link", "a{}", "https://acme.com/a.css")

        assert dedupe_sources([a, b]) == [a]


class TestStaticCollection:
    """Test HTML + stylesheet fetching."""

    def test_parse_html_styles(self):
        inline, links = parse_html_styles(PAGE, "https://acme.com/")

        assert len(inline) == 2
        assert links == ["https://acme.com/main.css", "https://cdn.acme.com/missing.css"]

    @pytest.mark.asyncio
    async def test_collect_static(self):
        seen = []
        client = make_client(
            {
                "https://acme.com/": (200, PAGE),
                "https://acme.com/main.css": (200, "h1 { font-size: 2rem; }"),
            },
            seen,
        )
        collector = CssSourceCollector(client)

        sources = await collector.collect_static("https://acme.com/", user_agent="TestBot/1.0")

        assert [s.kind for s in sources] == ["inline", "link"]
        assert sources[1].url == "https://acme.com/main.css"
        # Duplicate link fetched once; missing stylesheet skipped
        assert [str(r.url) for r in seen].count("https://acme.com/main.css") == 1
        assert all(r.headers["User-Agent"] == "TestBot/1.0" for r in seen)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_blocked_page_raises(self):
        client = make_client({"https://acme.com/": (403, "denied")})
        collector = CssSourceCollector(client)

        with pytest.raises(FetchError, match="HTTP 403 blocked") as exc_info:
            await collector.collect_static("https://acme.com/")
        assert exc_info.value.status == 403
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        client = make_client({"https://acme.com/": httpx.ConnectError("connection refused")})
        collector = CssSourceCollector(client)

        with pytest.raises(FetchError, match="network error"):
            await collector.collect_static("https://acme.com/")
        await client.aclose()


class TestComputedCollection:
    """Test browser-based capture."""

    @pytest.mark.asyncio
    async def test_collect_computed(self, session):
        collector = CssSourceCollector(MagicMock())

        collected = await collector.collect_computed(session, "https://acme.com", timeout_ms=30000)

        session.goto.assert_awaited_once_with("https://acme.com", timeout_ms=30000)
        session.wait.assert_not_awaited()
        sources = collected["sources"]
        assert [s.kind for s in sources] == ["coverage", "computed", "computed"]
        assert sources[0].content == ".a{color:red}"
        assert "--brand: #3b82f6;" in sources[1].content
        assert "padding" not in sources[2].content
        assert sources[2].content.startswith("button.btn {")
        assert collected["custom_properties"] == {"--brand": "#3b82f6"}
        assert len(collected["component_styles"]) == 1

    @pytest.mark.asyncio
    async def test_settle_scrolls_and_waits(self, session):
        session.evaluate.side_effect = [2400, {}, []]
        collector = CssSourceCollector(MagicMock())

        collected = await collector.collect_computed(session, "https://acme.com", settle_ms=3000)

        session.wait.assert_awaited_once_with(3000)
        assert [s.kind for s in collected["sources"]] == ["coverage"]


class TestFontFaces:
    """Test @font-face parsing."""

    def test_parse_font_faces(self):
        source = CssSource.create(
            "link",
            "@font-face { font-family: 'Inter'; src: url('/fonts/inter.woff2') format('woff2'); "
            "font-weight: 400; font-display: swap; }\n"
            "@font-face { font-family: Broken; }",
        )

        assert parse_font_faces([source]) == [
            {"src": ["/fonts/inter.woff2"], "family": "Inter", "weight": "400", "display": "swap"}
        ]

    def test_collector_collect_fonts(self):
        source = CssSource.create("inline", "@font-face { font-family: \"Mono\"; src: url(mono.woff2); }")

        fonts = CssSourceCollector(MagicMock()).collect_fonts([source])

        assert fonts[0]["family"] == "Mono"
        assert fonts[0]["src"] == ["mono.woff2"]
