"""Shared fixtures for the pipeline test suite."""

import copy
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from libs.core.models import TokenItem
from libs.gateway.ai_gateway import GatewayResponse, GatewayUsage
from libs.llm.model_catalog import ModelCatalog
from libs.llm.recipes import RecipeLoader

PROJECT_ROOT = Path(__file__).parent.parent

VALID_TOKEN_PACK = {
    "metadata": {
        "name": "Acme Design Tokens",
        "version": "1.0.0",
        "description": "Tokens extracted from acme.com",
        "url": "https://acme.com",
        "extractedAt": "2026-10-18T12:00:00+00:00",
        "confidence": 85,
    },
    "tokens": {
        "colors": [
            {
                "name": "primary",
                "value": "#3b82f6",
                "type": "color",
                "semantic": "primary",
                "usage": 12,
                "confidence": 90,
            }
        ],
        "typography": [
            {
                "name": "font-body",
                "value": "Inter",
                "type": "typography",
                "property": "font-family",
                "usage": 8,
                "confidence": 85,
            }
        ],
        "spacing": [{"name": "space-md", "value": "16px", "type": "spacing", "usage": 20, "confidence": 80}],
    },
    "mappingHints": {
        "tailwind": {
            "colors": "theme.extend.colors.primary",
            "spacing": "theme.extend.spacing",
            "typography": "theme.extend.fontFamily",
        },
        "cssVariables": {
            "recommendation": "Expose tokens as custom properties on :root",
            "example": "--color-primary: #3b82f6;",
        },
    },
    "guidelines": {
        "usage": ["Use primary for calls to action"],
        "pitfalls": ["Avoid raw hex values in components"],
        "accessibility": ["Check contrast of primary on white"],
        "performance": ["Reuse custom properties"],
    },
    "quality": {"score": 85, "confidence": 80, "completeness": 75, "issues": []},
}


class FakeClock:
    """Manually advanced clock, usable wherever a ``time.monotonic``-style callable is expected."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    """A clock that only moves when told to."""
    return FakeClock()


@pytest.fixture
def no_sleep():
    """Async sleep replacement that records delays and returns immediately."""
    return AsyncMock(return_value=None)


@pytest.fixture
def catalog():
    """Model catalog loaded from the shipped registry."""
    return ModelCatalog.from_registry(PROJECT_ROOT / "config" / "model-registry.yaml")


@pytest.fixture
def recipes():
    """Prompt recipes from config/recipes."""
    return RecipeLoader(PROJECT_ROOT / "config" / "recipes")


@pytest.fixture
def valid_token_pack():
    """A fresh, schema-valid TokenPack payload."""
    return copy.deepcopy(VALID_TOKEN_PACK)


@pytest.fixture
def make_token():
    """Factory for TokenItem candidates."""

    def factory(token_id, value, token_type="color", usage=1, confidence=80.0, name=None):
        return TokenItem(
            id=token_id,
            name=name or token_id,
            value=value,
            type=token_type,
            usage=usage,
            confidence=confidence,
        )

    return factory


@pytest.fixture
def make_response():
    """Factory for gateway responses as returned by AIGateway.request."""

    def factory(data, model="gpt-5-mini", cost=0.001, cached=False, quality=92.0, output_tokens=500):
        return GatewayResponse(
            data=data,
            text="",
            model=model,
            usage=GatewayUsage(input_tokens=1000, output_tokens=output_tokens, estimated_cost=cost),
            latency_ms=120.0,
            cached=cached,
            quality=quality,
        )

    return factory


@pytest.fixture
def mock_gateway():
    """Gateway double; tests set ``request.side_effect`` or ``request.return_value``."""
    gateway = MagicMock()
    gateway.request = AsyncMock()
    gateway.close = AsyncMock()
    return gateway
