"""
Unit tests for the AI gateway HTTP clients.

Tests libs/llm/client.py
"""

import httpx
import pytest

from libs.core.config import GatewaySettings
from libs.core.exceptions import LLMError, PipelineError
from libs.llm.client import CompletionRequest, EmbeddingClient, LLMClient, parse_json_text

BASE_URL = "https://gateway.test/v1"


def http_client(handler):
    return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


def completion_body(content, model="gpt-5-mini"):
    return {
        "model": model,
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 120, "completion_tokens": 30},
    }


@pytest.fixture
def settings():
    """Gateway settings with a fixed embedding model."""
    return GatewaySettings(EMBEDDING_MODEL="text-embedding-3-small", EMBEDDING_DIMENSIONS=8)


class TestComplete:
    """Test chat completions."""

    @pytest.mark.asyncio
    async def test_json_completion(self, settings):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json=completion_body('{"tokens": []}'))

        client = LLMClient(settings, client=http_client(handler))

        response = await client.complete(
            CompletionRequest(prompt="Organize", model="gpt-5-mini", response_format="json")
        )

        assert seen["path"] == "/v1/chat/completions"
        assert b'"json_object"' in seen["body"]
        assert response.json == {"tokens": []}
        assert response.usage.input_tokens == 120
        assert response.usage.output_tokens == 30
        await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_raises_llm_error(self, settings):
        client = LLMClient(
            settings, client=http_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        )

        with pytest.raises(LLMError, match="Invalid JSON body") as exc_info:
            await client.complete(CompletionRequest(prompt="Organize", model="gpt-5-mini"))

        assert isinstance(exc_info.value, PipelineError)
        assert exc_info.value.status == 200
        assert not exc_info.value.retryable
        assert exc_info.value.context["preview"] == "<html>gateway</html>"

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, settings):
        client = LLMClient(settings, client=http_client(lambda request: httpx.Response(503, text="busy")))

        with pytest.raises(LLMError) as exc_info:
            await client.complete(CompletionRequest(prompt="Organize", model="gpt-5-mini"))

        assert exc_info.value.status == 503
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unexpected_shape(self, settings):
        client = LLMClient(settings, client=http_client(lambda request: httpx.Response(200, json={"choices": []})))

        with pytest.raises(LLMError, match="Unexpected completion response shape"):
            await client.complete(CompletionRequest(prompt="Organize", model="gpt-5-mini"))


class TestEmbed:
    """Test the embeddings endpoint."""

    @pytest.mark.asyncio
    async def test_vectors_follow_input_order(self, settings):
        rows = [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]
        client = EmbeddingClient(settings, client=http_client(lambda request: httpx.Response(200, json={"data": rows})))

        vectors = await client.embed(["primary", "secondary"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]

    @pytest.mark.asyncio
    async def test_non_json_body_raises_llm_error(self, settings):
        client = EmbeddingClient(
            settings, client=http_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        )

        with pytest.raises(LLMError, match="Invalid JSON body"):
            await client.embed(["primary"])

    @pytest.mark.asyncio
    async def test_empty_input_skips_request(self, settings):
        def handler(request):
            raise AssertionError("no request expected")

        client = EmbeddingClient(settings, client=http_client(handler))

        assert await client.embed([]) == []


class TestParseJsonText:
    """Test JSON extraction from model text."""

    def test_embedded_object(self):
        assert parse_json_text('Sure: {"a": 1} done') == {"a": 1}

    def test_no_object(self):
        with pytest.raises(LLMError, match="No JSON object"):
            parse_json_text("nothing here")
