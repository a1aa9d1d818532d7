"""OpenAI-compatible AI gateway HTTP clients (completions and embeddings)."""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from libs.core.config import GatewaySettings, get_settings
from libs.core.exceptions import LLMError

JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")


class CompletionRequest(BaseModel):
    """Completion request payload."""

    prompt: str
    model: str
    system_prompt: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.3
    # "json" asks the backend for a JSON object
    response_format: Optional[str] = None


@dataclass
class TokenUsage:
    """Token usage tracking."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CompletionResponse:
    text: str
    model: str
    usage: TokenUsage
    json: Optional[Any] = None


def parse_json_text(text: str) -> Any:
    """Parse model output as JSON, falling back to the outermost ``{...}`` block."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = JSON_BLOCK_RE.search(text or "")
        if not match:
            raise LLMError("No JSON object found in model response", {"preview": (text or "")[:200]})
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise LLMError(f"Invalid JSON in model response: {e}", {"preview": text[:200]}) from e


class LLMClient:
    """Async HTTP client for an OpenAI-compatible chat completion endpoint."""

    def __init__(self, settings: Optional[GatewaySettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings().gateway
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=httpx.Timeout(self.settings.timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """
        Send a completion request.

        Raises:
            LLMError: On HTTP, transport or response-shape errors. ``status`` is
                set for HTTP errors so callers can decide whether to retry.
        """
        client = self._get_client()

        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.response_format == "json":
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise LLMError(f"Request timeout: {e}", {"model": request.model}) from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                {"model": request.model, "endpoint": "/chat/completions"},
                status=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise LLMError(f"Request error (connection): {e}", {"model": request.model}) from e
        except ValueError as e:
            raise LLMError(
                f"Invalid JSON body: {e}",
                {"model": request.model, "preview": response.text[:200]},
                status=response.status_code,
            ) from e

        try:
            text = data["choices"][0]["message"]["content"] or ""
            usage = data.get("usage", {})
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected completion response shape: {e}") from e

        parsed = None
        if request.response_format == "json":
            parsed = parse_json_text(text)

        return CompletionResponse(
            text=text,
            model=data.get("model", request.model),
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
            json=parsed,
        )


class EmbeddingClient:
    """Async client for the ``/embeddings`` endpoint of the same gateway."""

    def __init__(self, settings: Optional[GatewaySettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings().gateway
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=httpx.Timeout(self.settings.timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed ``texts``; returns one vector per input, in input order."""
        if not texts:
            return []

        client = self._get_client()
        payload = {
            "model": self.settings.embedding_model,
            "input": texts,
            "dimensions": self.settings.embedding_dimensions,
        }
        try:
            response = await client.post("/embeddings", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"Embedding HTTP {e.response.status_code}", status=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            raise LLMError(f"Embedding request error: {e}") from e
        except ValueError as e:
            raise LLMError(f"Invalid JSON body: {e}", {"preview": response.text[:200]}, status=response.status_code) from e

        if not isinstance(data, dict):
            raise LLMError(f"Unexpected embedding response shape: {type(data).__name__}")

        rows = sorted(data.get("data", []), key=lambda row: row.get("index", 0))
        if len(rows) != len(texts):
            raise LLMError(f"Embedding count mismatch: {len(rows)} for {len(texts)} inputs")
        return [row["embedding"] for row in rows]
