"""
AI Gateway - the single path from processors to the completion backend.

Per request:
1. Resolve the model profile; switch to the largest-context profile when the
   prompt does not fit the requested model's window
2. Serve from the GatewayCache when possible
3. Call the backend, retrying transient errors (timeout, 429, 5xx) with
   2^retry second backoff
4. Parse JSON (outermost ``{...}`` block as fallback)
5. Validate against the pydantic schema when one is given
6. Store in the cache and record usage
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from libs.compression.cost_optimizer import approximate_tokens
from libs.core.exceptions import LLMError, SchemaValidationError
from libs.core.logging_config import log_llm_call
from libs.gateway.gateway_cache import CacheablePrompt, GatewayCache
from libs.llm.client import CompletionRequest, LLMClient, parse_json_text
from libs.llm.model_catalog import ModelCatalog, ModelProfile

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


@dataclass
class GatewayUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0


@dataclass
class GatewayResponse:
    data: Any
    text: str
    model: str
    usage: GatewayUsage = field(default_factory=GatewayUsage)
    latency_ms: float = 0.0
    cached: bool = False
    retries: int = 0
    quality: float = 0.0


class AIGateway:
    """Cache-aware, retrying adapter over the completion client."""

    def __init__(
        self,
        client: LLMClient,
        catalog: ModelCatalog,
        cache: Optional[GatewayCache] = None,
        max_retries: int = MAX_RETRIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.catalog = catalog
        self.cache = cache
        self.max_retries = max_retries
        self._sleep = sleep
        self._clock = clock
        self._stats = {
            "requests": 0,
            "total_cost": 0.0,
            "total_tokens": 0,
            "cache_hits": 0,
            "errors": 0,
            "retries": 0,
            "context_switches": 0,
        }
        self._by_model: dict[str, int] = {}

    async def request(
        self,
        prompt: str,
        model: Optional[str],
        operation: str,
        schema: Optional[type] = None,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.3,
        url: Optional[str] = None,
        priority: str = "normal",
        cacheable: bool = True,
        version: str = "1.0.0",
    ) -> GatewayResponse:
        """
        Run one structured completion.

        Raises:
            LLMError: Backend failure after retries, or prompt too large for any profile
            SchemaValidationError: Parsed output does not match ``schema``
        """
        started = self._clock()
        self._stats["requests"] += 1

        input_tokens = approximate_tokens((system_prompt or "") + prompt)
        profile = self._fit_profile(model, input_tokens, operation)
        output_limit = min(max_tokens or profile.max_output_tokens, profile.max_output_tokens)

        cache_prompt = CacheablePrompt(
            system_prompt=system_prompt or "",
            user_prompt=prompt,
            model=profile.name,
            operation=operation,
            parameters={"temperature": temperature, "max_tokens": output_limit, "response_format": "json"},
            version=version,
            cacheable=cacheable,
        )
        if self.cache is not None:
            cached = await self.cache.get(cache_prompt)
            if cached is not None:
                self._stats["cache_hits"] += 1
                return GatewayResponse(
                    data=cached.response,
                    text=json.dumps(cached.response, default=str),
                    model=profile.name,
                    latency_ms=(self._clock() - started) * 1000,
                    cached=True,
                    quality=profile.performance.json_accuracy * 100,
                )

        completion, retries = await self._complete_with_retries(
            CompletionRequest(
                prompt=prompt,
                model=profile.name,
                system_prompt=system_prompt,
                max_tokens=output_limit,
                temperature=temperature,
                response_format="json",
            ),
            operation,
        )

        data = completion.json if completion.json is not None else parse_json_text(completion.text)
        quality = profile.performance.json_accuracy * 100

        if schema is not None:
            try:
                data = schema.model_validate(data).model_dump(mode="json", by_alias=True, exclude_none=True)
            except ValidationError as e:
                self._stats["errors"] += 1
                errors = [f"{'.'.join(str(p) for p in err['loc']) or 'root'}: {err['msg']}" for err in e.errors()]
                logger.warning(f"[AIGateway] {operation} output failed {schema.__name__} validation ({len(errors)} errors)")
                raise SchemaValidationError(
                    f"{operation} response failed {schema.__name__} validation",
                    errors=errors,
                    context={"model": profile.name, "data": data},
                ) from e

        usage = GatewayUsage(
            input_tokens=completion.usage.input_tokens or input_tokens,
            output_tokens=completion.usage.output_tokens,
        )
        usage.estimated_cost = profile.estimate_cost(usage.input_tokens, usage.output_tokens)

        self._stats["total_cost"] += usage.estimated_cost
        self._stats["total_tokens"] += usage.input_tokens + usage.output_tokens
        self._by_model[profile.name] = self._by_model.get(profile.name, 0) + 1

        if self.cache is not None:
            await self.cache.put(
                cache_prompt,
                data,
                {
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "cost": usage.estimated_cost,
                },
            )

        latency_ms = (self._clock() - started) * 1000
        log_llm_call(
            logger,
            operation,
            profile.name,
            tokens=usage.input_tokens + usage.output_tokens,
            cost=usage.estimated_cost,
            elapsed_ms=latency_ms,
        )
        if retries or url:
            logger.debug(f"[AIGateway] {operation} retries={retries} url={url}")
        return GatewayResponse(
            data=data,
            text=completion.text,
            model=completion.model or profile.name,
            usage=usage,
            latency_ms=latency_ms,
            retries=retries,
            quality=quality,
        )

    def _fit_profile(self, model: Optional[str], input_tokens: int, operation: str) -> ModelProfile:
        profile = self.catalog.get(model) if model else None
        if profile is None:
            if model:
                logger.warning(f"[AIGateway] Unknown model '{model}', using {self.catalog.default_model}")
            profile = self.catalog.require(self.catalog.default_model)

        if input_tokens <= profile.max_context_tokens:
            return profile

        larger = self.catalog.largest_context()
        if input_tokens > larger.max_context_tokens:
            raise LLMError(
                f"Input of {input_tokens} tokens exceeds every context window (max {larger.max_context_tokens})",
                {"operation": operation, "model": profile.name},
            )
        self._stats["context_switches"] += 1
        logger.info(
            f"[AIGateway] {input_tokens} tokens exceed {profile.name} context "
            f"({profile.max_context_tokens}), switching to {larger.name}"
        )
        return larger

    async def _complete_with_retries(self, request: CompletionRequest, operation: str):
        retries = 0
        while True:
            try:
                return await self.client.complete(request), retries
            except LLMError as e:
                if not e.retryable or retries >= self.max_retries:
                    self._stats["errors"] += 1
                    logger.error(f"[AIGateway] {operation} via {request.model} failed after {retries} retries: {e}")
                    raise
                retries += 1
                self._stats["retries"] += 1
                delay = 2 ** retries
                logger.warning(f"[AIGateway] {operation} attempt {retries} failed ({e}), retrying in {delay}s")
                await self._sleep(delay)

    def stats(self) -> dict[str, Any]:
        return {**self._stats, "requests_by_model": dict(self._by_model)}

    async def close(self):
        await self.client.close()
