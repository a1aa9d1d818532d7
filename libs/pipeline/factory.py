"""Wires the default services into a PipelineOrchestrator."""

import asyncio
import logging
from typing import Optional

import httpx

from libs.compression.cost_optimizer import CostOptimizer
from libs.core.config import Settings, get_settings
from libs.dedup.embedding_deduplicator import EmbeddingDeduplicator
from libs.extraction.browser import PlaywrightBrowser
from libs.extraction.css_sources import CssSourceCollector
from libs.extraction.fallback_orchestrator import FallbackOrchestrator
from libs.extraction.recovery import default_recoveries
from libs.extraction.strategies import default_strategies
from libs.extraction.strategy_engine import ExtractionStrategyEngine
from libs.gateway.ai_gateway import AIGateway
from libs.gateway.gateway_cache import GatewayCache
from libs.gateway.two_phase_processor import TwoPhaseConfig, TwoPhaseProcessor
from libs.gateway.validation.schema_validator import SchemaValidator
from libs.llm.client import EmbeddingClient, LLMClient
from libs.llm.model_catalog import ModelCatalog
from libs.llm.model_selector import SmartModelSelector
from libs.llm.recipes import RecipeLoader
from libs.pipeline.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Optional[Settings] = None,
    http: Optional[httpx.AsyncClient] = None,
    browser: Optional[PlaywrightBrowser] = None,
    llm_client: Optional[LLMClient] = None,
    embedder: Optional[EmbeddingClient] = None,
    catalog: Optional[ModelCatalog] = None,
) -> PipelineOrchestrator:
    """
    Build an orchestrator with default implementations for every capability.

    An HTTP client, browser or embedder passed in is used as-is and is not
    closed by ``PipelineOrchestrator.close()``; the completion client always is.
    """
    settings = settings or get_settings()
    owned = []

    if http is None:
        http = httpx.AsyncClient(
            timeout=settings.extraction.timeout_ms / 1000,
            follow_redirects=True,
        )
        owned.append(http)
    if browser is None:
        browser = PlaywrightBrowser(settings.browser)
        owned.append(browser)
    if embedder is None:
        embedder = EmbeddingClient(settings.gateway)
        owned.append(embedder)
    catalog = catalog or ModelCatalog.from_registry(settings.model_registry_path)

    # Extraction
    collector = CssSourceCollector(
        http,
        stylesheet_concurrency=settings.extraction.stylesheet_concurrency,
        timeout_s=settings.extraction.timeout_ms / 1000,
    )
    engine = ExtractionStrategyEngine(
        default_strategies(browser, collector),
        user_agent=settings.extraction.user_agent,
    )
    fallback = FallbackOrchestrator(default_recoveries(browser, collector, asyncio.sleep))

    # AI processing
    recipes = RecipeLoader(settings.config_dir / "recipes")
    cache = GatewayCache(profile=settings.gateway.cache_profile)
    gateway = AIGateway(
        llm_client or LLMClient(settings.gateway),
        catalog,
        cache=cache,
        max_retries=settings.gateway.max_retries,
    )
    validator = SchemaValidator(gateway, recipes, max_repair_attempts=settings.pipeline.max_repair_attempts)
    processor = TwoPhaseProcessor(
        gateway,
        CostOptimizer(catalog),
        SmartModelSelector(catalog),
        validator,
        recipes,
        deduplicator=EmbeddingDeduplicator(embedder),
        config=TwoPhaseConfig.from_settings(settings.pipeline),
    )

    logger.info(
        f"[Factory] Orchestrator ready: {len(engine.strategies)} strategies, "
        f"{len(catalog)} models, cache profile {settings.gateway.cache_profile}"
    )
    return PipelineOrchestrator(engine, fallback, processor, validator, cache=cache, resources=owned)
