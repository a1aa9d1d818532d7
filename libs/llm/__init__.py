"""LLM libraries: gateway client, model catalog, model selection and prompts."""

from libs.llm.client import (
    CompletionRequest,
    CompletionResponse,
    EmbeddingClient,
    LLMClient,
    TokenUsage,
    parse_json_text,
)
from libs.llm.model_catalog import ModelCatalog, ModelProfile, PerformanceProfile
from libs.llm.model_selector import ModelRecommendation, SelectionCriteria, SmartModelSelector
from libs.llm.recipes import Recipe, RecipeLoader

__all__ = [
    # Client
    "CompletionRequest",
    "CompletionResponse",
    "EmbeddingClient",
    "LLMClient",
    "TokenUsage",
    "parse_json_text",
    # Catalog
    "ModelCatalog",
    "ModelProfile",
    "PerformanceProfile",
    # Selection
    "ModelRecommendation",
    "SelectionCriteria",
    "SmartModelSelector",
    # Recipes
    "Recipe",
    "RecipeLoader",
]
