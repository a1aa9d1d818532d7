"""Configuration management for the design token pipeline."""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExtractionSettings(BaseSettings):
    """Website extraction settings."""

    user_agent: str = Field(
        default="ContextDS/1.0 (+https://contextds.com/bot)", alias="EXTRACTION_USER_AGENT"
    )
    timeout_ms: int = Field(default=30000, alias="EXTRACTION_TIMEOUT_MS")
    retry_attempts: int = Field(default=3, alias="EXTRACTION_RETRY_ATTEMPTS")
    stylesheet_concurrency: int = Field(default=6, alias="EXTRACTION_STYLESHEET_CONCURRENCY")
    # Whole-scan deadline; unset means strategies are only bounded individually
    scan_timeout_ms: Optional[int] = Field(default=None, alias="EXTRACTION_SCAN_TIMEOUT_MS")


class GatewaySettings(BaseSettings):
    """AI gateway (OpenAI-compatible) settings."""

    base_url: str = Field(default="https://ai-gateway.vercel.sh/v1", alias="AI_GATEWAY_URL")
    api_key: str = Field(default="", alias="AI_GATEWAY_API_KEY")
    timeout: float = Field(default=60.0, alias="AI_GATEWAY_TIMEOUT")
    max_retries: int = Field(default=3, alias="AI_GATEWAY_MAX_RETRIES")
    embedding_model: str = Field(default="text-embedding-3-small", alias="EMBEDDING_MODEL")
    embedding_dimensions: int = Field(default=1536, alias="EMBEDDING_DIMENSIONS")
    # production | development | default
    cache_profile: str = Field(default="default", alias="GATEWAY_CACHE_PROFILE")


class PipelineSettings(BaseSettings):
    """Budget and threshold defaults for AI processing."""

    max_budget: float = Field(default=0.15, alias="PIPELINE_MAX_BUDGET")
    compression_threshold: int = Field(default=200_000, alias="PIPELINE_COMPRESSION_THRESHOLD")
    max_phase1_cost: float = Field(default=0.02, alias="PIPELINE_MAX_PHASE1_COST")
    max_phase2_cost: float = Field(default=0.08, alias="PIPELINE_MAX_PHASE2_COST")
    quality_target: int = Field(default=80, alias="PIPELINE_QUALITY_TARGET")
    max_repair_attempts: int = Field(default=3, alias="PIPELINE_MAX_REPAIR_ATTEMPTS")
    # skip-compression | aggressive-compression | emergency-fallback
    fallback_strategy: str = Field(default="skip-compression", alias="PIPELINE_FALLBACK_STRATEGY")


class BrowserSettings(BaseModel):
    """Browser automation settings (uses nested delimiter BROWSER__)."""

    headless: bool = True
    timeout_ms: int = 30000
    viewport_width: int = 1280
    viewport_height: int = 720


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",  # Use BROWSER__HEADLESS=false for nested settings
    )

    log_level: str = Field(default="WARNING", alias="LOG_LEVEL")

    # Sub-settings
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)

    model_registry_path: Optional[Path] = Field(default=None, alias="MODEL_REGISTRY_PATH")

    # Paths
    project_root: Path = Field(default_factory=lambda: Path(__file__).parent.parent.parent)

    @property
    def config_dir(self) -> Path:
        """Get config directory."""
        return self.project_root / "config"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_model_registry(path: Optional[Path] = None) -> dict[str, Any]:
    """Load model registry from YAML."""
    if path is None:
        settings = get_settings()
        path = settings.model_registry_path or settings.config_dir / "model-registry.yaml"

    if not os.path.exists(path):
        from libs.core.exceptions import ConfigurationError

        raise ConfigurationError(f"Model registry not found: {path}", {"path": str(path)})

    with open(path) as f:
        return yaml.safe_load(f)
