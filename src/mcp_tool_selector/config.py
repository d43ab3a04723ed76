"""Configuration management for MCP Tool Selector"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.validation import UnknownFieldPolicy


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Selection cache
    cache_ttl_seconds: float = Field(300.0, gt=0)
    cache_max_entries: int = Field(1000, ge=1)
    cache_sweep_interval: float = Field(60.0, gt=0)
    cache_lock_timeout: float = Field(1.0, gt=0)
    skip_volatile_queries: bool = False

    # Ranking policy
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    max_candidates: int = Field(5, ge=1)
    min_alternative_confidence: float = Field(0.5, ge=0.0, le=1.0)

    # Parameter validation
    unknown_field_policy: UnknownFieldPolicy = UnknownFieldPolicy.WARN
    max_string_length: int = Field(1000, ge=1)
    max_nesting_depth: int = Field(10, ge=1)

    # Oracle
    oracle_backend: Literal["embedding", "llm"] = "embedding"
    oracle_timeout: float = Field(30.0, gt=0)
    oracle_max_attempts: int = Field(3, ge=1)
    oracle_backoff_base: float = Field(0.5, ge=0)
    openrouter_api_key: str | None = None
    openrouter_model: str = "anthropic/claude-3-opus"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "all-MiniLM-L6-v2"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    @property
    def has_openrouter_key(self) -> bool:
        """Check if an OpenRouter API key is configured"""
        return bool(self.openrouter_api_key)


# Global settings instance
settings = Settings()


def get_config() -> Settings:
    """Get the global configuration instance."""
    return settings
