"""
Centralized settings management using pydantic-settings.

All environment variables and tunables for the recommendation pipeline are
defined here. Use get_settings() to access the singleton settings instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(value):
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Optional integrations (everything degrades when missing):
        - SUPABASE_URL / SUPABASE_SERVICE_KEY: preference store, tracking, history
        - REDIS_URL + REDIS_ENABLED: cross-instance caches, rate limits, anti-repetition
        - GEMINI_API_KEYS: comma-separated pool for the primary text provider
        - GROQ_API_KEY: secondary text provider
        - TOGETHER_API_KEYS: comma-separated pool for keyed image generation
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Environment
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    # ==========================================================================
    # Server Configuration
    # ==========================================================================
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    cors_origins: Annotated[List[str], NoDecode] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        description="Allowed CORS origins"
    )

    @field_validator("cors_origins", "gemini_api_keys", "together_api_keys", mode="before")
    @classmethod
    def parse_csv_lists(cls, v):
        return _split_csv(v)

    # ==========================================================================
    # Supabase Configuration
    # ==========================================================================
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service role key")

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    # ==========================================================================
    # Redis Configuration
    # ==========================================================================
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    redis_enabled: bool = Field(
        default=False,
        description="Use Redis for persistent caches, rate limits and anti-repetition"
    )

    # ==========================================================================
    # Text Generation Providers
    # ==========================================================================
    gemini_api_keys: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Gemini API keys (comma-separated), rotated on quota errors"
    )
    gemini_model: str = Field(default="gemini-2.0-flash", description="Gemini model name")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/models",
        description="Gemini REST base URL"
    )
    groq_api_key: str = Field(default="", description="Groq API key")
    groq_model: str = Field(default="llama-3.3-70b-versatile", description="Groq model name")
    groq_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        description="Groq OpenAI-compatible endpoint"
    )
    provider_request_timeout_seconds: float = Field(
        default=30.0,
        description="Per-call HTTP timeout for text providers"
    )

    primary_provider_attempts: int = Field(default=3, ge=1, description="Attempts for the primary provider")
    secondary_provider_attempts: int = Field(default=2, ge=1, description="Attempts for the secondary provider")
    max_schema_retries: int = Field(default=2, ge=0, description="Schema repair retries per provider")
    schema_retry_delay_seconds: float = Field(default=0.5, description="Pause between schema repairs")
    backoff_base_ms: int = Field(default=2000, description="Exponential backoff base")
    backoff_cap_ms: int = Field(default=32000, description="Exponential backoff cap")
    backoff_jitter_ms: int = Field(default=1000, description="Maximum random jitter added to backoff")
    analysis_timeout_seconds: float = Field(default=15.0, description="Hard timeout for the analysis stage")

    # ==========================================================================
    # Image Generation
    # ==========================================================================
    together_api_keys: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Together.ai API keys (comma-separated)"
    )
    together_model: str = Field(
        default="black-forest-labs/FLUX.1-schnell-Free",
        description="Together.ai image model"
    )
    together_api_url: str = Field(
        default="https://api.together.xyz/v1/images/generations",
        description="Together.ai image endpoint"
    )
    pollinations_base_url: str = Field(
        default="https://image.pollinations.ai/prompt",
        description="Pollinations.ai prompt endpoint"
    )
    image_budget_seconds: float = Field(default=12.0, description="Wall-clock budget for all images")
    image_request_timeout_seconds: float = Field(default=5.0, description="Per-request image timeout")

    # ==========================================================================
    # Pipeline Shape
    # ==========================================================================
    outfit_count: int = Field(default=3, ge=1, description="Outfits returned per response")
    candidate_pool_size: int = Field(default=5, ge=1, description="Candidates considered for personalized users")

    # ==========================================================================
    # Caches, Dedup and Rate Limits
    # ==========================================================================
    request_cache_ttl_seconds: int = Field(default=600, description="In-process request cache TTL")
    request_cache_max_entries: int = Field(default=50, description="In-process request cache size")
    persistent_cache_ttl_seconds: int = Field(default=3600, description="Cross-instance cache TTL")
    image_cache_ttl_seconds: int = Field(default=7 * 86400, description="Image cache TTL")
    photo_dedup_ttl_seconds: int = Field(default=86400, description="Per-user photo dedup window")
    rate_limit_requests: int = Field(default=20, description="Requests allowed per window")
    rate_limit_window_seconds: int = Field(default=3600, description="Rate limit window length")
    anti_repetition_window_days: int = Field(default=30, description="Rolling anti-repetition window")

    # ==========================================================================
    # Feature Flags
    # ==========================================================================
    enable_personalization: bool = Field(
        default=True,
        description="Load preference profiles and diversify results"
    )
    enable_tracking: bool = Field(
        default=True,
        description="Write interaction sessions and recommendation history"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Settings are loaded from environment variables and the project .env file.
    """
    env_file = Path(__file__).parent.parent.parent / ".env"
    if env_file.exists():
        os.environ.setdefault("ENV_FILE", str(env_file))

    return Settings(_env_file=env_file if env_file.exists() else None)


def get_settings_for_testing(**overrides) -> Settings:
    """
    Create a settings instance for testing with optional overrides.

    This bypasses the cache to allow different settings in tests.
    """
    test_defaults = {
        "environment": "testing",
        "debug": True,
        "redis_enabled": False,
        "supabase_url": "",
        "supabase_service_key": "",
    }
    test_defaults.update(overrides)

    return Settings(_env_file=None, **test_defaults)
