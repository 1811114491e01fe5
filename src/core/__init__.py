"""
Core module for cross-cutting concerns.

This module provides:
- Structured logging configuration
- Request tracing middleware
- The pipeline's error taxonomy
- Common utilities
"""

from core.logging import configure_logging, get_logger
from core.errors import (
    RecommendationError,
    ValidationError,
    RateLimitExceeded,
    ProviderError,
    ProviderSchemaError,
    ProviderTransientError,
    ProviderFatalError,
    ProviderExhaustedError,
    AnalysisTimeoutError,
    ImageGenerationTimeout,
    CacheUnavailable,
    DependencyDegraded,
)
from core.utils import normalize_hex, sanitize_error_message, spawn_background

__all__ = [
    "configure_logging",
    "get_logger",
    "RecommendationError",
    "ValidationError",
    "RateLimitExceeded",
    "ProviderError",
    "ProviderSchemaError",
    "ProviderTransientError",
    "ProviderFatalError",
    "ProviderExhaustedError",
    "AnalysisTimeoutError",
    "ImageGenerationTimeout",
    "CacheUnavailable",
    "DependencyDegraded",
    "normalize_hex",
    "sanitize_error_message",
    "spawn_background",
]
