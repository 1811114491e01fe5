"""
Error taxonomy for the recommendation pipeline.

Only ValidationError, RateLimitExceeded and the exhausted-provider-chain
errors (ProviderExhaustedError, AnalysisTimeoutError) may end a request
with a non-success response. The remaining types are raised and handled
inside the pipeline, where they degrade to a best-effort result.
"""

import math
from datetime import datetime
from typing import Any, List, Optional

from config.constants import ANALYSIS_TIMEOUT_MESSAGE
from core.utils import sanitize_error_message


class RecommendationError(Exception):
    """Base class for errors that carry an HTTP-style classification."""

    status_code: int = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def public_message(self) -> str:
        return sanitize_error_message(self.message)

    def to_body(self) -> dict:
        body = {"error": self.public_message}
        if self.details is not None:
            body["details"] = self.details
        return body


# =============================================================================
# Boundary Errors
# =============================================================================

class ValidationError(RecommendationError):
    """Malformed input; rejected before the pipeline runs."""

    status_code = 400


class RateLimitExceeded(RecommendationError):
    """The caller's identity is over quota for the current window."""

    status_code = 429

    def __init__(self, limit: int, reset_at: datetime, remaining: int = 0):
        seconds = (reset_at - datetime.now(reset_at.tzinfo)).total_seconds()
        minutes = max(1, math.ceil(seconds / 60))
        super().__init__(
            f"Rate limit exceeded. You can make {limit} requests per hour. "
            f"Please try again in {minutes} minutes."
        )
        self.limit = limit
        self.reset_at = reset_at
        self.remaining = remaining

    def to_body(self) -> dict:
        return {
            "error": self.public_message,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
        }


# =============================================================================
# Provider Errors
# =============================================================================

class ProviderError(RecommendationError):
    """Failure reported by a text or image generation provider."""

    kind = "fatal"
    retryable = False

    def __init__(self, message: str, provider: Optional[str] = None, details: Any = None):
        super().__init__(message, details)
        self.provider = provider


class ProviderSchemaError(ProviderError):
    """Structured output failed validation; repaired by re-prompting."""

    kind = "schema"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        missing_fields: Optional[List[str]] = None,
    ):
        super().__init__(message, provider)
        self.missing_fields = list(missing_fields or [])


class ProviderTransientError(ProviderError):
    """Overload, 429/503, quota or timeout; retried with backoff."""

    kind = "transient"
    retryable = True


class ProviderFatalError(ProviderError):
    """Any other provider failure; the cascade moves on immediately."""

    kind = "fatal"


class ProviderExhaustedError(RecommendationError):
    """Every provider in the cascade failed."""

    status_code = 500

    def __init__(self, message: str, last_kind: str, retryable: bool):
        super().__init__(message)
        self.last_kind = last_kind
        self.retryable = retryable


class AnalysisTimeoutError(RecommendationError):
    """The analysis stage hit its hard deadline."""

    status_code = 500

    def __init__(self, timeout_seconds: float):
        super().__init__(ANALYSIS_TIMEOUT_MESSAGE, details={"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Internal (never surfaced)
# =============================================================================

class ImageGenerationTimeout(Exception):
    """An outfit's image did not settle within the stage budget."""


class CacheUnavailable(Exception):
    """A cache or store read/write failed; callers treat it as a miss."""


class DependencyDegraded(Exception):
    """Preference store or tracker failed; the pipeline continues without it."""

    def __init__(self, dependency: str, message: str):
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
