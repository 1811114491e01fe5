"""
Application constants and algorithm configuration.

These are values that don't change based on environment but may need
to be referenced across the pipeline.
"""

from dataclasses import dataclass
from typing import FrozenSet, Tuple


# =============================================================================
# Request Contract
# =============================================================================

VALID_OCCASIONS: FrozenSet[str] = frozenset({
    "office",
    "casual",
    "party",
    "ethnic",
    "workout",
    "formal",
})

VALID_GENDERS: FrozenSet[str] = frozenset({"male", "female", "unisex"})

ALLOWED_IMAGE_MIME_TYPES: FrozenSet[str] = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
})

# Encoded (base64) payload ceiling for uploaded photos
MAX_PHOTO_DATA_URI_BYTES: int = 10 * 1024 * 1024

DEFAULT_OCCASION: str = "casual"
ANONYMOUS_USER: str = "anonymous"


# =============================================================================
# Provider Error Classification
# =============================================================================

RETRYABLE_ERROR_KEYWORDS: Tuple[str, ...] = (
    "overloaded",
    "503",
    "429",
    "rate limit",
    "temporarily unavailable",
    "temporarily overloaded",
    "timeout",
    "quota",
    "resource exhausted",
)

SCHEMA_ERROR_KEYWORD: str = "schema validation failed"

# Matches the field name inside "required property 'xyz'"
MISSING_FIELD_PATTERN: str = r"required property '([^']+)'"


# =============================================================================
# User-Facing Messages
# =============================================================================

SERVICE_BUSY_MESSAGE: str = (
    "Our AI service is experiencing high demand right now. "
    "Please wait 30-60 seconds and try again."
)
ANALYSIS_UNAVAILABLE_PREFIX: str = "Style analysis temporarily unavailable: "
ANALYSIS_TIMEOUT_MESSAGE: str = "AI analysis timed out"
NOT_ENOUGH_OUTFITS_MESSAGE: str = (
    "Could not find enough outfits that fit your preferences. Please try again."
)
UNEXPECTED_ERROR_MESSAGE: str = "An unexpected error occurred"
DUPLICATE_PHOTO_MESSAGE: str = (
    "You recently uploaded this photo. Here are your previous recommendations."
)
MAX_PUBLIC_MESSAGE_LENGTH: int = 200


# =============================================================================
# Image Placeholders
# =============================================================================

@dataclass(frozen=True)
class PlaceholderConfig:
    """Deterministic stand-in image settings."""

    width: int = 800
    height: int = 1000
    primary_color: str = "8B7355"    # warm brown
    secondary_color: str = "D4A574"  # beige
    default_label: str = "Fashion"


DEFAULT_PLACEHOLDER_CONFIG = PlaceholderConfig()

FASHION_TERMS: Tuple[str, ...] = (
    "kurta",
    "saree",
    "dress",
    "outfit",
    "shirt",
    "pants",
    "jacket",
    "coat",
    "blazer",
)


# =============================================================================
# Preference Confidence
# =============================================================================

# (interaction ceiling, confidence percent); the last bucket is open-ended
CONFIDENCE_BUCKETS: Tuple[Tuple[int, int], ...] = (
    (10, 20),
    (25, 50),
    (50, 75),
)
MAX_CONFIDENCE: int = 95
