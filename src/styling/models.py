"""
Pydantic models for the outfit recommendation pipeline.

Models cover:
- The inbound request contract (validated at the boundary)
- Provider output (StyleAnalysis / CandidateOutfit), camelCase on the wire
- Enriched outfits and the response envelope
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from pydantic.alias_generators import to_camel

from config.constants import (
    ALLOWED_IMAGE_MIME_TYPES,
    MAX_PHOTO_DATA_URI_BYTES,
    VALID_GENDERS,
    VALID_OCCASIONS,
)
from core.errors import ValidationError
from core.utils import normalize_hex, normalize_hex_list


# =============================================================================
# Enums
# =============================================================================

class MatchCategory(str, Enum):
    """Diversification bucket an outfit lands in."""
    SAFE = "safe"          # close to the learned profile
    STRETCH = "stretch"    # adjacent, slightly outside comfort zone
    EXPLORE = "explore"    # novel, used to learn boundaries


class ImageSource(str, Enum):
    CACHE = "cache"
    GENERATED = "generated"
    PLACEHOLDER = "placeholder"


# =============================================================================
# Provider Output (camelCase on the wire)
# =============================================================================

class WireModel(BaseModel):
    """Base for models exchanged with text providers."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ShoppingLinks(BaseModel):
    """Fixed-key shopping links; every value is nullable."""
    amazon: Optional[str] = None
    myntra: Optional[str] = None
    tatacliq: Optional[str] = None


class ColorSuggestion(WireModel):
    name: str = ""
    hex: str = ""
    reason: str = ""


class CandidateOutfit(WireModel):
    """One provider-proposed outfit. Immutable; later stages wrap it."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    title: str
    description: str
    color_palette: List[str] = Field(min_length=1)
    style_type: str = "casual"
    occasion: str = ""
    items: List[str] = Field(min_length=1)
    image_prompt: str = ""
    is_existing_match: bool = False

    @field_validator("color_palette", mode="before")
    @classmethod
    def normalize_palette(cls, v):
        if not isinstance(v, list):
            return v
        return normalize_hex_list(v)

    @property
    def effective_image_prompt(self) -> str:
        return self.image_prompt or f"{self.title} {' '.join(self.items)}"


class StyleAnalysis(WireModel):
    """Validated provider output."""
    feedback: str
    highlights: List[str]
    color_suggestions: List[ColorSuggestion] = Field(default_factory=list)
    outfit_recommendations: List[CandidateOutfit] = Field(min_length=1)
    notes: str = ""
    image_prompt: str = ""
    provider: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        """Analysis fields returned alongside the outfits."""
        return {
            "feedback": self.feedback,
            "highlights": list(self.highlights),
            "color_suggestions": [c.model_dump() for c in self.color_suggestions],
            "notes": self.notes,
        }


# =============================================================================
# Request Contract
# =============================================================================

_DATA_URI_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,")


class RecommendRequest(BaseModel):
    """Inbound recommendation request."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    photo_data_uri: str
    gender: str
    occasion: Optional[str] = None
    genre: Optional[str] = Field(default=None, max_length=100)
    weather: Optional[str] = Field(default=None, max_length=200)
    skin_tone: Optional[str] = Field(default=None, max_length=100)
    dress_colors: List[str] = Field(default_factory=list, max_length=20)
    previous_recommendation: Optional[str] = Field(default=None, max_length=2000)
    user_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("photo_data_uri")
    @classmethod
    def validate_photo(cls, v: str) -> str:
        if not v.startswith("data:image/"):
            raise ValueError("photo must be an image data URI")
        match = _DATA_URI_RE.match(v)
        if not match:
            raise ValueError("photo data URI must be base64 encoded")
        if match.group(1).lower() not in ALLOWED_IMAGE_MIME_TYPES:
            raise ValueError(f"unsupported image type {match.group(1)}")
        if len(v) > MAX_PHOTO_DATA_URI_BYTES:
            raise ValueError("photo exceeds the 10MB limit")
        if len(v) <= match.end():
            raise ValueError("photo data URI is empty")
        return v

    @field_validator("gender")
    @classmethod
    def validate_gender(cls, v: str) -> str:
        value = v.lower()
        if value not in VALID_GENDERS:
            raise ValueError(f"gender must be one of {sorted(VALID_GENDERS)}")
        return value

    @field_validator("occasion")
    @classmethod
    def validate_occasion(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        value = v.lower()
        if value not in VALID_OCCASIONS:
            raise ValueError(f"occasion must be one of {sorted(VALID_OCCASIONS)}")
        return value

    @field_validator("dress_colors", mode="before")
    @classmethod
    def normalize_dress_colors(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [part for part in v.split(",")]
        if not isinstance(v, list):
            raise ValueError("dress_colors must be a list")
        return [c for c in (normalize_hex(item) for item in v) if c]

    @field_validator("user_id")
    @classmethod
    def blank_user_is_anonymous(cls, v: Optional[str]) -> Optional[str]:
        if not v or v == "anonymous":
            return None
        return v


def parse_recommend_request(raw: Any) -> RecommendRequest:
    """
    Validate a raw payload into a RecommendRequest.

    Raises:
        ValidationError: with one detail entry per offending field
    """
    if not isinstance(raw, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return RecommendRequest.model_validate(raw)
    except PydanticValidationError as e:
        details = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        raise ValidationError("Invalid request", details=details) from e


# =============================================================================
# Enriched Output
# =============================================================================

class EnrichedOutfit(BaseModel):
    """A candidate outfit after image, shopping and match enrichment."""
    title: str
    description: str
    color_palette: List[str]
    style_type: str
    occasion: str
    items: List[str]
    image_prompt: str
    is_existing_match: bool = False
    image_url: str
    image_source: ImageSource
    shopping_links: ShoppingLinks = Field(default_factory=ShoppingLinks)
    match_score: Optional[float] = None
    match_category: Optional[MatchCategory] = None
    explanation: Optional[str] = None
    position: Optional[int] = None

    @classmethod
    def from_candidate(
        cls,
        outfit: CandidateOutfit,
        image_url: str,
        image_source: ImageSource,
        shopping_links: ShoppingLinks,
    ) -> "EnrichedOutfit":
        return cls(
            title=outfit.title,
            description=outfit.description,
            color_palette=list(outfit.color_palette),
            style_type=outfit.style_type,
            occasion=outfit.occasion,
            items=list(outfit.items),
            image_prompt=outfit.effective_image_prompt,
            is_existing_match=outfit.is_existing_match,
            image_url=image_url,
            image_source=image_source,
            shopping_links=shopping_links,
        )

    def to_response_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        # Match fields only appear for identified users
        for key in ("match_score", "match_category", "explanation", "position"):
            if data.get(key) is None:
                data.pop(key, None)
        return data


class RecommendResponse(BaseModel):
    """Success envelope returned by the service."""
    success: bool = True
    outfits: List[Dict[str, Any]]
    cached: bool = False
    cache_source: Optional[str] = None
    performance_ms: int = 0
    recommendation_id: Optional[str] = None
    session_id: Optional[str] = None
    provider: Optional[str] = None
    message: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
