"""
Preference & blocklist store (read side).

The pipeline consumes two per-user documents:

- PreferenceProfile: weighted favorites/avoids plus an overall confidence
  that grows with interaction count.
- Blocklist: hard entries (never shown), soft entries (penalized) and
  temporary entries (penalized until they expire).

Unknown users get a neutral profile and an empty blocklist. A store that
cannot be reached raises DependencyDegraded; the caller proceeds without
personalization.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Set

from config.constants import CONFIDENCE_BUCKETS, MAX_CONFIDENCE
from core.errors import DependencyDegraded
from core.logging import get_logger
from core.utils import normalize_hex, normalize_hex_list, normalize_string_set

logger = get_logger(__name__)


def confidence_for_interactions(total_interactions: int) -> int:
    """Confidence percent for an interaction count (monotonic, capped)."""
    for ceiling, confidence in CONFIDENCE_BUCKETS:
        if total_interactions < ceiling:
            return confidence
    return MAX_CONFIDENCE


def normalize_color_token(value: Any) -> Optional[str]:
    """Hex colors become #RRGGBB; color names are lowercased."""
    hex_value = normalize_hex(value)
    if hex_value:
        return hex_value
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def _color_set(values: Any) -> Set[str]:
    return {c for c in (normalize_color_token(v) for v in (values or [])) if c}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Preference Profile
# =============================================================================

@dataclass
class PreferenceProfile:
    """Learned per-user preferences. Read-only to the pipeline."""
    user_id: str
    favorite_colors: List[str] = field(default_factory=list)
    disliked_colors: List[str] = field(default_factory=list)
    preferred_styles: List[str] = field(default_factory=list)
    avoided_styles: List[str] = field(default_factory=list)
    preferred_occasions: List[str] = field(default_factory=list)
    color_weights: Dict[str, float] = field(default_factory=dict)
    style_weights: Dict[str, float] = field(default_factory=dict)
    total_interactions: int = 0
    overall_confidence: int = 0

    @classmethod
    def neutral(cls, user_id: str) -> "PreferenceProfile":
        return cls(user_id=user_id)

    @property
    def confidence(self) -> float:
        """Overall confidence as a 0-1 scaling factor."""
        return max(0.0, min(1.0, self.overall_confidence / 100.0))

    @property
    def is_empty(self) -> bool:
        return self.total_interactions == 0 and not (
            self.favorite_colors or self.preferred_styles or self.color_weights
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "favorite_colors": self.favorite_colors,
            "disliked_colors": self.disliked_colors,
            "preferred_styles": self.preferred_styles,
            "avoided_styles": self.avoided_styles,
            "preferred_occasions": self.preferred_occasions,
            "color_weights": self.color_weights,
            "style_weights": self.style_weights,
            "total_interactions": self.total_interactions,
            "overall_confidence": self.overall_confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreferenceProfile":
        total = int(data.get("total_interactions") or 0)
        confidence = data.get("overall_confidence")
        color_weights: Dict[str, float] = {}
        for color, weight in (data.get("color_weights") or {}).items():
            hex_value = normalize_hex(color)
            if hex_value:
                color_weights[hex_value] = float(weight)
        return cls(
            user_id=data["user_id"],
            favorite_colors=normalize_hex_list(data.get("favorite_colors")),
            disliked_colors=normalize_hex_list(data.get("disliked_colors")),
            preferred_styles=sorted(normalize_string_set(data.get("preferred_styles"))),
            avoided_styles=sorted(normalize_string_set(data.get("avoided_styles"))),
            preferred_occasions=sorted(normalize_string_set(data.get("preferred_occasions"))),
            color_weights=color_weights,
            style_weights={
                k.lower().strip(): float(v)
                for k, v in (data.get("style_weights") or {}).items()
            },
            total_interactions=total,
            overall_confidence=(
                int(confidence) if confidence is not None else confidence_for_interactions(total)
            ),
        )


# =============================================================================
# Blocklist
# =============================================================================

@dataclass
class BlocklistEntries:
    colors: Set[str] = field(default_factory=set)
    styles: Set[str] = field(default_factory=set)
    items: Set[str] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.colors or self.styles or self.items)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "colors": sorted(self.colors),
            "styles": sorted(self.styles),
            "items": sorted(self.items),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BlocklistEntries":
        data = data or {}
        return cls(
            colors=_color_set(data.get("colors")),
            styles=normalize_string_set(data.get("styles")),
            items=normalize_string_set(data.get("items")),
        )


@dataclass
class TemporaryBlock:
    """A target (color, style, item or outfit fingerprint) blocked until expires_at."""
    target: str
    expires_at: datetime
    reason: str = ""

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "expires_at": self.expires_at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TemporaryBlock"]:
        expires_at = _parse_datetime(data.get("expires_at"))
        target = normalize_color_token(data.get("target"))
        if expires_at is None or target is None:
            return None
        return cls(target=target, expires_at=expires_at, reason=data.get("reason") or "")


@dataclass
class Blocklist:
    user_id: str
    hard: BlocklistEntries = field(default_factory=BlocklistEntries)
    soft: BlocklistEntries = field(default_factory=BlocklistEntries)
    temporary: List[TemporaryBlock] = field(default_factory=list)

    @classmethod
    def empty(cls, user_id: str) -> "Blocklist":
        return cls(user_id=user_id)

    def active_temporary(self, now: Optional[datetime] = None) -> List[TemporaryBlock]:
        now = now or datetime.now(timezone.utc)
        return [block for block in self.temporary if block.is_active(now)]

    @property
    def is_empty(self) -> bool:
        return not (self.hard or self.soft or self.temporary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "hard": self.hard.to_dict(),
            "soft": self.soft.to_dict(),
            "temporary": [block.to_dict() for block in self.temporary],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Blocklist":
        temporary = [TemporaryBlock.from_dict(item) for item in data.get("temporary") or []]
        return cls(
            user_id=data["user_id"],
            hard=BlocklistEntries.from_dict(data.get("hard")),
            soft=BlocklistEntries.from_dict(data.get("soft")),
            temporary=[block for block in temporary if block is not None],
        )


# =============================================================================
# Stores
# =============================================================================

class PreferenceStore(Protocol):
    name: str

    async def get_preference_profile(self, user_id: str) -> PreferenceProfile: ...

    async def get_blocklists(self, user_id: str) -> Blocklist: ...


class InMemoryPreferenceStore:
    """Dictionary-backed store for development and tests."""

    name = "in_memory"

    def __init__(self):
        self._profiles: Dict[str, PreferenceProfile] = {}
        self._blocklists: Dict[str, Blocklist] = {}

    def set_profile(self, profile: PreferenceProfile) -> None:
        self._profiles[profile.user_id] = profile

    def set_blocklist(self, blocklist: Blocklist) -> None:
        self._blocklists[blocklist.user_id] = blocklist

    async def get_preference_profile(self, user_id: str) -> PreferenceProfile:
        return self._profiles.get(user_id) or PreferenceProfile.neutral(user_id)

    async def get_blocklists(self, user_id: str) -> Blocklist:
        return self._blocklists.get(user_id) or Blocklist.empty(user_id)


class SupabasePreferenceStore:
    """
    Supabase-backed store.

    Tables:
    - user_style_profiles: one row per user, columns as PreferenceProfile.to_dict()
    - user_blocklists: one row per user with hard/soft/temporary JSON columns

    The Supabase client is synchronous, so reads run in a worker thread.
    """

    name = "supabase"

    PROFILE_TABLE = "user_style_profiles"
    BLOCKLIST_TABLE = "user_blocklists"

    def __init__(self, supabase=None):
        if supabase is None:
            from config.database import get_supabase_client
            supabase = get_supabase_client()
        self._supabase = supabase

    def _fetch_row(self, table: str, user_id: str) -> Optional[Dict[str, Any]]:
        result = (
            self._supabase
            .table(table)
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if result.data:
            return result.data[0]
        return None

    async def _read(self, table: str, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._fetch_row, table, user_id)
        except Exception as e:
            logger.warning("Preference store read failed", table=table, user_id=user_id, error=str(e))
            raise DependencyDegraded("preference_store", str(e)) from e

    async def get_preference_profile(self, user_id: str) -> PreferenceProfile:
        row = await self._read(self.PROFILE_TABLE, user_id)
        if not row:
            return PreferenceProfile.neutral(user_id)
        return PreferenceProfile.from_dict({**row, "user_id": user_id})

    async def get_blocklists(self, user_id: str) -> Blocklist:
        row = await self._read(self.BLOCKLIST_TABLE, user_id)
        if not row:
            return Blocklist.empty(user_id)
        return Blocklist.from_dict({**row, "user_id": user_id})
