"""
Anti-repetition cache.

Per-user rolling record of outfits already surfaced at position 1. Read
before scoring so the diversifier can penalize exact repeats and
near-duplicates; written after every response that has a position-1
outfit. Entries older than the window are ignored on read (and trimmed
opportunistically on write).
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.errors import CacheUnavailable
from core.logging import LoggerMixin
from core.utils import normalize_hex_list
from styling.fingerprints import outfit_fingerprint
from styling.models import CandidateOutfit

# Colors compared for near-duplicate detection
NEAR_DUPLICATE_COLOR_COUNT = 3
NEAR_DUPLICATE_COLOR_OVERLAP = 0.7

# Bound on stored entries per user
MAX_ENTRIES_PER_USER = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AntiRepetitionEntry:
    """One outfit shown to a user."""
    user_id: str
    outfit_fingerprint: str
    shown_at: datetime
    colors: List[str] = field(default_factory=list)
    style: str = ""
    occasion: str = ""

    @classmethod
    def from_outfit(
        cls, user_id: str, outfit: CandidateOutfit, shown_at: Optional[datetime] = None
    ) -> "AntiRepetitionEntry":
        return cls(
            user_id=user_id,
            outfit_fingerprint=outfit_fingerprint(outfit.title, outfit.color_palette, outfit.items),
            shown_at=shown_at or _utcnow(),
            colors=list(outfit.color_palette[:NEAR_DUPLICATE_COLOR_COUNT]),
            style=(outfit.style_type or "").lower(),
            occasion=(outfit.occasion or "").lower(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "outfit_fingerprint": self.outfit_fingerprint,
            "shown_at": self.shown_at.isoformat(),
            "colors": self.colors,
            "style": self.style,
            "occasion": self.occasion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AntiRepetitionEntry":
        return cls(
            user_id=data["user_id"],
            outfit_fingerprint=data["outfit_fingerprint"],
            shown_at=datetime.fromisoformat(data["shown_at"]),
            colors=data.get("colors", []),
            style=data.get("style", ""),
            occasion=data.get("occasion", ""),
        )


@dataclass
class AntiRepetitionState:
    """A user's entries inside the rolling window, newest last."""
    user_id: str
    entries: List[AntiRepetitionEntry] = field(default_factory=list)
    window: timedelta = timedelta(days=30)

    def __len__(self) -> int:
        return len(self.entries)

    def last_shown(self, fingerprint: str) -> Optional[datetime]:
        times = [e.shown_at for e in self.entries if e.outfit_fingerprint == fingerprint]
        return max(times) if times else None

    def is_near_duplicate(self, outfit: CandidateOutfit) -> bool:
        """
        True when one prior entry shares >= 70% of the leading colors and
        has the same style and occasion.
        """
        colors = normalize_hex_list(outfit.color_palette)[:NEAR_DUPLICATE_COLOR_COUNT]
        style = (outfit.style_type or "").lower()
        occasion = (outfit.occasion or "").lower()
        if not colors:
            return False

        for entry in self.entries:
            if not entry.colors:
                continue
            shared = len(set(colors) & set(entry.colors))
            overlap = shared / max(len(colors), len(entry.colors))
            same_style = bool(style) and (style in entry.style or entry.style in style)
            if overlap >= NEAR_DUPLICATE_COLOR_OVERLAP and same_style and occasion == entry.occasion:
                return True
        return False

    def recent_colors(self) -> List[str]:
        return [c for e in self.entries for c in e.colors]

    def recent_styles(self) -> List[str]:
        return [e.style for e in self.entries if e.style]


def _within_window(
    entries: Iterable[AntiRepetitionEntry], now: datetime, window: timedelta
) -> List[AntiRepetitionEntry]:
    return [e for e in entries if now - e.shown_at <= window]


# =============================================================================
# Stores
# =============================================================================

class InMemoryAntiRepetitionStore(LoggerMixin):
    """Process-local anti-repetition store."""

    name = "in_memory"

    def __init__(self, window_days: int = 30, clock: Callable[[], datetime] = _utcnow):
        self.window = timedelta(days=window_days)
        self._clock = clock
        self._entries: Dict[str, List[AntiRepetitionEntry]] = {}
        self._lock = Lock()

    async def get_recent(self, user_id: str) -> AntiRepetitionState:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.get(user_id, []))
        return AntiRepetitionState(user_id, _within_window(entries, now, self.window), self.window)

    async def record(self, entry: AntiRepetitionEntry) -> None:
        now = self._clock()
        with self._lock:
            entries = _within_window(self._entries.get(entry.user_id, []), now, self.window)
            entries.append(entry)
            self._entries[entry.user_id] = entries[-MAX_ENTRIES_PER_USER:]
        self.logger.debug("Recorded shown outfit", user_id=entry.user_id)


class RedisAntiRepetitionStore(LoggerMixin):
    """
    Anti-repetition entries as one JSON list per user.

    The key expires one window after the last write. While Redis is
    unreachable, reads and writes go to an in-process store instead.
    """

    name = "redis"

    def __init__(
        self,
        client,
        window_days: int = 30,
        key_prefix: str = "recs:antirep",
        clock: Callable[[], datetime] = _utcnow,
        fallback: Optional[InMemoryAntiRepetitionStore] = None,
    ):
        self._redis = client
        self.window = timedelta(days=window_days)
        self._prefix = key_prefix
        self._clock = clock
        self._fallback = fallback or InMemoryAntiRepetitionStore(window_days, clock)

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:{user_id}"

    async def _load(self, user_id: str) -> List[AntiRepetitionEntry]:
        raw = await self._redis.get(self._key(user_id))
        if not raw:
            return []
        return [AntiRepetitionEntry.from_dict(item) for item in json.loads(raw)]

    async def get_recent(self, user_id: str) -> AntiRepetitionState:
        try:
            entries = await self._load(user_id)
        except Exception as e:
            self.logger.warning(
                "Anti-repetition read failed, using in-process history",
                user_id=user_id,
                error=str(CacheUnavailable(str(e))),
            )
            return await self._fallback.get_recent(user_id)
        now = self._clock()
        return AntiRepetitionState(user_id, _within_window(entries, now, self.window), self.window)

    async def record(self, entry: AntiRepetitionEntry) -> None:
        start = time.perf_counter()
        try:
            entries = _within_window(await self._load(entry.user_id), self._clock(), self.window)
            entries.append(entry)
            payload = json.dumps([e.to_dict() for e in entries[-MAX_ENTRIES_PER_USER:]])
            await self._redis.set(
                self._key(entry.user_id), payload, ex=int(self.window.total_seconds())
            )
        except Exception as e:
            self.logger.warning(
                "Anti-repetition write failed, recording in process",
                user_id=entry.user_id,
                error=str(CacheUnavailable(str(e))),
            )
            await self._fallback.record(entry)
            return
        self.logger.debug(
            "Recorded shown outfit",
            user_id=entry.user_id,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
