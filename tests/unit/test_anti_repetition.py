"""
Tests for the per-user anti-repetition cache.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_outfit_dict
from styling.anti_repetition import (
    AntiRepetitionEntry,
    AntiRepetitionState,
    InMemoryAntiRepetitionStore,
    RedisAntiRepetitionStore,
)
from styling.fingerprints import outfit_fingerprint
from styling.models import CandidateOutfit


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def outfit(title="Navy Look", palette=None, style="smart casual", occasion="office", items=None):
    return CandidateOutfit.model_validate(
        make_outfit_dict(title, palette or ["#000080", "#FFFFFF", "#8B4513"], style, occasion, items)
    )


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ex = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ex[key] = ex


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("down")

    async def set(self, key, value, ex=None):
        raise ConnectionError("down")


class TestEntry:
    """Tests for entry construction and serialization."""

    def test_from_outfit(self):
        entry = AntiRepetitionEntry.from_outfit("u1", outfit(), shown_at=NOW)
        assert entry.colors == ["#000080", "#FFFFFF", "#8B4513"]
        assert entry.style == "smart casual"
        assert entry.occasion == "office"
        assert entry.outfit_fingerprint == outfit_fingerprint(
            "Navy Look", ["#000080", "#FFFFFF", "#8B4513"], ["white shirt", "chinos", "loafers"]
        )

    def test_dict_round_trip_preserves_timestamp(self):
        entry = AntiRepetitionEntry.from_outfit("u1", outfit(), shown_at=NOW)
        restored = AntiRepetitionEntry.from_dict(entry.to_dict())
        assert restored.shown_at == NOW
        assert restored.outfit_fingerprint == entry.outfit_fingerprint


class TestNearDuplicate:
    """Tests for near-duplicate detection."""

    def _state(self, *outfits):
        return AntiRepetitionState("u1", [AntiRepetitionEntry.from_outfit("u1", o, NOW) for o in outfits])

    def test_same_colors_style_and_occasion(self):
        state = self._state(outfit())
        candidate = outfit(title="Different Title", items=["blazer"])
        assert state.is_near_duplicate(candidate)

    def test_style_substring_matches(self):
        state = self._state(outfit(style="casual"))
        assert state.is_near_duplicate(outfit(style="smart casual"))

    def test_different_occasion_is_not_duplicate(self):
        state = self._state(outfit())
        assert not state.is_near_duplicate(outfit(occasion="party"))

    def test_low_color_overlap_is_not_duplicate(self):
        state = self._state(outfit())
        assert not state.is_near_duplicate(outfit(palette=["#000080", "#DC143C", "#FFD700"]))

    def test_single_entry_must_match(self):
        """Overlap is checked per entry, not against the union of history."""
        state = self._state(
            outfit(palette=["#000080", "#AAAAAA", "#BBBBBB"]),
            outfit(palette=["#CCCCCC", "#FFFFFF", "#8B4513"]),
        )
        assert not state.is_near_duplicate(outfit())

    def test_last_shown(self):
        state = self._state(outfit())
        fp = AntiRepetitionEntry.from_outfit("u1", outfit()).outfit_fingerprint
        assert state.last_shown(fp) == NOW
        assert state.last_shown("unknown") is None


class TestInMemoryStore:
    """Tests for the process-local store."""

    async def test_record_and_read(self):
        store = InMemoryAntiRepetitionStore(clock=lambda: NOW)
        await store.record(AntiRepetitionEntry.from_outfit("u1", outfit(), NOW))

        state = await store.get_recent("u1")
        assert len(state) == 1
        assert len(await store.get_recent("u2")) == 0

    async def test_entries_outside_window_ignored(self):
        now = [NOW]
        store = InMemoryAntiRepetitionStore(window_days=30, clock=lambda: now[0])
        await store.record(AntiRepetitionEntry.from_outfit("u1", outfit(), NOW))

        now[0] = NOW + timedelta(days=31)
        assert len(await store.get_recent("u1")) == 0


class TestRedisStore:
    """Tests for the Redis-backed store."""

    async def test_record_and_read(self):
        redis = FakeRedis()
        store = RedisAntiRepetitionStore(redis, clock=lambda: NOW)
        await store.record(AntiRepetitionEntry.from_outfit("u1", outfit(), NOW))
        await store.record(AntiRepetitionEntry.from_outfit("u1", outfit(title="Other"), NOW))

        state = await store.get_recent("u1")
        assert len(state) == 2
        assert redis.ex["recs:antirep:u1"] == 30 * 86400

    async def test_outage_keeps_history_in_process(self):
        store = RedisAntiRepetitionStore(BrokenRedis(), clock=lambda: NOW)
        # Neither raises
        await store.record(AntiRepetitionEntry.from_outfit("u1", outfit(), NOW))

        state = await store.get_recent("u1")
        assert len(state) == 1
        assert state.is_near_duplicate(outfit())
        assert len(await store.get_recent("u2")) == 0

    async def test_outage_history_respects_window(self):
        store = RedisAntiRepetitionStore(BrokenRedis(), window_days=30, clock=lambda: NOW)
        await store.record(AntiRepetitionEntry.from_outfit("u1", outfit(), NOW - timedelta(days=31)))

        assert len(await store.get_recent("u1")) == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
