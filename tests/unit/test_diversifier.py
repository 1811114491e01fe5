"""
Tests for the rule-based diversification engine.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_outfit_dict
from styling.anti_repetition import AntiRepetitionEntry, AntiRepetitionState
from styling.diversifier import (
    DEFAULT_DIVERSIFICATION_CONFIG,
    Diversifier,
    PatternLockStatus,
    categorize,
    detect_pattern_lock,
    is_hard_blocked,
    novelty,
    score_outfit,
    slot_plan,
)
from styling.models import CandidateOutfit, MatchCategory
from styling.preferences import Blocklist, BlocklistEntries, PreferenceProfile, TemporaryBlock


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def outfit(title, palette, style, occasion, items=None):
    return CandidateOutfit.model_validate(make_outfit_dict(title, palette, style, occasion, items))


# Scores below assume the confident profile
NAVY_SUIT = outfit("Navy Suit", ["#000080"], "formal", "office", ["navy suit", "white shirt"])
NAVY_SUIT_2 = outfit("Navy Suit Two", ["#000080"], "formal", "office", ["navy blazer", "grey trousers"])
NAVY_CASUAL = outfit("Navy Casual", ["#000080", "#123456"], "casual", "casual", ["navy tee", "jeans"])
YELLOW_GRUNGE = outfit("Yellow Grunge", ["#FFFF00"], "grunge", "party", ["yellow flannel", "ripped jeans"])


def described(title, description, palette, style, occasion, items):
    data = make_outfit_dict(title, palette, style, occasion, items)
    data["description"] = description
    return CandidateOutfit.model_validate(data)


# Blocked terms appear in prose or inside longer words
TAILORED_NAVY = described(
    "Navy Tailored Look",
    "A tailored navy blazer layered over a structured shirt, no red anywhere",
    ["#000080", "#FFFFFF"], "formal", "office",
    ["tailored navy blazer", "layered white shirt", "structured trousers"],
)
STANDARD_OFFICE = described(
    "Standard Office",
    "Outstanding navy suit with a standard fit, no blazer needed",
    ["#000080", "#FFFFFF"], "formal", "office",
    ["standard navy suit", "white shirt"],
)


@pytest.fixture
def confident_profile():
    return PreferenceProfile(
        user_id="u1",
        disliked_colors=["#FFFF00"],
        avoided_styles=["grunge"],
        preferred_occasions=["office"],
        color_weights={"#000080": 1.0},
        style_weights={"formal": 1.0},
        total_interactions=5,
        overall_confidence=100,
    )


class TestScoring:
    """Tests for score_outfit and categorize."""

    def test_strong_match_is_safe(self, confident_profile):
        score, breakdown = score_outfit(NAVY_SUIT, confident_profile, now=NOW)
        assert score == pytest.approx(0.98)
        assert categorize(score) == MatchCategory.SAFE
        assert breakdown["color"] == 1.0
        assert breakdown["style"] == 1.0

    def test_partial_match_is_stretch(self, confident_profile):
        score, _ = score_outfit(NAVY_CASUAL, confident_profile, now=NOW)
        assert score == pytest.approx(0.6125)
        assert categorize(score) == MatchCategory.STRETCH

    def test_disliked_is_explore(self, confident_profile):
        score, _ = score_outfit(YELLOW_GRUNGE, confident_profile, now=NOW)
        assert score == pytest.approx(0.18)
        assert categorize(score) == MatchCategory.EXPLORE

    def test_zero_confidence_is_neutral(self):
        profile = PreferenceProfile.neutral("u1")
        for candidate in (NAVY_SUIT, NAVY_CASUAL, YELLOW_GRUNGE):
            score, _ = score_outfit(candidate, profile, now=NOW)
            assert score == pytest.approx(0.5)

    def test_thresholds(self):
        assert categorize(0.75) == MatchCategory.SAFE
        assert categorize(0.7499) == MatchCategory.STRETCH
        assert categorize(0.55) == MatchCategory.STRETCH
        assert categorize(0.5499) == MatchCategory.EXPLORE

    def test_score_bounded(self, confident_profile):
        blocklist = Blocklist(
            user_id="u1",
            soft=BlocklistEntries(colors={"#FFFF00"}, styles={"grunge"}, items={"flannel"}),
        )
        score, _ = score_outfit(YELLOW_GRUNGE, confident_profile, blocklist, now=NOW)
        assert score == 0.0


class TestPenalties:
    """Tests for blocklist and repetition penalties."""

    def test_soft_block_penalty_not_scaled_by_confidence(self):
        profile = PreferenceProfile.neutral("u1")
        blocklist = Blocklist(user_id="u1", soft=BlocklistEntries(colors={"#000080"}))
        score, breakdown = score_outfit(NAVY_SUIT, profile, blocklist, now=NOW)
        assert breakdown["soft_penalty"] == 0.2
        assert score == pytest.approx(0.3)

    def test_named_color_matches_palette_name(self):
        profile = PreferenceProfile.neutral("u1")
        blocklist = Blocklist(user_id="u1", soft=BlocklistEntries(colors={"navy"}))
        _, breakdown = score_outfit(NAVY_SUIT, profile, blocklist, now=NOW)
        assert breakdown["soft_penalty"] == 0.2

    def test_named_temporary_block_ignores_description(self):
        profile = PreferenceProfile.neutral("u1")
        blocklist = Blocklist(user_id="u1", temporary=[TemporaryBlock("red", NOW + timedelta(days=1))])
        _, breakdown = score_outfit(TAILORED_NAVY, profile, blocklist, now=NOW)
        assert breakdown["temporary_penalty"] == 0.0

    def test_temporary_block_only_while_active(self):
        profile = PreferenceProfile.neutral("u1")
        active = Blocklist(user_id="u1", temporary=[TemporaryBlock("#000080", NOW + timedelta(days=1))])
        expired = Blocklist(user_id="u1", temporary=[TemporaryBlock("#000080", NOW - timedelta(days=1))])

        assert score_outfit(NAVY_SUIT, profile, active, now=NOW)[0] == pytest.approx(0.4)
        assert score_outfit(NAVY_SUIT, profile, expired, now=NOW)[0] == pytest.approx(0.5)

    def test_exact_repeat_penalty_decays(self):
        profile = PreferenceProfile.neutral("u1")
        just_now = AntiRepetitionState("u1", [AntiRepetitionEntry.from_outfit("u1", NAVY_SUIT, NOW)])
        two_weeks = AntiRepetitionState(
            "u1", [AntiRepetitionEntry.from_outfit("u1", NAVY_SUIT, NOW - timedelta(days=15))]
        )

        _, fresh = score_outfit(NAVY_SUIT, profile, history=just_now, now=NOW)
        _, older = score_outfit(NAVY_SUIT, profile, history=two_weeks, now=NOW)

        assert fresh["repetition_penalty"] == 0.35
        assert older["repetition_penalty"] == pytest.approx(0.175)

    def test_near_duplicate_penalty(self):
        profile = PreferenceProfile.neutral("u1")
        history = AntiRepetitionState("u1", [AntiRepetitionEntry.from_outfit("u1", NAVY_SUIT, NOW)])
        _, breakdown = score_outfit(NAVY_SUIT_2, profile, history=history, now=NOW)
        assert breakdown["repetition_penalty"] == 0.15


class TestHardBlocklist:
    def test_hard_color(self):
        blocklist = Blocklist(user_id="u1", hard=BlocklistEntries(colors={"#FFFF00"}))
        assert is_hard_blocked(YELLOW_GRUNGE, blocklist)
        assert not is_hard_blocked(NAVY_SUIT, blocklist)

    def test_hard_style_and_item(self):
        assert is_hard_blocked(YELLOW_GRUNGE, Blocklist(user_id="u1", hard=BlocklistEntries(styles={"grunge"})))
        assert is_hard_blocked(NAVY_SUIT, Blocklist(user_id="u1", hard=BlocklistEntries(items={"suit"})))

    def test_no_blocklist(self):
        assert not is_hard_blocked(NAVY_SUIT, None)
        assert not is_hard_blocked(NAVY_SUIT, Blocklist.empty("u1"))

    def test_named_color_hits_palette_name(self):
        evening = outfit("Evening", ["#DC143C", "#000000"], "party", "party", ["silk blazer", "trousers"])
        assert is_hard_blocked(evening, Blocklist(user_id="u1", hard=BlocklistEntries(colors={"crimson"})))

    def test_named_color_hits_item_word(self):
        accent = outfit("Accent", ["#FFFFFF"], "casual", "casual", ["white tee", "red scarf"])
        assert is_hard_blocked(accent, Blocklist(user_id="u1", hard=BlocklistEntries(colors={"red"})))

    def test_named_color_inside_other_words_is_not_a_hit(self):
        red = Blocklist(user_id="u1", hard=BlocklistEntries(colors={"red"}))
        tan = Blocklist(user_id="u1", hard=BlocklistEntries(colors={"tan"}))

        assert not is_hard_blocked(TAILORED_NAVY, red)
        assert not is_hard_blocked(STANDARD_OFFICE, tan)

    def test_description_is_not_matched(self):
        blocklist = Blocklist(user_id="u1", hard=BlocklistEntries(items={"blazer"}))
        assert not is_hard_blocked(STANDARD_OFFICE, blocklist)
        assert is_hard_blocked(TAILORED_NAVY, blocklist)

    def test_item_needs_whole_word(self):
        blocklist = Blocklist(user_id="u1", hard=BlocklistEntries(items={"tie"}))
        belted = outfit("Belted", ["#000000"], "casual", "casual", ["tied belt", "jeans"])
        assert not is_hard_blocked(belted, blocklist)

    def test_prose_words_do_not_empty_the_selection(self, confident_profile):
        candidates = [
            described(f"Look {i}", "tailored and layered", ["#000080"], "formal", "office", ["navy suit"])
            for i in range(5)
        ]
        blocklist = Blocklist(user_id="u1", hard=BlocklistEntries(colors={"red"}))

        result = Diversifier().diversify(candidates, confident_profile, blocklist, count=3, now=NOW)

        assert result.excluded == []
        assert len(result.selected) == 3


class TestSlotPlan:
    """Tests for the 70/20/10 slot allocation."""

    def test_three_slots(self):
        assert slot_plan(3) == [MatchCategory.SAFE, MatchCategory.STRETCH, MatchCategory.EXPLORE]

    def test_fewer_than_three(self):
        assert slot_plan(1) == [MatchCategory.SAFE]
        assert slot_plan(2) == [MatchCategory.SAFE, MatchCategory.STRETCH]
        assert slot_plan(0) == []

    def test_large_counts_follow_distribution(self):
        plan = slot_plan(10)
        assert len(plan) == 10
        assert plan.count(MatchCategory.SAFE) == 6
        assert plan.count(MatchCategory.STRETCH) == 2
        assert plan.count(MatchCategory.EXPLORE) == 2


class TestSelection:
    """Tests for Diversifier.diversify."""

    def test_one_of_each_category(self, confident_profile):
        result = Diversifier().diversify(
            [NAVY_SUIT, NAVY_SUIT_2, NAVY_CASUAL, YELLOW_GRUNGE], confident_profile, now=NOW
        )
        assert [m.index for m in result.selected] == [0, 2, 3]
        assert result.categories == [MatchCategory.SAFE, MatchCategory.STRETCH, MatchCategory.EXPLORE]
        assert all(m.explanation for m in result.selected)

    def test_hard_blocked_excluded_and_slot_backfilled(self, confident_profile):
        blocklist = Blocklist(user_id="u1", hard=BlocklistEntries(colors={"#FFFF00"}))
        result = Diversifier().diversify(
            [NAVY_SUIT, NAVY_SUIT_2, NAVY_CASUAL, YELLOW_GRUNGE], confident_profile, blocklist, now=NOW
        )
        assert result.excluded == [3]
        assert [m.index for m in result.selected] == [0, 2, 1]

    def test_fewer_candidates_than_count(self, confident_profile):
        blocklist = Blocklist(user_id="u1", hard=BlocklistEntries(colors={"#000080"}))
        result = Diversifier().diversify(
            [NAVY_SUIT, NAVY_CASUAL, YELLOW_GRUNGE], confident_profile, blocklist, now=NOW
        )
        assert [m.index for m in result.selected] == [2]

    def test_neutral_profile_keeps_provider_order(self):
        result = Diversifier().diversify(
            [NAVY_SUIT, NAVY_CASUAL, YELLOW_GRUNGE, NAVY_SUIT_2], PreferenceProfile.neutral("u1"), now=NOW
        )
        assert [m.index for m in result.selected] == [0, 1, 2]
        assert not result.pattern_lock.is_locked


class TestPatternLock:
    """Tests for preference-bubble detection and forced exploration."""

    @pytest.fixture
    def locked_profile(self):
        return PreferenceProfile(
            user_id="u1",
            color_weights={"#000080": 5.0, "#FFFFFF": 4.0, "#000000": 3.0, "#DC143C": 0.1},
            style_weights={"formal": 10.0, "smart casual": 5.0, "casual": 0.1},
            total_interactions=20,
            overall_confidence=95,
        )

    def test_profile_concentration_locks(self, locked_profile):
        lock = detect_pattern_lock(locked_profile)
        assert lock.is_locked
        assert lock.dominant_colors == ["#000080", "#FFFFFF", "#000000"]
        assert lock.dominant_styles == ["formal", "smart casual"]
        assert lock.forced_exploration == 0.40

    def test_needs_enough_interactions(self, locked_profile):
        locked_profile.total_interactions = 5
        assert not detect_pattern_lock(locked_profile).is_locked

    def test_diverse_profile_not_locked(self):
        profile = PreferenceProfile(
            user_id="u1",
            color_weights={f"#00000{i}": 1.0 for i in range(8)},
            style_weights={"formal": 1.0, "casual": 1.0, "ethnic": 1.0},
            total_interactions=40,
        )
        lock = detect_pattern_lock(profile)
        assert not lock.is_locked
        assert lock.forced_exploration == 0.10

    def test_history_concentration_locks(self):
        history = AntiRepetitionState(
            "u1", [AntiRepetitionEntry.from_outfit("u1", NAVY_SUIT, NOW) for _ in range(5)]
        )
        assert detect_pattern_lock(PreferenceProfile.neutral("u1"), history).is_locked
        assert not detect_pattern_lock(
            PreferenceProfile.neutral("u1"), AntiRepetitionState("u1", history.entries[:4])
        ).is_locked

    def test_novelty(self):
        lock = PatternLockStatus(is_locked=True, dominant_colors=["#000080"], dominant_styles=["formal"])
        assert novelty(NAVY_SUIT, lock) == 0.0
        assert novelty(YELLOW_GRUNGE, lock) == 1.0

    def test_forces_exploration_from_leftovers(self, locked_profile):
        bohemian = outfit("Boho Mix", ["#000080", "#FFD700"], "bohemian", "casual", ["maxi skirt"])
        result = Diversifier().diversify(
            [NAVY_SUIT, NAVY_SUIT_2, NAVY_CASUAL, bohemian], locked_profile, now=NOW
        )

        assert result.pattern_lock.is_locked
        assert [m.index for m in result.selected] == [0, 2, 3]
        forced = result.selected[-1]
        assert forced.forced is True
        assert forced.match_category == MatchCategory.EXPLORE
        assert "break the routine" in forced.explanation

    def test_forced_exploration_reorders_when_no_leftovers(self, locked_profile):
        result = Diversifier().diversify([NAVY_SUIT, NAVY_SUIT_2, NAVY_CASUAL], locked_profile, now=NOW)

        assert [m.index for m in result.selected] == [0, 1, 2]
        assert result.selected[0].forced is False
        assert result.selected[-1].forced is True

    def test_natural_explore_not_forced(self, locked_profile):
        result = Diversifier().diversify(
            [NAVY_SUIT, NAVY_CASUAL, YELLOW_GRUNGE], locked_profile, now=NOW
        )
        assert MatchCategory.EXPLORE in result.categories
        assert not any(m.forced for m in result.selected)

    def test_default_config_distribution(self):
        assert DEFAULT_DIVERSIFICATION_CONFIG.distribution == (0.70, 0.20, 0.10)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
