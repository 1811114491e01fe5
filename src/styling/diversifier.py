"""
Rule-Based Diversification Engine.

Re-ranks and re-selects candidate outfits against a user's preference
profile and blocklists while guaranteeing variety.

Algorithm:
1. Drop any outfit that touches a HARD blocklist entry
2. Score each remaining outfit with score_outfit():
     preference = color*0.45 + style*0.35 + occasion*0.20      (each 0-1)
     base       = 0.5 + confidence * (preference - 0.5)
     score      = base - soft_penalties - temporary_penalties
                       - repetition_penalty - near_duplicate_penalty
   so a zero-confidence profile scores every outfit 0.5 and only the
   penalties separate them.
3. Bucket: Safe (>= 0.75), Stretch (>= 0.55), Explore (otherwise)
4. Fill a slot plan derived from the 70/20/10 distribution (for 3 outfits:
   Safe, Stretch, Explore). Each slot takes the best outfit of its bucket,
   falling back to the best remaining score when the bucket is empty.
5. Pattern lock: when the user's profile or recent history is concentrated
   on a few colors and styles, force one Explore outfit into the result
   (the most novel remaining candidate) if none made it in naturally.

The caller records the position-1 outfit in the anti-repetition cache.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from core.logging import get_logger
from core.utils import normalize_hex_list
from styling.anti_repetition import AntiRepetitionState
from styling.fingerprints import outfit_fingerprint
from styling.models import CandidateOutfit, MatchCategory
from styling.preferences import Blocklist, BlocklistEntries, PreferenceProfile
from styling.shopping import nearest_color_name

logger = get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class DiversificationConfig:
    """Tunable constants for scoring, bucketing and selection."""

    # --- Preference term weights (sum to 1.0) ---
    color_weight: float = 0.45
    style_weight: float = 0.35
    occasion_weight: float = 0.20

    # --- Penalties (absolute, not scaled by confidence) ---
    soft_block_penalty: float = 0.20       # per soft-blocklist hit
    temporary_block_penalty: float = 0.10  # per active temporary entry hit
    repetition_penalty: float = 0.35       # exact repeat shown just now, decays to 0 over the window
    near_duplicate_penalty: float = 0.15

    # --- Category thresholds ---
    safe_threshold: float = 0.75
    stretch_threshold: float = 0.55

    # --- Target distribution (safe, stretch, explore) ---
    distribution: Tuple[float, float, float] = (0.70, 0.20, 0.10)

    # --- Pattern lock ---
    lock_color_share: float = 0.85    # top-3 colors share of all color weight
    lock_style_share: float = 0.80    # top-2 styles share of all style weight
    lock_min_interactions: int = 10
    lock_min_history: int = 5
    forced_exploration: float = 0.40
    normal_exploration: float = 0.10


DEFAULT_DIVERSIFICATION_CONFIG = DiversificationConfig()

_CATEGORY_ORDER = (MatchCategory.SAFE, MatchCategory.STRETCH, MatchCategory.EXPLORE)

# Preference term values
_FAVORED = 0.9
_NEUTRAL = 0.5
_DISFAVORED = 0.1


# =============================================================================
# Results
# =============================================================================

@dataclass
class MatchResult:
    """A scored outfit; index is its position in the candidate list."""
    outfit: CandidateOutfit
    index: int
    match_score: float
    match_category: MatchCategory
    explanation: str
    breakdown: Dict[str, float] = field(default_factory=dict)
    forced: bool = False


@dataclass
class PatternLockStatus:
    is_locked: bool
    reason: Optional[str] = None
    dominant_colors: List[str] = field(default_factory=list)
    dominant_styles: List[str] = field(default_factory=list)
    forced_exploration: float = 0.10


@dataclass
class DiversificationResult:
    selected: List[MatchResult]
    excluded: List[int]
    pattern_lock: PatternLockStatus

    @property
    def categories(self) -> List[MatchCategory]:
        return [m.match_category for m in self.selected]


# =============================================================================
# Blocklist Matching
# =============================================================================

@dataclass
class _OutfitTokens:
    """Blocklist-facing view of an outfit: palette, style and items only."""
    colors: List[str]
    color_names: List[str]
    style: str
    items: List[str]


def _outfit_tokens(outfit: CandidateOutfit) -> _OutfitTokens:
    colors = normalize_hex_list(outfit.color_palette)
    names = [nearest_color_name(c) for c in colors]
    return _OutfitTokens(
        colors=colors,
        color_names=[n for n in names if n],
        style=(outfit.style_type or "").lower().strip(),
        items=[i.lower().strip() for i in outfit.items if i and i.strip()],
    )


def _has_word(term: str, phrases: Iterable[str]) -> bool:
    """True if term appears as a whole word (or word sequence) in any phrase."""
    if not term:
        return False
    pattern = re.compile(rf"\b{re.escape(term)}\b")
    return any(pattern.search(phrase) for phrase in phrases)


def _style_matches(style: str, target: str) -> bool:
    return bool(style) and bool(target) and (target in style or style in target)


def _color_matches(color: str, tokens: _OutfitTokens) -> bool:
    # hex entries match the palette; named colors match palette names and items
    if color.startswith("#"):
        return color in tokens.colors
    return _has_word(color, tokens.color_names) or _has_word(color, tokens.items)


def _entry_hits(outfit: CandidateOutfit, entries: BlocklistEntries) -> int:
    """Number of blocklist entries the outfit touches."""
    tokens = _outfit_tokens(outfit)
    hits = 0
    for color in entries.colors:
        hits += _color_matches(color, tokens)
    for blocked_style in entries.styles:
        hits += _style_matches(tokens.style, blocked_style)
    for blocked_item in entries.items:
        hits += _has_word(blocked_item, tokens.items)
    return hits


def is_hard_blocked(outfit: CandidateOutfit, blocklist: Optional[Blocklist]) -> bool:
    """True if the outfit intersects the hard blocklist in any color, style or item."""
    if blocklist is None or not blocklist.hard:
        return False
    return _entry_hits(outfit, blocklist.hard) > 0


def _temporary_hits(outfit: CandidateOutfit, blocklist: Blocklist, now: datetime) -> int:
    active = blocklist.active_temporary(now)
    if not active:
        return 0
    tokens = _outfit_tokens(outfit)
    fingerprint = outfit_fingerprint(outfit.title, outfit.color_palette, outfit.items)
    hits = 0
    for block in active:
        target = block.target
        if (
            target == fingerprint
            or _color_matches(target, tokens)
            or _style_matches(tokens.style, target)
            or _has_word(target, tokens.items)
        ):
            hits += 1
    return hits


# =============================================================================
# Scoring
# =============================================================================

def _weighted_preference(value: str, weights: Dict[str, float], favored: Iterable[str]) -> Optional[float]:
    """0.5-1.0 for a weighted/favored value, None if unknown."""
    if value in weights and weights[value] > 0:
        top = max(weights.values())
        return _NEUTRAL + _NEUTRAL * (weights[value] / top)
    if value in favored:
        return _FAVORED
    return None


def color_preference(colors: Sequence[str], profile: PreferenceProfile) -> float:
    if not colors:
        return _NEUTRAL
    disliked = set(profile.disliked_colors)
    total = 0.0
    for color in colors:
        if color in disliked:
            total += _DISFAVORED
            continue
        value = _weighted_preference(color, profile.color_weights, profile.favorite_colors)
        total += _NEUTRAL if value is None else value
    return total / len(colors)


def style_preference(style: str, profile: PreferenceProfile) -> float:
    if not style:
        return _NEUTRAL
    if any(_style_matches(style, avoided) for avoided in profile.avoided_styles):
        return _DISFAVORED
    for known, weight in profile.style_weights.items():
        if _style_matches(style, known) and weight > 0:
            top = max(profile.style_weights.values())
            return _NEUTRAL + _NEUTRAL * (weight / top)
    if any(_style_matches(style, preferred) for preferred in profile.preferred_styles):
        return _FAVORED
    return _NEUTRAL


def occasion_preference(occasion: str, profile: PreferenceProfile) -> float:
    if occasion and occasion.lower() in profile.preferred_occasions:
        return _FAVORED
    return _NEUTRAL


def repetition_penalty(
    outfit: CandidateOutfit,
    history: Optional[AntiRepetitionState],
    now: datetime,
    config: DiversificationConfig = DEFAULT_DIVERSIFICATION_CONFIG,
) -> float:
    """Exact repeats decay linearly over the window; near-duplicates are flat."""
    if history is None or not history.entries:
        return 0.0
    fingerprint = outfit_fingerprint(outfit.title, outfit.color_palette, outfit.items)
    last_shown = history.last_shown(fingerprint)
    if last_shown is not None:
        window = history.window.total_seconds()
        age = max(0.0, (now - last_shown).total_seconds())
        if age <= window:
            return config.repetition_penalty * (1.0 - age / window)
    if history.is_near_duplicate(outfit):
        return config.near_duplicate_penalty
    return 0.0


def score_outfit(
    outfit: CandidateOutfit,
    profile: PreferenceProfile,
    blocklist: Optional[Blocklist] = None,
    history: Optional[AntiRepetitionState] = None,
    now: Optional[datetime] = None,
    config: DiversificationConfig = DEFAULT_DIVERSIFICATION_CONFIG,
) -> Tuple[float, Dict[str, float]]:
    """
    Score one outfit in [0, 1].

    Returns:
        (score, breakdown) where breakdown holds each term and penalty
    """
    now = now or datetime.now(timezone.utc)
    tokens = _outfit_tokens(outfit)

    color_term = color_preference(tokens.colors, profile)
    style_term = style_preference(tokens.style, profile)
    occasion_term = occasion_preference(outfit.occasion, profile)
    preference = (
        config.color_weight * color_term
        + config.style_weight * style_term
        + config.occasion_weight * occasion_term
    )
    base = _NEUTRAL + profile.confidence * (preference - _NEUTRAL)

    soft = 0.0
    temporary = 0.0
    if blocklist is not None:
        soft = config.soft_block_penalty * _entry_hits(outfit, blocklist.soft)
        temporary = config.temporary_block_penalty * _temporary_hits(outfit, blocklist, now)
    repetition = repetition_penalty(outfit, history, now, config)

    score = max(0.0, min(1.0, base - soft - temporary - repetition))
    breakdown = {
        "color": round(color_term, 4),
        "style": round(style_term, 4),
        "occasion": round(occasion_term, 4),
        "preference": round(preference, 4),
        "confidence": round(profile.confidence, 4),
        "soft_penalty": round(soft, 4),
        "temporary_penalty": round(temporary, 4),
        "repetition_penalty": round(repetition, 4),
    }
    return score, breakdown


def categorize(score: float, config: DiversificationConfig = DEFAULT_DIVERSIFICATION_CONFIG) -> MatchCategory:
    if score >= config.safe_threshold:
        return MatchCategory.SAFE
    if score >= config.stretch_threshold:
        return MatchCategory.STRETCH
    return MatchCategory.EXPLORE


def explain(category: MatchCategory, breakdown: Dict[str, float], forced: bool = False) -> str:
    """Short human-readable reason for the UI."""
    if forced:
        return "Something new to break the routine: a different palette and style from your recent picks."
    if breakdown.get("repetition_penalty", 0) > 0:
        suffix = " Similar to something you saw recently."
    else:
        suffix = ""
    if category == MatchCategory.SAFE:
        return "Strong match for the colors and styles you love." + suffix
    if category == MatchCategory.STRETCH:
        if breakdown.get("color", 0) >= breakdown.get("style", 0):
            return "Built around your favorite colors with a slightly different style." + suffix
        return "Matches your style with colors you might not have tried." + suffix
    return "Exploring new territory to help discover what else suits you." + suffix


# =============================================================================
# Pattern Lock
# =============================================================================

def _top_share(weights: Dict[str, float], top_n: int) -> Tuple[float, List[str]]:
    positive = {k: v for k, v in weights.items() if v > 0}
    total = sum(positive.values())
    if total <= 0:
        return 0.0, []
    ranked = sorted(positive.items(), key=lambda kv: kv[1], reverse=True)[:top_n]
    return sum(v for _, v in ranked) / total, [k for k, _ in ranked]


def detect_pattern_lock(
    profile: Optional[PreferenceProfile],
    history: Optional[AntiRepetitionState] = None,
    config: DiversificationConfig = DEFAULT_DIVERSIFICATION_CONFIG,
) -> PatternLockStatus:
    """
    Detect a preference bubble from profile weights or from recent history.

    Locked when the top 3 colors exceed lock_color_share of all color
    weight AND the top 2 styles exceed lock_style_share of all style weight.
    """
    candidates: List[Tuple[str, Dict[str, float], Dict[str, float]]] = []
    if profile is not None and profile.total_interactions >= config.lock_min_interactions:
        candidates.append(("profile", profile.color_weights, profile.style_weights))
    if history is not None and len(history) >= config.lock_min_history:
        candidates.append((
            "history",
            dict(Counter(history.recent_colors())),
            dict(Counter(history.recent_styles())),
        ))

    for source, color_weights, style_weights in candidates:
        color_share, top_colors = _top_share(color_weights, 3)
        style_share, top_styles = _top_share(style_weights, 2)
        if color_share > config.lock_color_share and style_share > config.lock_style_share:
            return PatternLockStatus(
                is_locked=True,
                reason=f"{source} concentrated on {len(top_colors)} colors and {len(top_styles)} styles",
                dominant_colors=top_colors,
                dominant_styles=top_styles,
                forced_exploration=config.forced_exploration,
            )

    return PatternLockStatus(is_locked=False, forced_exploration=config.normal_exploration)


def novelty(outfit: CandidateOutfit, lock: PatternLockStatus) -> float:
    """Share of the outfit outside the dominant colors/styles (0-1)."""
    colors = normalize_hex_list(outfit.color_palette)
    dominant = set(lock.dominant_colors)
    color_novelty = (
        sum(1 for c in colors if c not in dominant) / len(colors) if colors else 0.0
    )
    style = (outfit.style_type or "").lower()
    style_novelty = 0.0 if any(_style_matches(style, s) for s in lock.dominant_styles) else 1.0
    return 0.5 * color_novelty + 0.5 * style_novelty


# =============================================================================
# Selection
# =============================================================================

def slot_plan(
    count: int, distribution: Tuple[float, float, float] = DEFAULT_DIVERSIFICATION_CONFIG.distribution
) -> List[MatchCategory]:
    """
    Target category per position.

    Fewer than three slots take the leading categories; from three up every
    category gets one slot and the rest follow the distribution by largest
    remainder.
    """
    if count <= 0:
        return []
    if count < len(_CATEGORY_ORDER):
        return list(_CATEGORY_ORDER[:count])

    counts = [1] * len(_CATEGORY_ORDER)
    extra = count - len(_CATEGORY_ORDER)
    raw = [share * extra for share in distribution]
    floors = [int(r) for r in raw]
    leftover = extra - sum(floors)
    by_remainder = sorted(range(len(raw)), key=lambda i: raw[i] - floors[i], reverse=True)
    for i in by_remainder[:leftover]:
        floors[i] += 1

    plan: List[MatchCategory] = []
    for category, base, bonus in zip(_CATEGORY_ORDER, counts, floors):
        plan.extend([category] * (base + bonus))
    return plan


class Diversifier:
    """
    Scores, buckets and selects outfits for one user.

    Usage:
        result = Diversifier().diversify(candidates, profile, blocklist, history, count=3)
        for match in result.selected:
            ...
    """

    def __init__(self, config: DiversificationConfig = DEFAULT_DIVERSIFICATION_CONFIG):
        self.config = config

    def score_all(
        self,
        candidates: Sequence[CandidateOutfit],
        profile: PreferenceProfile,
        blocklist: Optional[Blocklist],
        history: Optional[AntiRepetitionState],
        now: datetime,
    ) -> Tuple[List[MatchResult], List[int]]:
        matches: List[MatchResult] = []
        excluded: List[int] = []
        for index, outfit in enumerate(candidates):
            if is_hard_blocked(outfit, blocklist):
                excluded.append(index)
                continue
            score, breakdown = score_outfit(outfit, profile, blocklist, history, now, self.config)
            category = categorize(score, self.config)
            matches.append(MatchResult(
                outfit=outfit,
                index=index,
                match_score=round(score, 4),
                match_category=category,
                explanation=explain(category, breakdown),
                breakdown=breakdown,
            ))
        return matches, excluded

    def select(self, matches: List[MatchResult], count: int) -> List[MatchResult]:
        """Fill the slot plan; empty buckets fall back to best remaining score."""
        remaining = sorted(matches, key=lambda m: (-m.match_score, m.index))
        selected: List[MatchResult] = []
        for target in slot_plan(min(count, len(remaining)), self.config.distribution):
            pick = next((m for m in remaining if m.match_category == target), None)
            if pick is None:
                pick = remaining[0]
            remaining.remove(pick)
            selected.append(pick)
        return selected

    def _force_exploration(
        self,
        selected: List[MatchResult],
        pool: List[MatchResult],
        lock: PatternLockStatus,
    ) -> List[MatchResult]:
        if not selected or any(m.match_category == MatchCategory.EXPLORE for m in selected):
            return selected

        # position 1 is never displaced
        if len(selected) < 2:
            return selected

        chosen = {m.index for m in selected}
        leftovers = [m for m in pool if m.index not in chosen]
        if leftovers:
            substitute = max(leftovers, key=lambda m: (novelty(m.outfit, lock), -m.index))
            result = selected[:-1]
        else:
            substitute = max(selected[1:], key=lambda m: (novelty(m.outfit, lock), -m.index))
            result = [m for m in selected if m is not substitute]

        substitute.match_category = MatchCategory.EXPLORE
        substitute.forced = True
        substitute.explanation = explain(MatchCategory.EXPLORE, substitute.breakdown, forced=True)
        logger.info(
            "Pattern lock: forced exploration",
            reason=lock.reason,
            outfit_index=substitute.index,
        )
        return result + [substitute]

    def diversify(
        self,
        candidates: Sequence[CandidateOutfit],
        profile: PreferenceProfile,
        blocklist: Optional[Blocklist] = None,
        history: Optional[AntiRepetitionState] = None,
        count: int = 3,
        now: Optional[datetime] = None,
    ) -> DiversificationResult:
        now = now or datetime.now(timezone.utc)
        matches, excluded = self.score_all(candidates, profile, blocklist, history, now)
        selected = self.select(matches, count)

        lock = detect_pattern_lock(profile, history, self.config)
        if lock.is_locked:
            selected = self._force_exploration(selected, matches, lock)

        logger.info(
            "Diversification applied",
            user_id=profile.user_id,
            candidates=len(candidates),
            excluded=len(excluded),
            categories=[m.match_category.value for m in selected],
            scores=[m.match_score for m in selected],
            pattern_lock=lock.is_locked,
        )
        return DiversificationResult(selected=selected, excluded=excluded, pattern_lock=lock)
