"""
Outfit Recommendation Service

Orchestrates one recommend() request:
1. Validate the request
2. Rate-limit the caller (before any cache lookup)
3. Per-user photo dedup (24h, identified users only)
4. In-process request cache (dogpile-protected)
5. Cross-instance persistent cache
6. Load preferences, blocklists and anti-repetition history in parallel
7. Provider cascade for the analysis, under a hard timeout
8. Hard-blocklist pre-screen and candidate cap (one top-up round when short)
9. Shopping links + bounded image stage
10. Diversification (identified users)
11. Anti-repetition record for position 1
12. Cache writes
13. Interaction tracking and history (background)

Only validation, rate limiting and an exhausted provider chain end a
request with an error; every other dependency degrades.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from config.constants import (
    ANONYMOUS_USER,
    DEFAULT_OCCASION,
    DUPLICATE_PHOTO_MESSAGE,
    NOT_ENOUGH_OUTFITS_MESSAGE,
    UNEXPECTED_ERROR_MESSAGE,
)
from config.settings import Settings
from core.errors import (
    AnalysisTimeoutError,
    DependencyDegraded,
    ProviderExhaustedError,
    RateLimitExceeded,
    RecommendationError,
)
from core.logging import LoggerMixin, bind_context
from core.utils import spawn_background
from styling.anti_repetition import (
    AntiRepetitionEntry,
    AntiRepetitionState,
    InMemoryAntiRepetitionStore,
    RedisAntiRepetitionStore,
)
from styling.caches import (
    ImageCache,
    PersistentResultCache,
    PhotoDedupCache,
    RequestCache,
    build_cache_backend,
)
from styling.diversifier import Diversifier, is_hard_blocked
from styling.fingerprints import photo_hash, request_fingerprint
from styling.image_providers import ImageProviderChain, PollinationsImageProvider, TogetherImageProvider
from styling.image_stage import ImageStage
from styling.key_pool import KeyPool
from styling.models import (
    CandidateOutfit,
    EnrichedOutfit,
    RecommendRequest,
    RecommendResponse,
    StyleAnalysis,
    parse_recommend_request,
)
from styling.orchestrator import ProviderOrchestrator, ProviderSpec, RetryPolicy
from styling.preferences import (
    Blocklist,
    InMemoryPreferenceStore,
    PreferenceProfile,
    PreferenceStore,
    SupabasePreferenceStore,
)
from styling.prompts import AnalysisPrompt
from styling.rate_limiter import InMemoryRateLimiter, RedisRateLimiter, rate_limit_identity
from styling.shopping import build_shopping_links
from styling.text_providers import GeminiProvider, GroqProvider
from styling.tracking import (
    InteractionTracker,
    RecommendationHistory,
    generate_recommendation_id,
    generate_session_id,
)


@dataclass
class RecommendOutcome:
    """HTTP-style result of recommend()."""
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200


@dataclass
class _Personalization:
    profile: Optional[PreferenceProfile] = None
    blocklist: Optional[Blocklist] = None
    history: Optional[AntiRepetitionState] = None


class RecommendationService(LoggerMixin):
    """
    Resilient outfit recommendation pipeline.

    All collaborators are injected; build_recommendation_service() wires
    the production set from Settings.
    """

    def __init__(
        self,
        orchestrator: ProviderOrchestrator,
        image_stage: ImageStage,
        rate_limiter,
        request_cache: RequestCache,
        persistent_cache: PersistentResultCache,
        photo_dedup: PhotoDedupCache,
        anti_repetition,
        preference_store: Optional[PreferenceStore] = None,
        diversifier: Optional[Diversifier] = None,
        tracker: Optional[InteractionTracker] = None,
        history: Optional[RecommendationHistory] = None,
        outfit_count: int = 3,
        candidate_pool_size: int = 5,
        analysis_timeout_seconds: float = 15.0,
        enable_personalization: bool = True,
        enable_tracking: bool = True,
        redis_client=None,
    ):
        self.orchestrator = orchestrator
        self.image_stage = image_stage
        self.rate_limiter = rate_limiter
        self.request_cache = request_cache
        self.persistent_cache = persistent_cache
        self.photo_dedup = photo_dedup
        self.anti_repetition = anti_repetition
        self.preference_store = preference_store
        self.diversifier = diversifier or Diversifier()
        self.tracker = tracker
        self.history = history
        self.outfit_count = outfit_count
        self.candidate_pool_size = max(candidate_pool_size, outfit_count)
        self.analysis_timeout_seconds = analysis_timeout_seconds
        self.enable_personalization = enable_personalization
        self.enable_tracking = enable_tracking
        self._redis = redis_client

    # =========================================================================
    # Entry Point
    # =========================================================================

    async def recommend(self, raw: Mapping[str, Any], client_id: Optional[str] = None) -> RecommendOutcome:
        """
        Run the pipeline for one raw request payload.

        Never raises: every failure becomes a 400/429/500 outcome with a
        sanitized error body.
        """
        start = time.perf_counter()
        headers: Dict[str, str] = {}
        try:
            request = parse_recommend_request(raw)
            bind_context(user_id=request.user_id or ANONYMOUS_USER)

            decision = await self.rate_limiter.check(rate_limit_identity(request.user_id, client_id))
            headers = decision.headers()
            if not decision.allowed:
                error = RateLimitExceeded(decision.limit, decision.reset_at, decision.remaining)
                headers["Retry-After"] = str(
                    max(1, int(decision.reset_at.timestamp() - time.time()))
                )
                raise error

            body = await self._serve(request)
            body["performance_ms"] = int((time.perf_counter() - start) * 1000)
            return RecommendOutcome(200, body, headers)

        except RecommendationError as e:
            self.logger.warning(
                "Recommendation rejected",
                status=e.status_code,
                error_type=type(e).__name__,
                error=e.message[:200],
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            return RecommendOutcome(e.status_code, e.to_body(), headers)
        except Exception:
            self.logger.exception(
                "Unexpected recommendation failure",
                duration_ms=int((time.perf_counter() - start) * 1000),
            )
            return RecommendOutcome(500, {"error": UNEXPECTED_ERROR_MESSAGE}, headers)

    async def _serve(self, request: RecommendRequest) -> Dict[str, Any]:
        photo_digest = photo_hash(request.photo_data_uri)

        if request.user_id:
            prior = await self.photo_dedup.get_response(request.user_id, photo_digest)
            if prior is not None:
                self.logger.info("Photo dedup hit", user_id=request.user_id, cache="photo_dedup")
                return {
                    **prior,
                    "cached": True,
                    "cache_source": "photo_dedup",
                    "message": DUPLICATE_PHOTO_MESSAGE,
                }

        key = request_fingerprint(
            photo_digest,
            request.gender,
            request.occasion,
            request.weather,
            request.genre,
            request.skin_tone,
            request.dress_colors,
            request.user_id,
        )
        body, shared = await self.request_cache.get_or_fetch(
            key, lambda: self._fetch(request, key, photo_digest)
        )
        if shared:
            self.logger.info("Request cache hit", cache="request", cache_key=key[:12])
            return {**body, "cached": True, "cache_source": "request"}
        return dict(body)

    async def _fetch(self, request: RecommendRequest, key: str, photo_digest: str) -> Dict[str, Any]:
        persisted = await self.persistent_cache.get(key)
        if isinstance(persisted, dict):
            self.logger.info("Persistent cache hit", cache="persistent", cache_key=key[:12])
            return {**persisted, "cached": True, "cache_source": "persistent"}

        body = await self._generate(request)

        spawn_background(self.persistent_cache.set(key, body), name="persistent_cache_write")
        if request.user_id:
            spawn_background(
                self.photo_dedup.set_response(request.user_id, photo_digest, body),
                name="photo_dedup_write",
            )
        return body

    # =========================================================================
    # Generation
    # =========================================================================

    async def _load_preferences(self, user_id: str) -> Tuple[PreferenceProfile, Blocklist]:
        """Profile and blocklist; neutral/empty when the store is degraded."""
        if self.preference_store is None:
            return PreferenceProfile.neutral(user_id), Blocklist.empty(user_id)
        try:
            return await asyncio.gather(
                self.preference_store.get_preference_profile(user_id),
                self.preference_store.get_blocklists(user_id),
            )
        except DependencyDegraded as e:
            self.logger.warning("Personalization degraded", user_id=user_id, error=str(e))
        except Exception as e:
            self.logger.warning(
                "Personalization degraded",
                user_id=user_id,
                error=str(DependencyDegraded("preference_store", str(e))),
            )
        return PreferenceProfile.neutral(user_id), Blocklist.empty(user_id)

    async def _personalization(self, request: RecommendRequest) -> _Personalization:
        if not (request.user_id and self.enable_personalization):
            return _Personalization()
        (profile, blocklist), history = await asyncio.gather(
            self._load_preferences(request.user_id),
            self.anti_repetition.get_recent(request.user_id),
        )
        self.logger.info(
            "Personalization loaded",
            user_id=request.user_id,
            interactions=profile.total_interactions,
            confidence=profile.overall_confidence,
            history=len(history),
        )
        return _Personalization(profile, blocklist, history)

    def _build_prompt(self, request: RecommendRequest, context: _Personalization, count: int) -> AnalysisPrompt:
        favored_colors: Tuple[str, ...] = ()
        favored_styles: Tuple[str, ...] = ()
        avoid_colors: Tuple[str, ...] = ()
        avoid_styles: Tuple[str, ...] = ()
        avoid_items: Tuple[str, ...] = ()

        profile = context.profile
        if profile is not None and profile.confidence > 0:
            ranked_colors = sorted(profile.color_weights, key=profile.color_weights.get, reverse=True)
            favored_colors = tuple(ranked_colors or profile.favorite_colors)
            favored_styles = tuple(profile.preferred_styles)
        if context.blocklist is not None:
            avoid_colors = tuple(sorted(context.blocklist.hard.colors))
            avoid_styles = tuple(sorted(context.blocklist.hard.styles))
            avoid_items = tuple(sorted(context.blocklist.hard.items))

        return AnalysisPrompt(
            photo_data_uri=request.photo_data_uri,
            gender=request.gender,
            occasion=request.occasion or DEFAULT_OCCASION,
            genre=request.genre or "",
            weather=request.weather or "",
            skin_tone=request.skin_tone or "",
            dress_colors=tuple(request.dress_colors),
            previous_recommendation=request.previous_recommendation or "",
            outfit_count=count,
            favored_colors=favored_colors,
            favored_styles=favored_styles,
            avoid_colors=avoid_colors,
            avoid_styles=avoid_styles,
            avoid_items=avoid_items,
        )

    async def _analyze(self, prompt: AnalysisPrompt) -> StyleAnalysis:
        try:
            return await asyncio.wait_for(
                self.orchestrator.generate(prompt), timeout=self.analysis_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise AnalysisTimeoutError(self.analysis_timeout_seconds) from e

    def _screen(self, candidates: List[CandidateOutfit], context: _Personalization, cap: int) -> List[CandidateOutfit]:
        if context.blocklist is not None:
            allowed = [c for c in candidates if not is_hard_blocked(c, context.blocklist)]
            if len(allowed) < len(candidates):
                self.logger.info(
                    "Hard blocklist removed candidates",
                    removed=len(candidates) - len(allowed),
                    remaining=len(allowed),
                )
            candidates = allowed
        return candidates[:cap]

    async def _top_up(
        self,
        prompt: AnalysisPrompt,
        candidates: List[CandidateOutfit],
        context: _Personalization,
        cap: int,
    ) -> List[CandidateOutfit]:
        """
        One more analysis round when screening left too few outfits.

        Raises:
            ProviderExhaustedError: the second round still falls short
        """
        self.logger.info(
            "Candidate pool short, requesting more outfits",
            have=len(candidates),
            need=self.outfit_count,
        )
        retry_prompt = replace(prompt, exclude_titles=tuple(c.title for c in candidates))
        extra = await self._analyze(retry_prompt)

        seen = {c.title.strip().lower() for c in candidates}
        fresh = [c for c in extra.outfit_recommendations if c.title.strip().lower() not in seen]
        candidates = candidates + self._screen(fresh, context, cap)

        if len(candidates) < self.outfit_count:
            raise ProviderExhaustedError(NOT_ENOUGH_OUTFITS_MESSAGE, last_kind="blocklist", retryable=False)
        return candidates[:cap]

    async def _generate(self, request: RecommendRequest) -> Dict[str, Any]:
        context = await self._personalization(request)
        personalized = context.profile is not None
        cap = self.candidate_pool_size if personalized else self.outfit_count

        prompt = self._build_prompt(request, context, cap)
        analysis = await self._analyze(prompt)
        candidates = self._screen(list(analysis.outfit_recommendations), context, cap)
        if len(candidates) < self.outfit_count:
            candidates = await self._top_up(prompt, candidates, context, cap)

        images = await self.image_stage.run(candidates)
        enriched = [
            EnrichedOutfit.from_candidate(
                outfit,
                image.url,
                image.source,
                build_shopping_links(
                    request.gender,
                    outfit.items,
                    outfit.color_palette,
                    style=outfit.style_type,
                    description=outfit.description,
                ),
            )
            for outfit, image in zip(candidates, images)
        ]

        if personalized:
            result = self.diversifier.diversify(
                candidates,
                context.profile,
                context.blocklist,
                context.history,
                count=self.outfit_count,
            )
            final: List[EnrichedOutfit] = []
            for position, match in enumerate(result.selected, start=1):
                final.append(enriched[match.index].model_copy(update={
                    "match_score": match.match_score,
                    "match_category": match.match_category,
                    "explanation": match.explanation,
                    "position": position,
                }))
            if result.selected:
                await self.anti_repetition.record(
                    AntiRepetitionEntry.from_outfit(request.user_id, result.selected[0].outfit)
                )
        else:
            final = enriched[: self.outfit_count]

        outfits = [outfit.to_response_dict() for outfit in final]
        session_id = generate_session_id()
        recommendation_id = None
        if request.user_id and self.enable_tracking:
            recommendation_id = generate_recommendation_id()
            self._track(request, session_id, recommendation_id, outfits)

        response = RecommendResponse(
            outfits=outfits,
            cached=False,
            recommendation_id=recommendation_id,
            session_id=session_id,
            provider=analysis.provider,
            analysis=analysis.summary(),
        )
        self.logger.info(
            "Recommendation generated",
            user_id=request.user_id or ANONYMOUS_USER,
            provider=analysis.provider,
            outfits=len(outfits),
            personalized=personalized,
        )
        return response.to_body()

    def _track(
        self,
        request: RecommendRequest,
        session_id: str,
        recommendation_id: str,
        outfits: List[Dict[str, Any]],
    ) -> None:
        request_context = {
            "occasion": request.occasion or DEFAULT_OCCASION,
            "gender": request.gender,
            "genre": request.genre,
            "weather": request.weather,
            "skin_tone": request.skin_tone,
            "dress_colors": request.dress_colors,
        }
        if self.tracker is not None:
            spawn_background(
                self.tracker.record_session(session_id, request.user_id, request_context, outfits),
                name="interaction_session",
            )
        if self.history is not None:
            spawn_background(
                self.history.save(recommendation_id, request.user_id, request_context, outfits),
                name="recommendation_history",
            )

    # =========================================================================
    # Diagnostics / Lifecycle
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        pools = []
        for provider in self._all_providers():
            pool = getattr(provider, "key_pool", None)
            if pool is not None:
                pools.append(pool.summary())
        return {
            "text_providers": self.orchestrator.provider_names,
            "image_providers": self.image_stage.chain.provider_names,
            "key_pools": pools,
            "request_cache": self.request_cache.stats(),
            "personalization": self.enable_personalization,
            "tracking": self.enable_tracking,
        }

    def _all_providers(self) -> List[Any]:
        return list(self.orchestrator.providers) + list(self.image_stage.chain.providers)

    async def aclose(self) -> None:
        for provider in self._all_providers():
            close = getattr(provider, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    self.logger.warning("Provider close failed", provider=provider.name, error=str(e))
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                self.logger.warning("Redis close failed", error=str(e))
            self._redis = None


# =============================================================================
# Factory
# =============================================================================

def build_recommendation_service(
    settings: Settings,
    redis_client=None,
    supabase=None,
) -> RecommendationService:
    """
    Wire the production pipeline.

    Redis backs the shared caches, rate limits and anti-repetition when a
    client is supplied; Supabase backs preferences and tracking when
    configured. Anything missing falls back to in-process implementations.
    """
    text_providers: List[ProviderSpec] = []
    if settings.gemini_api_keys:
        text_providers.append(ProviderSpec(
            GeminiProvider(
                KeyPool("gemini", settings.gemini_api_keys),
                model=settings.gemini_model,
                base_url=settings.gemini_base_url,
                timeout_seconds=settings.provider_request_timeout_seconds,
            ),
            max_attempts=settings.primary_provider_attempts,
        ))
    if settings.groq_api_key:
        text_providers.append(ProviderSpec(
            GroqProvider(
                api_key=settings.groq_api_key,
                model=settings.groq_model,
                base_url=settings.groq_base_url,
                timeout_seconds=settings.provider_request_timeout_seconds,
            ),
            max_attempts=settings.secondary_provider_attempts,
        ))

    orchestrator = ProviderOrchestrator(
        text_providers,
        RetryPolicy(
            max_schema_retries=settings.max_schema_retries,
            schema_retry_delay_seconds=settings.schema_retry_delay_seconds,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_cap_ms=settings.backoff_cap_ms,
            backoff_jitter_ms=settings.backoff_jitter_ms,
        ),
    )

    image_providers = []
    if settings.together_api_keys:
        image_providers.append(TogetherImageProvider(
            KeyPool("together", settings.together_api_keys),
            model=settings.together_model,
            api_url=settings.together_api_url,
            timeout_seconds=settings.image_request_timeout_seconds,
        ))
    image_providers.append(PollinationsImageProvider(
        settings.pollinations_base_url,
        timeout_seconds=settings.image_request_timeout_seconds,
    ))

    backend = build_cache_backend(redis_client)
    if redis_client is not None:
        rate_limiter = RedisRateLimiter(
            redis_client, settings.rate_limit_requests, settings.rate_limit_window_seconds
        )
        anti_repetition = RedisAntiRepetitionStore(redis_client, settings.anti_repetition_window_days)
    else:
        rate_limiter = InMemoryRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
        anti_repetition = InMemoryAntiRepetitionStore(settings.anti_repetition_window_days)

    if supabase is not None:
        preference_store = SupabasePreferenceStore(supabase)
    else:
        preference_store = InMemoryPreferenceStore()

    return RecommendationService(
        orchestrator=orchestrator,
        image_stage=ImageStage(
            ImageProviderChain(image_providers),
            ImageCache(backend, settings.image_cache_ttl_seconds),
            budget_seconds=settings.image_budget_seconds,
        ),
        rate_limiter=rate_limiter,
        request_cache=RequestCache(settings.request_cache_max_entries, settings.request_cache_ttl_seconds),
        persistent_cache=PersistentResultCache(backend, settings.persistent_cache_ttl_seconds),
        photo_dedup=PhotoDedupCache(backend, settings.photo_dedup_ttl_seconds),
        anti_repetition=anti_repetition,
        preference_store=preference_store,
        tracker=InteractionTracker(supabase),
        history=RecommendationHistory(supabase),
        outfit_count=settings.outfit_count,
        candidate_pool_size=settings.candidate_pool_size,
        analysis_timeout_seconds=settings.analysis_timeout_seconds,
        enable_personalization=settings.enable_personalization,
        enable_tracking=settings.enable_tracking,
        redis_client=redis_client,
    )


# =============================================================================
# Singleton
# =============================================================================

_service: Optional[RecommendationService] = None
_service_lock = threading.Lock()


def get_recommendation_service() -> RecommendationService:
    """Get or create the shared RecommendationService (thread-safe singleton)."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                from config.database import create_redis_client, get_supabase_client_optional
                from config.settings import get_settings

                settings = get_settings()
                supabase = get_supabase_client_optional() if settings.enable_personalization else None
                _service = build_recommendation_service(
                    settings,
                    redis_client=create_redis_client(),
                    supabase=supabase,
                )
    return _service


def set_recommendation_service(service: Optional[RecommendationService]) -> None:
    """Replace the shared service (tests and shutdown)."""
    global _service
    with _service_lock:
        _service = service
