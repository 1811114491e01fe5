"""
Pytest configuration and shared fixtures for the outfit recommendation tests.
"""
import base64
import os
import sys
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

# Load environment variables
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))


# ============================================================================
# Fixtures: Test Data Factories
# ============================================================================

def make_photo_data_uri(seed: str = "photo-1", mime: str = "image/jpeg") -> str:
    """Small but valid base64 image data URI."""
    payload = base64.b64encode(f"fake-image-bytes:{seed}".encode()).decode()
    return f"data:{mime};base64,{payload}"


def make_outfit_dict(
    title: str,
    palette: List[str],
    style: str = "casual",
    occasion: str = "casual",
    items: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Provider-shaped (camelCase) outfit."""
    return {
        "title": title,
        "description": f"{title} in soft cotton",
        "colorPalette": palette,
        "styleType": style,
        "occasion": occasion,
        "items": items or ["white shirt", "chinos", "loafers"],
        "imagePrompt": f"full body photo, {title}",
        "isExistingMatch": False,
    }


def make_analysis_dict(outfits: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Provider-shaped (camelCase) analysis payload."""
    return {
        "feedback": "Great base outfit with balanced proportions.",
        "highlights": ["Good fit", "Versatile colors"],
        "colorSuggestions": [
            {"name": "Navy", "hex": "#000080", "reason": "Complements warm skin tones"},
        ],
        "outfitRecommendations": outfits if outfits is not None else [
            make_outfit_dict("Navy Smart Casual", ["#000080", "#FFFFFF", "#8B4513"], "smart casual"),
            make_outfit_dict("Olive Weekend", ["#556B2F", "#F5F5DC", "#8B4513"], "casual",
                             items=["olive overshirt", "beige chinos", "sneakers"]),
            make_outfit_dict("Crimson Evening", ["#DC143C", "#000000", "#C0C0C0"], "party", "party",
                             items=["crimson blazer", "black trousers", "oxford shoes"]),
            make_outfit_dict("Pastel Ethnic", ["#FFC0CB", "#FFFDD0", "#DDA0DD"], "ethnic", "ethnic",
                             items=["pink kurta", "cream pyjama", "mojaris"]),
            make_outfit_dict("Mono Athleisure", ["#808080", "#000000", "#FFFFFF"], "athletic", "workout",
                             items=["grey joggers", "black hoodie", "white trainers"]),
        ],
        "notes": "Keep accessories minimal.",
        "imagePrompt": "full body fashion photo",
    }


@pytest.fixture
def photo_data_uri() -> str:
    return make_photo_data_uri()


@pytest.fixture
def analysis_dict() -> Dict[str, Any]:
    return make_analysis_dict()


@pytest.fixture
def style_analysis(analysis_dict):
    from styling.models import StyleAnalysis
    return StyleAnalysis.model_validate(analysis_dict)


@pytest.fixture
def valid_request(photo_data_uri) -> Dict[str, Any]:
    return {
        "photo_data_uri": photo_data_uri,
        "gender": "male",
        "occasion": "casual",
        "weather": "sunny 28C",
        "dress_colors": ["#000080", "#FFFFFF"],
    }


# ============================================================================
# Fakes: Providers
# ============================================================================

class StubTextProvider:
    """
    Scripted text provider.

    Each generate() call pops the next scripted outcome: an exception is
    raised, a dict is validated into a StyleAnalysis.
    """

    def __init__(self, name: str, outcomes: List[Any], available: bool = True, delay: float = 0.0):
        self.name = name
        self._outcomes = list(outcomes)
        self._available = available
        self._delay = delay
        self.calls: List[Dict[str, Any]] = []

    @property
    def available(self) -> bool:
        return self._available

    async def generate(self, prompt, repair_feedback=None):
        import asyncio
        from styling.models import StyleAnalysis

        self.calls.append({"prompt": prompt, "repair_feedback": repair_feedback})
        if self._delay:
            await asyncio.sleep(self._delay)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return StyleAnalysis.model_validate(outcome)


class StubImageProvider:
    """Image provider returning a fixed URL, raising, or sleeping past the budget."""

    def __init__(self, name: str = "stub", url: str = "https://img.example.com/a.png",
                 error: Optional[Exception] = None, delay: float = 0.0, available: bool = True):
        self.name = name
        self._url = url
        self._error = error
        self._delay = delay
        self._available = available
        self.calls = 0

    @property
    def available(self) -> bool:
        return self._available

    async def generate(self, prompt: str, colors: List[str]) -> str:
        import asyncio

        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return f"{self._url}?n={self.calls}"


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def make_service():
    """
    Factory for a fully in-memory RecommendationService.

    Usage:
        service = make_service(text_outcomes=[analysis_dict])
    """
    from styling.anti_repetition import InMemoryAntiRepetitionStore
    from styling.caches import (
        ImageCache,
        InMemoryCacheBackend,
        PersistentResultCache,
        PhotoDedupCache,
        RequestCache,
    )
    from styling.image_providers import ImageProviderChain
    from styling.image_stage import ImageStage
    from styling.orchestrator import ProviderOrchestrator, ProviderSpec, RetryPolicy
    from styling.preferences import InMemoryPreferenceStore
    from styling.rate_limiter import InMemoryRateLimiter
    from styling.service import RecommendationService

    def _factory(
        text_outcomes: Optional[List[Any]] = None,
        text_providers: Optional[List[Any]] = None,
        image_providers: Optional[List[Any]] = None,
        rate_limit: int = 20,
        preference_store=None,
        tracker=None,
        history=None,
        **kwargs,
    ) -> RecommendationService:
        budget = kwargs.pop("image_budget_seconds", 1.0)
        if text_providers is None:
            text_providers = [StubTextProvider("gemini", text_outcomes or [make_analysis_dict()])]
        backend = InMemoryCacheBackend()
        return RecommendationService(
            orchestrator=ProviderOrchestrator(
                [ProviderSpec(p, max_attempts=3) for p in text_providers],
                RetryPolicy(),
                sleep=no_sleep,
                jitter=lambda: 0.0,
            ),
            image_stage=ImageStage(
                ImageProviderChain(image_providers if image_providers is not None else [StubImageProvider()]),
                ImageCache(backend),
                budget_seconds=budget,
            ),
            rate_limiter=InMemoryRateLimiter(limit=rate_limit, window_seconds=3600),
            request_cache=RequestCache(),
            persistent_cache=PersistentResultCache(backend),
            photo_dedup=PhotoDedupCache(backend),
            anti_repetition=InMemoryAntiRepetitionStore(),
            preference_store=preference_store or InMemoryPreferenceStore(),
            tracker=tracker,
            history=history,
            **kwargs,
        )

    return _factory


# ============================================================================
# Fixtures: Mock Services
# ============================================================================

@pytest.fixture
def mock_supabase_client():
    """Mock Supabase client for unit tests."""
    mock_client = MagicMock()

    # Mock table operations
    mock_client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    mock_client.table.return_value.insert.return_value.execute.return_value.data = [{"id": "test"}]

    return mock_client


# ============================================================================
# Fixtures: FastAPI Test Client
# ============================================================================

@pytest.fixture
def app(make_service):
    """FastAPI application backed by an in-memory service."""
    from api.app import create_app
    from styling.service import set_recommendation_service

    set_recommendation_service(make_service())
    yield create_app()
    set_recommendation_service(None)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# Markers auto-use
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "supabase: marks tests that require Supabase")


# ============================================================================
# Skip conditions
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """Auto-skip Supabase tests if no credentials are configured."""
    skip_supabase = pytest.mark.skip(reason="Supabase tests require credentials")

    supabase_url = os.getenv("SUPABASE_URL")

    for item in items:
        if "supabase" in item.keywords and not supabase_url:
            item.add_marker(skip_supabase)
