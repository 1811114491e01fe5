"""
Outfit recommendation pipeline.

Photo + context in, a small diversified set of outfits out. Each outfit
carries an image (generated, cached or placeholder), shopping links and,
for identified users, a match score and explanation.

Usage:
    from styling import get_recommendation_service

    service = get_recommendation_service()
    outcome = await service.recommend(payload, client_id="203.0.113.7")
    outcome.status_code, outcome.body, outcome.headers
"""

from styling.service import (
    RecommendOutcome,
    RecommendationService,
    build_recommendation_service,
    get_recommendation_service,
    set_recommendation_service,
)

__all__ = [
    "RecommendOutcome",
    "RecommendationService",
    "build_recommendation_service",
    "get_recommendation_service",
    "set_recommendation_service",
]
