"""
Outfit recommendation endpoint.

POST /api/recommend takes the JSON request body unchanged and hands it to
the service, which owns validation. The service outcome maps straight
onto the HTTP response: status code, JSON body and rate-limit headers.
"""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from core.logging import get_logger
from core.middleware import client_identifier
from styling.service import get_recommendation_service


logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["Recommendations"])


async def _read_json(request: Request) -> Any:
    """Parsed body, or None when it is not valid JSON (rejected as 400 downstream)."""
    try:
        return await request.json()
    except ValueError:
        return None


@router.post("/recommend", summary="Analyze a photo and recommend outfits")
async def recommend(request: Request) -> JSONResponse:
    """
    Recommend outfits for an uploaded photo.

    Body fields: photo_data_uri, gender, occasion, genre, weather,
    skin_tone, dress_colors, previous_recommendation, user_id.

    Responses:
    - 200: outfits with images, shopping links and match info
    - 400: invalid request (details lists the offending fields)
    - 429: rate limited (Retry-After and X-RateLimit-* headers)
    - 500: analysis unavailable
    """
    payload = await _read_json(request)
    service = get_recommendation_service()
    outcome = await service.recommend(payload, client_id=client_identifier(request))
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body,
        headers=outcome.headers,
    )
