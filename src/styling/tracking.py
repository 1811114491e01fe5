"""
Interaction Tracking and Recommendation History.

Writes what was shown to whom to Supabase for later analysis. Every write
is fire-and-forget: the request path schedules it and moves on, and a
failed write is logged and dropped.

Tables:
- interaction_sessions: one row per response (session id, context, outfits shown)
- recommendation_history: one row per generated recommendation
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional

from core.errors import DependencyDegraded
from core.logging import get_logger

logger = get_logger(__name__)


def generate_session_id() -> str:
    """Generate a new unique session ID."""
    return f"sess_{uuid.uuid4().hex[:12]}"


def generate_recommendation_id() -> str:
    return f"rec_{uuid.uuid4().hex[:16]}"


class _SupabaseWriter:
    """Insert helper shared by both trackers; a missing client disables writes."""

    table: str = ""

    def __init__(self, supabase=None):
        self._supabase = supabase

    @property
    def enabled(self) -> bool:
        return self._supabase is not None

    def _insert_sync(self, row: Dict[str, Any]) -> None:
        self._supabase.table(self.table).insert(row).execute()

    async def _insert(self, row: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            await asyncio.to_thread(self._insert_sync, row)
            return True
        except Exception as e:
            degraded = DependencyDegraded(self.table, str(e))
            logger.warning("Tracking write failed", table=self.table, error=str(degraded))
            return False


class InteractionTracker(_SupabaseWriter):
    """Records which outfits a session was shown."""

    table = "interaction_sessions"

    async def record_session(
        self,
        session_id: str,
        user_id: Optional[str],
        context: Dict[str, Any],
        outfits_shown: List[Dict[str, Any]],
    ) -> bool:
        return await self._insert({
            "session_id": session_id,
            "user_id": user_id,
            "context": context,
            "outfits_shown": [
                {
                    "position": i + 1,
                    "title": o.get("title"),
                    "color_palette": o.get("color_palette"),
                    "style_type": o.get("style_type"),
                    "match_score": o.get("match_score"),
                    "match_category": o.get("match_category"),
                }
                for i, o in enumerate(outfits_shown)
            ],
        })


class RecommendationHistory(_SupabaseWriter):
    """Stores each generated recommendation for the user's history view."""

    table = "recommendation_history"

    async def save(
        self,
        recommendation_id: str,
        user_id: Optional[str],
        request_context: Dict[str, Any],
        outfits: List[Dict[str, Any]],
    ) -> bool:
        return await self._insert({
            "recommendation_id": recommendation_id,
            "user_id": user_id,
            "request_context": request_context,
            "outfits": outfits,
        })
