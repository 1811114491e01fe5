"""
Storage client singletons.

This module provides singleton instances for the Supabase and Redis
connections so every store in the pipeline shares one client.
"""

from functools import lru_cache
from typing import Optional

import redis.asyncio as redis_asyncio
from supabase import Client, create_client

from config.settings import get_settings


class SupabaseClientError(Exception):
    """Raised when Supabase client cannot be created."""
    pass


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """
    Get the singleton Supabase client instance.

    Raises:
        SupabaseClientError: If Supabase is not configured or the client fails
    """
    settings = get_settings()
    if not settings.supabase_configured:
        raise SupabaseClientError("Supabase is not configured")
    try:
        return create_client(settings.supabase_url, settings.supabase_service_key)
    except Exception as e:
        raise SupabaseClientError(f"Failed to create Supabase client: {e}") from e


def get_supabase_client_optional() -> Optional[Client]:
    """
    Get the Supabase client, returning None if it cannot be created.

    Personalization and tracking degrade when this returns None.
    """
    try:
        return get_supabase_client()
    except SupabaseClientError:
        return None


def create_redis_client(redis_url: Optional[str] = None) -> Optional[redis_asyncio.Redis]:
    """
    Build an asyncio Redis client when Redis is enabled.

    The client connects lazily. A failing command falls back to the
    in-process store of the same component; the service closes the client
    on shutdown.
    """
    settings = get_settings()
    if redis_url is None:
        if not settings.redis_enabled:
            return None
        redis_url = settings.redis_url
    return redis_asyncio.from_url(redis_url, decode_responses=True)


# Type alias for cleaner type hints
SupabaseClient = Client
