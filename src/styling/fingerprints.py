"""
Stable fingerprints used as cache, dedup and repetition keys.

Each cache derives its key independently; none of these helpers is shared
between two caches' key spaces except the photo hash, which is an input
to both the request fingerprint and the per-user dedup key.
"""

from typing import Iterable, Optional

from config.constants import ANONYMOUS_USER, DEFAULT_OCCASION
from core.utils import md5_hex, normalize_hex_list, stable_json


def photo_hash(photo_data_uri: str) -> str:
    """Hash of the raw uploaded photo (full data URI)."""
    return md5_hex(photo_data_uri)


def request_fingerprint(
    photo_digest: str,
    gender: str,
    occasion: Optional[str] = None,
    weather: Optional[str] = None,
    genre: Optional[str] = None,
    skin_tone: Optional[str] = None,
    dress_colors: Iterable[str] = (),
    user_id: Optional[str] = None,
) -> str:
    """
    Content fingerprint of a whole request.

    Scoped to the user identity because results are personalized.
    """
    return md5_hex(stable_json({
        "photo": photo_digest,
        "gender": (gender or "").lower(),
        "occasion": (occasion or DEFAULT_OCCASION).lower(),
        "weather": (weather or "").strip().lower(),
        "genre": (genre or "").strip().lower(),
        "skin_tone": (skin_tone or "").strip().lower(),
        "colors": sorted(normalize_hex_list(dress_colors)),
        "user": user_id or ANONYMOUS_USER,
    }))


def image_cache_key(prompt: str, colors: Iterable[str]) -> str:
    """Key for the image cache: normalized prompt plus sorted palette."""
    normalized_prompt = (prompt or "").strip().lower()
    palette = ",".join(sorted(normalize_hex_list(colors)))
    return md5_hex(f"{normalized_prompt}|{palette}")


def outfit_fingerprint(title: str, color_palette: Iterable[str], items: Iterable[str]) -> str:
    """Identity of an outfit for anti-repetition: title, palette and items."""
    return md5_hex(stable_json({
        "title": (title or "").strip().lower(),
        "colors": sorted(normalize_hex_list(color_palette)),
        "items": sorted(i.strip().lower() for i in items if i),
    }))
