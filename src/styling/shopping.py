"""
Pattern-based shopping links.

Builds search URLs for Amazon India, Myntra and Tata CLiQ from an outfit's
primary item, primary color and gender. No network access; every value is
a string or None.
"""

import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote

from core.utils import normalize_hex
from styling.models import ShoppingLinks


# Named colors shoppers actually search for
COLOR_NAMES: Tuple[Tuple[str, str], ...] = (
    ("#000080", "navy blue"),
    ("#0000FF", "blue"),
    ("#87CEEB", "sky blue"),
    ("#4169E1", "royal blue"),
    ("#00CED1", "turquoise"),
    ("#5F9EA0", "teal"),
    ("#FF0000", "red"),
    ("#DC143C", "crimson"),
    ("#8B0000", "dark red"),
    ("#800000", "maroon"),
    ("#FFC0CB", "pink"),
    ("#FF1493", "hot pink"),
    ("#FF00FF", "magenta"),
    ("#FA8072", "salmon"),
    ("#FF7F50", "coral"),
    ("#008000", "green"),
    ("#90EE90", "light green"),
    ("#556B2F", "olive green"),
    ("#50C878", "emerald green"),
    ("#98FB98", "mint green"),
    ("#32CD32", "lime green"),
    ("#FFFF00", "yellow"),
    ("#FFD700", "golden yellow"),
    ("#FFA500", "orange"),
    ("#FF8C00", "dark orange"),
    ("#800080", "purple"),
    ("#9370DB", "lavender"),
    ("#4B0082", "indigo"),
    ("#DDA0DD", "plum"),
    ("#000000", "black"),
    ("#FFFFFF", "white"),
    ("#C0C0C0", "silver"),
    ("#808080", "grey"),
    ("#D3D3D3", "light grey"),
    ("#2F4F4F", "charcoal"),
    ("#8B4513", "brown"),
    ("#CD853F", "tan"),
    ("#F5F5DC", "beige"),
    ("#FFFDD0", "cream"),
    ("#F0E68C", "khaki"),
)

FABRIC_KEYWORDS: Tuple[str, ...] = (
    "cotton", "linen", "silk", "denim", "wool", "polyester", "rayon",
    "chiffon", "velvet", "satin", "leather", "suede",
)

AMAZON_SEARCH_URL = "https://www.amazon.in/s"
MYNTRA_BASE_URL = "https://www.myntra.com/"
TATACLIQ_SEARCH_URL = "https://www.tatacliq.com/search/"

# Amazon India clothing category node per gender
_AMAZON_CATEGORY = {
    "male": "1968093031",
    "female": "1968084031",
}
_AMAZON_DEFAULT_CATEGORY = "1968122031"

_GENDER_TERMS = {"male": "men", "female": "women"}

_STYLE_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("traditional", "ethnic"),
    ("ethnic", "ethnic"),
    ("festive", "festive"),
    ("business", "formal"),
    ("formal", "formal"),
    ("party", "party"),
    ("athletic", "sports"),
    ("sport", "sports"),
)
_NON_WORD = re.compile(r"[^a-zA-Z0-9\s]")


def _rgb(hex_value: str) -> Tuple[int, int, int]:
    digits = hex_value.lstrip("#")
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def nearest_color_name(hex_value: str) -> Optional[str]:
    """Closest named color by RGB distance (exact matches win)."""
    normalized = normalize_hex(hex_value)
    if normalized is None:
        return None
    target = _rgb(normalized)
    best_name, best_distance = None, float("inf")
    for candidate, name in COLOR_NAMES:
        r, g, b = _rgb(candidate)
        distance = (r - target[0]) ** 2 + (g - target[1]) ** 2 + (b - target[2]) ** 2
        if distance < best_distance:
            best_name, best_distance = name, distance
    return best_name


def extract_fabric(description: Optional[str]) -> Optional[str]:
    lowered = (description or "").lower()
    for fabric in FABRIC_KEYWORDS:
        if fabric in lowered:
            return fabric
    return None


def extract_style_keyword(style: Optional[str]) -> Optional[str]:
    lowered = (style or "").lower()
    for keyword, mapped in _STYLE_KEYWORDS:
        if keyword in lowered:
            return mapped
    return None


def build_search_query(
    gender: str,
    items: Iterable[str],
    color_palette: Iterable[str],
    description: Optional[str] = None,
    style: Optional[str] = None,
) -> Optional[str]:
    """
    '<color> <fabric> <item> <gender term>' with duplicate words removed.

    A style keyword stands in for the fabric when the description names none.
    """
    item_list: List[str] = [i.strip() for i in items if i and i.strip()]
    if not item_list:
        return None

    palette = [c for c in color_palette if c]
    parts = [
        nearest_color_name(palette[0]) if palette else None,
        extract_fabric(description) or extract_style_keyword(style),
        item_list[0],
        _GENDER_TERMS.get((gender or "").lower()),
    ]
    words: List[str] = []
    for part in parts:
        for word in _NON_WORD.sub(" ", part or "").lower().split():
            if word not in words:
                words.append(word)
    return " ".join(words) or None


def amazon_url(query: str, gender: str) -> str:
    category = _AMAZON_CATEGORY.get((gender or "").lower(), _AMAZON_DEFAULT_CATEGORY)
    return f"{AMAZON_SEARCH_URL}?k={quote(query).replace('%20', '+')}&rh=n%3A{category}"


def myntra_url(query: str, gender: str) -> str:
    slug = "-".join(query.split())
    gender_filter = _GENDER_TERMS.get((gender or "").lower(), "men,women")
    return (
        f"{MYNTRA_BASE_URL}{quote(slug)}"
        f"?f=Gender%3A{quote(gender_filter)}&rawQuery={quote(query)}"
    )


def tatacliq_url(query: str) -> str:
    return f"{TATACLIQ_SEARCH_URL}?searchCategory=all&text={quote(query)}"


def build_shopping_links(
    gender: str,
    items: Iterable[str],
    color_palette: Iterable[str],
    style: Optional[str] = None,
    description: Optional[str] = None,
) -> ShoppingLinks:
    """
    Shopping links for an outfit's primary item.

    All three links are None when the outfit has no items.
    """
    query = build_search_query(gender, items, color_palette, description, style)
    if not query:
        return ShoppingLinks()
    return ShoppingLinks(
        amazon=amazon_url(query, gender),
        myntra=myntra_url(query, gender),
        tatacliq=tatacliq_url(query),
    )
