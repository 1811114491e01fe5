"""
Core Utility Functions.

Common utilities used across the pipeline: message sanitization, color
normalization, content hashing and detached background work.
"""

import asyncio
import hashlib
import json
import re
from typing import Any, Awaitable, Iterable, List, Optional, Set

from config.constants import MAX_PUBLIC_MESSAGE_LENGTH
from core.logging import get_logger


logger = get_logger(__name__)


# =============================================================================
# Message Sanitization
# =============================================================================

_HTML_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_error_message(message: Optional[str]) -> str:
    """
    Make an error message safe to render in a client.

    Drops control characters, escapes HTML-significant characters and
    bounds the length.

    Args:
        message: Raw message (may be None or empty)

    Returns:
        Escaped message of at most MAX_PUBLIC_MESSAGE_LENGTH characters
    """
    if not message or not isinstance(message, str):
        return "An error occurred"

    cleaned = _CONTROL_CHARS.sub("", message)
    escaped = "".join(_HTML_ESCAPES.get(ch, ch) for ch in cleaned)
    return escaped[:MAX_PUBLIC_MESSAGE_LENGTH]


# =============================================================================
# Colors
# =============================================================================

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")


def normalize_hex(value: Any) -> Optional[str]:
    """
    Normalize a color value to uppercase #RRGGBB.

    Accepts "#abc", "abc", "#aabbcc" or a {"hex": ...} mapping.
    Returns None for anything else.
    """
    if isinstance(value, dict):
        value = value.get("hex")
    if not isinstance(value, str):
        return None
    match = _HEX_RE.match(value.strip())
    if not match:
        return None
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return f"#{digits.upper()}"


def normalize_hex_list(values: Optional[Iterable[Any]]) -> List[str]:
    """Normalize a color list, dropping invalid entries and keeping order."""
    result: List[str] = []
    for value in values or []:
        hex_value = normalize_hex(value)
        if hex_value:
            result.append(hex_value)
    return result


def normalize_string_set(items: Optional[Iterable[str]]) -> Set[str]:
    """Normalize strings to a set of lowercase, stripped values."""
    return {s.lower().strip() for s in (items or []) if s and s.strip()}


# =============================================================================
# Hashing
# =============================================================================

def md5_hex(text: str) -> str:
    """MD5 hex digest of a UTF-8 string (used for cache keys, not security)."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def stable_json(data: Any) -> str:
    """Deterministic JSON encoding for fingerprints."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# =============================================================================
# Background Work
# =============================================================================

_background_tasks: Set[asyncio.Task] = set()


def spawn_background(coro: Awaitable[Any], name: str) -> asyncio.Task:
    """
    Run a coroutine detached from the caller.

    The task is never joined into the request path; its failure is logged
    and otherwise ignored. A strong reference is held until it finishes.
    """
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("Background task failed", task=name, error=str(exc))

    task.add_done_callback(_done)
    return task


async def drain_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for outstanding background tasks (shutdown and tests)."""
    loop = asyncio.get_running_loop()
    pending = [t for t in _background_tasks if not t.done() and t.get_loop() is loop]
    if pending:
        await asyncio.wait(pending, timeout=timeout)
