"""
Credential pool for quota-limited providers.

Tracks interchangeable API keys for one capability (text or image
generation): per-key usage, exhaustion state and the current key.

The current key stays current until it is exhausted; exhaustion rotates
round-robin to the next usable key. Once every key is exhausted the pool
reports empty and callers move to a different provider rather than
retrying the pool. Resetting exhausted keys (daily quotas etc.) is driven
from outside via reset().

State is shared by concurrent requests in one process; every mutation
happens under a lock so a key is never double-consumed or skipped.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.logging import get_logger


logger = get_logger(__name__)


@dataclass
class KeyPoolEntry:
    """One credential and its bookkeeping."""
    credential: str
    name: str
    usage_count: int = 0
    exhausted: bool = False
    exhausted_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        # Never include the credential itself
        return {
            "name": self.name,
            "usage_count": self.usage_count,
            "exhausted": self.exhausted,
            "exhausted_at": self.exhausted_at.isoformat() if self.exhausted_at else None,
        }


class KeyPool:
    """
    Thread-safe pool of interchangeable credentials.

    Usage:
        pool = KeyPool("gemini", ["key-a", "key-b"])

        key = pool.get_next_available_key()
        if key is None:
            ...  # fall back to another provider
        pool.increment_current_usage()

        # on a quota error
        pool.mark_exhausted(key)
    """

    def __init__(self, capability: str, credentials: List[str]):
        self.capability = capability
        self._entries: List[KeyPoolEntry] = []
        seen = set()
        for credential in credentials:
            if not credential or credential in seen:
                continue
            seen.add(credential)
            self._entries.append(KeyPoolEntry(
                credential=credential,
                name=f"{capability}-{len(self._entries) + 1}",
            ))
        self._current = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Lookup
    # =========================================================================

    def _find_available_from(self, start: int) -> Optional[int]:
        """Index of the first non-exhausted entry at or after start (cyclic)."""
        count = len(self._entries)
        for offset in range(count):
            idx = (start + offset) % count
            if not self._entries[idx].exhausted:
                return idx
        return None

    def get_next_available_key(self) -> Optional[str]:
        """Return the current usable credential, or None when all are exhausted."""
        with self._lock:
            if not self._entries:
                return None
            idx = self._find_available_from(self._current)
            if idx is None:
                return None
            self._current = idx
            return self._entries[idx].credential

    def has_available_keys(self) -> bool:
        with self._lock:
            return any(not e.exhausted for e in self._entries)

    @property
    def current_name(self) -> Optional[str]:
        with self._lock:
            if not self._entries:
                return None
            return self._entries[self._current].name

    # =========================================================================
    # Mutation
    # =========================================================================

    def increment_current_usage(self) -> None:
        with self._lock:
            if self._entries:
                self._entries[self._current].usage_count += 1

    def mark_current_key_exhausted(self) -> bool:
        """
        Mark the current key exhausted and rotate.

        Returns:
            True if another key became current, False if the pool is empty
        """
        with self._lock:
            if not self._entries:
                return False
            return self._exhaust_index(self._current)

    def mark_exhausted(self, credential: str) -> bool:
        """
        Mark a specific credential exhausted (compare-and-swap style).

        A caller that observed a quota error on `credential` only exhausts
        that key, even if a concurrent caller already rotated the pool.

        Returns:
            True if a usable key remains current afterwards
        """
        with self._lock:
            for idx, entry in enumerate(self._entries):
                if entry.credential == credential:
                    if entry.exhausted:
                        return self._find_available_from(self._current) is not None
                    return self._exhaust_index(idx)
            return self._find_available_from(self._current) is not None

    def _exhaust_index(self, idx: int) -> bool:
        entry = self._entries[idx]
        entry.exhausted = True
        entry.exhausted_at = datetime.now(timezone.utc)
        next_idx = self._find_available_from((idx + 1) % len(self._entries))
        logger.warning(
            "Credential exhausted",
            capability=self.capability,
            key_name=entry.name,
            usage_count=entry.usage_count,
            rotated_to=self._entries[next_idx].name if next_idx is not None else None,
        )
        if next_idx is None:
            return False
        if idx == self._current or self._entries[self._current].exhausted:
            self._current = next_idx
        return True

    def advance(self) -> Optional[str]:
        """Move to the next usable key without exhausting the current one."""
        with self._lock:
            if not self._entries:
                return None
            idx = self._find_available_from((self._current + 1) % len(self._entries))
            if idx is None:
                return None
            self._current = idx
            return self._entries[idx].credential

    def reset(self) -> None:
        """Clear exhaustion state (called by an external quota reset policy)."""
        with self._lock:
            for entry in self._entries:
                entry.exhausted = False
                entry.exhausted_at = None
                entry.usage_count = 0
            self._current = 0

    # =========================================================================
    # Reporting
    # =========================================================================

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            available = sum(1 for e in self._entries if not e.exhausted)
            return {
                "capability": self.capability,
                "total": len(self._entries),
                "available": available,
                "exhausted": len(self._entries) - available,
                "current": self._entries[self._current].name if self._entries else None,
                "keys": [e.to_dict() for e in self._entries],
            }

    def summary_line(self) -> str:
        info = self.summary()
        return (
            f"{info['capability']}: {info['available']}/{info['total']} keys available"
            + (f", current {info['current']}" if info["available"] else "")
        )
