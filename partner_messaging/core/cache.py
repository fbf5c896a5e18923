"""
Keyed expiring cache

A small key -> (value, expiry) store used for credentials that are cheap to
keep in memory but must never be served past their expiry. The clock is
injectable so expiry can be exercised in tests without sleeping.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TTLCache:
    """In-process cache where every entry carries an absolute expiry."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, datetime]] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, expires_at: datetime) -> None:
        self._entries[key] = (value, expires_at)

    def expires_at(self, key: str) -> Optional[datetime]:
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
