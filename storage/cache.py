from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Set


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """In-process key/value store with per-key sliding expiration.

    Every ``set`` pushes the expiry out again, so a counter that keeps being
    written each poll survives between runs and quietly disappears once the
    writes stop. Expired entries are evicted on read, and writes sweep the
    whole store at most once per ``default_ttl``.
    """

    def __init__(self, default_ttl: float = 3600.0, clock: Callable[[], float] = time.time) -> None:
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._data: Dict[Hashable, CacheEntry] = {}
        self._next_sweep = clock() + self.default_ttl

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        if entry.is_expired(self._clock()):
            self._data.pop(key, None)
            return default
        return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else float(ttl)
        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired()
        self._data[key] = CacheEntry(value=value, expires_at=now + ttl)

    def remove(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def contains(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    __contains__ = contains

    def purge_expired(self) -> int:
        now = self._clock()
        self._next_sweep = now + self.default_ttl
        stale = [k for k, e in self._data.items() if e.is_expired(now)]
        for k in stale:
            self._data.pop(k, None)
        return len(stale)

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._data)


_MISSING = object()


class RecurringHashStore:
    """Hashes that were struck again after they should already have been removed."""

    def __init__(self) -> None:
        self._hashes: Set[str] = set()

    def add(self, download_hash: str) -> None:
        self._hashes.add(download_hash.lower())

    def contains(self, download_hash: str) -> bool:
        return bool(download_hash) and download_hash.lower() in self._hashes

    __contains__ = contains

    def discard(self, download_hash: str) -> None:
        self._hashes.discard((download_hash or '').lower())

    def clear(self) -> None:
        self._hashes.clear()

    def __len__(self) -> int:
        return len(self._hashes)


def marked_for_removal_key(download_id: str, instance_url: str) -> str:
    return f"remove_{(download_id or '').lower()}_{instance_url}"
