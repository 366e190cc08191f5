"""
Time-boxed in-memory cache shared by the domain services.

Entries are shadows of server state: ``get`` only serves entries younger than
the entity type's TTL, ``peek`` serves them however stale (used as a fallback
when the network fails), and every write path calls ``invalidate`` before it
returns.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

# Entity types
REPORTS_LIST = "reports_list"
REPORT = "report"
MY_REPORTS = "my_reports"
COMMENTS = "comments"
CHAT = "chat"
PROFILE = "profile"

# Fixed slot for single-valued entries (default report list, global chat)
DEFAULT_KEY = "default"


@dataclass
class CacheEntry:
    data: Any
    timestamp: float


class TTLCache:
    """Keyed by (entity_type, key); TTL is per entity type."""

    def __init__(
        self,
        ttls: Dict[str, float],
        clock: Callable[[], float] = time.monotonic,
        default_ttl: float = 30.0,
    ):
        self._ttls = dict(ttls)
        self._clock = clock
        self._default_ttl = default_ttl
        self._entries: Dict[Tuple[str, Hashable], CacheEntry] = {}

    def ttl_for(self, entity: str) -> float:
        return self._ttls.get(entity, self._default_ttl)

    def get(self, entity: str, key: Hashable = DEFAULT_KEY) -> Optional[Any]:
        """Return cached data if still fresh. Expired entries stay available to peek."""
        entry = self._entries.get((entity, key))
        if entry is None:
            return None
        if self._clock() - entry.timestamp < self.ttl_for(entity):
            return entry.data
        return None

    def peek(self, entity: str, key: Hashable = DEFAULT_KEY) -> Optional[Any]:
        """Return cached data regardless of age."""
        entry = self._entries.get((entity, key))
        return entry.data if entry is not None else None

    def has(self, entity: str, key: Hashable = DEFAULT_KEY) -> bool:
        return (entity, key) in self._entries

    def set(self, entity: str, key: Hashable, data: Any) -> None:
        self._entries[(entity, key)] = CacheEntry(data=data, timestamp=self._clock())

    def invalidate(self, entity: str, key: Optional[Hashable] = None) -> None:
        """Drop one key, or every key of the entity type when key is None."""
        if key is not None:
            self._entries.pop((entity, key), None)
            return
        for cache_key in [k for k in self._entries if k[0] == entity]:
            del self._entries[cache_key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
