"""In-memory per-clause projection cache.

Entries are replaced on every decision written for the clause, with a TTL as
a backstop. Nothing survives a restart; the decision log rebuilds it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .config import PROJECTION_CACHE_TTL_SECONDS
from .models import Projection
from .projection import ProjectionState

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    state: ProjectionState
    projection: Projection
    cached_at: float


class ProjectionCache:
    def __init__(self, ttl_seconds: float = PROJECTION_CACHE_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, clause_id: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(clause_id)
            if entry is None:
                return None
            if self._clock() - entry.cached_at > self.ttl_seconds:
                del self._entries[clause_id]
                return None
            return entry

    def set(self, clause_id: str, state: ProjectionState, projection: Projection) -> None:
        with self._lock:
            current = self._entries.get(clause_id)
            # A slower reader must not overwrite a newer fold.
            if current is not None and current.projection.version > projection.version:
                return
            self._entries[clause_id] = CacheEntry(state, projection, self._clock())

    def invalidate(self, clause_id: str) -> None:
        with self._lock:
            self._entries.pop(clause_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [cid for cid, e in self._entries.items() if now - e.cached_at > self.ttl_seconds]
            for cid in expired:
                del self._entries[cid]
        if expired:
            logger.info("Cleaned up %d expired projection cache entries", len(expired))
        return len(expired)

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            entries = [
                {"clauseId": cid, "version": e.projection.version, "ageSeconds": round(now - e.cached_at, 3)}
                for cid, e in self._entries.items()
            ]
        return {"size": len(entries), "ttlSeconds": self.ttl_seconds, "entries": entries}
