"""Per-tenant in-memory response cache."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from clinic_queue.observability import CACHE_LOOKUPS
from clinic_queue.tenancy import TenantId

logger = structlog.get_logger(__name__)


class TTLClass(str, enum.Enum):
    SHORT = "short"
    LONG = "long"


MISS = object()


@dataclass
class CacheEntry:
    payload: Any
    written_at: float
    tenant_id: TenantId
    ttl: float


class TenantCache:
    """Map ``(tenant, key)`` to a payload that stays fresh for a TTL.

    The tenant is part of the key and is recorded on the entry as well, so a
    read can never be served from another tenant's data even when resource
    keys collide.  ``clock`` returns monotonic seconds and is injectable for
    tests.
    """

    def __init__(
        self,
        *,
        short_ttl: float = 60.0,
        long_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[Tuple[TenantId, str], CacheEntry] = {}
        self._ttls = {TTLClass.SHORT: float(short_ttl), TTLClass.LONG: float(long_ttl)}
        self._clock = clock
        self.hits = 0
        self.misses = 0

    @property
    def max_ttl(self) -> float:
        return max(self._ttls.values())

    def ttl_for(self, ttl_class: TTLClass) -> float:
        return self._ttls[TTLClass(ttl_class)]

    def get(self, tenant: TenantId, key: str) -> Any:
        """Return the cached payload or :data:`MISS`."""

        entry = self._entries.get((tenant, key))
        if entry is None:
            return self._miss()
        if entry.tenant_id != tenant or self._clock() - entry.written_at >= entry.ttl:
            self._entries.pop((tenant, key), None)
            return self._miss()
        self.hits += 1
        CACHE_LOOKUPS.labels("hit").inc()
        return entry.payload

    def _miss(self) -> Any:
        self.misses += 1
        CACHE_LOOKUPS.labels("miss").inc()
        return MISS

    def set(
        self,
        tenant: TenantId,
        key: str,
        payload: Any,
        ttl_class: TTLClass = TTLClass.SHORT,
    ) -> None:
        self._entries[(tenant, key)] = CacheEntry(
            payload=payload,
            written_at=self._clock(),
            tenant_id=tenant,
            ttl=self.ttl_for(ttl_class),
        )

    def invalidate(self, tenant: TenantId, pattern: Optional[str] = None) -> int:
        """Drop ``tenant``'s entries whose key contains ``pattern`` (all when ``None``)."""

        doomed = [
            compound
            for compound, entry in self._entries.items()
            if entry.tenant_id == tenant and (pattern is None or pattern in compound[1])
        ]
        for compound in doomed:
            del self._entries[compound]
        return len(doomed)

    def sweep_expired(self) -> int:
        """Evict every entry older than the longest TTL."""

        now = self._clock()
        limit = self.max_ttl
        stale = [
            compound for compound, entry in self._entries.items() if now - entry.written_at > limit
        ]
        for compound in stale:
            del self._entries[compound]
        if stale:
            logger.debug("cache_sweep_evicted", count=len(stale), remaining=len(self._entries))
        return len(stale)

    def tenant_size(self, tenant: TenantId) -> int:
        return sum(1 for entry in self._entries.values() if entry.tenant_id == tenant)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}


__all__ = ["TenantCache", "TTLClass", "CacheEntry", "MISS"]
