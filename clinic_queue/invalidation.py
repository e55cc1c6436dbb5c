"""Debounced, tenant-scoped cache invalidation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import structlog

from clinic_queue.cache import TenantCache
from clinic_queue.observability import CACHE_CLEARS
from clinic_queue.tenancy import TenantId

logger = structlog.get_logger(__name__)

TimerKey = Tuple[TenantId, Optional[str]]


@dataclass
class _PendingClear:
    deadline: float
    handle: asyncio.TimerHandle


class DebouncedInvalidator:
    """Coalesce bursts of invalidation requests per ``(tenant, pattern)``.

    Each key is either idle or pending with a deadline.  A request while
    pending cancels the scheduled clear and schedules a new one, so a burst
    yields exactly one clear, ``debounce_seconds`` after the last request.
    ``immediate=True`` cancels the pending clear for the same key and clears
    synchronously.
    """

    def __init__(self, cache: TenantCache, debounce_seconds: float = 0.3) -> None:
        self._cache = cache
        self._debounce = float(debounce_seconds)
        self._pending: Dict[TimerKey, _PendingClear] = {}

    @property
    def debounce_seconds(self) -> float:
        return self._debounce

    def invalidate(
        self, tenant: TenantId, pattern: Optional[str] = None, *, immediate: bool = False
    ) -> None:
        key: TimerKey = (tenant, pattern)
        try:
            self._cancel(key)
            if immediate:
                self._clear(key, mode="immediate")
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # no loop to schedule on (scripts, sync callers)
                self._clear(key, mode="immediate")
                return
            deadline = loop.time() + self._debounce
            handle = loop.call_at(deadline, self._fire, key)
            self._pending[key] = _PendingClear(deadline=deadline, handle=handle)
        except Exception:
            logger.exception("cache_invalidation_failed", tenant_id=tenant, pattern=pattern)

    def state(self, tenant: TenantId, pattern: Optional[str] = None) -> str:
        return "pending" if (tenant, pattern) in self._pending else "idle"

    def pending_deadline(self, tenant: TenantId, pattern: Optional[str] = None) -> Optional[float]:
        pending = self._pending.get((tenant, pattern))
        return pending.deadline if pending else None

    def pending_count(self) -> int:
        return len(self._pending)

    def shutdown(self) -> None:
        """Cancel every scheduled clear without running it."""

        for pending in self._pending.values():
            pending.handle.cancel()
        self._pending.clear()

    def _cancel(self, key: TimerKey) -> None:
        pending = self._pending.pop(key, None)
        if pending is not None:
            pending.handle.cancel()

    def _fire(self, key: TimerKey) -> None:
        self._pending.pop(key, None)
        try:
            self._clear(key, mode="debounced")
        except Exception:
            logger.exception("cache_invalidation_failed", tenant_id=key[0], pattern=key[1])

    def _clear(self, key: TimerKey, *, mode: str) -> None:
        tenant, pattern = key
        removed = self._cache.invalidate(tenant, pattern)
        CACHE_CLEARS.labels(mode).inc()
        logger.debug(
            "cache_invalidated", tenant_id=tenant, pattern=pattern, mode=mode, removed=removed
        )


__all__ = ["DebouncedInvalidator"]
