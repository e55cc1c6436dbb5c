"""Background jobs: dispensary auto-complete, cache expiry and retention cleanup."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog
from sqlalchemy.orm import sessionmaker

from clinic_queue.cache import TenantCache
from clinic_queue.config import QueueSettings
from clinic_queue.db.session import session_scope
from clinic_queue.invalidation import DebouncedInvalidator
from clinic_queue.observability import SWEEPS_SKIPPED
from clinic_queue.queue_service import QueueService
from clinic_queue.storage import QueueStorage, completed_cutoff
from clinic_queue.tenancy import TenantId
from clinic_queue.time_utils import utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Allow one run of a job at a time; overlapping triggers are dropped."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, job: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Await ``job`` unless a previous run is still active.

        Returns ``None`` when the trigger was skipped.
        """

        if self._lock.locked():
            SWEEPS_SKIPPED.labels(self.name).inc()
            logger.info("background_job_skipped", job=self.name, reason="already_running")
            return None
        await self._lock.acquire()
        try:
            return await job()
        finally:
            self._lock.release()


@dataclass
class SweepReport:
    completed: Dict[TenantId, List[str]] = field(default_factory=dict)
    failed_tenants: List[TenantId] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.completed.values())


class AutoCompleteSweeper:
    """Complete patients left in the dispensary past the configured threshold."""

    def __init__(self, session_factory: sessionmaker, service: QueueService) -> None:
        self._session_factory = session_factory
        self._service = service
        self._guard = SingleFlight("auto_complete_dispensary")

    @property
    def running(self) -> bool:
        return self._guard.busy

    async def run_once(self, now: Optional[datetime] = None) -> Optional[SweepReport]:
        """Sweep every tenant once; ``None`` means a sweep was already running."""

        return await self._guard.run(lambda: self._sweep(now))

    async def run_for_tenant(
        self, tenant: TenantId, now: Optional[datetime] = None
    ) -> Optional[List[Dict[str, Any]]]:
        """Sweep a single tenant on demand, sharing the periodic sweep's guard."""

        async def job() -> List[Dict[str, Any]]:
            completed = await asyncio.to_thread(self._complete_for_tenant, tenant, now)
            await self._service.announce_auto_completed(tenant, completed)
            return completed

        return await self._guard.run(job)

    async def _sweep(self, now: Optional[datetime]) -> SweepReport:
        moment = now or utc_now()
        report = SweepReport()
        tenants = await asyncio.to_thread(self._list_tenants)
        for tenant in tenants:
            try:
                completed = await asyncio.to_thread(self._complete_for_tenant, tenant, moment)
                await self._service.announce_auto_completed(tenant, completed)
            except Exception:
                report.failed_tenants.append(tenant)
                logger.exception("dispensary_auto_complete_tenant_failed", tenant_id=tenant)
                continue
            if completed:
                report.completed[tenant] = [str(item["id"]) for item in completed]
        if report.total or report.failed_tenants:
            logger.info(
                "dispensary_sweep_finished",
                completed=report.total,
                failed_tenants=len(report.failed_tenants),
            )
        return report

    def _list_tenants(self) -> List[TenantId]:
        with session_scope(self._session_factory) as session:
            return QueueStorage(session).list_tenant_ids()

    def _complete_for_tenant(self, tenant: TenantId, now: Optional[datetime]) -> List[Dict[str, Any]]:
        with session_scope(self._session_factory) as session:
            return self._service.complete_overdue_dispensary(QueueStorage(session), tenant, now)


class RetentionCleaner:
    """Delete completed patients older than the retention window."""

    def __init__(
        self,
        session_factory: sessionmaker,
        invalidator: DebouncedInvalidator,
        retention_hours: int,
    ) -> None:
        self._session_factory = session_factory
        self._invalidator = invalidator
        self._retention_hours = retention_hours

    async def run_once(self, now: Optional[datetime] = None) -> int:
        cutoff = completed_cutoff(self._retention_hours, now)
        counts = await asyncio.to_thread(self._delete_old, cutoff)
        for tenant, deleted in counts.items():
            if deleted:
                self._invalidator.invalidate(tenant, immediate=True)
        total = sum(counts.values())
        if total:
            logger.info("completed_retention_cleanup", deleted=total, tenants=len(counts))
        return total

    def _delete_old(self, cutoff: datetime) -> Dict[TenantId, int]:
        counts: Dict[TenantId, int] = {}
        with session_scope(self._session_factory) as session:
            storage = QueueStorage(session)
            for tenant in storage.list_tenant_ids():
                counts[tenant] = storage.delete_completed(tenant, older_than=cutoff)
        return counts


async def _run_periodic(interval: float, coro: Callable[[], Awaitable[Any]], name: str) -> None:
    """Run ``coro`` every ``interval`` seconds."""
    while True:
        try:
            await coro()
        except Exception:
            logger.exception("scheduled_task_failed", job=name)
        await asyncio.sleep(interval)


class BackgroundScheduler:
    """Own the periodic tasks started and stopped with the application."""

    def __init__(
        self,
        settings: QueueSettings,
        cache: TenantCache,
        sweeper: AutoCompleteSweeper,
        cleaner: RetentionCleaner,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._sweeper = sweeper
        self._cleaner = cleaner
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def _sweep_cache(self) -> None:
        self._cache.sweep_expired()

    def start(self) -> None:
        """Start the periodic jobs; the first run of each happens immediately."""
        if self._tasks:
            return
        settings = self._settings
        self._tasks.extend(
            [
                asyncio.create_task(
                    _run_periodic(settings.cache_sweep_interval_seconds, self._sweep_cache, "cache_sweep")
                ),
                asyncio.create_task(
                    _run_periodic(
                        settings.auto_complete_interval_seconds,
                        self._sweeper.run_once,
                        "auto_complete_dispensary",
                    )
                ),
                asyncio.create_task(
                    _run_periodic(
                        settings.retention_cleanup_interval_seconds,
                        self._cleaner.run_once,
                        "completed_retention",
                    )
                ),
            ]
        )
        logger.info("background_scheduler_started", jobs=len(self._tasks))

    async def stop(self) -> None:
        """Cancel all running background tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = [
    "SingleFlight",
    "SweepReport",
    "AutoCompleteSweeper",
    "RetentionCleaner",
    "BackgroundScheduler",
]
