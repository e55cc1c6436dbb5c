"""Queue mutations and cached reads.

Every mutation follows the same sequence: write and commit through
:class:`QueueStorage`, invalidate the tenant's cache (debounced, or
immediately for destructive changes), then emit exactly one event to the
tenant's channel.  Reads go through the tenant cache.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from clinic_queue.cache import MISS, TenantCache, TTLClass
from clinic_queue.config import QueueSettings
from clinic_queue.db.models import PATIENT_STATUSES
from clinic_queue.errors import ConflictError, NotFoundError, ValidationError
from clinic_queue.invalidation import DebouncedInvalidator
from clinic_queue.observability import AUTO_COMPLETED
from clinic_queue.schemas import (
    serialize_patient,
    serialize_patient_light,
    serialize_setting,
    serialize_window,
)
from clinic_queue.storage import (
    TV_SETTINGS_KEYS,
    WINDOW_RELEASING_STATUSES,
    QueueStorage,
    completed_cutoff,
    dispensary_entered_at,
)
from clinic_queue.tenancy import TenantId
from clinic_queue.time_utils import utc_now
from clinic_queue.ws_queue import TenantChannelHub

logger = structlog.get_logger(__name__)

SETTINGS_PATTERN = "settings"
HISTORY_MAX_LIMIT = 10
AUTO_COMPLETE_REASON = "auto-complete-dispensary"


class QueueService:
    def __init__(
        self,
        cache: TenantCache,
        invalidator: DebouncedInvalidator,
        hub: TenantChannelHub,
        settings: QueueSettings,
    ) -> None:
        self.cache = cache
        self.invalidator = invalidator
        self.hub = hub
        self.settings = settings

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def cached(
        self,
        tenant: TenantId,
        key: str,
        loader: Callable[[], Any],
        ttl_class: TTLClass = TTLClass.SHORT,
    ) -> Any:
        """Serve ``key`` from the cache, falling back to ``loader`` on a miss."""

        try:
            hit = self.cache.get(tenant, key)
        except Exception:
            logger.exception("cache_read_failed", tenant_id=tenant, key=key)
            hit = MISS
        if hit is not MISS:
            return hit
        payload = loader()
        try:
            self.cache.set(tenant, key, payload, ttl_class)
        except Exception:
            logger.exception("cache_write_failed", tenant_id=tenant, key=key)
        return payload

    async def _publish(
        self,
        tenant: TenantId,
        event: str,
        data: Mapping[str, Any],
        *,
        immediate: bool = False,
        pattern: Optional[str] = None,
    ) -> None:
        self.invalidator.invalidate(tenant, pattern, immediate=immediate)
        await self.hub.emit(tenant, event, data)

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------
    def list_patients(self, storage: QueueStorage, tenant: TenantId) -> List[Dict[str, Any]]:
        return [serialize_patient(p) for p in storage.list_patients(tenant)]

    def active_patients(self, storage: QueueStorage, tenant: TenantId) -> List[Dict[str, Any]]:
        return self.cached(
            tenant,
            "patients:active",
            lambda: [serialize_patient(p) for p in storage.list_active_patients(tenant)],
        )

    def tv_patients(self, storage: QueueStorage, tenant: TenantId) -> List[Dict[str, Any]]:
        return self.cached(
            tenant,
            "patients:tv",
            lambda: [serialize_patient_light(p) for p in storage.list_tv_patients(tenant)],
        )

    def today_patients(self, storage: QueueStorage, tenant: TenantId) -> List[Dict[str, Any]]:
        return [serialize_patient(p) for p in storage.list_today_patients(tenant)]

    def next_number(self, storage: QueueStorage, tenant: TenantId) -> int:
        return storage.next_patient_number(tenant)

    async def create_patient(
        self,
        storage: QueueStorage,
        tenant: TenantId,
        *,
        name: Optional[str] = None,
        number: Optional[int] = None,
        is_priority: bool = False,
    ) -> Dict[str, Any]:
        cleaned = name.strip() if name else None
        patient = storage.create_patient(
            tenant, name=cleaned or None, number=number, is_priority=is_priority
        )
        storage.commit()
        payload = serialize_patient(patient)
        logger.info("patient_created", tenant_id=tenant, patient_id=patient.id, number=patient.number)
        await self._publish(tenant, "patient:created", {"patient": payload})
        return payload

    async def update_status(
        self,
        storage: QueueStorage,
        tenant: TenantId,
        patient_id: str,
        status: str,
        *,
        window_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status not in PATIENT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        if status == "called" and window_id and storage.get_window(tenant, window_id) is None:
            raise NotFoundError("Window not found")
        patient = storage.update_patient_status(
            tenant, patient_id, status, window_id=window_id, reason=reason
        )
        if patient is None:
            storage.rollback()
            raise NotFoundError("Patient not found")
        storage.commit()
        payload = serialize_patient(patient)
        logger.info(
            "patient_status_updated",
            tenant_id=tenant,
            patient_id=patient.id,
            status=status,
            window_id=patient.window_id,
        )
        await self._publish(
            tenant,
            "patient:status-updated",
            {"patient": payload},
            immediate=status in WINDOW_RELEASING_STATUSES,
        )
        return payload

    async def toggle_priority(
        self, storage: QueueStorage, tenant: TenantId, patient_id: str
    ) -> Dict[str, Any]:
        current = storage.get_patient(tenant, patient_id)
        if current is None:
            raise NotFoundError("Patient not found")
        patient = storage.set_priority(tenant, patient_id, not current.is_priority)
        storage.commit()
        payload = serialize_patient(patient)
        await self._publish(tenant, "patient:priority-updated", {"patient": payload})
        return payload

    async def delete_patient(self, storage: QueueStorage, tenant: TenantId, patient_id: str) -> None:
        if not storage.delete_patient(tenant, patient_id):
            raise NotFoundError("Patient not found")
        storage.commit()
        logger.info("patient_deleted", tenant_id=tenant, patient_id=patient_id)
        await self._publish(tenant, "patient:deleted", {"patientId": patient_id}, immediate=True)

    async def reset_queue(self, storage: QueueStorage, tenant: TenantId) -> Dict[str, int]:
        counts = storage.reset_queue(tenant)
        storage.commit()
        deleted = counts["today"] + counts["completed"]
        logger.info(
            "queue_reset",
            tenant_id=tenant,
            today_deleted=counts["today"],
            completed_deleted=counts["completed"],
        )
        await self._publish(tenant, "queue:reset", {"deleted": deleted}, immediate=True)
        return counts

    async def clear_completed(
        self, storage: QueueStorage, tenant: TenantId, *, hours_old: Optional[int] = None
    ) -> int:
        cutoff = completed_cutoff(hours_old) if hours_old is not None else None
        deleted = storage.delete_completed(tenant, older_than=cutoff)
        storage.commit()
        logger.info("completed_patients_cleared", tenant_id=tenant, deleted=deleted, hours_old=hours_old)
        data: Dict[str, Any] = {"deleted": deleted}
        if hours_old is not None:
            data["hoursOld"] = hours_old
        await self._publish(tenant, "patients:cleared", data, immediate=True)
        return deleted

    # ------------------------------------------------------------------
    # Dispensary auto-complete
    # ------------------------------------------------------------------
    def complete_overdue_dispensary(
        self, storage: QueueStorage, tenant: TenantId, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Complete ``tenant``'s patients that lingered in the dispensary too long.

        Each patient is committed on its own so one bad row does not hold
        back the rest.  Returns the serialised patients that were completed.
        """

        now = now or utc_now()
        threshold = self.settings.dispensary_threshold_seconds
        completed: List[Dict[str, Any]] = []
        for patient in storage.list_dispensary_patients(tenant):
            entered = dispensary_entered_at(patient)
            if entered is None or (now - entered).total_seconds() <= threshold:
                continue
            patient_id = patient.id
            try:
                updated = storage.update_patient_status(tenant, patient_id, "completed", now=now)
                storage.commit()
            except Exception:
                storage.rollback()
                logger.exception(
                    "dispensary_auto_complete_patient_failed", tenant_id=tenant, patient_id=patient_id
                )
                continue
            if updated is not None:
                completed.append(serialize_patient(updated))
        if completed:
            AUTO_COMPLETED.inc(len(completed))
        return completed

    async def announce_auto_completed(
        self, tenant: TenantId, patients: Iterable[Mapping[str, Any]]
    ) -> None:
        materialised = list(patients)
        if not materialised:
            return
        self.invalidator.invalidate(tenant, immediate=True)
        for payload in materialised:
            await self.hub.emit(
                tenant,
                "patient:status-updated",
                {"patient": dict(payload), "reason": AUTO_COMPLETE_REASON},
            )
        await self.hub.emit(
            tenant,
            "cache:invalidate",
            {"queries": ["stats", "history"], "reason": AUTO_COMPLETE_REASON},
        )
        logger.info("dispensary_auto_completed", tenant_id=tenant, count=len(materialised))

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------
    def list_windows(self, storage: QueueStorage, tenant: TenantId) -> List[Dict[str, Any]]:
        return self.cached(
            tenant, "windows", lambda: [serialize_window(w) for w in storage.list_windows(tenant)]
        )

    async def create_window(self, storage: QueueStorage, tenant: TenantId, name: str) -> Dict[str, Any]:
        cleaned = name.strip()
        if not cleaned:
            raise ValidationError("Window name is required")
        window = storage.create_window(tenant, cleaned)
        storage.commit()
        payload = serialize_window(window)
        await self._publish(tenant, "window:created", {"window": payload})
        return payload

    async def rename_window(
        self, storage: QueueStorage, tenant: TenantId, window_id: str, name: str
    ) -> Dict[str, Any]:
        cleaned = name.strip()
        if not cleaned:
            raise ValidationError("Window name is required")
        window = storage.rename_window(tenant, window_id, cleaned)
        if window is None:
            raise NotFoundError("Window not found")
        storage.commit()
        payload = serialize_window(window)
        await self._publish(tenant, "window:updated", {"window": payload})
        return payload

    async def toggle_window(self, storage: QueueStorage, tenant: TenantId, window_id: str) -> Dict[str, Any]:
        window = storage.toggle_window(tenant, window_id)
        if window is None:
            raise NotFoundError("Window not found")
        storage.commit()
        payload = serialize_window(window)
        await self._publish(tenant, "window:updated", {"window": payload})
        return payload

    async def assign_window_patient(
        self,
        storage: QueueStorage,
        tenant: TenantId,
        window_id: str,
        patient_id: Optional[str],
    ) -> Dict[str, Any]:
        window = storage.assign_window_patient(tenant, window_id, patient_id)
        if window is None:
            raise NotFoundError("Window or patient not found")
        storage.commit()
        payload = serialize_window(window)
        await self._publish(tenant, "window:patient-updated", {"window": payload})
        return payload

    async def delete_window(self, storage: QueueStorage, tenant: TenantId, window_id: str) -> None:
        window = storage.get_window(tenant, window_id)
        if window is None:
            raise NotFoundError("Window not found")
        if window.current_patient_id:
            raise ConflictError("Cannot delete a window that is serving a patient")
        storage.delete_window(tenant, window_id)
        storage.commit()
        await self._publish(tenant, "window:deleted", {"windowId": window_id}, immediate=True)

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------
    def dashboard_stats(self, storage: QueueStorage, tenant: TenantId) -> Dict[str, int]:
        return self.cached(tenant, "dashboard:stats", lambda: storage.dashboard_stats(tenant))

    def current_call(self, storage: QueueStorage, tenant: TenantId) -> Optional[Dict[str, Any]]:
        def load() -> Optional[Dict[str, Any]]:
            patient = storage.current_call(tenant)
            return serialize_patient_light(patient) if patient is not None else None

        return self.cached(tenant, "dashboard:current-call", load)

    def call_history(self, storage: QueueStorage, tenant: TenantId, limit: int = 5) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))
        return self.cached(
            tenant,
            f"dashboard:history:{limit}",
            lambda: [serialize_patient_light(p) for p in storage.call_history(tenant, limit)],
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def all_settings(self, storage: QueueStorage, tenant: TenantId) -> List[Dict[str, Any]]:
        return self.cached(
            tenant,
            "settings:all",
            lambda: [serialize_setting(s) for s in storage.list_settings(tenant)],
            TTLClass.LONG,
        )

    def tv_settings(self, storage: QueueStorage, tenant: TenantId) -> Dict[str, Any]:
        return self.cached(
            tenant,
            "settings:tv",
            lambda: {s.key: s.value for s in storage.list_settings(tenant, TV_SETTINGS_KEYS)},
            TTLClass.LONG,
        )

    def settings_by_category(
        self, storage: QueueStorage, tenant: TenantId, category: str
    ) -> List[Dict[str, Any]]:
        return [serialize_setting(s) for s in storage.settings_by_category(tenant, category)]

    def get_setting(self, storage: QueueStorage, tenant: TenantId, key: str) -> Dict[str, Any]:
        setting = storage.get_setting(tenant, key)
        if setting is None:
            raise NotFoundError("Setting not found")
        return serialize_setting(setting)

    async def put_setting(
        self, storage: QueueStorage, tenant: TenantId, key: str, value: Any, category: str
    ) -> Dict[str, Any]:
        setting = storage.upsert_setting(tenant, key, value, category or "general")
        storage.commit()
        payload = serialize_setting(setting)
        await self._publish(
            tenant, "settings:updated", {"settings": [payload]}, pattern=SETTINGS_PATTERN
        )
        return payload

    async def put_settings_bulk(
        self, storage: QueueStorage, tenant: TenantId, items: Iterable[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        saved = []
        for item in items:
            key = item.get("key")
            category = item.get("category")
            if not key or not category:
                logger.warning("setting_item_skipped", tenant_id=tenant, key=key)
                continue
            saved.append(storage.upsert_setting(tenant, str(key), item.get("value"), str(category)))
        storage.commit()
        payloads = [serialize_setting(s) for s in saved]
        await self._publish(
            tenant, "settings:updated", {"settings": payloads}, pattern=SETTINGS_PATTERN
        )
        return payloads

    async def delete_setting(self, storage: QueueStorage, tenant: TenantId, key: str) -> None:
        if not storage.delete_setting(tenant, key):
            raise NotFoundError("Setting not found")
        storage.commit()
        await self._publish(
            tenant,
            "settings:updated",
            {"deletedKey": key},
            immediate=True,
            pattern=SETTINGS_PATTERN,
        )

    # ------------------------------------------------------------------
    # System and accounts
    # ------------------------------------------------------------------
    async def force_refresh(self, tenant: TenantId) -> int:
        self.invalidator.invalidate(tenant, immediate=True)
        return await self.hub.emit(tenant, "system:force-refresh", {"reason": "manual"})

    async def disconnect_tenant(self, tenant: TenantId) -> int:
        """Drop the live sockets of a tenant that lost access."""

        return await self.hub.close_tenant(tenant)

    async def delete_tenant(self, storage: QueueStorage, tenant: TenantId) -> None:
        if not storage.delete_tenant(tenant):
            raise NotFoundError("User not found")
        storage.commit()
        self.invalidator.invalidate(tenant, immediate=True)
        await self.disconnect_tenant(tenant)
        logger.info("tenant_deleted", tenant_id=tenant)


__all__ = ["QueueService", "HISTORY_MAX_LIMIT", "AUTO_COMPLETE_REASON"]
