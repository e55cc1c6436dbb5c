"""Tenant-scoped persistence for patients, windows, settings and accounts.

Every query filters on the tenant id, so a row owned by another tenant is
indistinguishable from a missing one: lookups return ``None`` and deletes
return ``False``.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from clinic_queue.db.models import PATIENT_STATUSES, Patient, Setting, User, Window
from clinic_queue.tenancy import TenantId
from clinic_queue.time_utils import ensure_utc, isoformat, start_of_day, utc_now

# statuses that free the window currently holding the patient
WINDOW_RELEASING_STATUSES = frozenset({"completed", "requeue", "dispensary"})

TV_SETTINGS_KEYS = frozenset(
    {
        "clinicName",
        "showClinicLogo",
        "enableMarquee",
        "marqueeText",
        "marqueeColor",
        "marqueeBackgroundColor",
        "modalBackgroundColor",
        "modalBorderColor",
        "modalTextColor",
        "headerBackgroundColor",
        "headerTextColor",
        "callBackgroundColor",
        "callNameTextColor",
        "windowTextColor",
        "queueBackgroundColor",
        "queueTextColor",
        "historyNameColor",
        "enableSound",
        "soundType",
        "soundVolume",
        "enableTTS",
        "ttsLanguage",
        "showPrayerTimes",
        "showWeather",
    }
)

TV_COMPLETED_LIMIT = 10


def _encode_setting_value(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


class QueueStorage:
    """Wrap a SQLAlchemy session with tenant-scoped queue operations."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.session.execute(
            sa.select(User).where(User.username == username)
        ).scalar_one_or_none()

    def list_users(self) -> List[User]:
        return list(self.session.execute(sa.select(User).order_by(User.created_at)).scalars())

    def create_user(self, username: str, password_hash: str, role: str = "user") -> User:
        user = User(username=username, password_hash=password_hash, role=role, is_active=True)
        self.session.add(user)
        self.session.flush()
        return user

    def list_tenant_ids(self) -> List[TenantId]:
        rows = self.session.execute(sa.select(User.id).order_by(User.created_at)).scalars()
        return [TenantId(row) for row in rows]

    def delete_tenant(self, tenant: TenantId) -> bool:
        """Remove the account and every row it owns."""

        user = self.session.get(User, tenant)
        if user is None:
            return False
        for model in (Patient, Window, Setting):
            self.session.execute(sa.delete(model).where(model.tenant_id == tenant))
        self.session.delete(user)
        self.session.flush()
        return True

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------
    def _patients(self, tenant: TenantId):
        return sa.select(Patient).where(Patient.tenant_id == tenant)

    def get_patient(self, tenant: TenantId, patient_id: str) -> Optional[Patient]:
        return self.session.execute(
            self._patients(tenant).where(Patient.id == patient_id)
        ).scalar_one_or_none()

    def list_patients(self, tenant: TenantId) -> List[Patient]:
        stmt = self._patients(tenant).order_by(Patient.created_at.desc())
        return list(self.session.execute(stmt).scalars())

    def list_active_patients(self, tenant: TenantId) -> List[Patient]:
        stmt = (
            self._patients(tenant)
            .where(Patient.status != "completed")
            .order_by(Patient.is_priority.desc(), Patient.number.asc(), Patient.created_at.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def list_today_patients(self, tenant: TenantId, now: Optional[datetime] = None) -> List[Patient]:
        midnight = start_of_day(now or utc_now())
        stmt = (
            self._patients(tenant)
            .where(Patient.created_at >= midnight)
            .order_by(Patient.number.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def list_tv_patients(self, tenant: TenantId) -> List[Patient]:
        """Everything still queued plus the most recently completed patients."""

        active = self.list_active_patients(tenant)
        completed_stmt = (
            self._patients(tenant)
            .where(Patient.status == "completed")
            .order_by(Patient.completed_at.desc())
            .limit(TV_COMPLETED_LIMIT)
        )
        return active + list(self.session.execute(completed_stmt).scalars())

    def list_dispensary_patients(self, tenant: TenantId) -> List[Patient]:
        stmt = self._patients(tenant).where(Patient.status == "dispensary")
        return list(self.session.execute(stmt).scalars())

    def next_patient_number(self, tenant: TenantId, now: Optional[datetime] = None) -> int:
        midnight = start_of_day(now or utc_now())
        current = self.session.execute(
            sa.select(sa.func.max(Patient.number)).where(
                Patient.tenant_id == tenant, Patient.created_at >= midnight
            )
        ).scalar()
        return int(current or 0) + 1

    def create_patient(
        self,
        tenant: TenantId,
        *,
        name: Optional[str] = None,
        number: Optional[int] = None,
        is_priority: bool = False,
        now: Optional[datetime] = None,
    ) -> Patient:
        now = now or utc_now()
        if number is None:
            number = self.next_patient_number(tenant, now)
        patient = Patient(
            tenant_id=tenant,
            name=name,
            number=number,
            status="waiting",
            is_priority=is_priority,
            created_at=now,
            updated_at=now,
            tracking_history=[{"action": "registered", "timestamp": isoformat(now)}],
        )
        self.session.add(patient)
        self.session.flush()
        return patient

    def release_patient_windows(self, tenant: TenantId, patient_id: str) -> List[str]:
        """Detach ``patient_id`` from every window of ``tenant``; return their ids."""

        windows = self.session.execute(
            sa.select(Window).where(
                Window.tenant_id == tenant, Window.current_patient_id == patient_id
            )
        ).scalars()
        released = []
        for window in windows:
            window.current_patient_id = None
            released.append(window.id)
        return released

    def update_patient_status(
        self,
        tenant: TenantId,
        patient_id: str,
        status: str,
        *,
        window_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Patient]:
        if status not in PATIENT_STATUSES:
            raise ValueError(f"unknown patient status {status!r}")
        patient = self.get_patient(tenant, patient_id)
        if patient is None:
            return None
        now = now or utc_now()
        entry: Dict[str, Any] = {"action": status, "timestamp": isoformat(now)}

        if status in WINDOW_RELEASING_STATUSES:
            self.release_patient_windows(tenant, patient.id)

        if status == "called":
            patient.called_at = now
            if window_id:
                window = self.get_window(tenant, window_id)
                if window is None:
                    return None
                self.release_patient_windows(tenant, patient.id)
                window.current_patient_id = patient.id
                patient.window_id = window.id
                entry["windowId"] = window.id
        elif status == "dispensary":
            patient.dispensary_at = now
        elif status == "requeue":
            patient.window_id = None
            patient.requeue_reason = reason
            if reason:
                entry["reason"] = reason
        elif status == "completed":
            patient.completed_at = now
            patient.window_id = None

        patient.status = status
        patient.updated_at = now
        # reassign so the JSON column is flagged dirty
        patient.tracking_history = list(patient.tracking_history or []) + [entry]
        self.session.flush()
        return patient

    def set_priority(self, tenant: TenantId, patient_id: str, is_priority: bool) -> Optional[Patient]:
        patient = self.get_patient(tenant, patient_id)
        if patient is None:
            return None
        patient.is_priority = is_priority
        patient.updated_at = utc_now()
        self.session.flush()
        return patient

    def delete_patient(self, tenant: TenantId, patient_id: str) -> bool:
        patient = self.get_patient(tenant, patient_id)
        if patient is None:
            return False
        self.release_patient_windows(tenant, patient.id)
        self.session.delete(patient)
        self.session.flush()
        return True

    def reset_queue(self, tenant: TenantId, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete today's patients and every completed one, and free all windows.

        Returns the deleted counts as ``{"today": ..., "completed": ...}``, where
        ``completed`` only counts rows left over from earlier days.
        """

        midnight = start_of_day(now or utc_now())
        today = self.session.execute(
            sa.delete(Patient)
            .where(Patient.tenant_id == tenant, Patient.created_at >= midnight)
            .execution_options(synchronize_session="fetch")
        )
        completed = self.delete_completed(tenant)
        self.session.execute(
            sa.update(Window).where(Window.tenant_id == tenant).values(current_patient_id=None)
        )
        self.session.flush()
        return {"today": int(today.rowcount or 0), "completed": completed}

    def delete_completed(self, tenant: TenantId, older_than: Optional[datetime] = None) -> int:
        conditions = [Patient.tenant_id == tenant, Patient.status == "completed"]
        if older_than is not None:
            conditions.append(Patient.completed_at < older_than)
        result = self.session.execute(
            sa.delete(Patient).where(*conditions).execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------
    def list_windows(self, tenant: TenantId) -> List[Window]:
        stmt = sa.select(Window).where(Window.tenant_id == tenant).order_by(Window.created_at, Window.name)
        return list(self.session.execute(stmt).scalars())

    def get_window(self, tenant: TenantId, window_id: str) -> Optional[Window]:
        return self.session.execute(
            sa.select(Window).where(Window.tenant_id == tenant, Window.id == window_id)
        ).scalar_one_or_none()

    def create_window(self, tenant: TenantId, name: str) -> Window:
        window = Window(tenant_id=tenant, name=name, is_active=True)
        self.session.add(window)
        self.session.flush()
        return window

    def rename_window(self, tenant: TenantId, window_id: str, name: str) -> Optional[Window]:
        window = self.get_window(tenant, window_id)
        if window is None:
            return None
        window.name = name
        self.session.flush()
        return window

    def toggle_window(self, tenant: TenantId, window_id: str) -> Optional[Window]:
        window = self.get_window(tenant, window_id)
        if window is None:
            return None
        window.is_active = not window.is_active
        self.session.flush()
        return window

    def assign_window_patient(
        self, tenant: TenantId, window_id: str, patient_id: Optional[str]
    ) -> Optional[Window]:
        window = self.get_window(tenant, window_id)
        if window is None:
            return None
        if patient_id is not None and self.get_patient(tenant, patient_id) is None:
            return None
        window.current_patient_id = patient_id
        self.session.flush()
        return window

    def delete_window(self, tenant: TenantId, window_id: str) -> bool:
        window = self.get_window(tenant, window_id)
        if window is None:
            return False
        self.session.delete(window)
        self.session.flush()
        return True

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------
    def dashboard_stats(self, tenant: TenantId, now: Optional[datetime] = None) -> Dict[str, int]:
        midnight = start_of_day(now or utc_now())
        counts = dict(
            self.session.execute(
                sa.select(Patient.status, sa.func.count())
                .where(Patient.tenant_id == tenant, Patient.created_at >= midnight)
                .group_by(Patient.status)
            ).all()
        )
        windows = self.list_windows(tenant)
        return {
            "totalToday": int(sum(counts.values())),
            "waiting": int(counts.get("waiting", 0) + counts.get("requeue", 0)),
            "called": int(counts.get("called", 0)),
            "inProgress": int(counts.get("in-progress", 0)),
            "dispensary": int(counts.get("dispensary", 0)),
            "completed": int(counts.get("completed", 0)),
            "activeWindows": sum(1 for window in windows if window.is_active),
            "totalWindows": len(windows),
        }

    def current_call(self, tenant: TenantId) -> Optional[Patient]:
        stmt = (
            self._patients(tenant)
            .where(Patient.status == "called", Patient.called_at.is_not(None))
            .order_by(Patient.called_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def call_history(self, tenant: TenantId, limit: int = 5) -> List[Patient]:
        stmt = (
            self._patients(tenant)
            .where(Patient.called_at.is_not(None))
            .order_by(Patient.called_at.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def list_settings(self, tenant: TenantId, keys: Optional[Iterable[str]] = None) -> List[Setting]:
        stmt = sa.select(Setting).where(Setting.tenant_id == tenant)
        if keys is not None:
            stmt = stmt.where(Setting.key.in_(list(keys)))
        return list(self.session.execute(stmt.order_by(Setting.key)).scalars())

    def settings_by_category(self, tenant: TenantId, category: str) -> List[Setting]:
        stmt = (
            sa.select(Setting)
            .where(Setting.tenant_id == tenant, Setting.category == category)
            .order_by(Setting.key)
        )
        return list(self.session.execute(stmt).scalars())

    def get_setting(self, tenant: TenantId, key: str) -> Optional[Setting]:
        return self.session.execute(
            sa.select(Setting).where(Setting.tenant_id == tenant, Setting.key == key)
        ).scalar_one_or_none()

    def upsert_setting(self, tenant: TenantId, key: str, value: Any, category: str = "general") -> Setting:
        setting = self.get_setting(tenant, key)
        encoded = _encode_setting_value(value)
        if setting is None:
            setting = Setting(tenant_id=tenant, key=key, value=encoded, category=category)
            self.session.add(setting)
        else:
            setting.value = encoded
            setting.category = category
            setting.updated_at = utc_now()
        self.session.flush()
        return setting

    def delete_setting(self, tenant: TenantId, key: str) -> bool:
        setting = self.get_setting(tenant, key)
        if setting is None:
            return False
        self.session.delete(setting)
        self.session.flush()
        return True


def dispensary_entered_at(patient: Patient) -> Optional[datetime]:
    """When ``patient`` last entered the dispensary state.

    Rows written before ``dispensary_at`` existed fall back to the tracking
    history, then to the last update.
    """

    if patient.dispensary_at is not None:
        return ensure_utc(patient.dispensary_at)
    for entry in reversed(list(patient.tracking_history or [])):
        if isinstance(entry, dict) and entry.get("action") == "dispensary" and entry.get("timestamp"):
            try:
                return ensure_utc(datetime.fromisoformat(str(entry["timestamp"]).replace("Z", "+00:00")))
            except ValueError:
                break
    if patient.updated_at is not None:
        return ensure_utc(patient.updated_at)
    return None


def completed_cutoff(hours: int, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) - timedelta(hours=hours)


__all__ = [
    "QueueStorage",
    "TV_SETTINGS_KEYS",
    "WINDOW_RELEASING_STATUSES",
    "dispensary_entered_at",
    "completed_cutoff",
]
