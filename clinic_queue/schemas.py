"""Request models and response serialisers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from clinic_queue.db.models import Patient, Setting, User, Window
from clinic_queue.time_utils import isoformat


class LoginModel(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class ChangePasswordModel(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


class UserCreateModel(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    password: str = Field(..., min_length=6)
    role: str = Field("user", pattern="^(admin|user)$")


class PatientCreateModel(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    number: Optional[int] = Field(None, ge=1)
    isPriority: bool = False


class PatientStatusModel(BaseModel):
    status: str
    windowId: Optional[str] = None
    requeueReason: Optional[str] = Field(None, max_length=500)


class ClearOldCompletedModel(BaseModel):
    hoursOld: int = Field(24, ge=1, le=720)


class WindowCreateModel(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class WindowPatientModel(BaseModel):
    patientId: Optional[str] = None


class SettingValueModel(BaseModel):
    value: Any = None
    category: str = "general"


class SettingItemModel(BaseModel):
    key: Optional[str] = None
    value: Any = None
    category: Optional[str] = None


class BulkSettingsModel(BaseModel):
    settings: List[SettingItemModel] = Field(default_factory=list)


def serialize_patient(patient: Patient) -> Dict[str, Any]:
    return {
        "id": patient.id,
        "name": patient.name,
        "number": patient.number,
        "status": patient.status,
        "isPriority": bool(patient.is_priority),
        "windowId": patient.window_id,
        "requeueReason": patient.requeue_reason,
        "calledAt": isoformat(patient.called_at),
        "dispensaryAt": isoformat(patient.dispensary_at),
        "completedAt": isoformat(patient.completed_at),
        "trackingHistory": list(patient.tracking_history or []),
        "createdAt": isoformat(patient.created_at),
        "updatedAt": isoformat(patient.updated_at),
    }


def serialize_patient_light(patient: Patient) -> Dict[str, Any]:
    """The reduced shape pushed to TV displays."""

    return {
        "id": patient.id,
        "name": patient.name,
        "number": patient.number,
        "status": patient.status,
        "isPriority": bool(patient.is_priority),
        "windowId": patient.window_id,
        "calledAt": isoformat(patient.called_at),
    }


def serialize_window(window: Window) -> Dict[str, Any]:
    return {
        "id": window.id,
        "name": window.name,
        "isActive": bool(window.is_active),
        "currentPatientId": window.current_patient_id,
        "createdAt": isoformat(window.created_at),
    }


def serialize_setting(setting: Setting) -> Dict[str, Any]:
    return {
        "key": setting.key,
        "value": setting.value,
        "category": setting.category,
        "updatedAt": isoformat(setting.updated_at),
    }


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "isActive": bool(user.is_active),
        "createdAt": isoformat(user.created_at),
    }
