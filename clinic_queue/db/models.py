"""SQLAlchemy models for tenants, patients, windows and settings."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


PATIENT_STATUSES = ("waiting", "called", "in-progress", "dispensary", "requeue", "completed")


class User(Base):
    """A clinic account; its id doubles as the tenant id of everything it owns."""

    __tablename__ = "users"

    id = sa.Column(String, primary_key=True, default=_uuid)
    username = sa.Column(String, nullable=False, unique=True, index=True)
    password_hash = sa.Column(String, nullable=False)
    role = sa.Column(String, nullable=False, server_default=sa.text("'user'"), default="user")
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


class Window(Base):
    __tablename__ = "windows"

    id = sa.Column(String, primary_key=True, default=_uuid)
    tenant_id = sa.Column(String, nullable=False, index=True)
    name = sa.Column(String, nullable=False)
    is_active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    # weak reference; the patient may be deleted without touching the window
    current_patient_id = sa.Column(String, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(String, primary_key=True, default=_uuid)
    tenant_id = sa.Column(String, nullable=False, index=True)
    name = sa.Column(String, nullable=True)
    number = sa.Column(Integer, nullable=False)
    status = sa.Column(String, nullable=False, server_default=sa.text("'waiting'"), default="waiting")
    is_priority = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    window_id = sa.Column(String, nullable=True)
    requeue_reason = sa.Column(Text, nullable=True)
    called_at = sa.Column(DateTime(timezone=True), nullable=True)
    dispensary_at = sa.Column(DateTime(timezone=True), nullable=True)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)
    tracking_history = sa.Column(sa.JSON, nullable=False, default=list)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        index=True,
    )
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


sa.Index("idx_patients_tenant_status", Patient.tenant_id, Patient.status)


class Setting(Base):
    __tablename__ = "settings"
    __table_args__ = (sa.UniqueConstraint("tenant_id", "key", name="uq_settings_tenant_key"),)

    id = sa.Column(String, primary_key=True, default=_uuid)
    tenant_id = sa.Column(String, nullable=False, index=True)
    key = sa.Column(String, nullable=False)
    value = sa.Column(Text, nullable=True)
    category = sa.Column(String, nullable=False, server_default=sa.text("'general'"), default="general")
    updated_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


__all__ = ["Base", "User", "Window", "Patient", "Setting", "PATIENT_STATUSES"]
