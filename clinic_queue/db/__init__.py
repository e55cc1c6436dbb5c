"""Database helpers for the clinic queue service."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base, Patient, Setting, User, Window
from .session import (
    create_engine_from_settings,
    create_session_factory,
    initialise_schema,
    session_scope,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "Patient",
    "Setting",
    "User",
    "Window",
    "create_engine_from_settings",
    "create_session_factory",
    "initialise_schema",
    "session_scope",
]
