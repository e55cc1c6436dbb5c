"""Assembly of the per-application queue runtime."""

from __future__ import annotations

import time
from typing import Callable, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from clinic_queue.auth import TOKEN_TYPE_TV, decode_token, register_user
from clinic_queue.cache import TenantCache
from clinic_queue.config import QueueSettings, get_settings
from clinic_queue.db.config import DatabaseSettings
from clinic_queue.db.models import User
from clinic_queue.db.session import (
    create_engine_from_settings,
    create_session_factory,
    initialise_schema,
    session_scope,
)
from clinic_queue.errors import AuthenticationError
from clinic_queue.invalidation import DebouncedInvalidator
from clinic_queue.queue_service import QueueService
from clinic_queue.storage import QueueStorage
from clinic_queue.tenancy import TenantId, tenant_id
from clinic_queue.worker import AutoCompleteSweeper, BackgroundScheduler, RetentionCleaner
from clinic_queue.ws_queue import TenantChannelHub

logger = structlog.get_logger(__name__)


class QueueRuntime:
    """Everything with process lifetime: cache, invalidator, hub and jobs.

    One instance is built per application and stored on ``app.state``.
    """

    def __init__(
        self,
        settings: QueueSettings,
        session_factory: sessionmaker,
        *,
        clock: Callable[[], float] = time.monotonic,
        engine: Optional[Engine] = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.engine = engine
        self.cache = TenantCache(
            short_ttl=settings.cache_ttl_short_seconds,
            long_ttl=settings.cache_ttl_long_seconds,
            clock=clock,
        )
        self.invalidator = DebouncedInvalidator(self.cache, settings.invalidate_debounce_seconds)
        self.hub = TenantChannelHub(resolve_display_token=self.resolve_display_token)
        self.service = QueueService(self.cache, self.invalidator, self.hub, settings)
        self.sweeper = AutoCompleteSweeper(session_factory, self.service)
        self.cleaner = RetentionCleaner(
            session_factory, self.invalidator, settings.completed_retention_hours
        )
        self.scheduler = BackgroundScheduler(settings, self.cache, self.sweeper, self.cleaner)

    @classmethod
    def from_environment(
        cls,
        settings: Optional[QueueSettings] = None,
        db_settings: Optional[DatabaseSettings] = None,
    ) -> "QueueRuntime":
        engine = create_engine_from_settings(db_settings)
        initialise_schema(engine)
        return cls(settings or get_settings(), create_session_factory(engine), engine=engine)

    def resolve_display_token(self, token: str) -> Optional[TenantId]:
        """Map a TV token to its tenant when the account is still active."""

        try:
            data = decode_token(token, self.settings.jwt_secret, TOKEN_TYPE_TV)
        except AuthenticationError:
            return None
        with session_scope(self.session_factory) as session:
            user = session.get(User, tenant_id(data["tenant"]))
            if user is None or not user.is_active:
                return None
            return TenantId(user.id)

    def ensure_bootstrap_admin(self) -> Optional[str]:
        username = self.settings.bootstrap_admin_username
        password = self.settings.bootstrap_admin_password
        if not username or not password:
            return None
        with session_scope(self.session_factory) as session:
            storage = QueueStorage(session)
            existing = storage.get_user_by_username(username)
            if existing is not None:
                return existing.id
            user = register_user(storage, username, password, role="admin")
            logger.info("bootstrap_admin_created", username=username)
            return user.id

    async def start(self, *, background: bool = True) -> None:
        self.ensure_bootstrap_admin()
        if background:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        self.invalidator.shutdown()
        if self.engine is not None:
            self.engine.dispose()


__all__ = ["QueueRuntime"]
