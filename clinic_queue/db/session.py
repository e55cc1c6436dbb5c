"""Engine and session helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base

logger = structlog.get_logger(__name__)


def create_engine_from_settings(settings: Optional[DatabaseSettings] = None) -> Engine:
    settings = settings or get_database_settings()
    return sa.create_engine(settings.url, future=True, **settings.engine_options())


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


def initialise_schema(engine: Engine) -> None:
    """Create any missing tables."""

    Base.metadata.create_all(engine)
    logger.info("database_schema_ready", url=engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""

    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "create_engine_from_settings",
    "create_session_factory",
    "initialise_schema",
    "session_scope",
]
