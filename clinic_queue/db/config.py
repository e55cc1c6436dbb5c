"""Where the queue database lives and how engines connect to it."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict

from platformdirs import user_data_dir
from sqlalchemy.engine import make_url

from clinic_queue.config import APP_NAME, _get_int_env

DEFAULT_DB_FILENAME = "queue.db"

# env var -> create_engine keyword; unset vars keep SQLAlchemy's defaults
POOL_ENV_OPTIONS = (
    ("DB_POOL_SIZE", "pool_size"),
    ("DB_MAX_OVERFLOW", "max_overflow"),
    ("DB_POOL_TIMEOUT", "pool_timeout"),
)


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False

    @property
    def backend(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"

    @property
    def is_postgres(self) -> bool:
        return self.backend == "postgresql"

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`.

        Pool sizing is read from the environment on each call, so a bad
        value surfaces as ``ValueError`` when the engine is built.
        """

        options: Dict[str, object] = {"echo": self.echo}
        for env_name, option in POOL_ENV_OPTIONS:
            value = _get_int_env(env_name)
            if value is not None:
                options[option] = value

        if self.is_sqlite:
            # sweeps run their queries on worker threads
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            connect_args: Dict[str, object] = {"options": "-c timezone=UTC"}
            timeout = _get_int_env("PGCONNECT_TIMEOUT")
            if timeout is not None:
                connect_args["connect_timeout"] = timeout
            options["connect_args"] = connect_args
        return options


def _sqlite_file(location: Path) -> Path:
    target = location.expanduser()
    if target.is_dir():
        target = target / DEFAULT_DB_FILENAME
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Resolve the database from the environment.

    An explicit URL wins; otherwise a SQLite file is used, either at
    ``CLINIC_QUEUE_DB_PATH`` or in the per-user data directory.
    """

    echo = (os.getenv("DB_ECHO") or "").lower() in {"1", "true", "yes"}
    url = os.getenv("CLINIC_QUEUE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=url, echo=echo)

    override = os.getenv("CLINIC_QUEUE_DB_PATH")
    if override:
        location = Path(override)
    else:
        location = Path(user_data_dir(APP_NAME, APP_NAME)) / DEFAULT_DB_FILENAME
    return DatabaseSettings(url=f"sqlite:///{_sqlite_file(location)}", echo=echo)


__all__ = ["DatabaseSettings", "get_database_settings"]
