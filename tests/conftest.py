import os
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Tuple

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('JWT_SECRET', 'test-jwt-secret-for-clinic-queue-suite')
os.environ.setdefault('LOG_LEVEL', 'WARNING')

from clinic_queue.auth import create_access_token, create_tv_token, register_user  # noqa: E402
from clinic_queue.config import QueueSettings  # noqa: E402
from clinic_queue.db.models import Base  # noqa: E402
from clinic_queue.db.session import create_session_factory  # noqa: E402
from clinic_queue.main import create_app  # noqa: E402
from clinic_queue.runtime import QueueRuntime  # noqa: E402
from clinic_queue.storage import QueueStorage  # noqa: E402
from clinic_queue.tenancy import TenantId  # noqa: E402

TEST_SECRET = 'test-jwt-secret-for-clinic-queue-suite'


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        """Return a new SQLAlchemy session bound to the in-memory engine."""

        return self.session_factory()


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Tenant:
    id: TenantId
    username: str
    token: str

    @property
    def headers(self) -> Dict[str, str]:
        return {'Authorization': f'Bearer {self.token}'}

    @property
    def tv_token(self) -> str:
        return create_tv_token(self.id, TEST_SECRET)


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    engine = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield DatabaseContext(engine=engine, session_factory=create_session_factory(engine))
    finally:
        engine.dispose()


@pytest.fixture
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(db_session: Session) -> QueueStorage:
    return QueueStorage(db_session)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_settings() -> QueueSettings:
    return QueueSettings(jwt_secret=TEST_SECRET, log_level='WARNING')


@pytest.fixture
def runtime(in_memory_db: DatabaseContext, queue_settings: QueueSettings, clock: FakeClock) -> QueueRuntime:
    return QueueRuntime(queue_settings, in_memory_db.session_factory, clock=clock)


@pytest.fixture
def make_tenant(in_memory_db: DatabaseContext) -> Callable[..., Tenant]:
    """Create an account and return its tenant id and access token."""

    def factory(username: str, role: str = 'user', password: str = 'secret-pw') -> Tenant:
        session = in_memory_db.make_session()
        try:
            user = register_user(QueueStorage(session), username, password, role)
            session.commit()
            token = create_access_token(user, TEST_SECRET, expires_minutes=60)
            return Tenant(id=TenantId(user.id), username=username, token=token)
        finally:
            session.close()

    return factory


@pytest.fixture
def client(runtime: QueueRuntime) -> Iterator[TestClient]:
    app = create_app(runtime, background=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def two_tenants(make_tenant) -> Tuple[Tenant, Tenant]:
    return make_tenant('north-clinic'), make_tenant('south-clinic')
