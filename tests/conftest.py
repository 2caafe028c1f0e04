"""Pytest fixtures for testing"""

import pytest
from typing import Dict, Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from dunning_scheduler.api.main import create_app
from dunning_scheduler.config import Settings
from dunning_scheduler.domain.models import Channel
from dunning_scheduler.domain.time_policy import TimeWindowPolicy
from dunning_scheduler.domain.timetable import default_timetable
from dunning_scheduler.infrastructure.database.models import Base
from dunning_scheduler.infrastructure.database.session import get_db
from dunning_scheduler.infrastructure.queue.memory import InMemoryQueueBackend
from dunning_scheduler.services.scheduler import EngineDependencies, NotificationScheduler
from tests.helpers import FakeCreditClient, FrozenClock, RecordingSender


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        queue_backend="memory",
        api_key=None,
        notification_timezone="UTC",
        window_start_hour=9,
        window_end_hour=20,
        max_notifications_per_day=3,
        retry_max_attempts=3,
        retry_delay_minutes=60,
        min_dispatch_delay_ms=1000,
        status_check_batch_size=100,
        status_check_interval_ms=3_600_000,
        worker_poll_interval_seconds=0.01,
    )


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def backend() -> InMemoryQueueBackend:
    return InMemoryQueueBackend()


@pytest.fixture
def credit_client() -> FakeCreditClient:
    return FakeCreditClient()


@pytest.fixture
def senders() -> Dict[Channel, RecordingSender]:
    return {channel: RecordingSender(channel) for channel in Channel}


@pytest.fixture
def deps(test_settings, backend, session_factory, senders, credit_client, clock) -> EngineDependencies:
    return EngineDependencies(
        settings=test_settings,
        backend=backend,
        session_factory=session_factory,
        senders=senders,
        credit_client=credit_client,
        timetable=default_timetable(),
        time_policy=TimeWindowPolicy.from_settings(test_settings),
        clock=clock,
    )


@pytest.fixture
def engine(db: Session, deps: EngineDependencies) -> NotificationScheduler:
    return NotificationScheduler(db, deps)


@pytest.fixture
def client(db: Session, deps: EngineDependencies) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app(deps=deps)

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
