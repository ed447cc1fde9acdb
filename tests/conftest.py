"""
Pytest configuration and fixtures for deck import tests.
"""

import os

# The global engine is created at import time
os.environ["DB_URL"] = "sqlite://"

from datetime import datetime, timedelta
from typing import Dict, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from app.database.init_db import register_models
from app.database.session import get_session
from app.models.import_schemas import CreateImportJobRequest
from app.services.card_resolver import CardCatalog, CardPrinting, CardResolver
from app.services.config_service import ImportQueueConfiguration
from app.services.import_events import ImportEventBus
from app.services.import_job_processor import ImportJobProcessor
from app.services.import_queue import JobDispatcher
from app.services.import_service import ImportService

TEST_USER = "user_1"

CATALOG = [
    CardPrinting(card_id="sol-ring-c21", name="Sol Ring", set_code="c21", released_at="2021-04-23",
                 rarity="uncommon", colors=""),
    CardPrinting(card_id="sol-ring-cmr", name="Sol Ring", set_code="cmr", released_at="2020-11-20",
                 rarity="uncommon", colors=""),
    CardPrinting(card_id="command-tower-cmr", name="Command Tower", set_code="cmr", released_at="2020-11-20",
                 rarity="common", colors=""),
    CardPrinting(card_id="arcane-signet-c21", name="Arcane Signet", set_code="c21", released_at="2021-04-23",
                 rarity="common", colors=""),
    CardPrinting(card_id="atraxa-c16", name="Atraxa, Praetors' Voice", set_code="c16", released_at="2016-11-11",
                 rarity="mythic", colors="W,U,B,G"),
    CardPrinting(card_id="swords-c21", name="Swords to Plowshares", set_code="c21", released_at="2021-04-23",
                 rarity="uncommon", colors="W"),
    CardPrinting(card_id="counterspell-cmr", name="Counterspell", set_code="cmr", released_at="2020-11-20",
                 rarity="common", colors="U"),
    CardPrinting(card_id="delver-isd", name="Delver of Secrets // Insectile Aberration", set_code="isd",
                 released_at="2011-09-30", rarity="common", colors="U"),
]


class FakeCatalog(CardCatalog):
    """In-memory card catalog."""

    def __init__(self, printings: List[CardPrinting]):
        self.printings = list(printings)

    def find_printings(self, name: str) -> List[CardPrinting]:
        lowered = name.strip().lower()
        return [
            p for p in self.printings
            if p.name.lower() == lowered or p.name.lower().startswith(f"{lowered} // ")
        ]

    def candidate_names(self, name: str) -> List[str]:
        return sorted({p.name for p in self.printings})


class FakeDispatcher(JobDispatcher):
    """Records dispatched ids instead of sending Celery tasks."""

    def __init__(self):
        self.jobs: List[str] = []
        self.rollbacks: List[str] = []

    def dispatch_job(self, job_id: str) -> None:
        self.jobs.append(job_id)

    def dispatch_rollback(self, operation_id: str) -> None:
        self.rollbacks.append(operation_id)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def test_engine(tmp_path):
    """File-backed SQLite engine so worker threads get their own connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    register_models()
    SQLModel.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 15, 12, 0, 0))


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def events():
    """Event bus plus the list every published event lands in."""
    received: List = []
    return ImportEventBus([received.append]), received


@pytest.fixture
def queue_configuration():
    return ImportQueueConfiguration(
        max_concurrent_jobs=2,
        max_queue_size=100,
        default_timeout=60000,
        retry_attempts=3,
        retry_delay=30,
        max_retry_delay=3600,
        priority_levels=10,
        cleanup_interval=60,
        max_history_age=30,
    )


@pytest.fixture
def catalog():
    return FakeCatalog(CATALOG)


@pytest.fixture
def resolver(catalog):
    return CardResolver(catalog)


@pytest.fixture
def processor(session_factory, resolver, dispatcher, events, clock, queue_configuration):
    bus, _ = events
    return ImportJobProcessor(
        session_factory=session_factory,
        resolver=resolver,
        dispatcher=dispatcher,
        events=bus,
        clock=clock,
        queue_configuration=queue_configuration,
    )


@pytest.fixture
def make_processor(session_factory, resolver, dispatcher, events, clock, queue_configuration):
    """Build a processor with selected collaborators replaced."""
    bus, _ = events

    def factory(**overrides):
        kwargs = dict(
            session_factory=session_factory,
            resolver=resolver,
            dispatcher=dispatcher,
            events=bus,
            clock=clock,
            queue_configuration=queue_configuration,
        )
        kwargs.update(overrides)
        return ImportJobProcessor(**kwargs)

    return factory

@pytest.fixture
def import_service(tmp_path, dispatcher, events, clock, queue_configuration):
    bus, _ = events
    return ImportService(
        dispatcher=dispatcher,
        events=bus,
        clock=clock,
        queue_configuration=queue_configuration,
        upload_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def create_job(db, import_service):
    """Create a single import job for TEST_USER from raw text."""

    def factory(raw_data: str, source: str = "text", options: Dict = None,
                conflict_resolution: str = None, user_id: str = TEST_USER, priority: int = 0):
        request = CreateImportJobRequest(
            source=source,
            raw_data=raw_data,
            options=options,
            conflict_resolution=conflict_resolution,
            priority=priority,
        )
        return import_service.create_import_job(db, user_id, request)

    return factory


@pytest.fixture
def client(session_factory, import_service):
    """Create a test client with database and service dependency overrides."""
    from fastapi.testclient import TestClient

    from app.main import app
    from app.routes.import_route import get_import_service

    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_import_service] = lambda: import_service

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
