"""Pytest configuration and fixtures."""
import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite://")

import fakeredis
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Base, get_db
from app.dependencies import get_batch_services
from app.main import app
from app.models import Category, User
from app.schemas.batch_task import MainTask, ResourceItem, Subtask
from app.services.batch_services import BatchServices
from app.services.batch_store import BatchTaskStore
from app.services.coordinator import BatchCoordinator, split_into_batches
from app.services.recovery import RecoverySupervisor
from app.services.subtask_processor import SubtaskProcessor

USER_ID = "user-1"


def run_now(fn, *args, **kwargs):
    """Synchronous stand-in for run_detached."""
    return fn(*args, **kwargs)


def schedule_now(delay, fn, *args):
    """Synchronous stand-in for schedule_after."""
    return fn(*args)


def refuse_connection(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        siliconflow_api_key="",
        ai_review_enabled=False,
        app_url="http://testserver",
    )


@pytest.fixture
def test_db():
    """Create a test database for testing."""
    # Use in-memory SQLite shared by every session of the test
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db)


@pytest.fixture
def seeded(session_factory):
    """A known user and a few categories."""
    db = session_factory()
    db.add(User(uuid=USER_ID, email="uploader@example.com"))
    db.add_all(
        [
            Category(id=1, name="Other"),
            Category(id=2, name="Movies"),
            Category(id=3, name="Software"),
        ]
    )
    db.commit()
    db.close()
    return {"user_id": USER_ID, "other": 1, "movies": 2, "software": 3}


@pytest.fixture
def redis_client():
    """Isolated fake Redis server per test."""
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(redis_client):
    return BatchTaskStore(redis_client)


@pytest.fixture
def processor(store, session_factory, settings):
    return SubtaskProcessor(store, session_factory, settings, spawn=run_now)


@pytest.fixture
def coordinator(store, processor, settings, session_factory):
    """Coordinator whose self-call always fails, so work runs in-process."""
    return BatchCoordinator(
        store,
        processor,
        settings,
        session_factory,
        transport=httpx.MockTransport(refuse_connection),
        schedule=schedule_now,
    )


@pytest.fixture
def recovery(store, coordinator, settings):
    return RecoverySupervisor(store, coordinator, settings, sleep=lambda seconds: None)


@pytest.fixture
def services(store, processor, coordinator, recovery):
    return BatchServices(store, processor, coordinator, recovery)


@pytest.fixture
def client(services, session_factory, seeded):
    def override_get_db():
        try:
            db = session_factory()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_batch_services] = lambda: services

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def make_task(store):
    """Create a main task with one queued subtask per batch, without starting it."""

    def _make(names, user_id=USER_ID, batch_size=1):
        items = [ResourceItem(name=name, link=f"https://example.com/{i}") for i, name in enumerate(names)]
        batches = split_into_batches(items, batch_size)
        task = MainTask(
            uuid=str(uuid.uuid4()),
            user_id=user_id,
            title=f"Batch upload - {len(items)} resources",
            total_resources=len(items),
            total_batches=len(batches),
        )
        subtasks = [
            Subtask(
                uuid=str(uuid.uuid4()),
                parent_task_uuid=task.uuid,
                batch_index=index,
                resources=batch,
            )
            for index, batch in enumerate(batches)
        ]
        store.create_main_task(task)
        store.create_subtasks_and_queue(task.uuid, subtasks)
        return task, subtasks

    return _make
