"""
Shared fixtures for connection_service tests.
Everything runs against SQLite and in-memory fakes; no bridge manager or
Supabase project is contacted.
"""
import asyncio
import os

import pytest

# Configure the environment before the app modules are imported
os.environ["DATABASE_URL"] = "sqlite:///./test_connection.db"
os.environ["INSTANCE_BACKEND"] = "sql"
os.environ.pop("N8N_MANAGER_URL", None)

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from services.connection_service.app.adapters.base import ActionGateway, InstanceStore
from services.connection_service.app.adapters.sql_store import LocalChangeFeed, SqlInstanceStore
from services.connection_service.app.database import Base
from services.connection_service.app.registry import ReconcilerRegistry
from services.connection_service.app.schemas import GatewayAction, GatewayOk, InstanceRecord


TEST_DATABASE_URL = "sqlite:///./test_connection.db"
test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeGateway(ActionGateway):
    """Records every dispatch; replies from a queue of results."""

    configured = True

    def __init__(self, results=None, delay: float = 0.0):
        self.calls = []
        self.results = list(results or [])
        self.delay = delay

    async def send(self, owner_id, action, instance_id=None):
        self.calls.append(
            {
                "owner_id": owner_id,
                "action": GatewayAction(action).value,
                "instance_id": instance_id,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else GatewayOk(message="ok")
        if isinstance(result, Exception):
            raise result
        return result


class FakeStore(InstanceStore):
    """Serves a fixed record (or error) and counts reads."""

    def __init__(self, record=None, error=None, delay: float = 0.0):
        self.record = record
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch(self, owner_id):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.record


def _make_record(**overrides) -> InstanceRecord:
    data = {
        "id": 1,
        "owner_id": "owner-1",
        "instance_name": "agent-owner-1",
        "status": "created",
        "connection_state": "close",
    }
    data.update(overrides)
    return InstanceRecord(**data)


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def make_store():
    return FakeStore


@pytest.fixture
def make_record():
    return _make_record


@pytest.fixture
def session_factory():
    return TestSessionLocal


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def registry(gateway):
    return ReconcilerRegistry(
        gateway,
        SqlInstanceStore(TestSessionLocal),
        LocalChangeFeed(),
        fetch_timeout=5.0,
    )


@pytest.fixture
def client(registry):
    """Test client wired to the SQLite session and the fake gateway."""
    from fastapi.testclient import TestClient
    from services.connection_service.app.database import get_db
    from services.connection_service.app.main import app, get_registry

    def override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: registry
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
