"""Shared test fixtures for backend and client tests."""

from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from agrovision.client.history_client import HistoryClient
from agrovision.client.local_cache import LocalCache, MemoryStore
from agrovision.core.auth import create_access_token
from agrovision.core.database import get_session

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

BASE_URL = "http://testserver"


def get_test_session():
    with Session(test_engine) as session:
        yield session


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import agrovision.models.chat  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_engine():
    return test_engine


@pytest.fixture
def history_app():
    """The FastAPI app wired to the test database."""
    with patch("agrovision.core.database.engine", test_engine):
        from agrovision.main import app

        app.dependency_overrides[get_session] = get_test_session
        yield app
        app.dependency_overrides.clear()


@pytest.fixture
def client(history_app):
    with TestClient(history_app) as c:
        yield c


@pytest.fixture
def farmer_token():
    return create_access_token("farmer-1")


@pytest.fixture
def auth_headers(farmer_token):
    return {"Authorization": f"Bearer {farmer_token}"}


@pytest.fixture
def cache():
    return LocalCache(MemoryStore())


@pytest.fixture
def history_client(history_app):
    """Unauthenticated history client talking to the app in-process."""
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=history_app), base_url=BASE_URL)
    return HistoryClient(BASE_URL, http=http)


@pytest.fixture
def down_client() -> HistoryClient:
    """History client whose server answers every request with a 503."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "unavailable"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return HistoryClient(BASE_URL, http=http)


@pytest.fixture
def unreachable_client() -> HistoryClient:
    """History client whose requests never reach a server."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return HistoryClient(BASE_URL, http=http)
