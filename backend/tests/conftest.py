"""Shared test fixtures and configuration for backend tests."""
import uuid
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from roomchat.auth.tokens import create_access_token
from roomchat.config import AppSettings, set_config
from roomchat.db.store import ChatStore
from roomchat.main import app
from roomchat.realtime.hub import set_hub

TEST_JWT_SECRET = "roomchat-test-secret-key-0123456789abcdef"


@dataclass
class TestUser:
    __test__ = False

    id: str
    email: str
    token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(autouse=True)
def test_config():
    """Install an in-memory store and a known JWT secret for every test."""
    config = AppSettings(
        database={"path": ":memory:"},
        secrets={"jwt": {"secret_key": TEST_JWT_SECRET}},
        realtime={"typing_ttl_seconds": 10, "max_subscriptions_per_connection": 3},
    )
    set_config(config)
    ChatStore.reset_instance()
    set_hub(None)
    yield config
    set_hub(None)
    ChatStore.reset_instance()
    set_config(None)


@pytest.fixture
def store(test_config) -> ChatStore:
    return ChatStore.get_instance(test_config.database.path, test_config.database.published_tables)


@pytest.fixture
def api_client(store):
    """Provide a TestClient for the main FastAPI app (lifespan included)."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_user():
    """Factory for users with a valid access token (provisioned on first request)."""
    def _make(email: str = None) -> TestUser:
        user_id = str(uuid.uuid4())
        email = email or f"user-{user_id[:8]}@example.com"
        return TestUser(id=user_id, email=email, token=create_access_token(user_id, email))
    return _make


@pytest.fixture
def alice(make_user) -> TestUser:
    return make_user("alice@example.com")


@pytest.fixture
def bob(make_user) -> TestUser:
    return make_user("bob@example.com")


@pytest.fixture
def carol(make_user) -> TestUser:
    return make_user("carol@example.com")


@pytest.fixture
def new_user(store):
    """Factory creating a user directly in the store; returns its id."""
    def _new(email: str = None) -> str:
        user_id = str(uuid.uuid4())
        store.ensure_user(user_id, email or f"user-{user_id[:8]}@example.com")
        return user_id
    return _new
