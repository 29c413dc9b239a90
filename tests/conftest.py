"""
Test configuration and shared fixtures.

The environment is fixed before anything under ``app`` is imported: a
throwaway SQLite file through aiosqlite, an in-memory transient store, no
LLM key and no background maintenance loop.
"""

import os
import shutil
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="marketplace-tests-")

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["REDIS_URL"] = ""
os.environ["SECRET_KEY"] = "test-session-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ["GITHUB_CLIENT_ID"] = "gh-client-id"
os.environ["GITHUB_CLIENT_SECRET"] = "gh-client-secret"
os.environ["GROQ_API_KEY"] = ""
os.environ["MAINTENANCE_INTERVAL_SECONDS"] = "0"
os.environ["FRONTEND_URL"] = "http://frontend.test"

import pytest
from fastapi.testclient import TestClient
from limits.storage import MemoryStorage
from sqlalchemy import create_engine

from app.core.database import Base
from app.core.store import MemoryStore, set_store
from app.main import app
from app.models import chat, purchase, session, template, user  # noqa: F401
from app.services.rate_limit import set_limiter_storage

# Plain pysqlite engine for schema resets; no event loop involved
schema_engine = create_engine(f"sqlite:///{_DB_DIR}/test.db")


@pytest.fixture(autouse=True)
def fresh_database():
    """
    Give every test an empty schema.
    """
    Base.metadata.drop_all(schema_engine)
    Base.metadata.create_all(schema_engine)
    yield


@pytest.fixture(autouse=True)
def memory_store():
    """
    Swap in a clean in-memory transient store.

    Returns:
        MemoryStore: the store every service resolves during the test
    """
    store = MemoryStore()
    set_store(store)
    yield store
    set_store(None)


@pytest.fixture(autouse=True)
def limiter_storage():
    """Rate limit counters start empty for every test."""
    storage = MemoryStorage()
    set_limiter_storage(storage)
    yield storage
    set_limiter_storage(None)


@pytest.fixture
def client():
    """HTTP client for the app, without running the startup lifespan."""
    return TestClient(app)


def pytest_sessionfinish(session, exitstatus):
    schema_engine.dispose()
    shutil.rmtree(_DB_DIR, ignore_errors=True)
