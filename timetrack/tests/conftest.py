import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import httpx
import pytest
from fastapi.testclient import TestClient

from timetrack.core.config import Settings
from timetrack.database import create_db_engine, dispose_engine
from timetrack.main import create_app
from timetrack.services import auth_service
from timetrack.services.schema_manager import SchemaManager
from timetrack.services.spire_client import SpireClient
from timetrack.services.time_entry_store import TimeEntryStore
from timetrack.services.user_store import UserStore

ENTRIES_TABLE = "time_entries_jobs"
USERS_TABLE = "time_entries_users"
SPIRE_BASE_URL = "https://spire.test:10880"


def _test_database_url(tmp_path_factory) -> str:
    url = os.getenv("DATABASE_URL", "")
    if url.startswith("postgresql"):
        return url
    return f"sqlite:///{tmp_path_factory.mktemp('db') / 'timetrack.db'}"


@pytest.fixture(scope="session")
def engine(tmp_path_factory):
    engine = create_db_engine(_test_database_url(tmp_path_factory))
    yield engine
    dispose_engine(engine)


@pytest.fixture(scope="session")
def schema(engine) -> SchemaManager:
    manager = SchemaManager(engine, time_entries_table=ENTRIES_TABLE, users_table=USERS_TABLE)
    results = manager.ensure_all()
    assert all(r.success for r in results.values()), results
    return manager


@pytest.fixture(scope="function", autouse=True)
def _empty_tables_between_tests(engine, schema):
    with engine.begin() as conn:
        for kind in ("time_entries", "users"):
            conn.execute(schema.table(kind).delete())
    yield


@pytest.fixture
def entries(engine, schema) -> TimeEntryStore:
    return TimeEntryStore(engine, ENTRIES_TABLE)


@pytest.fixture
def users(engine, schema) -> UserStore:
    return UserStore(engine, USERS_TABLE)


@pytest.fixture
def settings(engine) -> Settings:
    return Settings(
        environment="test",
        database_url=str(engine.url),
        time_entries_table=ENTRIES_TABLE,
        users_table=USERS_TABLE,
        spire_base_url=SPIRE_BASE_URL,
        spire_company="testco",
        spire_auth="Basic dGVzdDp0ZXN0",
    )


def _empty_spire(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"records": [], "count": 0})


@pytest.fixture
def spire_handler():
    """Tests replace ``handler[0]`` to script Spire responses."""
    return [_empty_spire]


@pytest.fixture
def spire(settings, spire_handler) -> SpireClient:
    transport = httpx.MockTransport(lambda request: spire_handler[0](request))
    return SpireClient.from_settings(settings, transport=transport, sleep=_no_sleep)


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def app(settings, entries, users, spire):
    return create_app(settings, time_entries=entries, users=users, spire=spire)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def make_user(users):
    """Create a user and return ``(user, access_token)``."""

    def _make(emp_code="E100", password="secret123", emp_name="Test Employee", verified=True):
        created = users.create(emp_code, password, emp_name)
        assert created.success, created.error
        if verified:
            created = users.verify(emp_code)
            assert created.success, created.error
        return created.data, auth_service.create_access_token(created.data)

    return _make