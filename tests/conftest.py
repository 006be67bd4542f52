import pytest

from factmem.config import Settings
from factmem.database.db import init_db
from factmem.database.memory import InMemoryFactRepository
from factmem.database.repository import SqliteFactRepository
from factmem.facts.store import FactStore
from factmem.prompts.fact_prompt import FactAwarePromptGenerator

TEST_SETTINGS = Settings(
    database_path=":memory:",
    log_file="",
    log_json=True,
    fact_cache_ttl_seconds=60.0,
    _env_file=None,
)


@pytest.fixture
def settings() -> Settings:
    return TEST_SETTINGS


# --- Async fixtures for unit tests ---


@pytest.fixture
async def db_connection():
    conn = await init_db(":memory:")
    yield conn
    await conn.close()


@pytest.fixture
async def sqlite_repository(db_connection):
    return SqliteFactRepository(db_connection)


@pytest.fixture
def memory_repository():
    return InMemoryFactRepository()


@pytest.fixture(params=["memory", "sqlite"])
async def backend(request):
    """Each store test runs against both backends."""
    if request.param == "memory":
        yield InMemoryFactRepository()
        return
    conn = await init_db(":memory:")
    yield SqliteFactRepository(conn)
    await conn.close()


@pytest.fixture
async def store(backend) -> FactStore:
    return FactStore(backend, cache_max_users=16, cache_ttl=60.0)


@pytest.fixture
async def generator(store) -> FactAwarePromptGenerator:
    return FactAwarePromptGenerator(store)
