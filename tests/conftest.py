# tests/conftest.py
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api.dependencies.runtime import get_attendance_runtime
from app.core.config import Settings
from app.db.session import create_schema, get_db
from app.main import create_app
from app.services.runtime import AttendanceRuntime
from tests.factories import FakeClock, FakeGateway


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ATTENDANCE_THRESHOLD=85.0,
        DEDUP_HISTORY_SIZE=1000,
        RECONCILIATION_MAX_ATTEMPTS=3,
        NOTIFICATION_QUEUE_SIZE=100,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Throwaway SQLite database per test, schema created from the models.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def runtime(session_factory, settings, clock, fake_gateway):
    rt = AttendanceRuntime(session_factory, settings=settings, gateway=fake_gateway, clock=clock)
    yield rt
    await rt.dispatcher.wait_idle()


@pytest_asyncio.fixture
async def client(session_factory, runtime):
    """
    httpx client bound to the ASGI app, with the database and runtime
    dependencies pointed at the per-test fixtures.
    """
    app = create_app()

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_attendance_runtime] = lambda: runtime

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
