
import os

# Keep the application engine off Postgres during tests; every test gets its own file database below.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_banking.db")

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from app.main import app
from app.db.session import get_db
from app.models import Base, User, UserRole
from app.services.accounts import AccountService

@pytest_asyncio.fixture(loop_scope="function")
async def engine(tmp_path):
    # Create engine within the fixture/loop to avoid sharing across different loops
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'banking.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        # Take the write lock up front so concurrent sessions queue instead of deadlocking
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)

@pytest_asyncio.fixture(loop_scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session

@pytest_asyncio.fixture(loop_scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    # Override get_db dependency: one session per request, like production
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    # Create transport with the app
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()

@pytest.fixture
def register(session_factory):
    """
    Registers a user in a short-lived session. The returned User is detached,
    so rollbacks in the session under test never expire it.
    """
    async def _register(name: str, email: str, role: UserRole = UserRole.CUSTOMER) -> User:
        async with session_factory() as session:
            user, _ = await AccountService(session).register_user(name, email, role)
        return user
    return _register

@pytest_asyncio.fixture(loop_scope="function")
async def alice(register) -> User:
    return await register("Alice", "alice@example.com")

@pytest_asyncio.fixture(loop_scope="function")
async def bob(register) -> User:
    return await register("Bob", "bob@example.com")

@pytest_asyncio.fixture(loop_scope="function")
async def admin(register) -> User:
    return await register("Admin", "admin@example.com", UserRole.ADMIN)

def auth(user: User) -> dict:
    return {"X-User-Id": str(user.id)}
