"""
Test fixtures and configuration for pytest.
"""

import os
import sys
import tempfile
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Environment must be in place before config/db modules are imported
_TEST_ROOT = tempfile.mkdtemp(prefix="arenaops-tests-")
os.environ["APP_MODE"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/default.db"
os.environ["JWT_KEY_FILE_PATH"] = os.path.join(_TEST_ROOT, "keys", "rsa-private.key")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("REDIS_URL", None)
os.environ.pop("TRUSTED_PROXIES", None)

from config import Settings
from db.database import Base, enable_sqlite_foreign_keys, get_db, seed_roles
from models.role import Role, UserRole
from models.user import User
from services.auth import hash_password
from services.email import EmailService
from services.keys import SigningKeyPair
from services.store import InMemoryStore
from services.tokens import TokenService

TEST_PASSWORD = "Sup3rSecret!"


class RecordingEmailService(EmailService):
    """Captures outbound emails instead of logging them."""

    def __init__(self):
        self.sent: list[dict] = []
        self.reset_codes: list[dict] = []

    async def send_stadium_manager_credentials(self, email, full_name, temporary_password):
        self.sent.append(
            {"email": email, "full_name": full_name, "temporary_password": temporary_password}
        )

    async def send_password_reset_otp(self, email, full_name, otp, expires_in_minutes):
        self.reset_codes.append(
            {"email": email, "full_name": full_name, "otp": otp, "expires_in_minutes": expires_in_minutes}
        )


@pytest.fixture(scope="session")
def key_pair() -> SigningKeyPair:
    """One RSA key for the whole session; generation is slow."""
    return SigningKeyPair.generate()


@pytest.fixture
def token_service(key_pair) -> TokenService:
    return TokenService(key_pair, issuer="ArenaOps", audience="ArenaOps")


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        APP_MODE="dev",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        JWT_KEY_FILE_PATH=str(tmp_path / "keys" / "rsa-private.key"),
        BCRYPT_ROUNDS=4,
        REDIS_URL=None,
        TOKEN_BLACKLIST_BACKEND="memory",
    )


@pytest_asyncio.fixture
async def session_factory(test_settings) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh SQLite database per test with default roles seeded."""
    from models import auth_audit, refresh_token, role, user  # noqa: F401

    engine = create_async_engine(test_settings.DATABASE_URL, echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with factory() as session:
        await seed_roles(session)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def email_service() -> RecordingEmailService:
    return RecordingEmailService()


@pytest.fixture
def app(test_settings, key_pair, memory_store, email_service, session_factory):
    """Application wired to the per-test database and an in-memory store."""
    from main import create_app

    application = create_app(
        test_settings,
        key_pair=key_pair,
        store=memory_store,
        email_service=email_service,
    )

    async def override_get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database override."""
    transport = ASGITransport(app=app, client=("203.0.113.10", 50000))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_user(
    factory: async_sessionmaker,
    email: str,
    *,
    password: str = TEST_PASSWORD,
    full_name: str = "Test User",
    roles: tuple[str, ...] = (Role.USER,),
    is_active: bool = True,
) -> User:
    """Insert a user directly, bypassing the API."""
    from sqlalchemy import select

    async with factory() as session:
        result = await session.execute(select(Role).where(Role.name.in_(roles)))
        role_rows = list(result.scalars().all())
        user = User(
            email=email,
            password_hash=hash_password(password, rounds=4),
            full_name=full_name,
            is_active=is_active,
        )
        user.user_roles = [UserRole(role=r) for r in role_rows]
        session.add(user)
        await session.commit()
        return user


async def login(client: AsyncClient, email: str, password: str = TEST_PASSWORD) -> dict:
    response = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest_asyncio.fixture
async def admin_user(session_factory) -> User:
    return await create_user(
        session_factory, "admin@arenaops.io", full_name="Ada Admin", roles=(Role.ADMIN,)
    )


@pytest_asyncio.fixture
async def regular_user(session_factory) -> User:
    return await create_user(session_factory, "fan@arenaops.io", full_name="Sam Fan")
