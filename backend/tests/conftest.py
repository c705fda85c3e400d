"""
Shared fixtures: in-memory database, static eligibility, services and an
HTTP client bound to the app
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-session-tokens-only")

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from anonvote import models  # noqa: F401
from anonvote.config import settings
from anonvote.crypto import blind_rsa
from anonvote.crypto.blind_rsa import BlindRSASuite
from anonvote.database import Base, get_db
from anonvote.eligibility import StaticEligibilitySource, set_eligibility_source
from anonvote.main import app
from anonvote.services.anon_poll_service import AnonPollService
from anonvote.services.blind_poll_service import BlindPollService, set_blind_poll_service
from anonvote.services.group_service import GroupService
from anonvote.services.identity_service import IdentityService
from anonvote.services.sync_service import SyncService

ROLE_MEMBERS = {
    "voters": ["alice", "bob", "carol"],
    "treasury": ["alice"],
    "admins": ["admin"],
}


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
async def engine():
    """Fresh in-memory database per test"""
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# Eligibility and settings
# ============================================================================

@pytest.fixture
def eligibility(monkeypatch):
    source = StaticEligibilitySource(ROLE_MEMBERS)
    set_eligibility_source(source)
    monkeypatch.setattr(settings, "ADMIN_ROLE_IDS", ["admins"])
    monkeypatch.setattr(settings, "SYNC_WHILE_OPEN", "block")
    yield source
    set_eligibility_source(None)


# ============================================================================
# Crypto material
# ============================================================================

@pytest.fixture(scope="session")
def rsa_private_key():
    """One 2048-bit key for the whole run"""
    return blind_rsa.generate_key_pair(2048)


@pytest.fixture
def suite():
    return BlindRSASuite()


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def blind_service(suite, rsa_private_key, eligibility):
    return BlindPollService(suite, rsa_private_key, eligibility)


@pytest.fixture
def group_service(eligibility):
    return GroupService(eligibility)


@pytest.fixture
def sync_service(group_service, eligibility):
    return SyncService(group_service, eligibility)


@pytest.fixture
def anon_service(group_service, sync_service):
    return AnonPollService(group_service, sync_service, verify_timeout=30)


@pytest.fixture
def identity_service(eligibility):
    return IdentityService(eligibility)


# ============================================================================
# HTTP
# ============================================================================

def make_token(user_id: str) -> str:
    return jwt.encode({"sub": user_id}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
async def client(session_factory, blind_service):
    """HTTP client against the app with the test database wired in"""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    set_blind_poll_service(blind_service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    set_blind_poll_service(None)
