# tests/conftest.py
import os

# Settings are read at import time, so the environment goes first
os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite://"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ORIGIN_HASH_SALT"] = "test-salt"
os.environ["DEFAULT_REDIRECT_URL"] = "https://example.com"

from datetime import datetime
from typing import Iterator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from app.db.session import Base
# Import every model so create_all sees all tables
from app.models.creator import Creator
from app.models.member import Member
from app.models.attribution import AttributionClick
from app.models.commission import Commission
from app.models.refund import Refund
from app.models.webhook_event import WebhookEvent
from app.models.remediation import RemediationAction
from app.crud import creator as crud_creator
from app.crud import member as crud_member
from app.services.cache import LedgerCache
from app.services.referral_code import issue_unique_referral_code

# In-memory SQLite shared by every session of a test
SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeRedis:
    """Dict-backed stand-in for the few redis.asyncio calls the service makes."""

    def __init__(self):
        self.store = {}
        self.sets = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.store.pop(key, None) is not None)
            removed += int(self.sets.pop(key, None) is not None)
        return removed

    async def sadd(self, key, *values):
        self.sets.setdefault(key, set()).update(values)
        return len(values)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))


@pytest.fixture(scope="function")
def db_session(monkeypatch) -> Iterator[Session]:
    """
    Clean database for every test. Jobs and background tasks that open
    their own session get one bound to the same database.
    """
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr("app.dependencies.SessionLocal", TestingSessionLocal)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def ledger_cache(fake_redis) -> LedgerCache:
    return LedgerCache(fake_redis)


@pytest_asyncio.fixture
async def client(db_session, fake_redis, monkeypatch):
    from app.main import app
    from app.core.redis import get_redis_client
    from app.dependencies import get_db

    def override_get_db():
        yield db_session

    async def override_get_redis():
        return fake_redis

    monkeypatch.setattr("app.tasks_registry.redis_client", fake_redis)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = override_get_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": "test-admin-key"}


def make_member(
    db: Session,
    name: str = "alice",
    company_id: str = "biz_main",
    referred_by: str | None = None,
    created_at: datetime | None = None,
    membership_id: str | None = None,
    product_url: str | None = None,
) -> Member:
    """Creates a member directly, bypassing signup resolution."""
    creator = crud_creator.get_or_create_creator(db, company_id=company_id, product_url=product_url)
    member = crud_member.create_member(
        db,
        user_id=f"user_{name}",
        membership_id=membership_id or f"mem_{name}",
        referral_code=issue_unique_referral_code(db, name),
        creator_id=creator.id,
        username=name,
        referred_by=referred_by,
        member_origin="referred" if referred_by else "organic",
        created_at=created_at,
    )
    db.commit()
    db.refresh(member)
    return member


@pytest.fixture
def member_factory(db_session):
    def _factory(**kwargs) -> Member:
        return make_member(db_session, **kwargs)
    return _factory
