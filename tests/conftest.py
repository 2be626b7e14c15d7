from contextlib import contextmanager
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from libs.common.config import get_settings
from libs.db.base import Base
from services.payments_service.container import build_services
from services.payments_service.job_queue import PaymentQueue
from services.payments_service.models import WalletTransaction, WalletType
from tests.factories import UserFactory, WalletFactory
from tests.fakes import FakeProviders

settings = get_settings()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    A fresh SQLite database file per test.

    The pipeline opens its own sessions, so tests cannot share one
    connection-bound transaction; a throwaway file keeps tests isolated.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def persist(db: AsyncSession, *objects):
    db.add_all(objects)
    await db.commit()
    return objects[0] if len(objects) == 1 else objects


async def ledger_rows(session_factory, *criteria) -> list[WalletTransaction]:
    """Read ledger rows through a fresh session so nothing is served stale."""
    async with session_factory() as db:
        result = await db.execute(
            select(WalletTransaction)
            .where(*criteria)
            .order_by(WalletTransaction.created_at)
        )
        return list(result.scalars().all())


async def fetch(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


# ---------------------------------------------------------------------------
# Providers, queue and services
# ---------------------------------------------------------------------------


@pytest.fixture
def fakes() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def arq_redis():
    """AsyncMock standing in for the ARQ pool; echoes the requested job id."""
    redis = AsyncMock()

    async def enqueue_job(function, *args, _job_id=None, **kwargs):
        job = MagicMock()
        job.job_id = _job_id
        return job

    redis.enqueue_job.side_effect = enqueue_job
    return redis


@pytest_asyncio.fixture
async def services(session_factory, fakes):
    """Services with a degraded queue: webhooks run inline, jobs are dropped."""
    services = await build_services(
        settings,
        session_factory,
        queue=PaymentQueue(None),
        transport=fakes.transport,
    )
    yield services
    await services.close()


@pytest_asyncio.fixture
async def queued_services(session_factory, fakes, arq_redis):
    """Services whose queue enqueues onto the mocked ARQ pool."""
    services = await build_services(
        settings,
        session_factory,
        queue=PaymentQueue(arq_redis, funding_delay_seconds=5),
        transport=fakes.transport,
    )
    yield services
    await services.close()


# ---------------------------------------------------------------------------
# Common data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def employee(db_session):
    return await persist(db_session, UserFactory.create(company_id=1))


@pytest_asyncio.fixture
async def company_wallet(db_session, fakes):
    wallet = await persist(
        db_session, WalletFactory.create(company_id=1, wallet_type=WalletType.COMPANY)
    )
    fakes.node_balances[wallet.node_id] = 0
    return wallet


# ---------------------------------------------------------------------------
# HTTP client and auth
# ---------------------------------------------------------------------------


def make_token(user_id: int, company_id=1, role: str = "employee", email=None) -> str:
    claims = {
        "sub": str(user_id),
        "company_id": company_id,
        "role": role,
        "email": email or f"user{user_id}@paidin.example.com",
    }
    return jwt.encode(claims, settings.AUTH_JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: int, company_id=1, role: str = "employee") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, company_id, role)}"}


@contextmanager
def override_services(app, services):
    previous = getattr(app.state, "services", None)
    app.state.services = services
    try:
        yield
    finally:
        app.state.services = previous


@pytest_asyncio.fixture
async def client(services, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient against the payments app with test services and DB.

    ASGITransport does not run the lifespan, so the app never connects to a
    real broker or provider.
    """
    from libs.db.session import get_async_db
    from services.payments_service.app.main import app

    async def _test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _test_db
    with override_services(app, services):
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as ac:
            yield ac

    app.dependency_overrides.clear()
