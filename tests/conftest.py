import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./order-worker-test.db")
os.environ.setdefault("QUEUE_BACKEND", "memory")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from order_worker.core.memory import InMemoryQueueService
from order_worker.models import Base, Product
from order_worker.services.processor import OrderProcessor


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        poolclass=NullPool,
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def test_session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(test_session_maker):
    async with test_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def products(test_session_maker):
    async with test_session_maker() as session:
        catalog = [
            Product(id="p1", name="Leather Jacket", price=50),
            Product(id="p2", name="Canvas Sneakers", price=30),
        ]
        session.add_all(catalog)
        await session.commit()
    return catalog


@pytest.fixture
def queue():
    return InMemoryQueueService({"orders": "orders"}, wait_time_seconds=0, visibility_timeout=30)


@pytest.fixture
def processor(queue, test_session_maker):
    return OrderProcessor(
        queue,
        test_session_maker,
        batch_size=10,
        idle_interval=0.05,
        error_cooldown=0.05
    )


@pytest.fixture
def order_payload():
    def build(**overrides):
        payload = {
            "userId": "u1",
            "products": [{"id": "p1", "quantity": 2, "price": 50}],
            "totalAmount": 100,
            "idempotencyKey": "sess_1",
        }
        payload.update(overrides)
        return payload

    return build
