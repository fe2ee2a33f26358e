import asyncio

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from order_worker.core.config import Settings
from order_worker.main import build_queue_service, create_app
from order_worker.core.broker import AmqpQueueService
from order_worker.core.memory import InMemoryQueueService
from order_worker.core.sqs import SqsQueueService
from order_worker.models.order import Order


def make_settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        queue_backend="memory",
        idle_interval=0.05,
        error_cooldown=0.05,
        wait_time_seconds=0
    )


@pytest_asyncio.fixture
async def app(test_engine, queue):
    application = create_app(make_settings("sqlite+aiosqlite:///unused.db"), queue=queue, engine=test_engine)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"] == {"database": "healthy", "processor": "running"}


@pytest.mark.asyncio
async def test_health_check_reports_stopped_processor(app, client: AsyncClient):
    await app.state.processor.stop()

    response = await client.get("/health")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "unhealthy"
    assert data["checks"]["processor"] == "stopped"


@pytest.mark.asyncio
async def test_worker_persists_queued_order(app, queue, products, test_session_maker, order_payload):
    await queue.send("orders", order_payload())

    async def order_persisted():
        while True:
            async with test_session_maker() as session:
                result = await session.execute(select(Order).where(Order.idempotency_key == "sess_1"))
                if result.scalar_one_or_none():
                    return
            await asyncio.sleep(0.02)

    await asyncio.wait_for(order_persisted(), timeout=3.0)
    assert queue.message_count("orders") == 0


@pytest.mark.asyncio
async def test_startup_fails_when_database_unreachable(tmp_path, queue):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'orders.db'}")
    application = create_app(make_settings("sqlite+aiosqlite:///unused.db"), queue=queue, engine=engine)

    with pytest.raises(OperationalError):
        async with application.router.lifespan_context(application):
            pass

    await engine.dispose()


def test_build_queue_service_selects_backend():
    memory = build_queue_service(make_settings("sqlite+aiosqlite:///unused.db"))
    assert isinstance(memory, InMemoryQueueService)
    assert memory.queues == {"orders": "orders"}

    amqp_settings = make_settings("sqlite+aiosqlite:///unused.db").model_copy(
        update={"queue_backend": "amqp", "orders_queue_name": "shop.orders"}
    )
    amqp = build_queue_service(amqp_settings)
    assert isinstance(amqp, AmqpQueueService)
    assert amqp.queues == {"orders": "shop.orders"}
    assert amqp.visibility_timeout == 300

    sqs_settings = make_settings("sqlite+aiosqlite:///unused.db").model_copy(
        update={
            "queue_backend": "sqs",
            "aws_region": "eu-west-1",
            "sqs_endpoint": "http://localhost:4566",
            "sqs_orders_queue_url": "http://localhost:4566/000000000000/orders",
        }
    )
    sqs = build_queue_service(sqs_settings)
    assert isinstance(sqs, SqsQueueService)
    assert sqs.queues == {"orders": "http://localhost:4566/000000000000/orders"}
    assert sqs.region == "eu-west-1"
    assert sqs.endpoint_url == "http://localhost:4566"


@pytest.mark.asyncio
async def test_startup_failure_disposes_engine_it_created(tmp_path, queue, monkeypatch):
    disposed = []
    original_dispose = AsyncEngine.dispose

    async def recording_dispose(self, close=True):
        disposed.append(self)
        await original_dispose(self, close)

    monkeypatch.setattr(AsyncEngine, "dispose", recording_dispose)
    application = create_app(
        make_settings(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'orders.db'}"),
        queue=queue
    )

    with pytest.raises(OperationalError):
        async with application.router.lifespan_context(application):
            pass

    assert len(disposed) == 1
