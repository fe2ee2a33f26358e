import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from order_worker.api.health import router as health_router
from order_worker.core.broker import AmqpQueueService
from order_worker.core.config import Settings, settings as default_settings
from order_worker.core.database import create_engine, create_session_maker
from order_worker.core.logging import setup_logging
from order_worker.core.memory import InMemoryQueueService
from order_worker.core.queue import QueueService
from order_worker.core.sqs import SqsQueueService
from order_worker.models import Base
from order_worker.services.processor import OrderProcessor

logger = logging.getLogger(__name__)


def build_queue_service(settings: Settings) -> QueueService:
    if settings.queue_backend == "memory":
        return InMemoryQueueService(
            settings.queue_destinations,
            wait_time_seconds=settings.wait_time_seconds,
            visibility_timeout=settings.visibility_timeout
        )

    if settings.queue_backend == "sqs":
        return SqsQueueService(
            settings.queue_destinations,
            region=settings.aws_region,
            endpoint_url=settings.sqs_endpoint,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            wait_time_seconds=settings.wait_time_seconds,
            visibility_timeout=settings.visibility_timeout
        )

    return AmqpQueueService(
        settings.amqp_url,
        settings.queue_destinations,
        wait_time_seconds=settings.wait_time_seconds,
        visibility_timeout=settings.visibility_timeout
    )


def create_app(
    settings: Settings = default_settings,
    queue: Optional[QueueService] = None,
    engine: Optional[AsyncEngine] = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)

        db_engine = engine or create_engine(settings)
        try:
            async with db_engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(Base.metadata.create_all)
        except Exception:
            logger.error("Database is unreachable at startup", exc_info=True)
            if engine is None:
                await db_engine.dispose()
            raise
        session_maker = create_session_maker(db_engine)

        queue_service = queue or build_queue_service(settings)
        await queue_service.connect()

        processor = OrderProcessor(
            queue_service,
            session_maker,
            queue_name="orders",
            batch_size=settings.batch_size,
            idle_interval=settings.idle_interval,
            error_cooldown=settings.error_cooldown
        )
        app.state.session_maker = session_maker
        app.state.queue = queue_service
        app.state.processor = processor
        processor.start()

        yield

        await processor.stop()
        await queue_service.close()
        if engine is None:
            await db_engine.dispose()
        logger.info(f"{settings.service_name} shut down")

    app = FastAPI(
        title="Order Worker",
        description="Order-intent queue consumer",
        version="0.1.0",
        lifespan=lifespan
    )
    app.include_router(health_router)
    return app


app = create_app()
