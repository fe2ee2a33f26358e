import asyncio
import logging
from enum import Enum
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_worker.core.exceptions import InvalidOrderMessage, OrderProcessingError
from order_worker.core.queue import QueueMessage, QueueService
from order_worker.repositories.order import OrderRepository
from order_worker.repositories.product import ProductRepository
from order_worker.schemas.events import OrderIntent
from order_worker.services.orders import OrderService

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ProcessingOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"


def decode_order_intent(message: QueueMessage) -> OrderIntent:
    try:
        return OrderIntent.model_validate_json(message.body)
    except ValidationError as e:
        raise InvalidOrderMessage(f"Invalid order payload: {e}") from e


class OrderProcessor:
    """Drains the orders queue into persisted orders.

    One batch is in flight at a time: messages of a batch are processed
    concurrently, each in its own session, and every message is acknowledged
    once its processing settles, whatever the outcome. A failed message is
    therefore dropped rather than redelivered.

    Shutdown is cooperative. ``request_shutdown`` is observed between
    batches and interrupts the idle and error waits, but never a batch that
    has already been received.
    """

    def __init__(
        self,
        queue: QueueService,
        session_maker: async_sessionmaker[AsyncSession],
        queue_name: str = "orders",
        batch_size: int = 10,
        idle_interval: float = 5.0,
        error_cooldown: float = 10.0
    ) -> None:
        self.queue = queue
        self.session_maker = session_maker
        self.queue_name = queue_name
        self.batch_size = batch_size
        self.idle_interval = idle_interval
        self.error_cooldown = error_cooldown
        self.state = WorkerState.IDLE
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    def request_shutdown(self) -> None:
        if self._shutdown.is_set():
            return

        logger.info("Shutdown requested, finishing in-flight batch")
        self._shutdown.set()
        if self.state is WorkerState.RUNNING:
            self.state = WorkerState.DRAINING

    async def stop(self) -> None:
        self.request_shutdown()
        if self._task:
            await self._task

    async def run(self) -> None:
        if self.state in (WorkerState.RUNNING, WorkerState.DRAINING):
            logger.warning("OrderProcessor is already running")
            return

        self.state = WorkerState.DRAINING if self.shutting_down else WorkerState.RUNNING
        logger.info(f"Order processor started, polling queue {self.queue_name}")

        try:
            while not self.shutting_down:
                try:
                    messages = await self.queue.receive(self.queue_name, self.batch_size)
                except Exception as e:
                    logger.error(f"Error in message processing loop: {e}", exc_info=True)
                    await self._pause(self.error_cooldown)
                    continue

                if not messages:
                    await self._pause(self.idle_interval)
                    continue

                logger.info(f"Received {len(messages)} messages")
                await self.process_batch(messages)
        finally:
            self.state = WorkerState.STOPPED
            logger.info("Order processor stopped gracefully")

    async def process_batch(self, messages: List[QueueMessage]) -> List[ProcessingOutcome]:
        return list(await asyncio.gather(*(self.handle_message(message) for message in messages)))

    async def handle_message(self, message: QueueMessage) -> ProcessingOutcome:
        outcome = await self._process(message)
        await self._acknowledge(message, outcome)
        return outcome

    async def _process(self, message: QueueMessage) -> ProcessingOutcome:
        try:
            intent = decode_order_intent(message)
            logger.info(f"Processing order {intent.idempotency_key} for user {intent.user_id}")

            async with self.session_maker() as session:
                service = OrderService(ProductRepository(session), OrderRepository(session))
                result = await service.place_order(intent)
        except OrderProcessingError as e:
            logger.error(f"Rejected message {message.message_id}: {e}")
            return ProcessingOutcome.REJECTED
        except Exception as e:
            logger.error(f"Error processing message {message.message_id}: {e}", exc_info=True)
            return ProcessingOutcome.FAILED

        return ProcessingOutcome.CREATED if result.created else ProcessingOutcome.DUPLICATE

    async def _acknowledge(self, message: QueueMessage, outcome: ProcessingOutcome) -> None:
        try:
            await self.queue.acknowledge(self.queue_name, message.receipt_handle)
        except Exception as e:
            logger.error(f"Failed to delete message {message.message_id}: {e}")
            return

        if outcome in (ProcessingOutcome.CREATED, ProcessingOutcome.DUPLICATE):
            logger.info(f"Deleted message: {message.message_id}")
        else:
            logger.warning(f"Deleted message: {message.message_id} due to {outcome.value} outcome")

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
