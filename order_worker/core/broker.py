import asyncio
import logging
import uuid
from typing import Any, Mapping, Optional

import aio_pika
from aio_pika.abc import (
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)

from order_worker.core.exceptions import AcknowledgeFailed, ReceiveFailed, SendFailed
from order_worker.core.queue import (
    MAX_BATCH_SIZE,
    QueueMessage,
    QueueService,
    SendReceipt,
    clamp_batch_size,
    encode_attributes,
    encode_payload,
)

logger = logging.getLogger(__name__)


class AmqpQueueService(QueueService):
    """RabbitMQ backend.

    Logical queue names resolve to durable broker queues on the default
    exchange. ``receive`` long-polls with ``basic.get`` until a message arrives
    or the wait time elapses, then drains what is immediately available up to
    the batch size. The visibility timeout is requested through the
    ``x-consumer-timeout`` queue argument; the broker closes the channel when
    a delivery outlives it, returning every unacknowledged delivery on that
    channel to the queue. Use :class:`~order_worker.core.sqs.SqsQueueService`
    where per-message visibility is required.
    """

    def __init__(
        self,
        url: str,
        queues: Mapping[str, str],
        wait_time_seconds: float = 20,
        visibility_timeout: int = 300,
        poll_interval: float = 1.0
    ) -> None:
        super().__init__(queues, wait_time_seconds, visibility_timeout)
        self.url = url
        self.poll_interval = poll_interval
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self._declared: dict[str, AbstractQueue] = {}
        self._unacked: dict[str, AbstractIncomingMessage] = {}

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel()
        logger.info("Connected to RabbitMQ")

    async def close(self) -> None:
        if self.channel:
            await self.channel.close()
        if self.connection:
            await self.connection.close()
        self._declared.clear()
        self._unacked.clear()
        logger.info("Disconnected from RabbitMQ")

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def send(
        self,
        queue_name: str,
        payload: Any,
        attributes: Mapping[str, Any] | None = None
    ) -> SendReceipt:
        destination = self.resolve(queue_name)
        message_id = str(uuid.uuid4())

        try:
            channel = self._require_channel()
            await self._declare(destination)
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=encode_payload(payload).encode(),
                    content_type="application/json",
                    headers=encode_attributes(attributes),
                    message_id=message_id,
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT
                ),
                routing_key=destination
            )
        except Exception as e:
            logger.error(f"Error sending message to queue {queue_name}: {e}")
            raise SendFailed(queue_name, f"Failed to send message to {queue_name}: {e}") from e

        logger.info(f"Published message {message_id} to {destination}")
        return SendReceipt(message_id=message_id)

    async def receive(self, queue_name: str, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        destination = self.resolve(queue_name)
        limit = clamp_batch_size(max_messages)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_time_seconds
        batch: list[QueueMessage] = []

        try:
            queue = await self._declare(destination)
            while len(batch) < limit:
                incoming = await queue.get(no_ack=False, fail=False)
                if incoming is None:
                    remaining = deadline - loop.time()
                    if batch or remaining <= 0:
                        break
                    await asyncio.sleep(min(self.poll_interval, remaining))
                    continue
                try:
                    batch.append(self._track(incoming))
                except Exception as e:
                    logger.error(f"Dropping unreadable message {incoming.message_id} from queue {queue_name}: {e}")
                    await incoming.ack()
        except Exception as e:
            if batch:
                # Deliveries already tracked must reach the caller to be acknowledged.
                logger.error(f"Error receiving from queue {queue_name} after {len(batch)} messages: {e}")
                return batch
            logger.error(f"Error receiving messages from queue {queue_name}: {e}")
            raise ReceiveFailed(queue_name, f"Failed to receive from {queue_name}: {e}") from e

        return batch

    async def acknowledge(self, queue_name: str, receipt_handle: str) -> None:
        self.resolve(queue_name)
        incoming = self._unacked.pop(receipt_handle, None)
        if incoming is None:
            raise AcknowledgeFailed(
                queue_name,
                receipt_handle,
                f"Receipt handle {receipt_handle} is unknown on this channel"
            )

        try:
            await incoming.ack()
        except Exception as e:
            logger.error(f"Error acknowledging message on queue {queue_name}: {e}")
            raise AcknowledgeFailed(
                queue_name,
                receipt_handle,
                f"Failed to acknowledge {receipt_handle}: {e}"
            ) from e

    def _require_channel(self) -> AbstractRobustChannel:
        if not self.channel:
            raise RuntimeError("Channel is not initialized")
        return self.channel

    async def _declare(self, destination: str) -> AbstractQueue:
        queue = self._declared.get(destination)
        if queue is None:
            queue = await self._require_channel().declare_queue(
                destination,
                durable=True,
                arguments={"x-consumer-timeout": int(self.visibility_timeout * 1000)}
            )
            self._declared[destination] = queue
        return queue

    def _track(self, incoming: AbstractIncomingMessage) -> QueueMessage:
        receipt_handle = uuid.uuid4().hex
        headers = incoming.headers or {}
        delivery_count = headers.get("x-delivery-count")
        if delivery_count is not None:
            receive_count = int(delivery_count) + 1
        else:
            receive_count = 2 if incoming.redelivered else 1

        # Undecodable bytes are replaced so the payload is rejected downstream
        # and still acknowledged.
        message = QueueMessage(
            message_id=incoming.message_id or receipt_handle,
            receipt_handle=receipt_handle,
            body=incoming.body.decode(errors="replace"),
            attributes={
                key: value.decode(errors="replace") if isinstance(value, bytes) else str(value)
                for key, value in headers.items()
                if not key.startswith("x-")
            },
            receive_count=receive_count
        )
        self._unacked[receipt_handle] = incoming
        return message
