import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from order_worker.core.exceptions import AcknowledgeFailed, SendFailed
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


@dataclass
class _StoredMessage:
    message_id: str
    body: str
    attributes: dict[str, str]
    receive_count: int = 0
    receipt_handle: str | None = None
    visible_at: float = 0.0


class InMemoryQueueService(QueueService):
    """Process-local queue with long-poll and visibility-timeout semantics.

    Used for local development and as the queue double in tests. A received
    message is hidden until ``visibility_timeout`` seconds pass; if it is not
    acknowledged by then it becomes receivable again with a new receipt handle.
    """

    def __init__(
        self,
        queues: Mapping[str, str],
        wait_time_seconds: float = 20,
        visibility_timeout: float = 300,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        super().__init__(queues, wait_time_seconds, visibility_timeout)
        self._clock = clock
        self._messages: dict[str, list[_StoredMessage]] = {
            destination: [] for destination in self.queues.values()
        }
        self._changed = asyncio.Condition()

    async def send(
        self,
        queue_name: str,
        payload: Any,
        attributes: Mapping[str, Any] | None = None
    ) -> SendReceipt:
        destination = self.resolve(queue_name)
        try:
            body = encode_payload(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"Error sending message to queue {queue_name}: {e}")
            raise SendFailed(queue_name, f"Failed to send message to {queue_name}: {e}") from e

        message = _StoredMessage(
            message_id=str(uuid.uuid4()),
            body=body,
            attributes=encode_attributes(attributes)
        )

        async with self._changed:
            self._messages[destination].append(message)
            self._changed.notify_all()

        logger.debug(f"Sent message {message.message_id} to {destination}")
        return SendReceipt(message_id=message.message_id)

    async def receive(self, queue_name: str, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        destination = self.resolve(queue_name)
        limit = clamp_batch_size(max_messages)
        deadline = self._clock() + self.wait_time_seconds

        async with self._changed:
            while True:
                batch = self._take_visible(destination, limit)
                if batch:
                    return batch

                remaining = deadline - self._clock()
                if remaining <= 0:
                    return []

                try:
                    await asyncio.wait_for(
                        self._changed.wait(),
                        timeout=min(remaining, self._next_visible_in(destination, remaining))
                    )
                except asyncio.TimeoutError:
                    pass

    async def acknowledge(self, queue_name: str, receipt_handle: str) -> None:
        destination = self.resolve(queue_name)
        now = self._clock()

        async with self._changed:
            messages = self._messages[destination]
            for index, message in enumerate(messages):
                if message.receipt_handle == receipt_handle and message.visible_at > now:
                    del messages[index]
                    return

        raise AcknowledgeFailed(
            queue_name,
            receipt_handle,
            f"Receipt handle {receipt_handle} is unknown or its visibility timeout expired"
        )

    def message_count(self, queue_name: str) -> int:
        return len(self._messages[self.resolve(queue_name)])

    def _take_visible(self, destination: str, limit: int) -> list[QueueMessage]:
        now = self._clock()
        batch = []
        for message in self._messages[destination]:
            if len(batch) >= limit:
                break
            if message.visible_at > now:
                continue

            message.receive_count += 1
            message.receipt_handle = uuid.uuid4().hex
            message.visible_at = now + self.visibility_timeout
            batch.append(
                QueueMessage(
                    message_id=message.message_id,
                    receipt_handle=message.receipt_handle,
                    body=message.body,
                    attributes=dict(message.attributes),
                    receive_count=message.receive_count
                )
            )
        return batch

    def _next_visible_in(self, destination: str, default: float) -> float:
        now = self._clock()
        hidden = [message.visible_at - now for message in self._messages[destination] if message.visible_at > now]
        return min(hidden, default=default)
