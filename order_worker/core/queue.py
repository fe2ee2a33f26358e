"""Backend-neutral contract for the worker's message queues.

A queue service maps logical queue names (``"orders"``) to backend
destinations and exposes three operations against them: ``send``,
``receive`` and ``acknowledge``. The order processor is written only against
this contract; concrete backends live in :mod:`order_worker.core.broker`
(RabbitMQ) and :mod:`order_worker.core.memory` (in-process).
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel

from order_worker.core.exceptions import QueueNotConfigured

MAX_BATCH_SIZE = 10


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    receipt_handle: str
    body: str
    attributes: dict[str, str] = field(default_factory=dict)
    receive_count: int = 1


@dataclass(frozen=True)
class SendReceipt:
    message_id: str


def encode_payload(payload: Any) -> str:
    if isinstance(payload, BaseModel):
        return payload.model_dump_json(by_alias=True)
    return json.dumps(payload)


def encode_attributes(attributes: Mapping[str, Any] | None) -> dict[str, str]:
    if not attributes:
        return {}
    return {str(key): str(value) for key, value in attributes.items()}


def clamp_batch_size(max_messages: int) -> int:
    return max(1, min(max_messages, MAX_BATCH_SIZE))


class QueueService(ABC):
    def __init__(
        self,
        queues: Mapping[str, str],
        wait_time_seconds: float = 20,
        visibility_timeout: int = 300
    ) -> None:
        self.queues = dict(queues)
        self.wait_time_seconds = wait_time_seconds
        self.visibility_timeout = visibility_timeout

    def resolve(self, queue_name: str) -> str:
        destination = self.queues.get(queue_name)
        if not destination:
            raise QueueNotConfigured(queue_name)
        return destination

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def send(
        self,
        queue_name: str,
        payload: Any,
        attributes: Mapping[str, Any] | None = None
    ) -> SendReceipt:
        """Serialize ``payload`` to JSON and enqueue it with string attributes.

        Raises ``QueueNotConfigured`` for an unmapped name and ``SendFailed``
        on backend errors. Never retries.
        """

    @abstractmethod
    async def receive(self, queue_name: str, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        """Long-poll for up to ``max_messages`` messages.

        Returns an empty list when nothing arrives within the wait time.
        Received messages stay hidden from other consumers until acknowledged
        or until the visibility timeout lapses.
        """

    @abstractmethod
    async def acknowledge(self, queue_name: str, receipt_handle: str) -> None:
        """Remove a received message permanently. Raises ``AcknowledgeFailed``."""
