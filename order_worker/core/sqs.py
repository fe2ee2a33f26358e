import logging
from contextlib import AsyncExitStack
from typing import Any, Mapping, Optional

from aiobotocore.session import get_session

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

MAX_WAIT_TIME_SECONDS = 20


class SqsQueueService(QueueService):
    """Amazon SQS backend.

    Logical queue names map to queue URLs. ``receive`` uses SQS long polling
    (``WaitTimeSeconds``, capped at 20) and requests a per-message
    ``VisibilityTimeout``. Setting ``endpoint_url`` points the client at a
    local SQS-compatible service; placeholder credentials are used there
    unless explicit ones are given.
    """

    def __init__(
        self,
        queues: Mapping[str, str],
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        wait_time_seconds: float = 20,
        visibility_timeout: int = 300,
        client: Any = None
    ) -> None:
        super().__init__(queues, wait_time_seconds, visibility_timeout)
        self.region = region
        self.endpoint_url = endpoint_url
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self.client = client
        self._exit_stack: Optional[AsyncExitStack] = None

    async def connect(self) -> None:
        if self.client is not None:
            return

        client_kwargs: dict[str, Any] = {"region_name": self.region}
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
            client_kwargs["aws_access_key_id"] = self.aws_access_key_id or "test"
            client_kwargs["aws_secret_access_key"] = self.aws_secret_access_key or "test"
        elif self.aws_access_key_id and self.aws_secret_access_key:
            client_kwargs["aws_access_key_id"] = self.aws_access_key_id
            client_kwargs["aws_secret_access_key"] = self.aws_secret_access_key

        self._exit_stack = AsyncExitStack()
        self.client = await self._exit_stack.enter_async_context(
            get_session().create_client("sqs", **client_kwargs)
        )
        logger.info(f"Connected to SQS in {self.region}")

    async def close(self) -> None:
        if self._exit_stack:
            await self._exit_stack.aclose()
            self._exit_stack = None
            self.client = None
            logger.info("Disconnected from SQS")

    async def send(
        self,
        queue_name: str,
        payload: Any,
        attributes: Mapping[str, Any] | None = None
    ) -> SendReceipt:
        queue_url = self.resolve(queue_name)

        try:
            params: dict[str, Any] = {
                "QueueUrl": queue_url,
                "MessageBody": encode_payload(payload),
            }
            message_attributes = {
                key: {"DataType": "String", "StringValue": value}
                for key, value in encode_attributes(attributes).items()
            }
            if message_attributes:
                params["MessageAttributes"] = message_attributes

            response = await self._require_client().send_message(**params)
        except Exception as e:
            logger.error(f"Error sending message to queue {queue_name}: {e}")
            raise SendFailed(queue_name, f"Failed to send message to {queue_name}: {e}") from e

        return SendReceipt(message_id=response["MessageId"])

    async def receive(self, queue_name: str, max_messages: int = MAX_BATCH_SIZE) -> list[QueueMessage]:
        queue_url = self.resolve(queue_name)

        try:
            response = await self._require_client().receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=clamp_batch_size(max_messages),
                WaitTimeSeconds=int(min(self.wait_time_seconds, MAX_WAIT_TIME_SECONDS)),
                VisibilityTimeout=int(self.visibility_timeout),
                MessageAttributeNames=["All"],
                AttributeNames=["ApproximateReceiveCount"]
            )
        except Exception as e:
            logger.error(f"Error receiving messages from queue {queue_name}: {e}")
            raise ReceiveFailed(queue_name, f"Failed to receive from {queue_name}: {e}") from e

        return [self._to_message(raw) for raw in response.get("Messages", [])]

    async def acknowledge(self, queue_name: str, receipt_handle: str) -> None:
        queue_url = self.resolve(queue_name)

        try:
            await self._require_client().delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
        except Exception as e:
            logger.error(f"Error deleting message from queue {queue_name}: {e}")
            raise AcknowledgeFailed(
                queue_name,
                receipt_handle,
                f"Failed to delete {receipt_handle}: {e}"
            ) from e

    def _require_client(self) -> Any:
        if self.client is None:
            raise RuntimeError("SQS client is not initialized")
        return self.client

    @staticmethod
    def _to_message(raw: Mapping[str, Any]) -> QueueMessage:
        attributes = {
            key: str(value.get("StringValue", ""))
            for key, value in raw.get("MessageAttributes", {}).items()
        }
        receive_count = raw.get("Attributes", {}).get("ApproximateReceiveCount", "1")

        return QueueMessage(
            message_id=raw["MessageId"],
            receipt_handle=raw["ReceiptHandle"],
            body=raw.get("Body", ""),
            attributes=attributes,
            receive_count=int(receive_count)
        )
