import logging

from order_worker.core.queue import QueueService, SendReceipt
from order_worker.schemas.events import OrderIntent

logger = logging.getLogger(__name__)


async def enqueue_order_intent(queue: QueueService, intent: OrderIntent, queue_name: str = "orders") -> SendReceipt:
    receipt = await queue.send(
        queue_name,
        intent,
        {"orderType": "purchase", "userId": intent.user_id}
    )
    logger.info(f"Queued order {intent.idempotency_key} as message {receipt.message_id}")
    return receipt
