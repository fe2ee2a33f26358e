class QueueError(Exception):
    def __init__(self, queue_name: str, message: str) -> None:
        super().__init__(message)
        self.queue_name = queue_name


class QueueNotConfigured(QueueError):
    def __init__(self, queue_name: str) -> None:
        super().__init__(queue_name, f"Queue {queue_name} is not configured")


class SendFailed(QueueError):
    pass


class ReceiveFailed(QueueError):
    pass


class AcknowledgeFailed(QueueError):
    def __init__(self, queue_name: str, receipt_handle: str, message: str) -> None:
        super().__init__(queue_name, message)
        self.receipt_handle = receipt_handle


class OrderProcessingError(Exception):
    pass


class InvalidOrderMessage(OrderProcessingError):
    pass


class MissingProductsError(OrderProcessingError):
    def __init__(self, product_ids: list[str]) -> None:
        super().__init__(f"Products no longer exist: {', '.join(product_ids)}")
        self.product_ids = product_ids
