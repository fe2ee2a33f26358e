from order_worker.core.database import Base
from order_worker.models.order import Order
from order_worker.models.product import Product

__all__ = ["Base", "Order", "Product"]
