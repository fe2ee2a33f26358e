import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from order_worker.core.exceptions import MissingProductsError
from order_worker.models.order import Order
from order_worker.repositories.order import OrderRepository
from order_worker.repositories.product import ProductRepository
from order_worker.schemas.events import OrderIntent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacementResult:
    order: Order
    created: bool


class OrderService:
    def __init__(self, product_repository: ProductRepository, order_repository: OrderRepository) -> None:
        self.product_repository = product_repository
        self.order_repository = order_repository

    async def place_order(self, intent: OrderIntent) -> PlacementResult:
        await self._ensure_products_exist(intent)

        existing = await self.order_repository.get_by_idempotency_key(intent.idempotency_key)
        if existing:
            logger.info(f"Order already exists for {intent.idempotency_key}: {existing.id}")
            return PlacementResult(order=existing, created=False)

        order = Order(
            user_id=intent.user_id,
            products=[
                {"product": line.product_id, "quantity": line.quantity, "price": line.price}
                for line in intent.products
            ],
            total_amount=intent.total_amount,
            idempotency_key=intent.idempotency_key
        )

        try:
            await self.order_repository.create(order)
        except IntegrityError:
            # Lost a race against a concurrent delivery of the same checkout.
            await self.order_repository.session.rollback()
            winner = await self.order_repository.get_by_idempotency_key(intent.idempotency_key)
            if winner is None:
                raise
            logger.info(f"Order for {intent.idempotency_key} was inserted concurrently: {winner.id}")
            return PlacementResult(order=winner, created=False)

        logger.info(f"Order created successfully: {order.id}")
        return PlacementResult(order=order, created=True)

    async def _ensure_products_exist(self, intent: OrderIntent) -> None:
        found = await self.product_repository.find_by_ids(intent.product_ids)
        found_ids = {product.id for product in found}
        missing = sorted(set(intent.product_ids) - found_ids)
        if missing:
            raise MissingProductsError(missing)
