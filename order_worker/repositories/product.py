from typing import Iterable, List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_worker.models.product import Product


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_ids(self, product_ids: Iterable[str]) -> List[Product]:
        ids = list(set(product_ids))
        if not ids:
            return []

        result = await self.session.execute(
            select(Product).where(Product.id.in_(ids))
        )
        return list(result.scalars().all())
