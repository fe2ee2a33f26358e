from typing import List
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OrderIntentLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="id", min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)


class OrderIntent(BaseModel):
    """Order-intent message enqueued by checkout once a payment is confirmed.

    ``price`` on each line is the amount charged at checkout and is persisted
    as-is. ``idempotency_key`` identifies the checkout transaction; messages
    from older producers carry it as ``stripeSessionId``.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    products: List[OrderIntentLine] = Field(min_length=1)
    total_amount: float = Field(alias="totalAmount", ge=0)
    idempotency_key: str = Field(
        min_length=1,
        validation_alias=AliasChoices("idempotencyKey", "stripeSessionId", "idempotency_key"),
        serialization_alias="idempotencyKey"
    )

    @property
    def product_ids(self) -> List[str]:
        return [line.product_id for line in self.products]
