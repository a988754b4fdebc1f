from datetime import datetime
from typing import Annotated

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic.networks import validate_email

from app.models.order import OrderStatus


def _check_email(value: str) -> str:
    # Format check only; the caller's spelling is what gets stored.
    if "<" in value:
        raise ValueError("value is not a valid email address")
    validate_email(value)
    return value


# Non-empty, and not just whitespace. Values are kept verbatim.
NonEmptyStr = Annotated[StrictStr, Field(min_length=1, pattern=r"\S")]
Email = Annotated[StrictStr, AfterValidator(_check_email)]
Price = Annotated[float, Field(ge=0, strict=True, allow_inf_nan=False)]
Quantity = Annotated[StrictInt, Field(gt=0)]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class OrderItem(CamelModel):
    product_id: NonEmptyStr
    name: NonEmptyStr
    quantity: Quantity
    price: Price


class ShippingAddress(CamelModel):
    street: NonEmptyStr
    city: NonEmptyStr
    state: NonEmptyStr
    zip_code: NonEmptyStr


class OrderCreate(CamelModel):
    customer_id: NonEmptyStr
    customer_email: Email
    items: Annotated[list[OrderItem], Field(min_length=1)]
    shipping_address: ShippingAddress


class OrderUpdate(CamelModel):
    status: OrderStatus | None = None
    items: Annotated[list[OrderItem], Field(min_length=1)] | None = None
    shipping_address: ShippingAddress | None = None
    customer_email: Email | None = None
    expected_version: Annotated[StrictInt, Field(ge=1)] | None = None

    @model_validator(mode="after")
    def _require_change(self) -> "OrderUpdate":
        if not self.changes():
            raise ValueError(
                "At least one of status, items, shippingAddress or customerEmail must be provided"
            )
        return self

    def changes(self) -> dict:
        changes = {
            name: getattr(self, name)
            for name in ("status", "items", "shipping_address", "customer_email")
            if getattr(self, name) is not None
        }
        if "items" in changes:
            # The entity holds items as a tuple; model_copy does not convert.
            changes["items"] = tuple(changes["items"])
        return changes


class ListOrdersQuery(CamelModel):
    # Query strings arrive as text; limit is the one declared numeric coercion.
    # Its upper bound is the configured max page size, applied by the service.
    customer_id: NonEmptyStr | None = None
    status: OrderStatus | None = None
    limit: Annotated[int, Field(ge=1)] | None = None
    next_token: NonEmptyStr | None = None


class Order(CamelModel):
    """Immutable, version-stamped order entity."""

    order_id: str
    customer_id: str
    customer_email: str
    items: tuple[OrderItem, ...]
    shipping_address: ShippingAddress
    status: OrderStatus
    version: int
    created_at: datetime
    updated_at: datetime

    @computed_field(alias="totalAmount")
    @property
    def total_amount(self) -> float:
        return round(sum(item.price * item.quantity for item in self.items), 2)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
