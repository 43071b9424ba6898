"""
Order document and the value types the lifecycle works with.
JSON field names are camelCase, matching what the storefront frontend reads.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CancelledBy(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"


class ReturnStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Actor(BaseModel):
    role: ActorRole
    user_id: str | None = None
    name: str | None = None
    email: str | None = None


SYSTEM_ACTOR = Actor(role=ActorRole.SYSTEM)


class UserRef(_CamelModel):
    id: str
    name: str = ""
    email: str | None = None


class LineItem(_CamelModel):
    name: str
    slug: str
    product: str | None = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image: str | None = None
    return_policy: str | None = None


class ShippingAddress(_CamelModel):
    full_name: str
    address: str
    city: str
    postal_code: str
    country: str


class PaymentResult(BaseModel):
    id: str | None = None
    status: str | None = None
    update_time: str | None = None
    email_address: str | None = None


class OrderDraft(_CamelModel):
    """Checkout payload: everything frozen at order creation."""

    order_items: list[LineItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: str
    items_price: float = Field(..., ge=0)
    shipping_price: float = Field(default=0, ge=0)
    tax_price: float = Field(default=0, ge=0)
    total_price: float = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> "OrderDraft":
        expected = round(self.items_price + self.shipping_price + self.tax_price, 2)
        if abs(expected - round(self.total_price, 2)) > 0.005:
            raise ValueError(
                f"totalPrice {self.total_price} does not match items + shipping + tax ({expected})"
            )
        return self


class Order(OrderDraft):
    id: str
    user: UserRef
    version: int = 0

    is_paid: bool = False
    paid_at: datetime | None = None
    payment_result: PaymentResult | None = None

    is_packing: bool = False
    packed_at: datetime | None = None
    is_dispatched: bool = False
    dispatched_at: datetime | None = None
    out_for_delivery: bool = False
    out_for_delivery_at: datetime | None = None
    is_delivered: bool = False
    delivered_at: datetime | None = None

    is_cancelled: bool = False
    cancelled_by: CancelledBy | None = None
    cancelled_at: datetime | None = None

    return_requested: bool = False
    return_reason: str | None = None
    return_status: ReturnStatus | None = None
    returned_at: datetime | None = None
    refund_credited: bool = False
    refund_credited_at: datetime | None = None

    created_at: datetime
    updated_at: datetime

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
