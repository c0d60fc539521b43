"""Pydantic schemas for orders.

Request schemas validate the API payloads before they reach the engine.
Unknown fields are ignored, so a client that sends its own ``price`` per
item cannot influence pricing: prices always come from the catalog.

``OrderReadDTO`` is the response shape for a single order.
"""

import re
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .domain import Address, Order, PaymentMethod

PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
PHONE_RE = re.compile(r"^\+?[0-9 ()-]{7,20}$")


class AddressIn(BaseModel):
    """Postal address as typed at checkout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(min_length=1, max_length=120)
    phone: str
    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=120)
    state: str = ""
    postal_code: str = ""
    country: str = "India"
    email: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not PHONE_RE.match(v):
            raise ValueError("Invalid phone number")
        return v

    def to_domain(self) -> Address:
        return Address(**self.model_dump())


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_id: Catalog product identifier.
        quantity: Positive integer indicating units requested.
    """

    product_id: str
    quantity: int = Field(gt=0)

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        v2 = v.strip()
        if not PRODUCT_ID_RE.match(v2):
            raise ValueError("Invalid product id format")
        return v2


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        buyer_id: Identifier of the buyer placing the order.
        items: Non-empty list of `OrderItemIn` items.
        shipping_address: Delivery address.
        billing_address: Billing address. Ignored when
            ``same_as_shipping`` is true, required otherwise.
        same_as_shipping: Reuse the shipping address for billing.
        payment_method: One of cod, upi, card, netbanking.
        discount_code: Optional code typed by the buyer.
    """

    buyer_id: str = Field(min_length=1, max_length=64)
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    same_as_shipping: bool = True
    payment_method: PaymentMethod = PaymentMethod.COD
    discount_code: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def check_billing(self):
        if not self.same_as_shipping and self.billing_address is None:
            raise ValueError("billing_address is required when same_as_shipping is false")
        return self

    def billing(self) -> Address:
        if self.same_as_shipping or self.billing_address is None:
            return self.shipping_address.to_domain()
        return self.billing_address.to_domain()


class CancelDTO(BaseModel):
    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("A cancellation reason is required")
        return v.strip()


class StatusUpdateDTO(BaseModel):
    status: str
    reason: Optional[str] = Field(default=None, max_length=500)


class ValidateDiscountDTO(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    subtotal: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class OrderLineOut(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    line_discount: Decimal
    line_total: Decimal


class StatusChangeOut(BaseModel):
    status: str
    timestamp: datetime
    reason: Optional[str] = None


class OrderReadDTO(BaseModel):
    """Response schema for a single order."""

    id: str
    buyer_id: str
    status: str
    payment_method: str
    currency: str
    items: List[OrderLineOut]
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    discount_code: Optional[str] = None
    reservation_id: Optional[str] = None
    shipping_address: dict
    billing_address: dict
    created_at: Optional[datetime] = None
    status_history: List[StatusChangeOut]
    version: int

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            buyer_id=order.buyer_id,
            status=order.status.value,
            payment_method=order.payment_method.value,
            currency=order.currency,
            items=[
                OrderLineOut(
                    product_id=it.product_id,
                    quantity=it.quantity,
                    unit_price=it.unit_price,
                    line_discount=it.line_discount,
                    line_total=it.line_total,
                )
                for it in order.items
            ],
            subtotal=order.pricing.subtotal,
            discount=order.pricing.discount,
            tax=order.pricing.tax,
            total=order.pricing.total,
            discount_code=order.discount_code,
            reservation_id=order.reservation_id,
            shipping_address=asdict(order.shipping_address),
            billing_address=asdict(order.billing_address),
            created_at=order.created_at,
            status_history=[
                StatusChangeOut(status=h.status.value, timestamp=h.timestamp, reason=h.reason)
                for h in order.status_history
            ],
            version=order.version,
        )


def order_to_json(order: Order) -> dict:
    """Serialize an order to a JSON-ready dict (decimals as strings)."""
    return OrderReadDTO.from_domain(order).model_dump(mode="json")
