"""
Request bodies of the REST API.

Field names follow the JSON the web client sends (camelCase). Business rules
such as quantity >= 1 or a complete shipping address are checked by the order
service, so a bad request fails with the same reason whichever surface it
came through.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from db.models import PaymentInfo, ShippingAddress
from market.orders import OrderLineRequest


class OrderItemIn(BaseModel):
    product: str = Field(..., description="Product id")
    quantity: int

    def to_line(self) -> OrderLineRequest:
        return OrderLineRequest(product_id=self.product, quantity=self.quantity)


class PaymentInfoIn(BaseModel):
    method: Optional[str] = None
    status: str = "pending"

    def to_record(self) -> PaymentInfo:
        return PaymentInfo(method=self.method or "", status=self.status)


class ShippingAddressIn(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None

    def to_record(self) -> ShippingAddress:
        return ShippingAddress(
            street=self.street or "",
            city=self.city or "",
            state=self.state,
            country=self.country or "",
            zip=self.zip or "",
        )


class PlaceOrderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[OrderItemIn] = Field(default_factory=list)
    payment_info: Optional[PaymentInfoIn] = Field(None, alias="paymentInfo")
    shipping_address: Optional[ShippingAddressIn] = Field(None, alias="shippingAddress")


class StatusUpdateIn(BaseModel):
    status: Optional[str] = None


class ConversationIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    participant_id: Optional[str] = Field(None, alias="participantId")
