# provide dataclass models

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Caller:
    """Verified identity handed over by the authentication layer."""

    id: str
    role: str = "user"  # "user" or "admin"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class User:
    id: str
    name: str
    user_name: str
    email: str
    role: str
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None

    def summary(self) -> dict:
        # the subset shown next to a conversation or message
        return {
            "id": self.id,
            "name": self.name,
            "userName": self.user_name,
            "avatar": self.avatar,
        }


@dataclass(frozen=True)
class Product:
    id: str
    title: str
    price: Decimal
    stock: int
    category: str
    seller_id: str
    active: bool = True
    description: Optional[str] = None
    images: Tuple[str, ...] = ()
    tags: frozenset = field(default_factory=frozenset)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "price": str(self.price),
            "stock": self.stock,
            "category": self.category,
            "seller": self.seller_id,
            "active": self.active,
            "images": list(self.images),
            "tags": sorted(self.tags),
        }


@dataclass(frozen=True)
class PaymentInfo:
    method: str
    status: str = "pending"  # payment itself is mocked


@dataclass(frozen=True)
class ShippingAddress:
    street: str
    city: str
    country: str
    zip: str
    state: Optional[str] = None


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    quantity: int
    price_at_purchase: Decimal  # unit price frozen when the order was placed

    @property
    def subtotal(self) -> Decimal:
        return self.price_at_purchase * self.quantity


@dataclass(frozen=True)
class Order:
    id: str
    buyer_id: str
    items: Tuple[OrderItem, ...]
    total: Decimal
    status: str
    payment_info: Optional[PaymentInfo]
    shipping_address: Optional[ShippingAddress]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        payment = self.payment_info
        address = self.shipping_address
        return {
            "id": self.id,
            "buyer": self.buyer_id,
            "items": [
                {
                    "product": item.product_id,
                    "quantity": item.quantity,
                    "priceAtPurchase": str(item.price_at_purchase),
                }
                for item in self.items
            ],
            "total": str(self.total),
            "status": self.status,
            "paymentInfo": (
                {"method": payment.method, "status": payment.status}
                if payment
                else None
            ),
            "shippingAddress": (
                {
                    "street": address.street,
                    "city": address.city,
                    "state": address.state,
                    "country": address.country,
                    "zip": address.zip,
                }
                if address
                else None
            ),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Conversation:
    id: str
    participants: Tuple[str, str]
    last_message: str
    last_message_at: datetime
    created_at: datetime

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def others(self, user_id: str) -> Tuple[str, ...]:
        return tuple(p for p in self.participants if p != user_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "participants": list(self.participants),
            "lastMessage": self.last_message,
            "lastMessageAt": _iso(self.last_message_at),
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    read: bool
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation": self.conversation_id,
            "sender": self.sender_id,
            "content": self.content,
            "read": self.read,
            "createdAt": _iso(self.created_at),
        }
