from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from db import crud
from db.database import Database
from db.models import Caller, Order, OrderItem, PaymentInfo, ShippingAddress
from market.errors import (
    ForbiddenError,
    InsufficientStockError,
    InternalError,
    InvalidStatusForCancelError,
    InvalidStatusTransitionError,
    MarketError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from market.stock import StockLedger
from utils.logger import get_logger

_logger = get_logger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> "OrderStatus":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(
                f"Invalid status. Status must be one of: {allowed}.", "invalid_status"
            ) from None


# forward path an administrator walks an order along
FORWARD_PATH: Tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)
CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PAID})
TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def can_advance(current: OrderStatus, requested: OrderStatus) -> bool:
    """True if requested lies strictly later than current on the forward path."""
    if current in TERMINAL or requested not in FORWARD_PATH:
        return False
    return FORWARD_PATH.index(requested) > FORWARD_PATH.index(current)


# sqlite integers are 64 bit; anything near that cannot be real stock
MAX_LINE_QUANTITY = 2**31 - 1


@dataclass(frozen=True)
class OrderLineRequest:
    product_id: str
    quantity: int


def _validate_request(
    items: Sequence[OrderLineRequest],
    payment_info: Optional[PaymentInfo],
    shipping_address: Optional[ShippingAddress],
) -> None:
    if not items:
        raise ValidationError("Order must contain at least one item.", "invalid_items")
    for line in items:
        quantity_ok = (
            isinstance(line.quantity, int)
            and not isinstance(line.quantity, bool)
            and 1 <= line.quantity <= MAX_LINE_QUANTITY
        )
        if not line.product_id or not quantity_ok:
            raise ValidationError(
                "Each item must have a valid product ID and quantity.", "invalid_items"
            )
    if payment_info is None or not payment_info.method:
        raise ValidationError("Payment information is required.", "invalid_payment")
    address = shipping_address
    if address is None or not all(
        (address.street, address.city, address.zip, address.country)
    ):
        raise ValidationError(
            "Complete shipping address is required.", "invalid_shipping_address"
        )


class OrderService:
    """
    Order placement pipeline and the order state machine.

    Placement reserves items one by one through the stock ledger. When any
    reservation or the final insert fails, every reservation already made for
    the request is released before the error reaches the caller.
    """

    def __init__(self, db: Database, ledger: StockLedger):
        self.db = db
        self.ledger = ledger

    # ---------------------------
    # Placement
    # ---------------------------

    async def place_order(
        self,
        buyer_id: Optional[str],
        items: Sequence[OrderLineRequest],
        payment_info: Optional[PaymentInfo],
        shipping_address: Optional[ShippingAddress],
    ) -> Order:
        if not buyer_id:
            raise UnauthenticatedError("Unauthorized. Please log in.")
        _validate_request(items, payment_info, shipping_address)
        # once reservations start, a dropped client must not abandon them half done
        return await asyncio.shield(
            self._reserve_and_persist(buyer_id, items, payment_info, shipping_address)
        )

    async def _reserve_and_persist(
        self,
        buyer_id: str,
        items: Sequence[OrderLineRequest],
        payment_info: PaymentInfo,
        shipping_address: ShippingAddress,
    ) -> Order:
        reserved: List[Tuple[str, int]] = []
        order_items: List[OrderItem] = []
        total = Decimal("0")

        try:
            for line in items:
                product = await self.ledger.reserve(line.product_id, line.quantity)
                reserved.append((line.product_id, line.quantity))
                # price comes from the reserved row, never from the client
                order_items.append(
                    OrderItem(
                        product_id=product.id,
                        quantity=line.quantity,
                        price_at_purchase=product.price,
                    )
                )
                total += product.price * line.quantity
        except MarketError as exc:
            await self._compensate(reserved)
            if isinstance(exc, InsufficientStockError):
                _logger.warning(
                    f"Order for {buyer_id} rejected: insufficient stock for {exc.product_id}"
                )
            raise
        except Exception as exc:
            _logger.exception(f"Stock reservation failed for buyer {buyer_id}")
            await self._compensate(reserved)
            raise InternalError("Failed to reserve stock for the order.") from exc

        try:
            order = await crud.insert_order(
                self.db, buyer_id, order_items, total, payment_info, shipping_address
            )
        except Exception as exc:
            _logger.exception(f"Persisting order for buyer {buyer_id} failed")
            await self._compensate(reserved)
            raise InternalError("Failed to save the order.") from exc

        _logger.info(
            f"Order {order.id} placed by {buyer_id}: {len(order_items)} line(s), total {total}"
        )
        return order

    async def _compensate(self, reserved: List[Tuple[str, int]]) -> None:
        for product_id, quantity in reversed(reserved):
            try:
                await self.ledger.release(product_id, quantity)
            except Exception:
                # keep releasing the rest; the first error still propagates
                _logger.exception(
                    f"Could not release {quantity} x {product_id} after a failed order"
                )

    # ---------------------------
    # Reads
    # ---------------------------

    async def _load_for(self, caller: Optional[Caller], order_id: str) -> Order:
        if caller is None:
            raise UnauthenticatedError("Access token required")
        order = await crud.get_order(self.db, order_id)
        if order is None:
            raise NotFoundError("Order not found", "order_not_found")
        if order.buyer_id != caller.id and not caller.is_admin:
            raise ForbiddenError(
                "Access denied. You don't have permission to access this order"
            )
        return order

    async def get_order(self, caller: Optional[Caller], order_id: str) -> Order:
        return await self._load_for(caller, order_id)

    async def list_orders_for(self, caller: Optional[Caller]) -> List[Order]:
        """The caller's own orders, newest first."""
        if caller is None:
            raise UnauthenticatedError("Access token required")
        return await crud.list_orders(self.db, buyer_id=caller.id)

    async def list_all_orders(self, caller: Optional[Caller]) -> List[Order]:
        if caller is None:
            raise UnauthenticatedError("Access token required")
        if not caller.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required")
        return await crud.list_orders(self.db)

    # ---------------------------
    # Transitions
    # ---------------------------

    async def cancel_order(self, caller: Optional[Caller], order_id: str) -> Order:
        """Cancel and give the stock back. Only the buyer or an admin may cancel."""
        await self._load_for(caller, order_id)
        cancelled, status = await crud.cancel_order_and_restock(
            self.db, order_id, [s.value for s in CANCELLABLE]
        )
        if status is None:
            raise NotFoundError("Order not found", "order_not_found")
        if not cancelled:
            _logger.warning(f"Cancel of order {order_id} refused in status {status}")
            raise InvalidStatusForCancelError(status)
        _logger.info(f"Order {order_id} cancelled by {caller.id}, stock restored")
        order = await crud.get_order(self.db, order_id)
        if order is None:
            raise NotFoundError("Order not found", "order_not_found")
        return order

    async def delete_order(self, caller: Optional[Caller], order_id: str) -> None:
        """Remove the order, restoring stock first unless it was cancelled already."""
        await self._load_for(caller, order_id)
        restocked = await crud.delete_order_and_restock(self.db, order_id)
        if restocked is None:
            raise NotFoundError("Order not found", "order_not_found")
        _logger.info(
            f"Order {order_id} deleted by {caller.id}"
            + (", stock restored" if restocked else "")
        )

    async def update_status(
        self, caller: Optional[Caller], order_id: str, new_status: str
    ) -> Order:
        """Administrative advance along pending -> paid -> shipped -> delivered."""
        if caller is None:
            raise UnauthenticatedError("Access token required")
        if not caller.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required")
        requested = OrderStatus.parse(new_status)
        order = await self._load_for(caller, order_id)
        current = OrderStatus(order.status)
        if not can_advance(current, requested):
            raise InvalidStatusTransitionError(current.value, requested.value)
        if not await crud.set_order_status(
            self.db, order_id, current.value, requested.value
        ):
            # somebody else moved it first
            latest = await crud.get_order(self.db, order_id)
            if latest is None:
                raise NotFoundError("Order not found", "order_not_found")
            raise InvalidStatusTransitionError(latest.status, requested.value)
        _logger.info(f"Order {order_id} moved {current.value} -> {requested.value}")
        updated = await crud.get_order(self.db, order_id)
        if updated is None:
            raise NotFoundError("Order not found", "order_not_found")
        return updated
