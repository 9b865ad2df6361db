from __future__ import annotations

from db import crud
from db.database import Database
from db.models import Product
from market.errors import InsufficientStockError, ValidationError
from utils.logger import get_logger

_logger = get_logger(__name__)


class StockLedger:
    """Authoritative available quantity per product.

    Stock only moves through ``reserve`` (conditional decrement) and ``release``
    (increment). The condition is evaluated by the store inside the UPDATE, so
    concurrent reservations from any number of processes cannot oversell.
    """

    def __init__(self, db: Database):
        self.db = db

    async def reserve(self, product_id: str, quantity: int) -> Product:
        """Take quantity units, returning the product after the decrement.

        Raises InsufficientStockError, with nothing changed, when the product is
        missing, inactive or short on stock.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.", "invalid_items")
        product = await crud.reserve_stock(self.db, product_id, quantity)
        if product is None:
            _logger.warning(f"Reservation of {quantity} x {product_id} rejected")
            raise InsufficientStockError(product_id, quantity)
        _logger.debug(f"Reserved {quantity} x {product_id}, {product.stock} left")
        return product

    async def release(self, product_id: str, quantity: int) -> None:
        """Give back a reservation. Must run at most once per reservation."""
        if not await crud.release_stock(self.db, product_id, quantity):
            _logger.warning(f"Released {quantity} x {product_id} but the product is gone")
            return
        _logger.debug(f"Released {quantity} x {product_id}")
