from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from db.database import Database
from market.hub import LocalConnectionHub
from market.messaging import MessagingService
from market.orders import OrderService
from market.presence import PresenceTracker
from market.stock import StockLedger
from utils.config import Settings
from utils.logger import get_logger

_logger = get_logger(__name__)


@dataclass
class AppState:
    """
    Services shared by every request of the process.

    Fields:
      - settings: the configuration the services were built from
      - db: sqlite store behind the ledger, orders and conversations
      - hub / presence: live connections and who is online; in-process only
      - ledger, orders, messaging: the core services
    """

    settings: Settings = field(default_factory=Settings)
    db: Optional[Database] = None
    hub: Optional[LocalConnectionHub] = None
    presence: Optional[PresenceTracker] = None
    ledger: Optional[StockLedger] = None
    orders: Optional[OrderService] = None
    messaging: Optional[MessagingService] = None

    def __post_init__(self) -> None:
        self.db = self.db or Database(self.settings.db_path)
        self.hub = self.hub or LocalConnectionHub(self.settings.push_timeout)
        self.presence = self.presence or PresenceTracker(self.hub)
        self.ledger = self.ledger or StockLedger(self.db)
        self.orders = self.orders or OrderService(self.db, self.ledger)
        self.messaging = self.messaging or MessagingService(
            self.db, self.presence, self.hub
        )

    async def startup(self) -> None:
        await self.db.initialize()
        _logger.info(f"Services ready, database at {self.settings.db_path}")

    async def shutdown(self) -> None:
        """
        Close every live connection and forget presence.
        Called once when the server stops.
        """
        await self.hub.close_all()
        self.presence.clear()
        _logger.info("Services stopped")
