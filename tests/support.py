import asyncio
import os
import tempfile
import unittest
from typing import List

from db import crud
from market.hub import Connection
from utils.config import Settings
from utils.state import AppState


class RecordingConnection(Connection):
    """Connection that keeps every frame pushed to it."""

    def __init__(self, connection_id: str, user_id: str, delay: float = 0.0, fail: bool = False):
        super().__init__(connection_id, user_id, self._record)
        self.frames: List[dict] = []
        self.delay = delay
        self.fail = fail

    async def _record(self, frame: dict) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.frames.append(frame)

    def events(self, name: str = None) -> List[dict]:
        return [f for f in self.frames if name is None or f["event"] == name]

    def clear(self) -> None:
        self.frames.clear()


def make_settings(directory: str) -> Settings:
    return Settings(
        db_path=os.path.join(directory, "test.sqlite"),
        secret_key="test-secret",
        push_timeout=0.5,
        ack_timeout=2.0,
    )


class MarketTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh sqlite file and service container per test, with a few users seeded."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings = make_settings(self.temp_dir.name)
        self.state = AppState(settings=self.settings)
        self.db = self.state.db

    async def asyncSetUp(self):
        await self.state.startup()
        self.seller = await crud.create_user(self.db, "Sam Seller", "sam", "sam@example.com")
        self.alice = await crud.create_user(self.db, "Alice", "alice", "alice@example.com")
        self.bob = await crud.create_user(self.db, "Bob", "bob", "bob@example.com")
        self.admin = await crud.create_user(
            self.db, "Ada Admin", "ada", "ada@example.com", role="admin"
        )

    async def asyncTearDown(self):
        await self.state.shutdown()

    def tearDown(self):
        self.temp_dir.cleanup()

    async def connect(self, user, connection_id: str, **kwargs) -> RecordingConnection:
        conn = RecordingConnection(connection_id, user.id, **kwargs)
        self.state.hub.attach(conn)
        await self.state.presence.on_connect(user.id, connection_id)
        return conn

    async def disconnect(self, conn: RecordingConnection) -> bool:
        self.state.hub.detach(conn.connection_id)
        return await self.state.presence.on_disconnect(conn.user_id, conn.connection_id)

    async def make_product(self, price="10.00", stock=5, **kwargs):
        return await crud.create_product(
            self.db,
            self.seller.id,
            kwargs.pop("title", "Desk Lamp"),
            price,
            stock,
            kwargs.pop("category", "home"),
            **kwargs,
        )
