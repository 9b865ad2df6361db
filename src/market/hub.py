"""Push transport for live client connections.

The hub only knows connection ids. Which connections belong to which user is
the presence tracker's business, so a deployment with several server
processes can swap ``LocalConnectionHub`` for a pub/sub backed hub without
touching the delivery logic.
"""

from __future__ import annotations

import abc
import asyncio
from typing import Awaitable, Callable, Dict, Iterable, Optional

from utils.events import ServerEvent
from utils.logger import get_logger

_logger = get_logger(__name__)

Sender = Callable[[dict], Awaitable[None]]
Closer = Callable[[], Awaitable[None]]


class Connection:
    """One live client channel (a browser tab, a device)."""

    def __init__(
        self,
        connection_id: str,
        user_id: str,
        send: Sender,
        close: Optional[Closer] = None,
    ):
        self.connection_id = connection_id
        self.user_id = user_id
        self._send = send
        self._close = close

    async def send(self, frame: dict) -> None:
        await self._send(frame)

    async def close(self) -> None:
        if self._close is not None:
            await self._close()

    def __repr__(self) -> str:
        return f"Connection({self.connection_id!r}, user={self.user_id!r})"


class ConnectionHub(abc.ABC):
    @abc.abstractmethod
    def attach(self, connection: Connection) -> None:
        ...

    @abc.abstractmethod
    def detach(self, connection_id: str) -> Optional[Connection]:
        ...

    @abc.abstractmethod
    async def push(self, connection_ids: Iterable[str], event: ServerEvent) -> int:
        """Send event to each connection. Returns how many sends succeeded."""

    @abc.abstractmethod
    async def close_all(self) -> None:
        ...


class LocalConnectionHub(ConnectionHub):
    """Connections held by this process, each send bounded by push_timeout."""

    def __init__(self, push_timeout: float = 2.0):
        self.push_timeout = push_timeout
        self._connections: Dict[str, Connection] = {}

    def attach(self, connection: Connection) -> None:
        self._connections[connection.connection_id] = connection

    def detach(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)

    async def push(self, connection_ids: Iterable[str], event: ServerEvent) -> int:
        targets = [
            self._connections[cid]
            for cid in dict.fromkeys(connection_ids)
            if cid in self._connections
        ]
        if not targets:
            return 0
        frame = event.envelope()
        results = await asyncio.gather(
            *(self._send_one(conn, frame, event.name) for conn in targets)
        )
        return sum(results)

    async def _send_one(self, conn: Connection, frame: dict, name: str) -> bool:
        try:
            await asyncio.wait_for(conn.send(frame), timeout=self.push_timeout)
            return True
        except asyncio.TimeoutError:
            _logger.warning(f"Push of {name} to {conn!r} timed out")
        except Exception as exc:
            # a dead socket is an offline recipient, not a failed operation
            _logger.warning(f"Push of {name} to {conn!r} failed: {exc}")
        return False

    async def close_all(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        for conn in connections:
            try:
                await conn.close()
            except Exception as exc:
                _logger.debug(f"Closing {conn!r} failed: {exc}")
