from __future__ import annotations

import asyncio
from typing import Dict, FrozenSet, List, Optional, Set

from market.hub import ConnectionHub
from utils.events import OnlineUsersEvent, UserOfflineEvent, UserOnlineEvent
from utils.logger import get_logger

_logger = get_logger(__name__)


class PresenceTracker:
    """
    Which users are online, across any number of connections per user.

    A user is online iff their connection set is non-empty. Bookkeeping happens
    before the first await of each call, so interleaved connects and disconnects
    on the event loop always see a consistent map.
    """

    def __init__(self, hub: ConnectionHub):
        self.hub = hub
        self._entries: Dict[str, Set[str]] = {}
        self._broadcasts: Set["asyncio.Future"] = set()

    async def on_connect(self, user_id: str, connection_id: str) -> bool:
        """Register a connection. Returns True if the user just came online."""
        entry = self._entries.setdefault(user_id, set())
        came_online = not entry
        entry.add(connection_id)
        snapshot = self.snapshot()
        others = self.all_connections(exclude_user_id=user_id)

        _logger.info(f"User {user_id} connected ({connection_id}), {len(entry)} connection(s)")
        await self.hub.push([connection_id], OnlineUsersEvent.of(snapshot))
        if came_online:
            await self.hub.push(others, UserOnlineEvent(user_id))
        return came_online

    async def on_disconnect(self, user_id: str, connection_id: str) -> bool:
        """Drop a connection. Returns True if it was the user's last one."""
        entry = self._entries.get(user_id)
        if not entry or connection_id not in entry:
            return False
        entry.discard(connection_id)
        _logger.info(f"User {user_id} disconnected ({connection_id}), {len(entry)} left")
        if entry:
            return False
        del self._entries[user_id]
        # the entry is gone already, so the broadcast has to outlive a cancelled caller
        broadcast = asyncio.ensure_future(
            self.hub.push(self.all_connections(), UserOfflineEvent(user_id))
        )
        self._broadcasts.add(broadcast)
        broadcast.add_done_callback(self._broadcasts.discard)
        await asyncio.shield(broadcast)
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._entries.get(user_id))

    def snapshot(self) -> Set[str]:
        return {uid for uid, conns in self._entries.items() if conns}

    def connections(self, user_id: str) -> FrozenSet[str]:
        return frozenset(self._entries.get(user_id, ()))

    def all_connections(self, exclude_user_id: Optional[str] = None) -> List[str]:
        return [
            cid
            for uid, conns in self._entries.items()
            if uid != exclude_user_id
            for cid in conns
        ]

    def clear(self) -> None:
        self._entries.clear()
