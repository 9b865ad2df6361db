import asyncio

from market.hub import LocalConnectionHub
from market.presence import PresenceTracker
from support import MarketTestCase, RecordingConnection
from utils.events import UserOnlineEvent


class PresenceTestCase(MarketTestCase):
    async def test_online_until_last_connection_drops(self):
        presence = self.state.presence
        self.assertFalse(presence.is_online(self.alice.id))

        tab1 = await self.connect(self.alice, "a-1")
        self.assertTrue(presence.is_online(self.alice.id))
        tab2 = await self.connect(self.alice, "a-2")
        self.assertEqual(presence.connections(self.alice.id), {"a-1", "a-2"})

        self.assertFalse(await self.disconnect(tab1))
        self.assertTrue(presence.is_online(self.alice.id))
        self.assertTrue(await self.disconnect(tab2))
        self.assertFalse(presence.is_online(self.alice.id))
        self.assertEqual(presence.snapshot(), set())

    async def test_online_offline_broadcast_only_on_transitions(self):
        watcher = await self.connect(self.bob, "b-1")
        tab1 = await self.connect(self.alice, "a-1")
        tab2 = await self.connect(self.alice, "a-2")

        online = watcher.events("userOnline")
        self.assertEqual([e["data"]["userId"] for e in online], [self.alice.id])
        # alice's own tabs are not told she came online
        self.assertEqual(tab1.events("userOnline"), [])

        await self.disconnect(tab1)
        self.assertEqual(watcher.events("userOffline"), [])
        await self.disconnect(tab2)
        offline = watcher.events("userOffline")
        self.assertEqual([e["data"]["userId"] for e in offline], [self.alice.id])

    async def test_new_connection_gets_snapshot(self):
        await self.connect(self.bob, "b-1")
        await self.connect(self.seller, "s-1")
        tab = await self.connect(self.alice, "a-1")

        snapshots = tab.events("onlineUsers")
        self.assertEqual(len(snapshots), 1)
        self.assertEqual(
            set(snapshots[0]["data"]["userIds"]),
            {self.alice.id, self.bob.id, self.seller.id},
        )

    async def test_offline_broadcast_survives_cancelled_disconnect(self):
        # bob's socket is slow, so the broadcast is still in flight when the
        # disconnecting handler gets cancelled
        watcher = await self.connect(self.bob, "b-1", delay=0.2)
        tab = await self.connect(self.alice, "a-1")
        self.state.hub.detach(tab.connection_id)

        teardown = asyncio.ensure_future(
            self.state.presence.on_disconnect(self.alice.id, tab.connection_id)
        )
        await asyncio.sleep(0.05)
        teardown.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await teardown

        self.assertFalse(self.state.presence.is_online(self.alice.id))
        await asyncio.sleep(0.3)
        offline = watcher.events("userOffline")
        self.assertEqual([e["data"]["userId"] for e in offline], [self.alice.id])

    async def test_unknown_disconnect_is_ignored(self):
        self.assertFalse(await self.state.presence.on_disconnect(self.alice.id, "nope"))
        await self.connect(self.alice, "a-1")
        self.assertFalse(await self.state.presence.on_disconnect(self.alice.id, "nope"))
        self.assertTrue(self.state.presence.is_online(self.alice.id))

    async def test_shutdown_forgets_everyone(self):
        await self.connect(self.alice, "a-1")
        await self.state.shutdown()
        self.assertEqual(self.state.presence.snapshot(), set())
        self.assertEqual(len(self.state.hub), 0)


class HubTestCase(MarketTestCase):
    async def test_slow_or_broken_connections_do_not_raise(self):
        hub = LocalConnectionHub(push_timeout=0.05)
        fine = RecordingConnection("ok", self.alice.id)
        slow = RecordingConnection("slow", self.alice.id, delay=1.0)
        broken = RecordingConnection("broken", self.alice.id, fail=True)
        for conn in (fine, slow, broken):
            hub.attach(conn)

        delivered = await hub.push(["ok", "slow", "broken", "gone"], UserOnlineEvent("x"))
        self.assertEqual(delivered, 1)
        self.assertEqual(fine.events("userOnline")[0]["data"], {"userId": "x"})
        self.assertEqual(broken.frames, [])

    async def test_push_to_nobody(self):
        hub = LocalConnectionHub()
        self.assertEqual(await hub.push([], UserOnlineEvent("x")), 0)
        hub.attach(RecordingConnection("c", self.alice.id))
        self.assertIsNotNone(hub.detach("c"))
        self.assertIsNone(hub.detach("c"))
        self.assertEqual(await hub.push(["c"], UserOnlineEvent("x")), 0)

    async def test_tracker_works_over_any_hub(self):
        hub = LocalConnectionHub()
        presence = PresenceTracker(hub)
        conn = RecordingConnection("c", self.alice.id)
        hub.attach(conn)
        self.assertTrue(await presence.on_connect(self.alice.id, "c"))
        self.assertFalse(await presence.on_connect(self.alice.id, "c"))
        self.assertEqual(len(conn.events("onlineUsers")), 2)
