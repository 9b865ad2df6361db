import asyncio

from db import crud
from market.errors import ForbiddenError, NotFoundError, ValidationError
from support import MarketTestCase


class MessagingTestCase(MarketTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.messaging = self.state.messaging

    async def conversation(self):
        conv, _ = await self.messaging.get_or_create_conversation(self.alice.id, self.bob.id)
        return conv

    # ---------- Conversations ----------

    async def test_get_or_create_is_idempotent_in_either_order(self):
        first, created = await self.messaging.get_or_create_conversation(self.alice.id, self.bob.id)
        self.assertTrue(created)
        second, created = await self.messaging.get_or_create_conversation(self.bob.id, self.alice.id)
        self.assertFalse(created)
        self.assertEqual(first.id, second.id)

    async def test_concurrent_get_or_create_makes_one_conversation(self):
        results = await asyncio.gather(
            self.messaging.get_or_create_conversation(self.alice.id, self.bob.id),
            self.messaging.get_or_create_conversation(self.bob.id, self.alice.id),
            self.messaging.get_or_create_conversation(self.alice.id, self.bob.id),
        )
        self.assertEqual(len({conv.id for conv, _ in results}), 1)
        self.assertEqual(sum(created for _, created in results), 1)
        self.assertEqual(len(await self.messaging.list_conversations(self.alice.id)), 1)

    async def test_get_or_create_rejects_bad_partners(self):
        with self.assertRaises(ValidationError):
            await self.messaging.get_or_create_conversation(self.alice.id, self.alice.id)
        with self.assertRaises(ValidationError):
            await self.messaging.get_or_create_conversation(self.alice.id, None)
        with self.assertRaises(NotFoundError):
            await self.messaging.get_or_create_conversation(self.alice.id, "ghost")

    async def test_list_conversations_newest_first_with_profiles(self):
        with_bob = await self.conversation()
        with_seller, _ = await self.messaging.get_or_create_conversation(
            self.alice.id, self.seller.id
        )
        await self.messaging.send_message(with_bob.id, self.bob.id, "still there?")
        await self.messaging.send_message(with_bob.id, self.bob.id, "hello?")

        views = await self.messaging.list_conversations(self.alice.id)
        self.assertEqual([v.conversation.id for v in views], [with_bob.id, with_seller.id])
        top = views[0].to_dict()
        self.assertEqual(top["unreadCount"], 2)
        self.assertEqual(top["lastMessage"], "hello?")
        self.assertEqual({p["userName"] for p in top["participants"]}, {"alice", "bob"})
        self.assertEqual(views[1].unread_count, 0)

    async def test_single_conversation_view_has_profiles(self):
        conv = await self.conversation()
        await self.messaging.send_message(conv.id, self.alice.id, "hi")

        view = (await self.messaging.view_conversation(conv, self.bob.id)).to_dict()
        self.assertEqual({p["name"] for p in view["participants"]}, {"Alice", "Bob"})
        self.assertEqual(view["unreadCount"], 1)

        profiles = await self.messaging.profiles([self.alice.id, "ghost", self.alice.id])
        self.assertEqual(profiles[self.alice.id]["userName"], "alice")
        self.assertIsNone(profiles["ghost"]["name"])

    # ---------- Sending ----------

    async def test_send_to_online_recipient_pushes_everywhere(self):
        conv = await self.conversation()
        bob_tab = await self.connect(self.bob, "b-1")
        alice_tab1 = await self.connect(self.alice, "a-1")
        alice_tab2 = await self.connect(self.alice, "a-2")

        message = await self.messaging.send_message(conv.id, self.alice.id, "hi")

        pushed = bob_tab.events("newMessage")
        self.assertEqual(len(pushed), 1)
        self.assertEqual(pushed[0]["data"]["conversationId"], conv.id)
        self.assertEqual(pushed[0]["data"]["message"]["id"], message.id)
        self.assertEqual(pushed[0]["data"]["message"]["senderProfile"]["name"], "Alice")
        for tab in (alice_tab1, alice_tab2):
            self.assertEqual(len(tab.events("messageSent")), 1)
            self.assertEqual(tab.events("newMessage"), [])
        self.assertEqual(bob_tab.events("messageSent"), [])

        self.assertEqual(await self.messaging.unread_count(conv.id, self.bob.id), 1)

    async def test_send_to_offline_recipient_is_stored_for_later(self):
        conv = await self.conversation()
        alice_tab = await self.connect(self.alice, "a-1")

        message = await self.messaging.send_message(conv.id, self.alice.id, "hi")
        self.assertFalse(message.read)
        self.assertEqual(len(alice_tab.events("messageSent")), 1)

        stored = await self.messaging.list_messages(conv.id, self.bob.id)
        self.assertEqual([m.content for m in stored], ["hi"])
        self.assertEqual(await self.messaging.unread_count(conv.id, self.bob.id), 1)

        # bob comes back, reads, alice's tab gets the receipt
        await self.messaging.mark_read(conv.id, self.bob.id)
        self.assertEqual(await self.messaging.unread_count(conv.id, self.bob.id), 0)
        receipts = alice_tab.events("messagesRead")
        self.assertEqual(receipts[0]["data"], {"conversationId": conv.id, "readBy": self.bob.id})

    async def test_send_validation_and_membership(self):
        conv = await self.conversation()
        with self.assertRaises(ValidationError):
            await self.messaging.send_message(conv.id, self.alice.id, "   ")
        with self.assertRaises(ValidationError):
            await self.messaging.send_message(conv.id, self.alice.id, None)
        with self.assertRaises(ForbiddenError):
            await self.messaging.send_message(conv.id, self.seller.id, "let me in")
        with self.assertRaises(NotFoundError):
            await self.messaging.send_message("missing", self.alice.id, "hi")
        self.assertEqual(await crud.list_messages(self.db, conv.id), [])

        trimmed = await self.messaging.send_message(conv.id, self.alice.id, "  hi  ")
        self.assertEqual(trimmed.content, "hi")
        with self.assertRaises(ForbiddenError):
            await self.messaging.list_messages(conv.id, self.seller.id)

    async def test_one_senders_messages_keep_their_order(self):
        conv = await self.conversation()
        for i in range(6):
            await self.messaging.send_message(conv.id, self.alice.id, f"m{i}")
        stored = await self.messaging.list_messages(conv.id, self.alice.id)
        self.assertEqual([m.content for m in stored], [f"m{i}" for i in range(6)])

    # ---------- Read receipts & unread accounting ----------

    async def test_unread_counts_only_other_side(self):
        conv = await self.conversation()
        for text in ("a", "b", "c"):
            await self.messaging.send_message(conv.id, self.alice.id, text)
        await self.messaging.send_message(conv.id, self.bob.id, "d")

        self.assertEqual(await self.messaging.unread_count(conv.id, self.bob.id), 3)
        self.assertEqual(await self.messaging.unread_count(conv.id, self.alice.id), 1)
        self.assertEqual(await self.messaging.total_unread(self.bob.id), 3)

        self.assertEqual(await self.messaging.mark_read(conv.id, self.bob.id), 3)
        self.assertEqual(await self.messaging.unread_count(conv.id, self.bob.id), 0)
        # bob's own message is still unread for alice
        self.assertEqual(await self.messaging.unread_count(conv.id, self.alice.id), 1)
        stored = await self.messaging.list_messages(conv.id, self.bob.id)
        self.assertEqual([m.read for m in stored], [True, True, True, False])

    async def test_mark_read_requires_membership(self):
        conv = await self.conversation()
        with self.assertRaises(ForbiddenError):
            await self.messaging.mark_read(conv.id, self.seller.id)
        with self.assertRaises(NotFoundError):
            await self.messaging.mark_read("missing", self.bob.id)

    # ---------- Typing ----------

    async def test_typing_goes_to_the_other_side_only(self):
        conv = await self.conversation()
        bob_tab = await self.connect(self.bob, "b-1")
        alice_tab = await self.connect(self.alice, "a-1")

        await self.messaging.emit_typing(conv.id, self.alice.id, True)
        typing = bob_tab.events("userTyping")
        self.assertEqual(
            typing[0]["data"],
            {"conversationId": conv.id, "userId": self.alice.id, "isTyping": True},
        )
        self.assertEqual(alice_tab.events("userTyping"), [])
        self.assertEqual(await crud.list_messages(self.db, conv.id), [])

        with self.assertRaises(ForbiddenError):
            await self.messaging.emit_typing(conv.id, self.seller.id, True)

    async def test_typing_to_offline_user_is_a_no_op(self):
        conv = await self.conversation()
        await self.messaging.emit_typing(conv.id, self.alice.id, False)

    # ---------- Directory ----------

    async def test_search_users(self):
        self.assertEqual(await self.messaging.search_users(self.alice.id, "b"), [])
        self.assertEqual(await self.messaging.search_users(self.alice.id, None), [])
        found = await self.messaging.search_users(self.alice.id, "bo")
        self.assertEqual([u.id for u in found], [self.bob.id])

    async def test_online_users_snapshot(self):
        await self.connect(self.bob, "b-1")
        self.assertEqual(self.messaging.online_users(), {self.bob.id})
