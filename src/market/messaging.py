from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from db import crud
from db.database import Database
from db.models import Conversation, Message, User
from market.errors import ForbiddenError, NotFoundError, ValidationError
from market.hub import ConnectionHub
from market.presence import PresenceTracker
from utils.events import (
    MessageSentEvent,
    MessagesReadEvent,
    NewMessageEvent,
    UserTypingEvent,
)
from utils.logger import get_logger

_logger = get_logger(__name__)

MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 10


@dataclass(frozen=True)
class ConversationView:
    """A conversation as one participant sees it in their inbox."""

    conversation: Conversation
    participants: Tuple[dict, ...]
    unread_count: int

    def to_dict(self) -> dict:
        data = self.conversation.to_dict()
        data["participants"] = list(self.participants)
        data["unreadCount"] = self.unread_count
        return data


def _profile(user_id: str, users: dict) -> dict:
    user: Optional[User] = users.get(user_id)
    if user is None:
        return {"id": user_id, "name": None, "userName": None, "avatar": None}
    return user.summary()


class MessagingService:
    """
    Conversation and message delivery.

    Messages are persisted first and pushed second; a recipient without live
    connections simply reads them later from the store. Unread counts are
    derived from the read flags, never stored.
    """

    def __init__(self, db: Database, presence: PresenceTracker, hub: ConnectionHub):
        self.db = db
        self.presence = presence
        self.hub = hub

    async def _conversation_for(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await crud.get_conversation(self.db, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", "conversation_not_found")
        if not conversation.has_participant(user_id):
            raise ForbiddenError(
                "You are not a participant of this conversation", "not_a_participant"
            )
        return conversation

    def _connections_of(self, user_ids) -> Set[str]:
        return {cid for uid in user_ids for cid in self.presence.connections(uid)}

    # ---------------------------
    # Conversations
    # ---------------------------

    async def get_or_create_conversation(
        self, user_id: str, other_user_id: str
    ) -> Tuple[Conversation, bool]:
        """Return (conversation, created) for the unordered pair of users."""
        if not other_user_id:
            raise ValidationError("participantId is required", "invalid_participant")
        if other_user_id == user_id:
            raise ValidationError(
                "Cannot start a conversation with yourself", "invalid_participant"
            )
        if await crud.get_user(self.db, other_user_id) is None:
            raise NotFoundError("User not found", "user_not_found")
        conversation, created = await crud.get_or_create_conversation(
            self.db, user_id, other_user_id
        )
        if created:
            _logger.info(
                f"New conversation {conversation.id} between {user_id} and {other_user_id}"
            )
        return conversation, created

    async def profiles(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        """Directory summaries keyed by user id, with a placeholder for unknown ids."""
        ids = list(dict.fromkeys(user_ids))
        users = await crud.get_users(self.db, ids)
        return {uid: _profile(uid, users) for uid in ids}

    async def view_conversation(
        self, conversation: Conversation, user_id: str
    ) -> ConversationView:
        profiles = await self.profiles(conversation.participants)
        return ConversationView(
            conversation=conversation,
            participants=tuple(profiles[p] for p in conversation.participants),
            unread_count=await crud.unread_count(self.db, conversation.id, user_id),
        )

    async def list_conversations(self, user_id: str) -> List[ConversationView]:
        conversations = await crud.list_conversations(self.db, user_id)
        unread = await crud.unread_counts(self.db, user_id)
        users = await crud.get_users(
            self.db, (p for c in conversations for p in c.participants)
        )
        return [
            ConversationView(
                conversation=c,
                participants=tuple(_profile(p, users) for p in c.participants),
                unread_count=unread.get(c.id, 0),
            )
            for c in conversations
        ]

    async def list_messages(self, conversation_id: str, user_id: str) -> List[Message]:
        await self._conversation_for(conversation_id, user_id)
        return await crud.list_messages(self.db, conversation_id)

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        await self._conversation_for(conversation_id, user_id)
        return await crud.unread_count(self.db, conversation_id, user_id)

    async def total_unread(self, user_id: str) -> int:
        return sum((await crud.unread_counts(self.db, user_id)).values())

    async def search_users(self, user_id: str, query: Optional[str]) -> List[User]:
        if not query or len(query.strip()) < MIN_SEARCH_LENGTH:
            return []
        return await crud.search_users(self.db, query, user_id, limit=SEARCH_LIMIT)

    def online_users(self) -> Set[str]:
        return self.presence.snapshot()

    # ---------------------------
    # Real-time operations
    # ---------------------------

    async def send_message(
        self, conversation_id: str, sender_id: str, content: Optional[str]
    ) -> Message:
        """Persist, then push newMessage to recipients and messageSent to the sender."""
        text = content.strip() if isinstance(content, str) else ""
        if not conversation_id or not text:
            raise ValidationError(
                "conversationId and content are required", "invalid_message"
            )
        conversation = await self._conversation_for(conversation_id, sender_id)
        message = await crud.insert_message(self.db, conversation.id, sender_id, text)

        sender = await crud.get_user(self.db, sender_id)
        profile = sender.summary() if sender else None
        recipients = conversation.others(sender_id)
        delivered = await self.hub.push(
            self._connections_of(recipients), NewMessageEvent(message, profile)
        )
        await self.hub.push(
            self.presence.connections(sender_id), MessageSentEvent(message, profile)
        )
        _logger.debug(
            f"Message {message.id} in {conversation.id} pushed to {delivered} connection(s)"
        )
        return message

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Mark the other side's messages read and send them a read receipt."""
        conversation = await self._conversation_for(conversation_id, reader_id)
        updated = await crud.mark_read(self.db, conversation.id, reader_id)
        await self.hub.push(
            self._connections_of(conversation.others(reader_id)),
            MessagesReadEvent(conversation.id, reader_id),
        )
        return updated

    async def emit_typing(
        self, conversation_id: str, user_id: str, is_typing: bool
    ) -> None:
        """Best effort typing indicator; nothing is stored and nothing retried."""
        conversation = await self._conversation_for(conversation_id, user_id)
        await self.hub.push(
            self._connections_of(conversation.others(user_id)),
            UserTypingEvent(conversation.id, user_id, bool(is_typing)),
        )
