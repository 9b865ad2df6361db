from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Optional, Tuple

from db.models import Message


class ServerEvent:
    """
    Something the server pushes over a client's real-time channel.
    Subclasses set ``name`` (the wire event name) and build ``payload()``.
    """

    name: ClassVar[str] = ""

    def payload(self) -> Any:
        raise NotImplementedError

    def envelope(self) -> dict:
        return {"event": self.name, "data": self.payload()}


@dataclass(frozen=True)
class OnlineUsersEvent(ServerEvent):
    """
    Sent to a single connection right after it connects: everyone online now.
    """

    name: ClassVar[str] = "onlineUsers"
    user_ids: Tuple[str, ...]

    @classmethod
    def of(cls, user_ids: Iterable[str]) -> "OnlineUsersEvent":
        return cls(tuple(sorted(user_ids)))

    def payload(self) -> Any:
        return {"userIds": list(self.user_ids)}


@dataclass(frozen=True)
class UserOnlineEvent(ServerEvent):
    """
    broadcasted when a user opens their first connection
    """

    name: ClassVar[str] = "userOnline"
    user_id: str

    def payload(self) -> Any:
        return {"userId": self.user_id}


@dataclass(frozen=True)
class UserOfflineEvent(ServerEvent):
    """
    broadcasted when a user's last connection drops
    """

    name: ClassVar[str] = "userOffline"
    user_id: str

    def payload(self) -> Any:
        return {"userId": self.user_id}


def _message_payload(message: Message, sender_profile: Optional[dict]) -> dict:
    data = message.to_dict()
    if sender_profile is not None:
        data["senderProfile"] = sender_profile
    return data


@dataclass(frozen=True)
class NewMessageEvent(ServerEvent):
    """
    Pushed to every connection of each recipient of a message
    """

    name: ClassVar[str] = "newMessage"
    message: Message
    sender_profile: Optional[dict] = None

    def payload(self) -> Any:
        return {
            "conversationId": self.message.conversation_id,
            "message": _message_payload(self.message, self.sender_profile),
        }


@dataclass(frozen=True)
class MessageSentEvent(ServerEvent):
    """
    Echo to all of the sender's connections so other tabs show the message too
    """

    name: ClassVar[str] = "messageSent"
    message: Message
    sender_profile: Optional[dict] = None

    def payload(self) -> Any:
        return {
            "conversationId": self.message.conversation_id,
            "message": _message_payload(self.message, self.sender_profile),
        }


@dataclass(frozen=True)
class MessagesReadEvent(ServerEvent):
    """
    Read receipt: read_by has read everything the other side sent in the conversation
    """

    name: ClassVar[str] = "messagesRead"
    conversation_id: str
    read_by: str

    def payload(self) -> Any:
        return {"conversationId": self.conversation_id, "readBy": self.read_by}


@dataclass(frozen=True)
class UserTypingEvent(ServerEvent):
    name: ClassVar[str] = "userTyping"
    conversation_id: str
    user_id: str
    is_typing: bool

    def payload(self) -> Any:
        return {
            "conversationId": self.conversation_id,
            "userId": self.user_id,
            "isTyping": self.is_typing,
        }


@dataclass(frozen=True)
class AckEvent(ServerEvent):
    """
    Reply to a client request carrying a correlation ``ref``.
    """

    name: ClassVar[str] = "ack"
    ref: str
    ok: bool
    data: Any = None
    error: Optional[dict] = None

    def payload(self) -> Any:
        return self.data

    def envelope(self) -> dict:
        frame = {"event": self.name, "ref": self.ref, "ok": self.ok}
        if self.ok:
            frame["data"] = self.data
        else:
            frame["error"] = self.error
        return frame
