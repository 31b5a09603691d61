"""Data models for active room sessions and the messages they carry.

Session records are plain dataclasses: they hold live, non-serialisable
resources (a reactive unread marker, a render handle) and are mutated in
place by the registry and the reconciler. Messages and stream notices are
pydantic models validated at the transport boundary.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from roomdeck.reactive import ReactiveVar

# =============================================================================
# Constants
# =============================================================================

# Message type for system/command messages that never enter the local store
COMMAND_MESSAGE_TYPE = "command"

# Username assigned to server-originated private messages
SYSTEM_BOT_USERNAME = "rocket.cat"

# Presence status that removes a user from the online map
OFFLINE_STATUS = "offline"


# =============================================================================
# Messages
# =============================================================================


class MessageSender(BaseModel):
    """Author of a message.

    Attributes:
        userId: Sender's user ID (may be empty for system messages).
        username: Sender's username.
    """
    userId: str = Field(default="", description="Sender user ID")
    username: str = Field(default="", description="Sender username")


class RoomTag(BaseModel):
    """Room type/name a message was delivered through."""
    type: str
    name: str


class RoomMessage(BaseModel):
    """A message as held by the local message store.

    Unknown fields delivered by the server are preserved.

    Attributes:
        id: Unique message ID (used for idempotent upserts).
        roomId: Room this message belongs to.
        ts: Unix timestamp (seconds since epoch).
        content: Message text.
        type: Message type; ``"command"`` marks a system/command message.
        sender: Author of the message.
        pinned: Whether the message is pinned.
        threadId: Set on thread replies.
        pending: True for a locally sent message not yet confirmed.
        ignored: Sender is on the subscription's ignore list.
        private: Server-originated private message.
        tick: Redraw marker stamped when a neighbouring message is removed.
        name: Display name of the resolved room.
        room: Room type/name the message was delivered through.
    """
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message ID")
    roomId: str = Field(..., description="Room ID this message belongs to")
    ts: float = Field(default_factory=time.time, description="Timestamp in seconds since epoch")
    content: str = Field(default="", description="Message content")
    type: Optional[str] = Field(default=None, description="Message type")
    sender: MessageSender = Field(default_factory=MessageSender)
    pinned: bool = False
    threadId: Optional[str] = None
    pending: bool = False
    ignored: bool = False
    private: bool = False
    tick: Optional[float] = None
    name: Optional[str] = None
    room: Optional[RoomTag] = None

    @property
    def is_command(self) -> bool:
        return self.type == COMMAND_MESSAGE_TYPE


class DeleteNotice(BaseModel):
    """Single-delete stream notification."""
    id: str


class BulkDeleteNotice(BaseModel):
    """Bulk-delete stream notification.

    Attributes:
        roomId: Room to prune.
        beforeTs: Messages with ``ts <= beforeTs`` are removed.
        excludePinned: Spare pinned messages.
        ignoreThreads: Spare thread replies.
        users: Only remove messages from these usernames (empty = everyone).
    """
    roomId: str
    beforeTs: float
    excludePinned: bool = False
    ignoreThreads: bool = False
    users: List[str] = Field(default_factory=list)


@dataclass
class MessageFilter:
    """Store-level removal filter built from a bulk-delete notice."""
    room_id: str
    before_ts: float
    exclude_pinned: bool = False
    ignore_threads: bool = False
    usernames: List[str] = field(default_factory=list)

    @classmethod
    def from_notice(cls, notice: BulkDeleteNotice) -> "MessageFilter":
        return cls(
            room_id=notice.roomId,
            before_ts=notice.beforeTs,
            exclude_pinned=notice.excludePinned,
            ignore_threads=notice.ignoreThreads,
            usernames=list(notice.users),
        )

    def matches(self, message: RoomMessage) -> bool:
        if message.roomId != self.room_id or message.ts > self.before_ts:
            return False
        if self.exclude_pinned and message.pinned:
            return False
        if self.ignore_threads and message.threadId is not None:
            return False
        if self.usernames and message.sender.username not in self.usernames:
            return False
        return True


# =============================================================================
# Rooms, subscriptions, users
# =============================================================================


class Room(BaseModel):
    """A resolved room from the room directory."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    type: str = "c"


class Subscription(BaseModel):
    """The current user's subscription record for a room."""
    model_config = ConfigDict(extra="allow")

    roomId: str
    ignored: List[str] = Field(default_factory=list, description="Ignored user IDs")


class User(BaseModel):
    """Identity of a user (current user or presence subject)."""
    id: str = ""
    username: Optional[str] = None


class PresenceEntry(BaseModel):
    """Online status for one user."""
    id: str
    status: str
    utcOffset: Optional[float] = None


# =============================================================================
# Sessions
# =============================================================================


@dataclass
class SessionRecord:
    """Live state for one opened room.

    The key is the room-type discriminator (one character) followed by the
    room name, e.g. ``"cgeneral"`` or ``"dalice"``.
    """
    key: str
    unread_marker: ReactiveVar
    room_id: Optional[str] = None
    active: bool = False
    ready: bool = False
    stream_attached: bool = False
    last_seen_at: float = 0.0
    render_handle: Any = None

    @property
    def room_type(self) -> str:
        return self.key[:1]

    @property
    def room_name(self) -> str:
        return self.key[1:]

    def to_dict(self) -> dict:
        """Serialisable snapshot (live resources are reported as flags)."""
        return {
            "key": self.key,
            "roomType": self.room_type,
            "roomName": self.room_name,
            "roomId": self.room_id,
            "active": self.active,
            "ready": self.ready,
            "streamAttached": self.stream_attached,
            "lastSeenAt": self.last_seen_at,
            "hasRenderHandle": self.render_handle is not None,
        }
