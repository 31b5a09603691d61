"""Collaborator contracts consumed by the session core.

The session core never talks to a concrete data store, transport or
renderer directly. Each collaborator is described by an abstract base
class here; production adapters and test fakes implement them.

Usage:
    from roomdeck.sessions.ports import Transport

    class WebSocketTransport(Transport):
        ...
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from roomdeck.reactive import ReactiveVar

from .schemas import MessageFilter, Room, RoomMessage, Subscription, User

# Handler invoked by the transport with the raw event payload(s).
EventHandler = Callable[..., Any]

# Stream event names scoped to a room
ROOM_MESSAGE_EVENT = "message"
DELETE_MESSAGE_EVENT = "deleteMessage"
DELETE_MESSAGE_BULK_EVENT = "deleteMessageBulk"

# Stream event names scoped to the current user
USER_MESSAGE_EVENT = "message"
SUBSCRIPTIONS_CHANGED_EVENT = "subscriptions-changed"


class RoomDirectory(ABC):
    """Resolves a room key into a room."""

    @abstractmethod
    def resolve(self, room_type: str, name: str, user: Optional[User]) -> Optional[Room]:
        """Return the room, or None if it is not (yet) known."""


class HistoryBuffer(ABC):
    """Per-room history loading state."""

    @abstractmethod
    def has_more_in_future(self, room_id: str) -> bool:
        """True while newer history still has to be backfilled."""

    @abstractmethod
    def backfill_if_empty(self, room_id: str) -> None:
        """Start loading history if nothing has been loaded for the room."""

    @abstractmethod
    def clear(self, room_id: str) -> None:
        """Drop all history state for the room."""


class MessageStore(ABC):
    """Local message store."""

    @abstractmethod
    def upsert(self, message_id: str, record: RoomMessage) -> None:
        """Insert or replace the message with the given ID."""

    @abstractmethod
    def remove_by_id(self, message_id: str) -> None:
        """Remove one message; no-op if absent."""

    @abstractmethod
    def remove_matching(self, message_filter: MessageFilter) -> int:
        """Remove every message matching the filter; return the count."""

    @abstractmethod
    def find_latest_non_pending(self, room_id: str) -> Optional[RoomMessage]:
        """Most recent confirmed message of the room."""

    @abstractmethod
    def find_neighbour(self, room_id: str, ts: float, before: bool) -> Optional[RoomMessage]:
        """Nearest message strictly before (or after) ``ts`` in the room."""

    @abstractmethod
    def update_fields(self, message_id: str, fields: dict) -> None:
        """Set fields on an existing message; no-op if absent."""

    @abstractmethod
    def set_ignored(self, room_id: str, user_ids: List[str]) -> None:
        """Reset ``ignored`` for the room, then flag non-command messages from ``user_ids``."""

    @abstractmethod
    def observe_removed(self, callback: Callable[[RoomMessage], Any]) -> None:
        """Call ``callback`` with every message removed from the store."""


class SubscriptionStore(ABC):
    """The current user's room subscriptions."""

    @abstractmethod
    def find_by_room_id(self, room_id: str) -> Optional[Subscription]:
        """Subscription record for the room, if any."""


class Transport(ABC):
    """Publish/subscribe stream plus request/reply calls."""

    @abstractmethod
    def subscribe_room_event(self, room_id: str, event_name: str, handler: EventHandler) -> None:
        """Deliver ``event_name`` events for the room to ``handler``."""

    @abstractmethod
    def unsubscribe_room_event(self, room_id: str, event_name: str, handler: EventHandler) -> None:
        """Stop delivering to ``handler``; no-op if not subscribed."""

    @abstractmethod
    def subscribe_user_event(self, event_name: str, handler: EventHandler) -> None:
        """Deliver current-user scoped events to ``handler``."""

    @abstractmethod
    def unsubscribe_user_event(self, event_name: str, handler: EventHandler) -> None:
        """Stop delivering current-user scoped events to ``handler``."""

    @abstractmethod
    async def request_missed_messages(self, room_id: str, since_ts: float) -> List[dict]:
        """Fetch messages the server holds for the room newer than ``since_ts``."""

    @property
    @abstractmethod
    def connection_status(self) -> ReactiveVar:
        """Reactive boolean: True while the transport is connected."""


class HookRunner(ABC):
    """Async transform chain applied to inbound messages."""

    @abstractmethod
    async def run_async(self, hook_name: str, item: Any) -> Any:
        """Run the chain; a result of None vetoes the item."""


class ExtensionBus(ABC):
    """Synchronous extension callbacks and platform-level events."""

    @abstractmethod
    def add(
        self,
        hook_name: str,
        callback: Callable[[Any], Any],
        priority: int = 0,
        callback_id: Optional[str] = None,
    ) -> str:
        """Register a callback for ``hook_name``; return its ID."""

    @abstractmethod
    def run(self, event_name: str, item: Any) -> Any:
        """Run the synchronous callback chain for ``event_name``."""

    @abstractmethod
    def emit_global_event(self, name: str, payload: Any) -> None:
        """Publish a platform-level event."""


class Renderer(ABC):
    """Owner of a room's visual surface."""

    @abstractmethod
    def create_handle(self, room_id: str) -> Any:
        """Create the render handle for the room."""

    @abstractmethod
    def destroy_handle(self, handle: Any) -> None:
        """Tear down a handle created by ``create_handle``."""

    def update_mention_marks(self, handle: Any) -> None:
        """Refresh mention annotations on the surface. Optional."""
        return None
