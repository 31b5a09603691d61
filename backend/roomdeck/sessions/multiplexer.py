"""Per-room message stream multiplexer.

For every ready session the multiplexer holds one attachment made of
three transport subscriptions scoped to the room ID:

    - message: inbound messages, run through the async
      ``onClientMessageReceived`` hook chain, then merged into the local
      store and re-emitted to extensions and platform listeners.
    - deleteMessage: removes a single message by ID.
    - deleteMessageBulk: prunes messages at or before a timestamp, with
      optional pinned/thread/sender restrictions.

Ordering rules:
    - An attachment is created at most once per room ID and before any
      message from it is processed.
    - A message is not surfaced while the room still has newer history to
      backfill, so live messages never overtake the backfill.
    - ``detach`` synchronously removes all three subscriptions and marks
      the attachment dead; messages still inside the hook chain are
      dropped when they resume.
    - Concurrently completing hook chains may finish out of order. Each
      message carries its own ``ts`` for downstream ordering.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from roomdeck.reactive import Scheduler

from .ports import (
    DELETE_MESSAGE_BULK_EVENT,
    DELETE_MESSAGE_EVENT,
    ROOM_MESSAGE_EVENT,
    EventHandler,
    ExtensionBus,
    HistoryBuffer,
    HookRunner,
    MessageStore,
    SubscriptionStore,
    Transport,
)
from .schemas import (
    BulkDeleteNotice,
    DeleteNotice,
    MessageFilter,
    Room,
    RoomMessage,
    RoomTag,
    SessionRecord,
    Subscription,
)
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# Hook and event names
ON_CLIENT_MESSAGE_RECEIVED = "onClientMessageReceived"
STREAM_MESSAGE_HOOK = "streamMessage"
NEW_MESSAGE_EVENT = "new-message"


@dataclass
class Attachment:
    """Live feed subscriptions for one room."""
    room_id: str
    session_key: str
    room_type: str
    room_name: str
    room: Room
    handlers: Dict[str, EventHandler] = field(default_factory=dict)
    alive: bool = True


def to_message(payload: Any) -> RoomMessage:
    """Coerce a transport payload into a RoomMessage.

    Raises:
        ValidationError: If the payload is not a valid message.
    """
    if isinstance(payload, RoomMessage):
        return payload
    return RoomMessage.model_validate(payload)


class MessageStreamMultiplexer:
    """Owns the per-room stream subscriptions.

    Args:
        scheduler: Reactive scheduler (used to defer mention updates).
        transport: Stream transport.
        hooks: Async inbound transform chain.
        bus: Synchronous extension callbacks and global events.
        store: Local message store.
        subscriptions: Subscription store.
        history: History buffer (checked before surfacing a message).
        tasks: Tracker for the per-message async work.
        on_mentions: Deferred callback, receives the room ID after a
            message was surfaced.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        transport: Transport,
        hooks: HookRunner,
        bus: ExtensionBus,
        store: MessageStore,
        subscriptions: SubscriptionStore,
        history: HistoryBuffer,
        tasks: BackgroundTasks,
        on_mentions: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._scheduler = scheduler
        self._transport = transport
        self._hooks = hooks
        self._bus = bus
        self._store = store
        self._subscriptions = subscriptions
        self._history = history
        self._tasks = tasks
        self._on_mentions = on_mentions
        self._attachments: Dict[str, Attachment] = {}

    # =========================================================================
    # Attach / detach
    # =========================================================================

    def is_attached(self, room_id: str) -> bool:
        return room_id in self._attachments

    def attachment_count(self) -> int:
        return len(self._attachments)

    def attach(self, record: SessionRecord, room: Room) -> Attachment:
        """Subscribe the three feeds for ``room``.

        A room that is already attached keeps its existing attachment. The
        attachment is only recorded once every feed is subscribed; if the
        transport fails midway the feeds made so far are removed again and
        the error propagates, so the next reconciler pass retries.
        """
        existing = self._attachments.get(room.id)
        if existing is not None:
            logger.info(
                f"[Multiplexer] Room {room.id} already attached for {existing.session_key}; "
                f"sharing it with {record.key}"
            )
            return existing

        attachment = Attachment(
            room_id=room.id,
            session_key=record.key,
            room_type=record.room_type,
            room_name=record.room_name,
            room=room,
        )
        attachment.handlers = {
            ROOM_MESSAGE_EVENT: lambda payload: self._on_message(attachment, payload),
            DELETE_MESSAGE_EVENT: self._on_delete,
            DELETE_MESSAGE_BULK_EVENT: self._on_delete_bulk,
        }
        subscribed: List[str] = []
        try:
            for event_name, handler in attachment.handlers.items():
                self._transport.subscribe_room_event(room.id, event_name, handler)
                subscribed.append(event_name)
        except Exception:
            logger.error(f"[Multiplexer] Subscribing room {room.id} failed after {subscribed}")
            for event_name in subscribed:
                self._transport.unsubscribe_room_event(room.id, event_name, attachment.handlers[event_name])
            raise
        self._attachments[room.id] = attachment
        return attachment

    def detach(self, room_id: str) -> None:
        """Unsubscribe every feed of ``room_id``; no-op if not attached."""
        attachment = self._attachments.pop(room_id, None)
        if attachment is None:
            return
        attachment.alive = False
        for event_name, handler in attachment.handlers.items():
            self._transport.unsubscribe_room_event(room_id, event_name, handler)
        logger.info(f"[Multiplexer] Detached room {room_id}")

    def detach_all(self) -> None:
        for room_id in list(self._attachments):
            self.detach(room_id)

    # =========================================================================
    # Inbound messages
    # =========================================================================

    def _on_message(self, attachment: Attachment, payload: Any) -> None:
        if not attachment.alive:
            return
        try:
            message = to_message(payload)
        except ValidationError as exc:
            logger.warning(f"[Multiplexer] Dropping malformed message for room {attachment.room_id}: {exc}")
            return
        self._tasks.spawn(self._process(attachment, message))

    async def _process(self, attachment: Attachment, message: RoomMessage) -> None:
        transformed = await self._hooks.run_async(ON_CLIENT_MESSAGE_RECEIVED, message)
        if transformed is None:
            return
        try:
            message = to_message(transformed)
        except ValidationError as exc:
            logger.warning(f"[Multiplexer] Hook produced an invalid message for room {attachment.room_id}: {exc}")
            return

        if not attachment.alive:
            logger.debug(f"[Multiplexer] Room {attachment.room_id} detached; dropping {message.id}")
            return

        # Live messages must not overtake the history backfill.
        if self._history.has_more_in_future(attachment.room_id):
            return

        self._store_inbound(attachment, message)
        message.name = attachment.room.name

        if self._on_mentions is not None:
            self._scheduler.defer(self._on_mentions, attachment.room_id)

        self._bus.run(STREAM_MESSAGE_HOOK, message)
        self._bus.emit_global_event(NEW_MESSAGE_EVENT, message)

    def _store_inbound(self, attachment: Attachment, message: RoomMessage) -> None:
        # Command messages are surfaced but never stored.
        if message.is_command:
            return
        message.room = RoomTag(type=attachment.room_type, name=attachment.room_name)
        subscription = self._subscriptions.find_by_room_id(attachment.room_id)
        self.merge(message, subscription)

    def merge_replayed(self, room_id: str, message: RoomMessage) -> bool:
        """Store a replayed (missed) message through the live tag-and-merge step.

        Returns:
            False if the room is no longer attached and the message was dropped.
        """
        attachment = self._attachments.get(room_id)
        if attachment is None:
            return False
        self._store_inbound(attachment, message)
        return True

    def merge(self, message: RoomMessage, subscription: Optional[Subscription]) -> None:
        """Insert or update ``message`` in the local store.

        Messages from users on the subscription's ignore list are flagged.
        """
        stored = message.model_copy(deep=True)
        if subscription is not None and stored.sender.userId in subscription.ignored:
            stored.ignored = True
        self._store.upsert(stored.id, stored)
        logger.debug(f"[Multiplexer] Merged message {stored.id} into room {stored.roomId}")

    # =========================================================================
    # Deletions
    # =========================================================================

    def _on_delete(self, payload: Any) -> None:
        try:
            notice = DeleteNotice.model_validate(payload)
        except ValidationError as exc:
            logger.warning(f"[Multiplexer] Dropping malformed delete notice: {exc}")
            return
        self._store.remove_by_id(notice.id)

    def _on_delete_bulk(self, payload: Any) -> None:
        try:
            notice = BulkDeleteNotice.model_validate(payload)
        except ValidationError as exc:
            logger.warning(f"[Multiplexer] Dropping malformed bulk delete notice: {exc}")
            return
        removed = self._store.remove_matching(MessageFilter.from_notice(notice))
        logger.info(f"[Multiplexer] Bulk delete removed {removed} messages from room {notice.roomId}")
