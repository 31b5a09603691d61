"""In-memory local message store.

Messages are kept per room in insertion order; lookups by ID go through
an index. Ordering queries sort by ``ts`` on demand, which is cheap for
the few hundred messages a client keeps per open room.

Thread Safety:
    Designed for a single event loop. It is NOT thread-safe.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from roomdeck.sessions.ports import MessageStore
from roomdeck.sessions.schemas import MessageFilter, RoomMessage

logger = logging.getLogger(__name__)


class InMemoryMessageStore(MessageStore):
    """Dict-backed implementation of the MessageStore contract."""

    def __init__(self) -> None:
        # message_id -> message
        self._messages: Dict[str, RoomMessage] = {}
        # room_id -> ordered message IDs
        self._room_index: Dict[str, List[str]] = {}
        self._removed_observers: List[Callable[[RoomMessage], Any]] = []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, message_id: str, record: RoomMessage) -> None:
        existing = self._messages.get(message_id)
        if existing is not None and existing.roomId != record.roomId:
            self._room_index[existing.roomId].remove(message_id)
            existing = None
        self._messages[message_id] = record
        if existing is None:
            self._room_index.setdefault(record.roomId, []).append(message_id)

    def remove_by_id(self, message_id: str) -> None:
        message = self._messages.pop(message_id, None)
        if message is None:
            return
        self._room_index[message.roomId].remove(message_id)
        self._notify_removed(message)

    def remove_matching(self, message_filter: MessageFilter) -> int:
        doomed = [
            m for m in self.find_by_room(message_filter.room_id) if message_filter.matches(m)
        ]
        for message in doomed:
            self.remove_by_id(message.id)
        logger.debug(
            "Removed %d messages from room %s (before_ts=%s)",
            len(doomed), message_filter.room_id, message_filter.before_ts,
        )
        return len(doomed)

    def update_fields(self, message_id: str, fields: dict) -> None:
        message = self._messages.get(message_id)
        if message is None:
            return
        for name, value in fields.items():
            setattr(message, name, value)

    def set_ignored(self, room_id: str, user_ids: List[str]) -> None:
        for message in self.find_by_room(room_id):
            message.ignored = bool(
                user_ids
                and not message.is_command
                and message.sender.userId in user_ids
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, message_id: str) -> Optional[RoomMessage]:
        return self._messages.get(message_id)

    def find_by_room(self, room_id: str) -> List[RoomMessage]:
        """Messages of the room, oldest first."""
        ids = self._room_index.get(room_id, [])
        return sorted((self._messages[i] for i in ids), key=lambda m: m.ts)

    def find_latest_non_pending(self, room_id: str) -> Optional[RoomMessage]:
        confirmed = [m for m in self.find_by_room(room_id) if not m.pending]
        return confirmed[-1] if confirmed else None

    def find_neighbour(self, room_id: str, ts: float, before: bool) -> Optional[RoomMessage]:
        messages = self.find_by_room(room_id)
        if before:
            earlier = [m for m in messages if m.ts < ts]
            return earlier[-1] if earlier else None
        later = [m for m in messages if m.ts > ts]
        return later[0] if later else None

    def count(self, room_id: Optional[str] = None) -> int:
        if room_id is None:
            return len(self._messages)
        return len(self._room_index.get(room_id, []))

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def observe_removed(self, callback: Callable[[RoomMessage], Any]) -> None:
        self._removed_observers.append(callback)

    def _notify_removed(self, message: RoomMessage) -> None:
        for callback in list(self._removed_observers):
            try:
                callback(message)
            except Exception:
                logger.exception("Removed-message observer raised for %s", message.id)
