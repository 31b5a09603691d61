"""RoomManager: the facade over the active room session core.

This module wires the session registry, readiness reconciler, stream
multiplexer, resync manager and presence tracker around one reactive
scheduler, and adds the client-level behaviours built on top of them:

Key features:
    - Bounded set of open rooms with LRU eviction once a session is ready
    - Reactive readiness pipeline (wait for upstream data, resolve room,
      attach stream)
    - Live message, delete and bulk-delete feeds per open room
    - Missed-message replay after a reconnect
    - Online users map
    - Lazily created render handles and deferred mention-marker updates
    - Private server messages and ignore flags on the user-scoped feed
    - Redraw ticks on the neighbours of removed messages
    - All rooms closed on first login and on logout cleanup

Thread Safety:
    This implementation is designed for a single asyncio event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Usage:
    manager = RoomManager(directory=..., history=..., store=..., ...)
    manager.start()
    manager.subscriptions_ready.set(True)
    handle = manager.open("cgeneral")
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from roomdeck.callbacks.hooks import Priority
from roomdeck.config import get_config
from roomdeck.reactive import Computation, Scheduler

from .multiplexer import MessageStreamMultiplexer, to_message
from .ports import (
    SUBSCRIPTIONS_CHANGED_EVENT,
    USER_MESSAGE_EVENT,
    ExtensionBus,
    HistoryBuffer,
    HookRunner,
    MessageStore,
    Renderer,
    RoomDirectory,
    SubscriptionStore,
    Transport,
)
from .presence import PresenceTracker
from .reconciler import ReadinessReconciler
from .registry import SessionHandle, SessionRegistry
from .resync import ResyncManager
from .schemas import (
    SYSTEM_BOT_USERNAME,
    MessageSender,
    PresenceEntry,
    RoomMessage,
    SessionRecord,
    Subscription,
    User,
)
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# Extension hook run when the user logs out
AFTER_LOGOUT_CLEANUP_HOOK = "afterLogoutCleanUp"
LOGOUT_CLEANUP_CALLBACK_ID = "roommanager-after-logout-cleanup"


class RoomManager:
    """Manages the set of active room sessions of one client.

    Args:
        directory: Room directory.
        history: History buffer.
        store: Local message store.
        subscriptions: Subscription store.
        transport: Stream transport and request/reply calls.
        hooks: Async inbound message transform chain.
        bus: Extension callbacks and global events.
        renderer: Rendering collaborator.
        max_open_rooms: Capacity bound enforced by eviction. Read from the
            loaded settings (``get_config().max_open_rooms``) when omitted.
        scheduler: Reactive scheduler; a new one is created if omitted.
        clock: Time source for ``last_seen_at`` and redraw ticks.
    """

    def __init__(
        self,
        *,
        directory: RoomDirectory,
        history: HistoryBuffer,
        store: MessageStore,
        subscriptions: SubscriptionStore,
        transport: Transport,
        hooks: HookRunner,
        bus: ExtensionBus,
        renderer: Renderer,
        max_open_rooms: Optional[int] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_open_rooms is None:
            max_open_rooms = get_config().max_open_rooms
        self.scheduler = scheduler or Scheduler()
        self._store = store
        self._transport = transport
        self._bus = bus
        self._renderer = renderer
        self._clock = clock

        # Upstream signals, set by the embedding application.
        self.subscriptions_ready = self.scheduler.reactive_var(False)
        self.rooms_ready = self.scheduler.reactive_var(False)
        self.app_ready = self.scheduler.reactive_var(False)
        self.current_user = self.scheduler.reactive_var(None)

        self.tasks = BackgroundTasks("room-manager")
        self.multiplexer = MessageStreamMultiplexer(
            scheduler=self.scheduler,
            transport=transport,
            hooks=hooks,
            bus=bus,
            store=store,
            subscriptions=subscriptions,
            history=history,
            tasks=self.tasks,
            on_mentions=self._update_mentions_for_room_id,
        )
        self.registry = SessionRegistry(
            scheduler=self.scheduler,
            subscriptions_ready=self.subscriptions_ready,
            history=history,
            renderer=renderer,
            detach=self.multiplexer.detach,
            capacity=max_open_rooms,
            clock=clock,
        )
        self.reconciler = ReadinessReconciler(
            scheduler=self.scheduler,
            registry=self.registry,
            directory=directory,
            history=history,
            attach=self.multiplexer.attach,
            rooms_ready=self.rooms_ready,
            app_ready=self.app_ready,
            current_user=self.current_user,
        )
        self.resync = ResyncManager(
            scheduler=self.scheduler,
            registry=self.registry,
            transport=transport,
            hooks=hooks,
            store=store,
            multiplexer=self.multiplexer,
            tasks=self.tasks,
        )
        self.presence = PresenceTracker(self.scheduler)

        self._computations: List[Computation] = []
        self._current_username: Optional[str] = None
        self._user_feed_owner: Optional[str] = None
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the reactive computations and register extension hooks."""
        if self._started:
            return
        self._started = True
        self._computations = [
            self.reconciler.start(),
            self.scheduler.autorun(self._trim_on_ready),
            self.resync.start(),
            self.scheduler.autorun(self._watch_login),
            self.scheduler.autorun(self._watch_user_feeds),
        ]
        self._store.observe_removed(self._on_message_removed)
        self._bus.add(
            AFTER_LOGOUT_CLEANUP_HOOK,
            lambda _item: self.close_all_rooms(),
            Priority.MEDIUM,
            LOGOUT_CLEANUP_CALLBACK_ID,
        )
        logger.info(f"[RoomManager] Started (max_open_rooms={self.registry.capacity})")

    def stop(self) -> None:
        """Stop computations, close every room and drop user feeds."""
        for computation in self._computations:
            computation.stop()
        self._computations = []
        self.close_all_rooms()
        self._set_user_feeds(None)
        self.tasks.cancel_all()
        self._started = False
        logger.info("[RoomManager] Stopped")

    async def settle(self) -> None:
        """Flush the scheduler and wait for in-flight message work."""
        self.scheduler.flush()
        while len(self.tasks) or self.scheduler.has_pending:
            await self.tasks.drain()
            self.scheduler.flush()

    # =========================================================================
    # Session operations
    # =========================================================================

    def open(self, key: str) -> SessionHandle:
        return self.registry.open(key)

    def close(self, key: str) -> None:
        self.registry.close(key)

    def close_older_rooms(self) -> List[str]:
        return self.registry.close_older_rooms()

    def close_all_rooms(self) -> None:
        self.registry.close_all_rooms()

    @property
    def opened_rooms(self) -> Dict[str, SessionRecord]:
        return {record.key: record for record in self.registry.records()}

    def get_opened_room_by_rid(self, room_id: str) -> Optional[SessionRecord]:
        return self.registry.find_by_room_id(room_id)

    def update_user_status(self, user: User, status: str, utc_offset: Optional[float]) -> None:
        self.presence.update_user_status(user, status, utc_offset)

    @property
    def online_users(self) -> Dict[str, PresenceEntry]:
        return self.presence.snapshot()

    # =========================================================================
    # Render handles
    # =========================================================================

    def get_render_handle(self, key: str, room_id: Optional[str] = None) -> Any:
        """Return the session's render handle, creating it once a room ID is known."""
        record = self.registry.get(key)
        if record is None:
            return None
        room_id = room_id or record.room_id
        if record.render_handle is None and room_id is not None:
            record.render_handle = self._renderer.create_handle(room_id)
        return record.render_handle

    def exists_render_handle(self, key: str) -> bool:
        record = self.registry.get(key)
        return record is not None and record.render_handle is not None

    def update_mentions_marks_of_room(self, key: str) -> None:
        handle = self.get_render_handle(key)
        if handle is None:
            return
        self._renderer.update_mention_marks(handle)

    def _update_mentions_for_room_id(self, room_id: str) -> None:
        # A room's stream is shared by every session resolved to it.
        for record in self.registry.records():
            if record.room_id == room_id:
                self.update_mentions_marks_of_room(record.key)

    # =========================================================================
    # Computations
    # =========================================================================

    def _trim_on_ready(self, computation: Computation) -> None:
        # Runs after the reconciler pass that bumped readiness.
        self.registry.readiness.depend()
        if computation.first_run:
            return
        if any(record.ready for record in self.registry.records()):
            self.scheduler.nonreactive(self.registry.close_older_rooms)

    def _watch_login(self, computation: Computation) -> None:
        user = self.current_user.get()
        username = user.username if user is not None else None
        if self._current_username is None and username:
            self._current_username = username
            logger.info(f"[RoomManager] User {username} logged in; closing stale rooms")
            self.scheduler.nonreactive(self.close_all_rooms)

    def _watch_user_feeds(self, computation: Computation) -> None:
        user = self.current_user.get()
        self._set_user_feeds(user.id if user is not None and user.id else None)

    def _set_user_feeds(self, user_id: Optional[str]) -> None:
        if user_id == self._user_feed_owner:
            return
        if self._user_feed_owner is not None:
            self._transport.unsubscribe_user_event(USER_MESSAGE_EVENT, self.on_user_message)
            self._transport.unsubscribe_user_event(
                SUBSCRIPTIONS_CHANGED_EVENT, self.on_subscription_changed
            )
        self._user_feed_owner = user_id
        if user_id is not None:
            self._transport.subscribe_user_event(USER_MESSAGE_EVENT, self.on_user_message)
            self._transport.subscribe_user_event(
                SUBSCRIPTIONS_CHANGED_EVENT, self.on_subscription_changed
            )

    # =========================================================================
    # User-scoped feed handlers
    # =========================================================================

    def on_user_message(self, payload: Any) -> None:
        """Store a private server message as coming from the system bot."""
        try:
            message = to_message(payload)
        except ValidationError as exc:
            logger.warning(f"[RoomManager] Dropping malformed private message: {exc}")
            return
        message.sender = MessageSender(username=SYSTEM_BOT_USERNAME)
        message.private = True
        self._store.upsert(message.id, message)

    def on_subscription_changed(self, action: str, payload: Any) -> None:
        """Re-apply ignore flags for the subscription's room."""
        try:
            subscription = Subscription.model_validate(payload)
        except ValidationError as exc:
            logger.warning(f"[RoomManager] Dropping malformed subscription change ({action}): {exc}")
            return
        self._store.set_ignored(subscription.roomId, subscription.ignored)

    # =========================================================================
    # Store observers
    # =========================================================================

    def _on_message_removed(self, message: RoomMessage) -> None:
        if self.get_opened_room_by_rid(message.roomId) is None:
            return
        tick = self._clock()
        for before in (True, False):
            neighbour = self._store.find_neighbour(message.roomId, message.ts, before=before)
            if neighbour is not None:
                self._store.update_fields(neighbour.id, {"tick": tick})


# =============================================================================
# Singleton
# =============================================================================

_manager: Optional[RoomManager] = None


def get_room_manager() -> Optional[RoomManager]:
    """Return the global RoomManager, or None if not yet installed."""
    return _manager


def set_room_manager(manager: Optional[RoomManager]) -> None:
    """Set (or replace) the global RoomManager instance."""
    global _manager
    _manager = manager
