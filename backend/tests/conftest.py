"""Shared fakes and fixtures for the session core tests."""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from roomdeck.callbacks.hooks import CallbackRegistry
from roomdeck.reactive import ReactiveVar, Scheduler
from roomdeck.sessions.ports import HistoryBuffer, Renderer, RoomDirectory, Transport
from roomdeck.sessions.manager import RoomManager
from roomdeck.sessions.schemas import Room, User
from roomdeck.store import InMemoryMessageStore, InMemorySubscriptionStore


# =============================================================================
# Fakes
# =============================================================================


class FakeTransport(Transport):
    """Records subscriptions and lets tests push events."""

    def __init__(self, scheduler: Scheduler) -> None:
        self.room_handlers: Dict[Tuple[str, str], List[Callable]] = defaultdict(list)
        self.user_handlers: Dict[str, List[Callable]] = defaultdict(list)
        self.subscribe_calls: List[Tuple[str, str]] = []
        self.missed_requests: List[Tuple[str, float]] = []
        self.missed_response: List[dict] = []
        self.missed_error: Optional[Exception] = None
        self.fail_subscribe: Optional[str] = None
        self._status = scheduler.reactive_var(True)

    def subscribe_room_event(self, room_id, event_name, handler):
        if event_name == self.fail_subscribe:
            raise ConnectionError(f"cannot subscribe {event_name}")
        self.subscribe_calls.append((room_id, event_name))
        self.room_handlers[(room_id, event_name)].append(handler)

    def unsubscribe_room_event(self, room_id, event_name, handler):
        handlers = self.room_handlers.get((room_id, event_name), [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribe_user_event(self, event_name, handler):
        self.user_handlers[event_name].append(handler)

    def unsubscribe_user_event(self, event_name, handler):
        handlers = self.user_handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def request_missed_messages(self, room_id, since_ts):
        self.missed_requests.append((room_id, since_ts))
        if self.missed_error is not None:
            raise self.missed_error
        return list(self.missed_response)

    @property
    def connection_status(self) -> ReactiveVar:
        return self._status

    # Test helpers

    def emit_room(self, room_id: str, event_name: str, *args: Any) -> None:
        for handler in list(self.room_handlers.get((room_id, event_name), [])):
            handler(*args)

    def emit_user(self, event_name: str, *args: Any) -> None:
        for handler in list(self.user_handlers.get(event_name, [])):
            handler(*args)

    def live_subscriptions(self, room_id: str) -> int:
        return sum(
            len(handlers) for (rid, _), handlers in self.room_handlers.items() if rid == room_id
        )


class FakeDirectory(RoomDirectory):
    """Resolves keys from a dict; records every lookup."""

    def __init__(self) -> None:
        self.rooms: Dict[Tuple[str, str], Room] = {}
        self.lookups: List[Tuple[str, str]] = []

    def add(self, room_type: str, name: str, room_id: Optional[str] = None) -> Room:
        room = Room(id=room_id or f"rid-{name}", name=name, type=room_type)
        self.rooms[(room_type, name)] = room
        return room

    def resolve(self, room_type, name, user):
        self.lookups.append((room_type, name))
        return self.rooms.get((room_type, name))


class FakeHistory(HistoryBuffer):
    def __init__(self) -> None:
        self.has_more: Dict[str, bool] = {}
        self.backfills: List[str] = []
        self.cleared: List[str] = []

    def has_more_in_future(self, room_id):
        return self.has_more.get(room_id, False)

    def backfill_if_empty(self, room_id):
        self.backfills.append(room_id)

    def clear(self, room_id):
        self.cleared.append(room_id)


class FakeRenderer(Renderer):
    def __init__(self) -> None:
        self.created: List[str] = []
        self.destroyed: List[Any] = []
        self.marked: List[Any] = []

    def create_handle(self, room_id):
        self.created.append(room_id)
        return {"room_id": room_id}

    def destroy_handle(self, handle):
        self.destroyed.append(handle)

    def update_mention_marks(self, handle):
        self.marked.append(handle)


class StepClock:
    """Strictly increasing clock for deterministic last-seen ordering."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


# =============================================================================
# Harness
# =============================================================================


@dataclass
class Harness:
    scheduler: Scheduler
    transport: FakeTransport
    directory: FakeDirectory
    history: FakeHistory
    renderer: FakeRenderer
    store: InMemoryMessageStore
    subscriptions: InMemorySubscriptionStore
    callbacks: CallbackRegistry
    clock: StepClock
    manager: RoomManager
    global_events: List[Tuple[str, Any]] = field(default_factory=list)

    def signals_ready(self, user: Optional[User] = None) -> None:
        """Log in and flip every upstream readiness signal."""
        self.manager.current_user.set(user or User(id="u1", username="alice"))
        self.manager.subscriptions_ready.set(True)
        self.manager.rooms_ready.set(True)
        self.manager.app_ready.set(True)
        self.scheduler.flush()

    def open_ready(self, key: str, room_id: Optional[str] = None):
        """Open ``key`` with a resolvable room and run the reconciler."""
        if (key[:1], key[1:]) not in self.directory.rooms:
            self.directory.add(key[:1], key[1:], room_id)
        handle = self.manager.open(key)
        self.scheduler.flush()
        return handle


def build_harness(max_open_rooms: Optional[int] = 5) -> Harness:
    scheduler = Scheduler()
    transport = FakeTransport(scheduler)
    directory = FakeDirectory()
    history = FakeHistory()
    renderer = FakeRenderer()
    store = InMemoryMessageStore()
    subscriptions = InMemorySubscriptionStore()
    callbacks = CallbackRegistry()
    clock = StepClock()
    manager = RoomManager(
        directory=directory,
        history=history,
        store=store,
        subscriptions=subscriptions,
        transport=transport,
        hooks=callbacks,
        bus=callbacks,
        renderer=renderer,
        max_open_rooms=max_open_rooms,
        scheduler=scheduler,
        clock=clock,
    )
    harness = Harness(
        scheduler=scheduler,
        transport=transport,
        directory=directory,
        history=history,
        renderer=renderer,
        store=store,
        subscriptions=subscriptions,
        callbacks=callbacks,
        clock=clock,
        manager=manager,
    )
    callbacks.on_global_event("new-message", lambda msg: harness.global_events.append(("new-message", msg)))
    manager.start()
    return harness


@pytest.fixture
def harness() -> Harness:
    """A started RoomManager wired to in-memory fakes (capacity 5)."""
    return build_harness()


@pytest.fixture
def ready_harness(harness: Harness) -> Harness:
    """A harness with the user logged in and every upstream signal ready."""
    harness.signals_ready()
    return harness
