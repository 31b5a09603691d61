"""Session registry and LRU eviction.

The registry is the single owner of session records. Records are created
by ``open``, advanced by the readiness reconciler, and destroyed by
``close`` (directly or through eviction). No other component keeps a
private copy of a record.

Two change tokens are published:

    - ``members``: changes when a session is created, removed, or
      activated. The reconciler depends on it.
    - ``readiness``: the shared token behind every handle's ``ready()``
      accessor. The reconciler bumps it when a session becomes ready.

Eviction is pure LRU on ``last_seen_at``: sessions are stably sorted most
recent first, the first ``capacity`` are kept and every other session is
closed through the regular close path.
"""
import logging
import time
from typing import Callable, Dict, List, Optional

from roomdeck.config import DEFAULT_MAX_OPEN_ROOMS
from roomdeck.reactive import Dependency, ReactiveVar, Scheduler

from .ports import HistoryBuffer, Renderer
from .schemas import SessionRecord

logger = logging.getLogger(__name__)


class SessionHandle:
    """Returned by ``open``; exposes a reactive readiness accessor."""

    def __init__(self, registry: "SessionRegistry", key: str) -> None:
        self._registry = registry
        self.key = key

    def ready(self) -> bool:
        """True once the session is fully initialised.

        Reactive: computations calling this re-run whenever any session's
        readiness changes. Returns False after the session was closed.
        """
        self._registry.readiness.depend()
        record = self._registry.get(self.key)
        return bool(record and record.ready)


class SessionRegistry:
    """Maps room keys to session records and enforces the capacity bound.

    Args:
        scheduler: Reactive scheduler shared with the other components.
        subscriptions_ready: Upstream signal; sessions only activate once
            the subscription store is ready.
        history: History buffer collaborator (cleared on close).
        renderer: Rendering collaborator (handles released on close).
        detach: Tears down the stream feeds of a room ID on close.
        capacity: Maximum number of sessions kept after eviction.
        clock: Time source for ``last_seen_at``.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        subscriptions_ready: ReactiveVar,
        history: HistoryBuffer,
        renderer: Renderer,
        detach: Callable[[str], None],
        capacity: int = DEFAULT_MAX_OPEN_ROOMS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._scheduler = scheduler
        self._subscriptions_ready = subscriptions_ready
        self._history = history
        self._renderer = renderer
        self._detach = detach
        self._clock = clock
        self.capacity = capacity
        self.members: Dependency = scheduler.dependency()
        self.readiness: Dependency = scheduler.dependency()
        self._sessions: Dict[str, SessionRecord] = {}

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, key: str) -> Optional[SessionRecord]:
        return self._sessions.get(key)

    def keys(self) -> List[str]:
        return list(self._sessions.keys())

    def records(self) -> List[SessionRecord]:
        return list(self._sessions.values())

    def find_by_room_id(self, room_id: str) -> Optional[SessionRecord]:
        for record in self._sessions.values():
            if record.room_id == room_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    # =========================================================================
    # Open / close
    # =========================================================================

    def open(self, key: str) -> SessionHandle:
        """Open (or re-open) the session for ``key``.

        Creates the record if needed and bumps ``last_seen_at``. Re-opening
        a ready session runs the eviction check. Once subscriptions are
        ready the session is activated and the reconciler invalidated.
        """
        record = self._sessions.get(key)
        if record is None:
            record = SessionRecord(
                key=key,
                unread_marker=self._scheduler.reactive_var(None),
            )
            self._sessions[key] = record
            logger.info(f"[Registry] Session {key} created ({len(self._sessions)} open)")
            self.members.changed()

        record.last_seen_at = self._clock()

        if record.ready:
            self.close_older_rooms()

        if self._subscriptions_ready.get() is True and not record.active:
            record.active = True
            logger.debug(f"[Registry] Session {key} activated")
            self.members.changed()

        return SessionHandle(self, key)

    def close(self, key: str) -> None:
        """Close the session for ``key``; no-op if it is not open.

        The room's stream and history are shared by every session resolved
        to the same room ID and are only torn down with the last of them.
        """
        record = self._sessions.get(key)
        if record is None:
            return

        room_id = record.room_id
        del self._sessions[key]
        shared = room_id is not None and self.find_by_room_id(room_id) is not None

        if room_id is not None and not shared:
            self._detach(room_id)
        record.stream_attached = False

        record.ready = False
        record.active = False
        if record.render_handle is not None:
            self._renderer.destroy_handle(record.render_handle)
            record.render_handle = None

        logger.info(f"[Registry] Session {key} closed ({len(self._sessions)} open)")
        self.members.changed()
        self.readiness.changed()

        if room_id is not None and not shared:
            self._history.clear(room_id)

    def close_older_rooms(self) -> List[str]:
        """Close the least recently seen sessions beyond ``capacity``.

        Returns:
            Keys of the closed sessions.
        """
        if len(self._sessions) <= self.capacity:
            return []

        by_recency = sorted(
            self._sessions.values(), key=lambda r: r.last_seen_at, reverse=True
        )
        evicted = [record.key for record in by_recency[self.capacity:]]
        for key in evicted:
            logger.info(f"[Registry] Evicting least recently seen session {key}")
            self.close(key)
        return evicted

    def close_all_rooms(self) -> None:
        for key in self.keys():
            self.close(key)
