"""Readiness reconciler.

A single reactive computation that advances every session which is
active but not yet ready. It re-runs whenever registry membership or
activation changes, or when one of the upstream signals it reads
(rooms cache ready, app ready, current user) changes.

Each pass is idempotent. A session whose room cannot be resolved yet is
left untouched and retried on the next pass; there is no backoff and no
retry cap. A stream is attached at most once per session, guarded by
``stream_attached``, and ``ready`` never goes from True back to False
here (only ``close`` clears it).
"""
import logging
from typing import Callable, Optional

from roomdeck.reactive import Computation, ReactiveVar, Scheduler

from .ports import HistoryBuffer, RoomDirectory
from .registry import SessionRegistry
from .schemas import Room, SessionRecord

logger = logging.getLogger(__name__)


class ReadinessReconciler:
    """Drives sessions from active to ready.

    Args:
        scheduler: Reactive scheduler.
        registry: Session registry (read and advanced in place).
        directory: Room directory used to resolve room keys.
        history: History buffer, asked to backfill on resolution.
        attach: Attaches the stream feeds for a resolved session.
        rooms_ready: Upstream signal, True once the rooms cache loaded.
        app_ready: Upstream signal, True once the application finished
            its initial load.
        current_user: Reactive current user (may hold None).
    """

    def __init__(
        self,
        scheduler: Scheduler,
        registry: SessionRegistry,
        directory: RoomDirectory,
        history: HistoryBuffer,
        attach: Callable[[SessionRecord, Room], None],
        rooms_ready: ReactiveVar,
        app_ready: ReactiveVar,
        current_user: ReactiveVar,
    ) -> None:
        self._scheduler = scheduler
        self._registry = registry
        self._directory = directory
        self._history = history
        self._attach = attach
        self._rooms_ready = rooms_ready
        self._app_ready = app_ready
        self._current_user = current_user
        self.computation: Optional[Computation] = None

    def start(self) -> Computation:
        """Create the computation (runs one pass immediately)."""
        if self.computation is None or self.computation.stopped:
            self.computation = self._scheduler.autorun(self._reconcile)
        return self.computation

    def stop(self) -> None:
        if self.computation is not None:
            self.computation.stop()

    def invalidate(self) -> None:
        """Force a re-run on the next scheduler flush."""
        if self.computation is not None:
            self.computation.invalidate()

    # =========================================================================
    # Reconciliation pass
    # =========================================================================

    def _reconcile(self, computation: Computation) -> None:
        self._registry.members.depend()
        for record in self._registry.records():
            if record.active is not True or record.ready is True:
                continue
            self._advance(record)

    def _advance(self, record: SessionRecord) -> None:
        ready = self._rooms_ready.get() is True and self._app_ready.get() is True
        if not ready:
            return
        user = self._current_user.get()

        room = self._scheduler.nonreactive(
            lambda: self._directory.resolve(record.room_type, record.room_name, user)
        )
        if room is None:
            logger.debug(f"[Reconciler] Room for {record.key} not found yet; will retry")
            return

        record.room_id = room.id
        self._history.backfill_if_empty(room.id)

        if record.stream_attached is not True:
            self._attach(record, room)
            record.stream_attached = True
            logger.info(f"[Reconciler] Stream attached for {record.key} (room {room.id})")

        record.ready = True
        logger.info(f"[Reconciler] Session {record.key} ready")
        self._registry.readiness.changed()
