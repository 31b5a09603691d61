"""Reconnect/resync manager.

Watches the transport's connectivity signal. On every transition from
disconnected to connected, each active session with a resolved room asks
the server for the messages it missed since its latest confirmed local
message, and replays them through the same hook chain and merge path as
live messages.

A room without any local message is skipped; there is nothing to resync
against. Request failures are logged and not retried: the next
reconnect transition is the retry point.
"""
import logging
from typing import List, Optional

from pydantic import ValidationError

from roomdeck.reactive import Computation, Scheduler

from .multiplexer import ON_CLIENT_MESSAGE_RECEIVED, MessageStreamMultiplexer, to_message
from .ports import HookRunner, MessageStore, Transport
from .registry import SessionRegistry
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class ResyncManager:
    """Replays missed messages for open rooms after a reconnect."""

    def __init__(
        self,
        scheduler: Scheduler,
        registry: SessionRegistry,
        transport: Transport,
        hooks: HookRunner,
        store: MessageStore,
        multiplexer: MessageStreamMultiplexer,
        tasks: BackgroundTasks,
    ) -> None:
        self._scheduler = scheduler
        self._registry = registry
        self._transport = transport
        self._hooks = hooks
        self._store = store
        self._multiplexer = multiplexer
        self._tasks = tasks
        self._was_online = True
        self.computation: Optional[Computation] = None

    def start(self) -> Computation:
        if self.computation is None or self.computation.stopped:
            self.computation = self._scheduler.autorun(self._watch)
        return self.computation

    def stop(self) -> None:
        if self.computation is not None:
            self.computation.stop()

    def _watch(self, computation: Computation) -> None:
        connected = self._transport.connection_status.get() is True
        reconnected = connected and not self._was_online
        self._was_online = connected
        if not reconnected:
            return
        room_ids = [
            record.room_id
            for record in self._registry.records()
            if record.active and record.room_id is not None
        ]
        logger.info(f"[Resync] Reconnected; resyncing {len(set(room_ids))} rooms")
        for room_id in dict.fromkeys(room_ids):
            try:
                self._scheduler.nonreactive(lambda rid=room_id: self.load_missed_messages(rid))
            except RuntimeError as exc:
                logger.warning(f"[Resync] Cannot resync room {room_id}: {exc}")

    def load_missed_messages(self, room_id: str) -> None:
        """Schedule a missed-message request for ``room_id``.

        Raises:
            RuntimeError: If no event loop is running to carry the request.
        """
        last = self._store.find_latest_non_pending(room_id)
        if last is None:
            logger.debug(f"[Resync] No local messages for room {room_id}; skipping")
            return
        self._tasks.spawn(self._replay(room_id, last.ts))

    async def _replay(self, room_id: str, since_ts: float) -> None:
        try:
            missed: List[dict] = await self._transport.request_missed_messages(room_id, since_ts)
        except Exception as exc:
            logger.warning(f"[Resync] Missed-message request failed for room {room_id}: {exc}")
            return
        if not missed:
            return

        merged = 0
        for item in missed:
            try:
                transformed = await self._hooks.run_async(ON_CLIENT_MESSAGE_RECEIVED, to_message(item))
                if transformed is None:
                    continue
                message = to_message(transformed)
            except ValidationError as exc:
                logger.warning(f"[Resync] Skipping malformed missed message for room {room_id}: {exc}")
                continue
            if not self._multiplexer.merge_replayed(room_id, message):
                logger.debug(f"[Resync] Room {room_id} closed during resync; dropping the rest")
                return
            merged += 1
        logger.info(f"[Resync] Merged {merged} missed messages into room {room_id}")
