"""Online users map.

Holds username -> PresenceEntry in a reactive cell so that reactive
readers re-run on every change. Updates are last-write-wins in call
order; an ``offline`` status removes the user.
"""
import logging
from typing import Dict, Optional

from roomdeck.reactive import Scheduler

from .schemas import OFFLINE_STATUS, PresenceEntry, User

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Tracks which users are online."""

    def __init__(self, scheduler: Scheduler) -> None:
        self._online = scheduler.reactive_var({})

    def update_user_status(self, user: User, status: str, utc_offset: Optional[float]) -> None:
        """Record ``status`` for ``user``; ``offline`` deletes the entry."""
        if not user.username:
            logger.debug(f"[Presence] Ignoring status {status} for user without username")
            return
        online: Dict[str, PresenceEntry] = dict(self._online.peek())
        if status == OFFLINE_STATUS:
            online.pop(user.username, None)
        else:
            online[user.username] = PresenceEntry(id=user.id, status=status, utcOffset=utc_offset)
        self._online.set(online)

    def snapshot(self) -> Dict[str, PresenceEntry]:
        """Reactive copy of the online users map."""
        return dict(self._online.get())

    def get(self, username: str) -> Optional[PresenceEntry]:
        return self._online.get().get(username)

    def is_online(self, username: str) -> bool:
        return self.get(username) is not None
