"""In-memory subscription store keyed by room ID."""
from typing import Dict, List, Optional

from roomdeck.sessions.ports import SubscriptionStore
from roomdeck.sessions.schemas import Subscription


class InMemorySubscriptionStore(SubscriptionStore):
    """Holds the current user's subscription records."""

    def __init__(self, subscriptions: Optional[List[Subscription]] = None) -> None:
        self._by_room: Dict[str, Subscription] = {}
        for subscription in subscriptions or []:
            self.put(subscription)

    def put(self, subscription: Subscription) -> None:
        self._by_room[subscription.roomId] = subscription

    def remove(self, room_id: str) -> None:
        self._by_room.pop(room_id, None)

    def find_by_room_id(self, room_id: str) -> Optional[Subscription]:
        return self._by_room.get(room_id)
