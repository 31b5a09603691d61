"""In-memory local stores (messages, subscriptions)."""
from .message_store import InMemoryMessageStore
from .subscription_store import InMemorySubscriptionStore

__all__ = ["InMemoryMessageStore", "InMemorySubscriptionStore"]
