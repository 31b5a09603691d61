"""Extension hook chains and global events."""
from .hooks import CallbackRegistry, Priority

__all__ = ["CallbackRegistry", "Priority"]
