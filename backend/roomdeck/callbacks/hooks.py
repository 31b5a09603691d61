"""Named extension hook chains.

Extensions register callbacks under a hook name with a priority. Two
ways of running a chain are offered:

    - run(): synchronous. Each callback receives the current item; a
      non-None return value replaces it. Returning None keeps the item.
    - run_async(): asynchronous transform. Callbacks may be plain or
      async functions; each result feeds the next callback. A None result
      vetoes the item and stops the chain.

Global events are a separate fan-out for platform listeners (embedding
hosts, browser bridges, ...). They do not return values.

Callback failures are logged and skipped; a misbehaving extension never
breaks the chain for the others.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from roomdeck.sessions.ports import ExtensionBus, HookRunner

logger = logging.getLogger(__name__)


class Priority:
    """Callback priorities; lower runs first."""
    HIGH = -1000
    MEDIUM = 0
    LOW = 1000


@dataclass
class _RegisteredCallback:
    callback: Callable[[Any], Any]
    priority: int
    callback_id: str
    order: int


class CallbackRegistry(HookRunner, ExtensionBus):
    """In-process hook registry implementing both hook contracts."""

    def __init__(self) -> None:
        self._hooks: Dict[str, List[_RegisteredCallback]] = {}
        self._global_listeners: Dict[str, List[Callable[[Any], Any]]] = {}
        self._counter = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add(
        self,
        hook_name: str,
        callback: Callable[[Any], Any],
        priority: int = Priority.MEDIUM,
        callback_id: Optional[str] = None,
    ) -> str:
        """Register ``callback`` for ``hook_name``.

        A callback registered again under an existing ID replaces the old one.

        Returns:
            The callback ID.
        """
        self._counter += 1
        callback_id = callback_id or f"{hook_name}-{self._counter}"
        chain = [c for c in self._hooks.get(hook_name, []) if c.callback_id != callback_id]
        chain.append(_RegisteredCallback(callback, priority, callback_id, self._counter))
        chain.sort(key=lambda c: (c.priority, c.order))
        self._hooks[hook_name] = chain
        return callback_id

    def remove(self, hook_name: str, callback_id: str) -> None:
        self._hooks[hook_name] = [
            c for c in self._hooks.get(hook_name, []) if c.callback_id != callback_id
        ]

    def on_global_event(self, name: str, listener: Callable[[Any], Any]) -> None:
        self._global_listeners.setdefault(name, []).append(listener)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(self, event_name: str, item: Any = None) -> Any:
        result = item
        for registered in list(self._hooks.get(event_name, [])):
            try:
                returned = registered.callback(result)
            except Exception:
                logger.exception(
                    "Callback %s for hook %s raised", registered.callback_id, event_name
                )
                continue
            if returned is not None:
                result = returned
        return result

    async def run_async(self, hook_name: str, item: Any) -> Any:
        result = item
        for registered in list(self._hooks.get(hook_name, [])):
            try:
                returned = registered.callback(result)
                if inspect.isawaitable(returned):
                    returned = await returned
            except Exception:
                logger.exception(
                    "Async callback %s for hook %s raised", registered.callback_id, hook_name
                )
                continue
            if returned is None:
                logger.debug("Hook %s vetoed item via %s", hook_name, registered.callback_id)
                return None
            result = returned
        return result

    def emit_global_event(self, name: str, payload: Any) -> None:
        for listener in list(self._global_listeners.get(name, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception("Global event listener for %s raised", name)
