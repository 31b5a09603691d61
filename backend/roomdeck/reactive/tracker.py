"""Minimal reactive dependency tracking for a single asyncio event loop.

This module provides the building blocks the session core uses to re-run
computations when the values they read change:

    - Dependency: an explicit change token. Readers call ``depend()``,
      writers call ``changed()``.
    - ReactiveVar: a value cell wrapping a Dependency.
    - Computation: a function re-run whenever any Dependency it read during
      its last run changes.
    - Scheduler: batches invalidated computations and flushes them on the
      next loop tick (or when ``flush()`` is called explicitly).

Invalidation never re-runs a computation synchronously. A computation that
invalidates itself while running is queued and re-run later in the same
flush, so every computation observes a consistent state on each pass.

Thread Safety:
    Designed for a single event loop. It is NOT thread-safe.

Usage:
    scheduler = Scheduler()
    counter = ReactiveVar(0, scheduler=scheduler)
    comp = scheduler.autorun(lambda c: print(counter.get()))
    counter.set(1)
    scheduler.flush()  # prints 1
"""
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Generic, List, Optional, Set, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on re-runs within a single flush before we assume a cycle.
MAX_FLUSH_ITERATIONS = 1000


class Dependency:
    """A change token that computations can depend on."""

    def __init__(self, scheduler: "Scheduler") -> None:
        self._scheduler = scheduler
        self._dependents: Set["Computation"] = set()

    def depend(self) -> bool:
        """Register the current computation (if any) as a dependent.

        Returns:
            True if a computation was registered, False when called outside
            of a reactive context.
        """
        current = self._scheduler.current
        if current is None:
            return False
        if self not in current._dependencies:
            current._dependencies.add(self)
            self._dependents.add(current)
        return True

    def changed(self) -> None:
        """Invalidate every dependent computation."""
        for computation in list(self._dependents):
            computation.invalidate()

    def has_dependents(self) -> bool:
        return bool(self._dependents)

    def _forget(self, computation: "Computation") -> None:
        self._dependents.discard(computation)


class ReactiveVar(Generic[T]):
    """A value cell that invalidates readers when it is set to a new value.

    Args:
        initial: Initial value.
        scheduler: Scheduler owning the dependency.
        equals: Optional equality function. Defaults to ``==`` for plain
            scalars; containers are always treated as changed.
    """

    def __init__(
        self,
        initial: T,
        scheduler: "Scheduler",
        equals: Optional[Callable[[T, T], bool]] = None,
    ) -> None:
        self._value = initial
        self._dep = Dependency(scheduler)
        self._equals = equals or _default_equals

    def get(self) -> T:
        """Read the value, registering a dependency in reactive contexts."""
        self._dep.depend()
        return self._value

    def peek(self) -> T:
        """Read the value without registering a dependency."""
        return self._value

    def set(self, value: T) -> None:
        if self._equals(self._value, value):
            return
        self._value = value
        self._dep.changed()


def _default_equals(old: Any, new: Any) -> bool:
    if isinstance(old, (str, int, float, bool, type(None))):
        return old == new
    return False


class Computation:
    """A function re-run by its scheduler whenever its dependencies change.

    Created through ``Scheduler.autorun``; the first run happens
    synchronously at creation time.
    """

    def __init__(self, func: Callable[["Computation"], Any], scheduler: "Scheduler") -> None:
        self._func = func
        self._scheduler = scheduler
        self._dependencies: Set[Dependency] = set()
        self.invalidated = False
        self.stopped = False
        self.first_run = True
        self.run_count = 0

    def invalidate(self) -> None:
        """Mark the computation stale and queue it for the next flush."""
        if self.invalidated or self.stopped:
            return
        self.invalidated = True
        self._scheduler._enqueue(self)

    def stop(self) -> None:
        """Stop the computation; it will never run again."""
        self.stopped = True
        self._clear_dependencies()

    def _clear_dependencies(self) -> None:
        for dep in self._dependencies:
            dep._forget(self)
        self._dependencies = set()

    def _run(self) -> None:
        self._clear_dependencies()
        self.invalidated = False
        previous = self._scheduler.current
        self._scheduler.current = self
        try:
            self._func(self)
        except Exception:
            logger.exception("Computation %r raised; waiting for next invalidation", self._func)
        finally:
            self._scheduler.current = previous
            self.run_count += 1
            self.first_run = False


class Scheduler:
    """Batches invalidated computations and runs them on the next tick.

    When an asyncio loop is running, a flush is scheduled with
    ``loop.call_soon``. Without a running loop the owner drives the
    scheduler by calling ``flush()`` explicitly.
    """

    def __init__(self) -> None:
        self.current: Optional[Computation] = None
        self._pending: Deque[Computation] = deque()
        self._deferred: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()
        self._flush_scheduled = False
        self._flushing = False

    # ------------------------------------------------------------------
    # Computations
    # ------------------------------------------------------------------

    def autorun(self, func: Callable[[Computation], Any]) -> Computation:
        """Create a computation and run it once immediately."""
        computation = Computation(func, self)
        computation._run()
        return computation

    def dependency(self) -> Dependency:
        return Dependency(self)

    def reactive_var(self, initial: T, equals: Optional[Callable[[T, T], bool]] = None) -> ReactiveVar[T]:
        return ReactiveVar(initial, self, equals)

    def nonreactive(self, func: Callable[[], T]) -> T:
        """Run ``func`` without registering dependencies on the current computation."""
        previous = self.current
        self.current = None
        try:
            return func()
        finally:
            self.current = previous

    @property
    def active(self) -> bool:
        """True while inside a reactive computation."""
        return self.current is not None

    # ------------------------------------------------------------------
    # Deferred work
    # ------------------------------------------------------------------

    def defer(self, func: Callable[..., Any], *args: Any) -> None:
        """Run ``func`` after pending computations, off the caller's path."""
        self._deferred.append((func, args))
        self._request_flush()

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    @property
    def has_pending(self) -> bool:
        return bool(self._pending) or bool(self._deferred)

    def _enqueue(self, computation: Computation) -> None:
        self._pending.append(computation)
        self._request_flush()

    def _request_flush(self) -> None:
        if self._flush_scheduled or self._flushing:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the owner calls flush() explicitly.
            return
        self._flush_scheduled = True
        loop.call_soon(self._scheduled_flush)

    def _scheduled_flush(self) -> None:
        self._flush_scheduled = False
        self.flush()

    def flush(self) -> None:
        """Run all invalidated computations, then all deferred callbacks.

        Computations invalidated during the flush are run in the same
        flush. Deferred callbacks queued by computations run after every
        pending computation settled.
        """
        if self._flushing:
            return
        self._flushing = True
        # An explicit flush supersedes any flush still queued on a loop.
        self._flush_scheduled = False
        iterations = 0
        try:
            while self._pending or self._deferred:
                while self._pending:
                    iterations += 1
                    if iterations > MAX_FLUSH_ITERATIONS:
                        logger.error(
                            "Scheduler flush exceeded %d iterations; dropping %d pending computations",
                            MAX_FLUSH_ITERATIONS,
                            len(self._pending),
                        )
                        self._drop_pending()
                        break
                    computation = self._pending.popleft()
                    if computation.stopped or not computation.invalidated:
                        continue
                    computation._run()
                if self._deferred:
                    func, args = self._deferred.popleft()
                    try:
                        func(*args)
                    except Exception:
                        logger.exception("Deferred callback %r raised", func)
        finally:
            self._flushing = False

    def _drop_pending(self) -> None:
        dropped: List[Computation] = list(self._pending)
        self._pending.clear()
        for computation in dropped:
            computation.invalidated = False
