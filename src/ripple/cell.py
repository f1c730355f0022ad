"""Cells — state that tracks its readers.

When a Cell is read inside a Computed or Effect evaluation, the dependency
is automatically registered. When the Cell changes, all dependents are
marked dirty and the scheduler re-runs the affected effects.

All state lives in _anchor — instances are thin handles holding an _id.

Thread safety: call set_scheduler() once from the main thread. After that,
any .set() from a background thread is auto-marshaled. Main-thread .set()
remains synchronous.
"""

from __future__ import annotations

import threading
from typing import Callable, Generic, TypeVar

from ripple import _anchor
from ripple._tracking import flush, propagate, track

T = TypeVar("T")

Equals = Callable[[object, object], bool]


def default_equals(old: object, new: object) -> bool:
    return old is new or old == new


# ─── Auto-marshal ────────────────────────────────────────────────────────────
_scheduler = None
_scheduler_thread = None


def set_scheduler(scheduler) -> None:
    """Set the global thread scheduler for cross-thread Cell mutations.

    Call once from the main/UI thread:
        ripple.set_scheduler(loop.call_soon_threadsafe)

    After this, any Cell.set() from a background thread is automatically
    marshaled. Main-thread mutations remain synchronous.
    """
    global _scheduler, _scheduler_thread
    _scheduler = scheduler
    _scheduler_thread = threading.current_thread()


def on_owner_thread(fn: Callable[[], None]) -> None:
    """Run fn now, or hand it to the scheduler when called off the owner thread."""
    if _scheduler is not None and threading.current_thread() != _scheduler_thread:
        _scheduler(fn)
    else:
        fn()


class Cell(Generic[T]):
    """A single reactive value with automatic dependency tracking."""

    __slots__ = ("_id", "__weakref__")

    def __init__(
        self,
        value: T,
        *,
        equals: Equals | None = None,
        name: str | None = None,
    ) -> None:
        self._id = _anchor.new_id("cell", name)
        _anchor.values[self._id] = value
        _anchor.observers[self._id] = {}
        _anchor.equality[self._id] = equals or default_equals
        _anchor.track_handle(self, self._id)

    @property
    def name(self) -> str:
        return _anchor.names[self._id]

    def get(self) -> T:
        """Read the value. If inside a derivation, registers the dependency."""
        track(self)
        return _anchor.values[self._id]

    def peek(self) -> T:
        """Read the value without registering a dependency."""
        return _anchor.values[self._id]

    def set(self, value: T) -> None:
        """Write a new value. Auto-marshals from background threads."""
        on_owner_thread(lambda v=value: self._set_direct(v))

    def update(self, fn: Callable[[T], T]) -> None:
        """Set the value to fn(current value)."""
        on_owner_thread(lambda: self._set_direct(fn(self.peek())))

    def _set_direct(self, value: T, exclude: object = None) -> None:
        """Set value and notify every observer but exclude. Runs on the scheduler thread."""
        old = _anchor.values[self._id]
        if _anchor.equality[self._id](old, value):
            return
        _anchor.values[self._id] = value
        self._notify(exclude)

    def _notify(self, exclude: object = None) -> None:
        propagate(self._id, exclude=exclude)
        flush()

    def _remove_observer(self, observer) -> None:
        """Remove an observer. Called during dependency cleanup."""
        observers = _anchor.observers.get(self._id)
        if observers is not None:
            observers.pop(observer, None)

    def __repr__(self) -> str:
        return f"Cell({_anchor.values[self._id]!r})"


def cell(value: T, *, equals: Equals | None = None, name: str | None = None) -> Cell[T]:
    """Create a Cell.

    Usage:
        count = cell(0)
        count.get()   # 0
        count.set(1)
    """
    return Cell(value, equals=equals, name=name)
