"""Computed values — derived state with automatic dependency tracking.

A Computed wraps a function. When evaluated, it tracks which cells the
function reads and caches the result. When any dependency changes, the
cached value is invalidated. On next read, it re-evaluates.

Computed values are lazy — they only recompute when read. A recomputation
that produces an equal value stops propagation: observers that were only
told "maybe stale" go back to clean without running.

All state lives in _anchor — instances are thin handles holding an _id.
"""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

from ripple import _anchor
from ripple._tracking import (
    CHECK,
    CLEAN,
    DIRTY,
    begin_run,
    current_derivation,
    end_run,
    flush,
    propagate,
    track,
)
from ripple.cell import Equals, default_equals
from ripple.errors import CycleError

T = TypeVar("T")

_UNSET = object()

# Ids of computeds whose function is executing, innermost last.
_evaluating: list[int] = []


def is_computing() -> bool:
    """True while any computed function is executing."""
    return bool(_evaluating)


class Computed(Generic[T]):
    """A derived value that auto-tracks dependencies and caches the result."""

    __slots__ = ("_id", "__weakref__")

    def __init__(
        self,
        fn: Callable[[], T],
        *,
        equals: Equals | None = None,
        name: str | None = None,
    ) -> None:
        self._id = _anchor.new_id("computed", name or getattr(fn, "__name__", None))
        _anchor.derivation_fns[self._id] = fn
        _anchor.cached_values[self._id] = _UNSET
        _anchor.states[self._id] = DIRTY
        _anchor.dependencies[self._id] = {}
        _anchor.observers[self._id] = {}
        _anchor.equality[self._id] = equals or default_equals
        _anchor.disposed[self._id] = False
        _anchor.track_handle(self, self._id)

    @property
    def name(self) -> str:
        return _anchor.names[self._id]

    @property
    def _fn(self) -> Callable[[], T]:
        return _anchor.derivation_fns[self._id]

    @property
    def dependencies(self) -> list:
        """Sources read during the last evaluation, in read order."""
        return list(_anchor.dependencies[self._id])

    def get(self) -> T:
        """Read the computed value. Recomputes if dirty."""
        if self._id in _evaluating:
            chain = " -> ".join(_anchor.names[i] for i in _evaluating)
            raise CycleError(f"Circular dependency: {chain} -> {self.name}")
        # Refresh before subscribing so our own recompute never marks the reader.
        self._update_if_necessary()
        track(self)
        # Writes made while computing were only queued.
        flush()
        return _anchor.cached_values[self._id]

    def peek(self) -> T:
        """Read the value without registering a dependency."""
        self._update_if_necessary()
        flush()
        return _anchor.cached_values[self._id]

    def _add_dependency(self, source) -> None:
        _anchor.dependencies[self._id][source] = None
        _anchor.observers[source._id][self] = None

    def _update_if_necessary(self) -> None:
        """Bring the cached value up to date.

        CHECK means an upstream computed may have changed: refresh those in
        read order and stop as soon as one of them upgrades us to DIRTY.
        """
        if _anchor.states[self._id] == CHECK:
            for dep in list(_anchor.dependencies[self._id]):
                if isinstance(dep, Computed):
                    dep._update_if_necessary()
                    if _anchor.states[self._id] == DIRTY:
                        break
        if _anchor.states[self._id] == DIRTY:
            self._recompute()
        _anchor.states[self._id] = CLEAN

    def _recompute(self) -> None:
        """Re-evaluate the function, tracking dependencies."""
        for dep in _anchor.dependencies[self._id]:
            dep._remove_observer(self)
        _anchor.dependencies[self._id].clear()

        old = _anchor.cached_values[self._id]
        _evaluating.append(self._id)
        token = current_derivation.set(self)
        begin_run()
        try:
            value = self._fn()
        finally:
            end_run()
            current_derivation.reset(token)
            _evaluating.pop()

        _anchor.cached_values[self._id] = value
        _anchor.states[self._id] = CLEAN
        if old is _UNSET or not _anchor.equality[self._id](old, value):
            propagate(self._id, DIRTY)

    def _mark(self, state: int) -> None:
        """Called when a dependency changed.

        We don't recompute eagerly — that happens on next .get(). Our own
        observers only learn that we *may* have changed.
        """
        if self._id in _evaluating:
            raise CycleError(f"{self.name} wrote to a cell it depends on while computing")
        current = _anchor.states[self._id]
        if state > current:
            _anchor.states[self._id] = state
            if current == CLEAN:
                propagate(self._id, CHECK)

    def _remove_observer(self, observer) -> None:
        _anchor.observers[self._id].pop(observer, None)

    def dispose(self) -> None:
        """Disconnect from all dependencies. The computed becomes inert."""
        for dep in _anchor.dependencies[self._id]:
            dep._remove_observer(self)
        _anchor.dependencies[self._id].clear()
        _anchor.observers[self._id].clear()
        _anchor.states[self._id] = DIRTY
        _anchor.cached_values[self._id] = _UNSET

    def __repr__(self) -> str:
        state = _anchor.states[self._id]
        val = _anchor.cached_values[self._id]
        shown = "dirty" if state != CLEAN or val is _UNSET else f"cached={val!r}"
        return f"Computed({self.name}, {shown})"


def computed(
    fn: Callable[[], T] | None = None,
    *,
    equals: Equals | None = None,
    name: str | None = None,
):
    """Decorator/factory to create a Computed from a function.

    Usage:
        counter = cell(0)

        @computed
        def doubled():
            return counter.get() * 2

        doubled.get()  # 0
        counter.set(5)
        doubled.get()  # 10

        parity = computed(lambda: counter.get() % 2, name="parity")
    """
    if fn is None:
        return lambda f: Computed(f, equals=equals, name=name)
    return Computed(fn, equals=equals, name=name)
