"""Effects — side effects triggered by cell changes.

Unlike Computed (which is lazy and only evaluates on read), an Effect
eagerly re-runs whenever its tracked dependencies change.

Two flavors:
- effect(fn): runs fn immediately, re-runs when any cell it read changes.
  If fn returns a callable, that callable is the cleanup, invoked before
  the next run and on dispose().
- watch(source, callback): tracks source, calls callback(new, old) only
  when source's value changes.

All state lives in _anchor — instances are thin handles holding an _id.
"""

from __future__ import annotations

from typing import Callable, TypeVar

from ripple import _anchor
from ripple._tracking import (
    CHECK,
    CLEAN,
    DIRTY,
    begin_run,
    current_derivation,
    end_run,
    enqueue,
    flush,
    report_error,
    untracked,
)
from ripple.errors import DisposedError

T = TypeVar("T")

_UNSET = object()


class Effect:
    """A reactive side effect that re-runs when its dependencies change.

    Calling the effect (or its dispose()) stops it and runs its cleanup.
    """

    __slots__ = ("_id", "__weakref__")

    def __init__(self, fn: Callable[[], object], *, name: str | None = None) -> None:
        self._id = _anchor.new_id("effect", name or getattr(fn, "__name__", None))
        _anchor.derivation_fns[self._id] = fn
        _anchor.dependencies[self._id] = {}
        _anchor.states[self._id] = CLEAN
        _anchor.cleanups[self._id] = None
        _anchor.disposed[self._id] = False
        _anchor.track_handle(self, self._id)

    @property
    def name(self) -> str:
        return _anchor.names[self._id]

    @property
    def disposed(self) -> bool:
        return _anchor.disposed[self._id]

    @property
    def dependencies(self) -> list:
        """Sources read during the last run, in read order."""
        return list(_anchor.dependencies.get(self._id, ()))

    def run(self) -> None:
        """Run the effect now, re-tracking its dependencies."""
        if self.disposed:
            raise DisposedError(f"{self.name} has been disposed")
        self._execute()
        flush()

    def _add_dependency(self, source) -> None:
        if self.disposed:
            return
        _anchor.dependencies[self._id][source] = None
        _anchor.observers[source._id][self] = None

    def _mark(self, state: int) -> None:
        if self.disposed:
            return
        current = _anchor.states[self._id]
        if current == CLEAN:
            enqueue(self)
        if state > current:
            _anchor.states[self._id] = state

    def _settle(self) -> None:
        if not self.disposed:
            _anchor.states[self._id] = CLEAN

    def _update(self) -> bool:
        """Scheduler entry point. Returns True if the effect body ran."""
        if self.disposed:
            return False
        if _anchor.states[self._id] == CHECK:
            try:
                for dep in list(_anchor.dependencies[self._id]):
                    refresh = getattr(dep, "_update_if_necessary", None)
                    if refresh is not None:
                        refresh()
                        if _anchor.states[self._id] == DIRTY:
                            break
            except BaseException:
                self._settle()
                raise
        if _anchor.states[self._id] == DIRTY:
            self._execute()
            return True
        self._settle()
        return False

    def _unsubscribe(self) -> None:
        deps = _anchor.dependencies[self._id]
        for dep in deps:
            dep._remove_observer(self)
        deps.clear()

    def _run_cleanup(self) -> None:
        cleanup = _anchor.cleanups[self._id]
        if cleanup is None:
            return
        _anchor.cleanups[self._id] = None
        try:
            with untracked():
                cleanup()
        except Exception as exc:
            report_error(exc, self)

    def _execute(self) -> None:
        """Re-evaluate the effect function, re-tracking dependencies."""
        self._run_cleanup()
        self._unsubscribe()
        # Writes made by the body itself re-queue us from here on.
        _anchor.states[self._id] = CLEAN

        token = current_derivation.set(self)
        begin_run()
        try:
            result = _anchor.derivation_fns[self._id]()
        finally:
            end_run()
            current_derivation.reset(token)

        if callable(result) and not self.disposed:
            _anchor.cleanups[self._id] = result

    def dispose(self) -> None:
        """Stop this effect. Disconnects from all dependencies and runs cleanup."""
        if self.disposed:
            return
        self._unsubscribe()
        self._run_cleanup()
        _anchor.disposed[self._id] = True
        _anchor.derivation_fns.pop(self._id, None)
        _anchor.dependencies.pop(self._id, None)
        _anchor.cleanups.pop(self._id, None)
        _anchor.states.pop(self._id, None)

    __call__ = dispose

    def __repr__(self) -> str:
        state = "disposed" if self.disposed else "active"
        return f"Effect({self.name}, {state})"


def effect(fn: Callable[[], object], *, name: str | None = None) -> Effect:
    """Run fn immediately, then re-run whenever any cell it reads changes.

    Returns the Effect; call it (or .dispose()) to stop.

    Usage:
        counter = cell(0)
        log = []

        stop = effect(lambda: log.append(counter.get()))
        # log == [0] — ran immediately

        counter.set(1)
        # log == [0, 1] — re-ran because counter changed

        stop()
        counter.set(2)
        # log == [0, 1] — stopped

    If the first run raises, the effect is disposed and the error propagates.
    """
    e = Effect(fn, name=name)
    try:
        e._execute()
    except BaseException:
        e.dispose()
        raise
    flush()
    return e


def watch(
    source,
    callback: Callable[[T, T | None], None],
    *,
    immediate: bool = False,
    name: str | None = None,
) -> Effect:
    """Track source; call callback(new, old) when its value changes.

    source is a Cell/Computed (anything with .get()) or a zero-argument
    function. The callback runs untracked, so cells it reads do not become
    dependencies.

    Usage:
        first = cell("Alice")
        last = cell("Smith")

        seen = []
        stop = watch(
            lambda: f"{first.get()} {last.get()}",
            lambda new, old: seen.append((new, old)),
        )
        first.set("Bob")
        # seen == [("Bob Smith", "Alice Smith")]
    """
    read = source.get if hasattr(source, "get") else source
    last = [_UNSET]

    def _watch() -> None:
        value = read()
        previous = last[0]
        last[0] = value
        if previous is _UNSET:
            if immediate:
                with untracked():
                    callback(value, None)
            return
        if previous is not value and previous != value:
            with untracked():
                callback(value, previous)

    label = getattr(source, "name", None) or getattr(source, "__name__", "source")
    return effect(_watch, name=name or f"watch({label})")
