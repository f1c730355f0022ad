"""Dependency tracking engine — the heart of Ripple.

Uses contextvars to track which cells are read during a computed/effect
evaluation, building the dependency graph automatically.

Derivations move through three states. A cell write marks its direct
observers DIRTY; a computed that goes stale marks its own observers CHECK
("maybe stale"). Effects leaving CLEAN are queued and the queue is drained
synchronously once nothing is batching, running or already flushing.

Batching: mutations inside batch(), an @action or `with transaction()` only
queue effects; the outermost scope drains the queue once, so observers never
see a half-applied update.
"""

from __future__ import annotations

import contextvars
import logging
from collections import deque
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, TypeVar

from ripple import _anchor
from ripple.errors import CycleError

if TYPE_CHECKING:
    from ripple.computed import Computed
    from ripple.effect import Effect

    Derivation = Computed | Effect

T = TypeVar("T")

logger = logging.getLogger("ripple.scheduler")

CLEAN = 0
CHECK = 1
DIRTY = 2

# An effect popped more often than this within one flush is re-triggering itself.
MAX_RERUNS = 100

# The currently-evaluating derivation (computed or effect).
# When set, any Cell.get() call registers itself as a dependency.
current_derivation: contextvars.ContextVar[Derivation | None] = contextvars.ContextVar(
    "current_derivation", default=None
)

ErrorHandler = Callable[[BaseException, object], None]

_error_handler: ErrorHandler | None = None


class _Transaction:
    """Batch depth, the effect queue, and whether a flush is draining it."""

    __slots__ = ("depth", "queue", "deferred", "flushing", "running")

    def __init__(self) -> None:
        self.depth = 0
        self.queue: deque = deque()
        # Writes postponed until no derivation body is executing.
        self.deferred: deque = deque()
        self.flushing = False
        # Nesting count of derivation bodies currently executing.
        self.running = 0


_txn = _Transaction()


def begin_batch() -> None:
    """Enter a batching scope. Nested batches are supported."""
    _txn.depth += 1


def end_batch() -> None:
    """Exit a batching scope. When the outermost scope exits, flush pending effects."""
    _txn.depth -= 1
    if _txn.depth == 0:
        flush()


def begin_run() -> None:
    _txn.running += 1


def end_run() -> None:
    _txn.running -= 1


def track(source) -> None:
    """Register source as a dependency of the current derivation, if any."""
    derivation = current_derivation.get()
    if derivation is not None:
        derivation._add_dependency(source)


def propagate(source_id: int, state: int = DIRTY, exclude: object = None) -> None:
    """Mark every observer of source_id with state, except exclude."""
    for observer in list(_anchor.observers.get(source_id, ())):
        if observer is not exclude:
            observer._mark(state)


def enqueue(effect: Effect) -> None:
    _txn.queue.append(effect)


def defer(fn: Callable[[], None]) -> None:
    """Run fn now, or once the executing derivation bodies have returned.

    For bookkeeping writes triggered by a read (e.g. an expired storage
    entry): performing them inside a computed would look like the computed
    writing its own dependency.
    """
    if _txn.running > 0:
        _txn.deferred.append(fn)
    else:
        fn()


def flush() -> None:
    """Run queued effects until the queue is empty.

    No-op while batching, while a derivation body is executing, or while a
    flush further up the stack is already draining. Effects queued during the
    flush are appended to the same queue.
    """
    if _txn.flushing or _txn.depth > 0 or _txn.running > 0:
        return
    _txn.flushing = True
    runs: dict[Effect, int] = {}
    try:
        while _txn.queue or _txn.deferred:
            if _txn.deferred:
                _txn.deferred.popleft()()
                continue
            effect = _txn.queue.popleft()
            count = runs.get(effect, 0) + 1
            runs[effect] = count
            if count > MAX_RERUNS:
                raise CycleError(
                    f"{effect!r} re-triggered itself more than {MAX_RERUNS} times "
                    "in one flush; it probably writes a cell it also reads"
                )
            try:
                effect._update()
            except CycleError:
                raise
            except Exception as exc:
                report_error(exc, effect)
    except CycleError:
        _drop_queue()
        raise
    finally:
        _txn.flushing = False


def _drop_queue() -> None:
    while _txn.queue:
        _txn.queue.popleft()._settle()


def report_error(exc: BaseException, source: object) -> None:
    """Log an error raised by an observer and hand it to the error handler."""
    logger.error("Error while running %r", source, exc_info=exc)
    if _error_handler is not None:
        _error_handler(exc, source)


def set_error_handler(handler: ErrorHandler | None) -> None:
    """Install a callback receiving (exception, observer) for observer failures.

    Failures are always logged on the "ripple.scheduler" logger; the handler
    is called in addition. Pass None to remove it.
    """
    global _error_handler
    _error_handler = handler


@contextmanager
def _untracked_scope() -> Iterator[None]:
    token = current_derivation.set(None)
    try:
        yield
    finally:
        current_derivation.reset(token)


def untracked(fn: Callable[[], T] | None = None):
    """Read cells without registering dependencies.

    Usage:
        value = untracked(lambda: counter.get())

        with untracked():
            log(counter.get())
    """
    if fn is None:
        return _untracked_scope()
    with _untracked_scope():
        return fn()


def get_pending_count() -> int:
    """Number of effects waiting to run. Useful for testing."""
    return len(_txn.queue)


def reset_state() -> None:
    """Drop queued effects and scheduler state. Meant for test isolation."""
    global _error_handler
    _drop_queue()
    _txn.deferred.clear()
    _txn.depth = 0
    _txn.flushing = False
    _txn.running = 0
    _error_handler = None
