"""Request versioning — race-safe async operations over reactive cells.

Every start() issues a Ticket with a monotonically increasing id and a fresh
AbortToken. A result (or error) is committed into the controller's cells only
if its ticket is still the current one and has not been aborted; anything
else is stale and dropped. Starting a new request aborts the token of the
one it supersedes.

Cancellation is cooperative: an operation polls token.aborted, calls
token.raise_if_aborted(), awaits token.wait(), or registers a callback.

async_effect() hands the same kind of token to async work started by an
effect and aborts it when the effect re-runs or is disposed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from ripple._tracking import report_error, untracked
from ripple.action import transaction
from ripple.cell import Cell
from ripple.computed import Computed
from ripple.effect import Effect, effect
from ripple.errors import AbortError

T = TypeVar("T")

logger = logging.getLogger("ripple.request")


class AbortToken:
    """Cancellation signal handed to one async attempt."""

    __slots__ = ("_aborted", "_reason", "_callbacks")

    def __init__(self) -> None:
        self._aborted = False
        self._reason: object = None
        self._callbacks: list[Callable[[object], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> object:
        return self._reason

    def abort(self, reason: object = None) -> None:
        """Signal abort and run registered callbacks. Idempotent."""
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb(reason)
            except Exception:
                logger.exception("Abort callback %r failed", cb)

    def add_callback(self, cb: Callable[[object], None]) -> Callable[[], None]:
        """Call cb(reason) on abort (immediately if already aborted).

        Returns a function that unregisters cb.
        """
        if self._aborted:
            cb(self._reason)
            return lambda: None
        self._callbacks.append(cb)

        def _remove() -> None:
            try:
                self._callbacks.remove(cb)
            except ValueError:
                pass

        return _remove

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise AbortError(self._reason)

    async def wait(self) -> object:
        """Suspend until the token is aborted; returns the reason."""
        future = asyncio.get_running_loop().create_future()

        def _resolve(reason: object) -> None:
            if not future.done():
                future.set_result(reason)

        remove = self.add_callback(_resolve)
        try:
            return await future
        finally:
            remove()

    def __repr__(self) -> str:
        return f"AbortToken(aborted={self._aborted})"


@dataclass(frozen=True)
class Ticket:
    """Identity of one async attempt."""

    id: int
    token: AbortToken


@dataclass
class RequestOutcome(Generic[T]):
    """What happened to one execute() call."""

    success: bool = False
    data: T | None = None
    error: BaseException | None = None
    stale: bool = False
    aborted: bool = False


class RequestStatus(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    ABORTED = "aborted"


class RequestController(Generic[T]):
    """One logical async slot: data/error/loading cells plus ticket bookkeeping.

    Usage:
        users = RequestController(initial=[])
        effect(lambda: render(users.data.get(), users.loading.get()))

        async def load(token):
            return await api.fetch_users()

        outcome = await users.execute(load)
        await users.refetch()
    """

    def __init__(
        self,
        initial: T | None = None,
        *,
        on_success: Callable[[T], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        on_stale: Callable[[Ticket], None] | None = None,
        name: str = "request",
    ) -> None:
        self._initial = initial
        self._on_success = on_success
        self._on_error = on_error
        self._on_stale = on_stale
        self._name = name
        self._request_id = 0
        self._current: Ticket | None = None
        self._last_fn: Callable[[AbortToken], Awaitable[T]] | None = None

        self.data: Cell[T | None] = Cell(initial, name=f"{name}.data")
        self.error: Cell[BaseException | None] = Cell(None, name=f"{name}.error")
        self.loading: Cell[bool] = Cell(False, name=f"{name}.loading")
        self.status: Cell[RequestStatus] = Cell(RequestStatus.IDLE, name=f"{name}.status")

        self.is_success = Computed(
            lambda: not self.loading.get() and self.error.get() is None and self.data.get() is not None,
            name=f"{name}.is_success",
        )
        self.is_error = Computed(
            lambda: not self.loading.get() and self.error.get() is not None,
            name=f"{name}.is_error",
        )
        self.is_idle = Computed(
            lambda: not self.loading.get() and self.data.get() is None and self.error.get() is None,
            name=f"{name}.is_idle",
        )

    @property
    def request_id(self) -> int:
        """Id of the most recently issued ticket (0 before the first start)."""
        return self._request_id

    @property
    def current(self) -> Ticket | None:
        """The pending ticket, if any."""
        return self._current

    def is_current(self, ticket: Ticket) -> bool:
        return (
            self._current is not None
            and ticket.id == self._current.id
            and not ticket.token.aborted
        )

    def start(self) -> Ticket:
        """Issue a new ticket, aborting the pending one it supersedes."""
        previous = self._current
        if previous is not None:
            previous.token.abort("superseded")
        self._request_id += 1
        ticket = Ticket(self._request_id, AbortToken())
        self._current = ticket
        with transaction():
            self.loading.set(True)
            self.error.set(None)
            self.status.set(RequestStatus.PENDING)
        return ticket

    def complete(self, ticket: Ticket, result: T) -> bool:
        """Commit result if ticket is still current. Returns whether it was."""
        if not self.is_current(ticket):
            self._discard(ticket, "result")
            return False
        self._current = None
        with transaction():
            self.data.set(result)
            self.loading.set(False)
            self.status.set(RequestStatus.RESOLVED)
        if self._on_success is not None:
            self._on_success(result)
        return True

    def fail(self, ticket: Ticket, exc: BaseException) -> bool:
        """Commit exc as the error state if ticket is still current."""
        if not self.is_current(ticket):
            self._discard(ticket, "error")
            return False
        self._current = None
        with transaction():
            self.error.set(exc)
            self.loading.set(False)
            self.status.set(RequestStatus.REJECTED)
        if self._on_error is not None:
            self._on_error(exc)
        return True

    def abort(self, reason: object = None) -> bool:
        """Abort the pending attempt. The error cell is never touched.

        request_id is unchanged; returns False if nothing was pending.
        """
        ticket = self._current
        if ticket is None:
            return False
        self._current = None
        ticket.token.abort(reason)
        with transaction():
            self.loading.set(False)
            self.status.set(RequestStatus.ABORTED)
        logger.debug("%s: aborted ticket %d", self._name, ticket.id)
        return True

    cancel = abort

    async def execute(self, fn: Callable[[AbortToken], Awaitable[T]]) -> RequestOutcome[T]:
        """Run fn(token) as the current attempt and commit its result if still current."""
        self._last_fn = fn
        ticket = self.start()
        # Reads inside fn must not attach to the effect that started this task.
        with untracked():
            try:
                result = await fn(ticket.token)
            except AbortError:
                if self._current is ticket:
                    self.abort("operation aborted")
                return RequestOutcome(aborted=True)
            except asyncio.CancelledError:
                if self._current is ticket:
                    self.abort("cancelled")
                raise
            except Exception as exc:
                if self.fail(ticket, exc):
                    return RequestOutcome(error=exc)
                return RequestOutcome(error=exc, stale=True)
        if self.complete(ticket, result):
            return RequestOutcome(success=True, data=result)
        return RequestOutcome(stale=True)

    async def refetch(self) -> RequestOutcome[T]:
        """Run the last executed function again."""
        if self._last_fn is None:
            return RequestOutcome(error=RuntimeError("No function to refetch"))
        return await self.execute(self._last_fn)

    def reset(self) -> None:
        """Abort and restore initial values. Ticket ids keep counting up."""
        self.abort("reset")
        with transaction():
            self.data.set(self._initial)
            self.error.set(None)
            self.loading.set(False)
            self.status.set(RequestStatus.IDLE)

    def _discard(self, ticket: Ticket, what: str) -> None:
        logger.debug(
            "%s: discarding stale %s of ticket %d (current %d)",
            self._name, what, ticket.id, self._request_id,
        )
        if self._on_stale is not None:
            self._on_stale(ticket)

    def __repr__(self) -> str:
        return f"RequestController({self._name}, request_id={self._request_id}, status={self.status.peek().value})"



def async_effect(
    fn: Callable[[AbortToken], Awaitable[object] | None],
    *,
    on_error: Callable[[BaseException], None] | None = None,
    name: str | None = None,
) -> Effect:
    """Effect that starts async work and aborts it when superseded.

    fn(token) is called synchronously as the effect body, so the cells it
    reads before returning are tracked. It returns an awaitable (or None),
    which is scheduled as a task on the running loop; reads made inside the
    task are not tracked. When a tracked cell changes, or the effect is
    disposed, the previous run's token is aborted. If the task resolves to a
    callable it is used as that run's cleanup.

    Errors other than AbortError go to on_error, or to the scheduler's error
    reporting when no on_error is given.

    Usage:
        query = cell("")

        def search(token):
            term = query.get()
            return fetch_results(term, token)

        stop = async_effect(search)
    """
    label = name or getattr(fn, "__name__", "async_effect")
    handle: list[Effect] = []

    def _report(exc: BaseException) -> None:
        if on_error is not None:
            on_error(exc)
        else:
            report_error(exc, handle[0] if handle else label)

    def _run() -> Callable[[], None]:
        token = AbortToken()
        cleanups: list[Callable[[], object]] = []
        work = fn(token)

        if work is not None:
            with untracked():
                task = asyncio.ensure_future(work, loop=asyncio.get_running_loop())

            def _done(task: asyncio.Future) -> None:
                if task.cancelled():
                    return
                exc = task.exception()
                if exc is not None:
                    if not isinstance(exc, AbortError):
                        _report(exc)
                    return
                result = task.result()
                if callable(result):
                    if token.aborted:
                        result()
                    else:
                        cleanups.append(result)

            task.add_done_callback(_done)

        def _cleanup() -> None:
            token.abort("effect re-run or disposed")
            while cleanups:
                cleanups.pop()()

        return _cleanup

    e = effect(_run, name=label)
    handle.append(e)
    return e
