"""persist() — keep a State, Collection or Cell saved in a ReactiveStorage.

The target is loaded from storage once, then an effect writes it back
whenever it changes, optionally debounced. With sync=True, external changes
applied to the storage (another process, a peer bridge on the same
ChangeFeed) are written into the target; saving is suspended while that
happens so the change is not echoed back.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from ripple._tracking import untracked
from ripple.action import transaction
from ripple.bridge import ReactiveStorage
from ripple.cell import Cell, on_owner_thread
from ripple.collection import Collection
from ripple.effect import Effect, effect
from ripple.state import State

logger = logging.getLogger("ripple.persist")

_MISSING = object()


def _accessors(target) -> tuple[Callable[[], object], Callable[[object], None]]:
    """(tracked read, write) pair for a persistable target."""
    if isinstance(target, State):
        return target.fields, lambda data: target.update(dict(data))
    if isinstance(target, Collection):
        return target.to_list, target.reset
    if isinstance(target, Cell):
        return target.get, target.set
    raise TypeError(f"cannot persist a {type(target).__name__}; expected State, Collection or Cell")


class Persisted:
    """Handle returned by persist(); controls loading, saving and syncing."""

    def __init__(
        self,
        target,
        storage: ReactiveStorage,
        key: str,
        *,
        debounce: float = 0.0,
        ttl: float | None = None,
        auto_load: bool = True,
        auto_save: bool = True,
        sync: bool = False,
        on_save: Callable[[object], object] | None = None,
        on_load: Callable[[object], object] | None = None,
        on_sync: Callable[[object], None] | None = None,
        on_error: Callable[[Exception, str], None] | None = None,
    ) -> None:
        self._read, self._write = _accessors(target)
        self._storage = storage
        self._key = key
        self._debounce = debounce
        self._ttl = ttl
        self._on_save = on_save
        self._on_load = on_load
        self._on_sync = on_sync
        self._on_error = on_error

        # True while storage contents are being written into the target.
        self._applying = False
        # Last target value known to match what is stored.
        self._stored: object = _MISSING
        self._timer_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending: object = None
        self._saver: Effect | None = None
        self._unsubscribe = storage.subscribe(self._on_external) if sync else None

        if auto_load:
            self.load()
        if auto_save:
            self.start()

    @property
    def key(self) -> str:
        return self._key

    @property
    def saving(self) -> bool:
        """Whether changes are currently being saved automatically."""
        return self._saver is not None

    @property
    def pending(self) -> bool:
        """Whether a debounced save is waiting to be written."""
        return self._timer is not None

    def load(self) -> bool:
        """Write the stored value (through on_load) into the target."""
        with untracked():
            stored = self._storage.get(self._key, _MISSING)
        if stored is _MISSING:
            return False
        try:
            value = self._on_load(stored) if self._on_load is not None else stored
            self._apply(value)
        except Exception as exc:
            self._report("load", exc)
            return False
        return True

    def save(self) -> bool:
        """Write the target's current value now, replacing any pending save."""
        self._cancel_timer()
        with untracked():
            value = self._read()
        return self._store(value)

    def flush(self) -> bool:
        """Write a pending debounced save now. False when nothing is pending."""
        with self._timer_lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            value, self._pending = self._pending, None
        return self._store(value)

    def clear(self) -> bool:
        """Remove the stored value. The target keeps its current value."""
        self._stored = _MISSING
        return self._storage.remove(self._key)

    def exists(self) -> bool:
        with untracked():
            return self._storage.has(self._key)

    def start(self) -> None:
        """Save the target whenever it changes, starting now unless it is already stored."""
        if self._saver is None:
            self._saver = effect(self._save_on_change, name=f"persist({self._key})")

    def stop(self) -> None:
        """Stop saving automatically. A pending debounced save still fires."""
        if self._saver is not None:
            self._saver.dispose()
            self._saver = None

    def dispose(self) -> None:
        self.stop()
        self._cancel_timer()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # --- Internals ---

    def _save_on_change(self) -> None:
        value = self._read()
        # Loaded, synced and already-saved values are not written again.
        if value == self._stored:
            self._cancel_timer()
            return
        with untracked():
            if self._debounce > 0:
                self._schedule(value)
            else:
                self._store(value)

    def _schedule(self, value: object) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = value
            timer = threading.Timer(self._debounce, on_owner_thread, args=[self.flush])
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _cancel_timer(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
                self._pending = None

    def _store(self, value: object) -> bool:
        try:
            encoded = self._on_save(value) if self._on_save is not None else value
        except Exception as exc:
            self._report("save", exc)
            return False
        # Backend failures are reported through the storage's own on_error.
        if not self._storage.set(self._key, encoded, ttl=self._ttl):
            return False
        self._stored = value
        return True

    def _apply(self, value: object) -> None:
        self._applying = True
        try:
            with transaction():
                self._write(value)
            with untracked():
                self._stored = self._read()
        finally:
            self._applying = False

    def _on_external(self, key: str | None) -> None:
        if key is not None and key != self._key:
            return
        if self._applying:
            return
        with untracked():
            stored = self._storage.get(self._key, _MISSING)
        if stored is _MISSING:
            return
        try:
            self._apply(stored)
        except Exception as exc:
            self._report("sync", exc)
            return
        logger.debug("Synced %r from external change", self._key)
        if self._on_sync is not None:
            self._on_sync(stored)

    def _report(self, operation: str, exc: Exception) -> None:
        logger.exception("persist %s failed for %r", operation, self._key)
        if self._on_error is not None:
            self._on_error(exc, operation)

    def __repr__(self) -> str:
        state = "saving" if self.saving else "stopped"
        return f"Persisted({self._key!r}, {state})"


def persist(target, storage: ReactiveStorage, key: str, **options) -> Persisted:
    """Load target from storage[key] and save it back whenever it changes.

    target is a State, Collection or Cell. Options: debounce (seconds), ttl
    (seconds), auto_load, auto_save, sync, and the hooks on_save(value) ->
    value, on_load(value) -> value, on_sync(value) and on_error(exc, operation).

    Usage:
        prefs = state(theme="light", font_size=12)
        storage = ReactiveStorage(JsonFileBackend("prefs.json"), "app")
        saved = persist(prefs, storage, "prefs", debounce=0.5)
        ...
        saved.flush()
    """
    return Persisted(target, storage, key, **options)
