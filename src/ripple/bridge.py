"""External store bridge — a key/value resource made reactive.

ReactiveStorage wraps a non-reactive backend behind two cells: a monotonic
``version`` and a ``key_snapshot``. Reads subscribe to ``version`` only (the
stored values are not tracked individually); every mutation bumps ``version``
exactly once and refreshes ``key_snapshot`` inside one batch.

Persisted format: each entry is a JSON envelope

    {"value": <value>, "timestamp": <ms since epoch>, "expires": <ms>}

where ``expires`` is present only when a ttl (seconds) was given. Keys are
stored as ``"<namespace>:<key>"`` when a namespace is set.

Several bridges over one backend (other processes, other windows) stay in
sync through a ChangeFeed: each publishes a StorageEvent per mutation and
ignores events carrying its own origin.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from ripple._tracking import current_derivation, defer
from ripple.action import transaction
from ripple.cell import Cell, on_owner_thread
from ripple.computed import is_computing
from ripple.effect import Effect, watch
from ripple.errors import StorageError

logger = logging.getLogger("ripple.bridge")

_MISSING = object()


class KeyValueBackend(Protocol):
    """The native resource a ReactiveStorage delegates to."""

    def read_raw(self, key: str) -> str | None: ...

    def write_raw(self, key: str, value: str) -> None: ...

    def delete_raw(self, key: str) -> None: ...

    def list_raw_keys(self, prefix: str) -> list[str]: ...


class MemoryBackend:
    """Process-local backend over a plain dict."""

    def __init__(self, data: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(data or {})

    def read_raw(self, key: str) -> str | None:
        return self._data.get(key)

    def write_raw(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete_raw(self, key: str) -> None:
        self._data.pop(key, None)

    def list_raw_keys(self, prefix: str) -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class JsonFileBackend:
    """Backend persisting every entry in one JSON object on disk.

    The file is re-read on every operation so separate processes sharing it
    see each other's writes; writes go through a temp file and os.replace.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        text = self._path.read_text(encoding="utf-8")
        return json.loads(text) if text.strip() else {}

    def _dump(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)

    def read_raw(self, key: str) -> str | None:
        return self._load().get(key)

    def write_raw(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def delete_raw(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)

    def list_raw_keys(self, prefix: str) -> list[str]:
        return [k for k in self._load() if k.startswith(prefix)]


def encode_envelope(value: object, now_ms: int, ttl: float | None = None) -> str:
    data = {"value": value, "timestamp": now_ms}
    if ttl is not None:
        data["expires"] = now_ms + int(ttl * 1000)
    return json.dumps(data)


def decode_envelope(raw: str) -> dict:
    data = json.loads(raw)
    if not isinstance(data, dict) or "value" not in data:
        raise ValueError(f"not a storage envelope: {raw[:60]!r}")
    return data


@dataclass(frozen=True)
class StorageEvent:
    """One mutation of a shared backend.

    key is the full stored key, or None when a whole namespace was cleared.
    """

    key: str | None
    origin: str
    namespace: str = ""


class ChangeFeed:
    """Broadcasts StorageEvents between bridges sharing a backend."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[StorageEvent], None]] = []

    def publish(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def subscribe(self, listener: Callable[[StorageEvent], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass  # already removed

        return _unsubscribe


class ReactiveStorage:
    """Namespaced view of a KeyValueBackend that participates in tracking.

    Usage:
        prefs = ReactiveStorage(MemoryBackend(), "prefs")
        effect(lambda: render(prefs.get("theme", "light")))
        prefs.set("theme", "dark")       # effect re-runs
        prefs.set("token", "abc", ttl=60)
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: str = "",
        *,
        clock: Callable[[], float] = time.time,
        on_error: Callable[[StorageError], None] | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        if ":" in namespace:
            raise ValueError(f"namespace may not contain ':' (got {namespace!r})")
        self._backend = backend
        self._namespace = namespace
        self._prefix = f"{namespace}:" if namespace else ""
        self._clock = clock
        self._on_error = on_error
        self._origin = uuid.uuid4().hex
        label = namespace or "<root>"
        self._version = Cell(0, name=f"storage[{label}].version")
        self._key_snapshot = Cell(self._scan_keys(), name=f"storage[{label}].keys")
        self._listeners: list[Callable[[str | None], None]] = []
        self._feed = feed
        self._unsubscribe = feed.subscribe(self._on_event) if feed is not None else None

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def version(self) -> int:
        """Tracked mutation counter."""
        return self._version.get()

    @property
    def key_snapshot(self) -> tuple[str, ...]:
        """Tracked tuple of the keys present after the last mutation."""
        return self._key_snapshot.get()

    # --- Reads (track version) ---

    def get(self, key: str, default: object = None) -> object:
        value = self._read(key)
        self._version.get()
        return default if value is _MISSING else value

    def has(self, key: str) -> bool:
        value = self._read(key)
        self._version.get()
        return value is not _MISSING

    def keys(self) -> list[str]:
        self._version.get()
        return list(self._key_snapshot.peek())

    # --- Writes (bump version) ---

    def set(self, key: str, value: object, *, ttl: float | None = None) -> bool:
        """Store value, optionally expiring after ttl seconds. False on failure."""
        full_key = self._full_key(key)
        try:
            raw = encode_envelope(value, self._now_ms(), ttl)
        except (TypeError, ValueError) as exc:
            self._report("encode", key, exc)
            return False
        try:
            self._backend.write_raw(full_key, raw)
        except Exception as exc:
            self._report("set", key, exc)
            return False
        self._changed(full_key)
        return True

    def remove(self, key: str) -> bool:
        full_key = self._full_key(key)
        if not self._delete(full_key, key, "remove"):
            return False
        self._changed(full_key)
        return True

    def clear(self) -> bool:
        """Remove every key under this namespace, and nothing outside it."""
        try:
            raw_keys = self._backend.list_raw_keys(self._prefix)
        except Exception as exc:
            self._report("clear", None, exc)
            return False
        ok = True
        for raw_key in raw_keys:
            if raw_key.startswith(self._prefix):
                ok = self._delete(raw_key, raw_key[len(self._prefix):], "clear") and ok
        self._changed(None)
        return ok

    def sync(self, key: str | None = None) -> None:
        """Apply a change made to the backend by someone else.

        key is unprefixed, or None when the whole namespace may have changed.
        Listeners registered with subscribe() are called after the bump.
        """
        logger.debug("External change in %r (key=%r)", self._namespace, key)
        self._bump()
        for listener in list(self._listeners):
            listener(key)

    def subscribe(self, listener: Callable[[str | None], None]) -> Callable[[], None]:
        """Call listener(key) after each external change applied by sync().

        key is unprefixed, or None when the whole namespace changed. Returns a
        function that removes the listener.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def dispose(self) -> None:
        """Stop listening to the change feed."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # --- Internals ---

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _scan_keys(self) -> tuple[str, ...]:
        try:
            raw_keys = self._backend.list_raw_keys(self._prefix)
        except Exception as exc:
            self._report("keys", None, exc)
            return ()
        n = len(self._prefix)
        return tuple(k[n:] for k in raw_keys if k.startswith(self._prefix))

    def _read(self, key: str) -> object:
        """Decode key's entry, expiring it if past its deadline."""
        full_key = self._full_key(key)
        try:
            raw = self._backend.read_raw(full_key)
        except Exception as exc:
            self._report("get", key, exc)
            return _MISSING
        if raw is None:
            return _MISSING
        try:
            envelope = decode_envelope(raw)
        except ValueError as exc:
            self._report("decode", key, exc)
            return _MISSING
        expires = envelope.get("expires")
        if expires is not None and self._now_ms() > expires:
            logger.debug("Entry %r expired", full_key)
            if self._delete(full_key, key, "expire"):
                # The reader already sees the entry as gone; only others are notified.
                reader = current_derivation.get()
                if is_computing():
                    defer(lambda: self._changed(full_key, reader))
                else:
                    self._changed(full_key, reader)
            return _MISSING
        return envelope["value"]

    def _delete(self, full_key: str, key: str, operation: str) -> bool:
        try:
            self._backend.delete_raw(full_key)
        except Exception as exc:
            self._report(operation, key, exc)
            return False
        return True

    def _bump(self, exclude: object = None) -> None:
        on_owner_thread(lambda: self._apply_bump(exclude))

    def _apply_bump(self, exclude: object) -> None:
        with transaction():
            self._version._set_direct(self._version.peek() + 1, exclude)
            self._key_snapshot._set_direct(self._scan_keys(), exclude)

    def _changed(self, full_key: str | None, exclude: object = None) -> None:
        self._bump(exclude)
        if self._feed is not None:
            self._feed.publish(StorageEvent(full_key, self._origin, self._namespace))

    def _on_event(self, event: StorageEvent) -> None:
        if event.origin == self._origin:
            return  # our own echo
        if not self._concerns(event):
            return
        self.sync(None if event.key is None else event.key[len(self._prefix):])

    def _concerns(self, event: StorageEvent) -> bool:
        if event.key is not None:
            return event.key.startswith(self._prefix)
        return not event.namespace or not self._namespace or event.namespace == self._namespace

    def _report(self, operation: str, key: str | None, exc: BaseException) -> None:
        error = StorageError(operation, key, exc)
        error.__cause__ = exc
        logger.exception("Storage %s failed in %r for key %r", operation, self._namespace, key)
        if self._on_error is not None:
            self._on_error(error)

    def __repr__(self) -> str:
        return f"ReactiveStorage({self._namespace!r}, version={self._version.peek()})"


def watch_storage(
    storage: ReactiveStorage,
    key: str,
    callback: Callable[[object, object], None],
    *,
    immediate: bool = False,
) -> Effect:
    """Call callback(new, old) whenever the stored value of key changes."""
    return watch(
        lambda: storage.get(key),
        callback,
        immediate=immediate,
        name=f"watch_storage({storage.namespace}:{key})",
    )
