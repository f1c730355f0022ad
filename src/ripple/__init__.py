"""Ripple: fine-grained reactive state for Python."""

from importlib.metadata import version as _version

__version__ = _version("ripple")

from ripple._tracking import get_pending_count, set_error_handler, untracked
from ripple.cell import Cell, cell, set_scheduler
from ripple.computed import Computed, computed
from ripple.effect import Effect, effect, watch
from ripple.action import action, batch, transaction
from ripple.state import State, state
from ripple.collection import Collection, collection
from ripple.bridge import (
    ChangeFeed,
    JsonFileBackend,
    KeyValueBackend,
    MemoryBackend,
    ReactiveStorage,
    StorageEvent,
    watch_storage,
)
from ripple.request import (
    AbortToken,
    RequestController,
    RequestOutcome,
    RequestStatus,
    Ticket,
    async_effect,
)
from ripple.persist import Persisted, persist
from ripple.errors import AbortError, CycleError, DisposedError, RippleError, StorageError

__all__ = [
    "Cell",
    "cell",
    "set_scheduler",
    "Computed",
    "computed",
    "Effect",
    "effect",
    "watch",
    "batch",
    "action",
    "transaction",
    "untracked",
    "get_pending_count",
    "set_error_handler",
    "State",
    "state",
    "Collection",
    "collection",
    "ReactiveStorage",
    "KeyValueBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "ChangeFeed",
    "StorageEvent",
    "watch_storage",
    "Persisted",
    "persist",
    "AbortToken",
    "Ticket",
    "RequestOutcome",
    "RequestStatus",
    "RequestController",
    "async_effect",
    "RippleError",
    "CycleError",
    "DisposedError",
    "AbortError",
    "StorageError",
]
