"""Exceptions raised by Ripple.

Only programming mistakes (cycles, use after dispose) propagate out of the
engine. Observer failures and storage failures are caught where they happen
and reported; aborts are signalled with AbortError.
"""

from __future__ import annotations


class RippleError(Exception):
    """Base class for every Ripple error."""


class CycleError(RippleError):
    """A derivation re-triggers or reads itself without end."""


class DisposedError(RippleError):
    """An effect was used after dispose()."""


class AbortError(RippleError):
    """Cooperative cancellation of an async operation."""

    def __init__(self, reason: object = None) -> None:
        self.reason = reason
        super().__init__("Operation aborted" if reason is None else f"Operation aborted: {reason}")


class StorageError(RippleError):
    """A storage backend failed. Reported to on_error, never raised by the bridge."""

    def __init__(self, operation: str, key: str | None, original: BaseException) -> None:
        self.operation = operation
        self.key = key
        self.original = original
        target = f" {key!r}" if key is not None else ""
        super().__init__(f"storage {operation}{target} failed: {original}")
