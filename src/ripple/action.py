"""Transactions — group cell writes so effects run once, after all of them.

Transaction is both a context manager and a decorator. Scopes nest; only
leaving the outermost one flushes queued effects, so no effect observes a
half-applied update.
"""

from __future__ import annotations

import contextlib
from typing import Callable, TypeVar

from ripple._tracking import begin_batch, end_batch

R = TypeVar("R")
F = TypeVar("F", bound=Callable[..., object])


class Transaction(contextlib.ContextDecorator):
    """One batching scope. Reusable, and safe to nest."""

    def __enter__(self) -> "Transaction":
        begin_batch()
        return self

    def __exit__(self, *exc_info) -> bool:
        # Effects flush even when the body raised; the exception still propagates.
        end_batch()
        return False


def transaction() -> Transaction:
    """Usage:
        with transaction():
            first.set("Ada")
            last.set("Lovelace")

        @transaction()
        def rename(a, b):
            ...
    """
    return Transaction()


def batch(fn: Callable[[], R]) -> R:
    """Call fn inside a transaction and return its result."""
    with Transaction():
        return fn()


def action(fn: F) -> F:
    """Decorator form of transaction() for methods and plain functions.

    Usage:
        @action
        def swap():
            x, y = a.get(), b.get()
            a.set(y)
            b.set(x)
    """
    return Transaction()(fn)
