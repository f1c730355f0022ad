"""Collections — an ordered list of records held in one cell.

Every mutation stores a fresh tuple, so each operation notifies readers once
and an operation that matches nothing notifies nobody. Items are selected by
a *match*: either a predicate called with the item, or a value compared with
``==``.

Records are usually dicts. update() and toggle() build a new dict for a
mapping, use dataclasses.replace() for a dataclass instance, and set
attributes in place on anything else.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Callable, Generic, Iterable, Iterator, TypeVar, Union

from ripple.cell import Cell
from ripple.computed import Computed
from ripple.effect import Effect, effect

T = TypeVar("T")
V = TypeVar("V")

Match = Union[Callable[[T], bool], T]


def _matcher(match) -> Callable[[object], bool]:
    if callable(match):
        return match
    return lambda item: item == match


def _patch(item, changes: Mapping[str, object]):
    if isinstance(item, Mapping):
        patched = dict(item)
        patched.update(changes)
        return patched
    if dataclasses.is_dataclass(item) and not isinstance(item, type):
        return dataclasses.replace(item, **changes)
    for attr, value in changes.items():
        setattr(item, attr, value)
    return item


def _flag(item, field: str) -> bool:
    if isinstance(item, Mapping):
        return bool(item.get(field))
    return bool(getattr(item, field, False))


class Collection(Generic[T]):
    """Reactive ordered collection with match-based editing.

    Usage:
        todos = collection([{"id": 1, "title": "write", "done": False}])
        todos.add({"id": 2, "title": "test", "done": False})
        todos.toggle(lambda t: t["id"] == 1)
        todos.remove_where(lambda t: t["done"])
    """

    def __init__(self, items: Iterable[T] = (), *, name: str | None = None) -> None:
        self._name = name or "collection"
        # New tuple per mutation; identity is enough to detect a change.
        self._items: Cell[tuple[T, ...]] = Cell(
            tuple(items), equals=lambda old, new: old is new, name=f"{self._name}.items"
        )
        self._computeds: dict[str, Computed] = {}
        self._sync: Effect | None = None

    @property
    def name(self) -> str:
        return self._name

    # --- Reads (tracked) ---

    def get(self) -> tuple[T, ...]:
        return self._items.get()

    def peek(self) -> tuple[T, ...]:
        return self._items.peek()

    def to_list(self) -> list[T]:
        return list(self._items.get())

    def __len__(self) -> int:
        return len(self._items.get())

    def __iter__(self) -> Iterator[T]:
        return iter(self._items.get())

    def __getitem__(self, index: int) -> T:
        return self._items.get()[index]

    def __contains__(self, item: object) -> bool:
        return item in self._items.get()

    def __bool__(self) -> bool:
        return bool(self._items.get())

    def is_empty(self) -> bool:
        return not self._items.get()

    @property
    def first(self) -> T | None:
        items = self._items.get()
        return items[0] if items else None

    @property
    def last(self) -> T | None:
        items = self._items.get()
        return items[-1] if items else None

    def find(self, match: Match) -> T | None:
        test = _matcher(match)
        return next((item for item in self._items.get() if test(item)), None)

    def filter(self, predicate: Callable[[T], bool]) -> list[T]:
        return [item for item in self._items.get() if predicate(item)]

    def map(self, fn: Callable[[T], V]) -> list[V]:
        return [fn(item) for item in self._items.get()]

    # --- Mutations (notify once) ---

    def add(self, *items: T) -> None:
        if items:
            self._items.set(self._items.peek() + items)

    def pop(self, index: int = -1) -> T:
        items = list(self._items.peek())
        item = items.pop(index)
        self._items.set(tuple(items))
        return item

    def remove(self, match: Match) -> bool:
        """Remove the first matching item. Returns whether one was found."""
        test = _matcher(match)
        items = self._items.peek()
        for i, item in enumerate(items):
            if test(item):
                self._items.set(items[:i] + items[i + 1:])
                return True
        return False

    def remove_where(self, predicate: Callable[[T], bool]) -> int:
        """Remove every matching item. Returns how many were removed."""
        items = self._items.peek()
        kept = tuple(item for item in items if not predicate(item))
        removed = len(items) - len(kept)
        if removed:
            self._items.set(kept)
        return removed

    def update(self, match: Match, changes: Mapping[str, object]) -> bool:
        """Apply changes to the first matching item."""
        return self._edit(match, lambda item: _patch(item, changes), first_only=True) > 0

    def update_where(self, predicate: Callable[[T], bool], changes: Mapping[str, object]) -> int:
        return self._edit(predicate, lambda item: _patch(item, changes))

    def toggle(self, match: Match, field: str = "done") -> bool:
        """Flip a boolean field on the first matching item."""
        return self._edit(
            match, lambda item: _patch(item, {field: not _flag(item, field)}), first_only=True
        ) > 0

    def toggle_all(self, match: Match | None = None, field: str = "done") -> int:
        """Flip field on every matching item (all items by default)."""
        return self._edit(
            match if match is not None else (lambda item: True),
            lambda item: _patch(item, {field: not _flag(item, field)}),
        )

    def sort(self, *, key: Callable[[T], object] | None = None, reverse: bool = False) -> None:
        self._items.set(tuple(sorted(self._items.peek(), key=key, reverse=reverse)))

    def reverse(self) -> None:
        self._items.set(self._items.peek()[::-1])

    def clear(self) -> None:
        if self._items.peek():
            self._items.set(())

    def reset(self, items: Iterable[T] = ()) -> None:
        """Replace every item."""
        self._items.set(tuple(items))

    def _edit(self, match: Match, fn: Callable[[T], T], *, first_only: bool = False) -> int:
        test = _matcher(match)
        items = list(self._items.peek())
        count = 0
        for i, item in enumerate(items):
            if test(item):
                items[i] = fn(item)
                count += 1
                if first_only:
                    break
        if count:
            self._items.set(tuple(items))
        return count

    # --- Derived values ---

    def add_computed(self, key: str, fn: Callable[["Collection[T]"], V]) -> Computed[V]:
        """Attach a computed value derived from fn(collection)."""
        comp = Computed(lambda: fn(self), name=f"{self._name}.{key}")
        self._computeds[key] = comp
        return comp

    def computed(self, key: str) -> object:
        """Tracked read of a value attached with add_computed()."""
        return self._computeds[key].get()

    def filtered(self, predicate: Callable[[T], bool], *, name: str | None = None) -> "Collection[T]":
        """A collection kept equal to the items matching predicate.

        Cells read by predicate are tracked too, so changing them refilters.
        dispose() on the view stops the syncing.
        """
        view: Collection[T] = Collection(name=name or f"{self._name}.filtered")
        view._sync = effect(
            lambda: view.reset(item for item in self._items.get() if predicate(item)),
            name=f"{view.name}.sync",
        )
        return view

    def dispose(self) -> None:
        """Stop syncing (for filtered views) and disconnect computed values."""
        if self._sync is not None:
            self._sync.dispose()
            self._sync = None
        for comp in self._computeds.values():
            comp.dispose()

    def __repr__(self) -> str:
        return f"Collection({self._name}, {list(self._items.peek())!r})"


def collection(
    items: Iterable[T] = (),
    *,
    name: str | None = None,
    computed: Mapping[str, Callable[[Collection[T]], object]] | None = None,
) -> Collection[T]:
    """Create a Collection, optionally with computed values attached."""
    col: Collection[T] = Collection(items, name=name)
    for key, fn in (computed or {}).items():
        col.add_computed(key, fn)
    return col
