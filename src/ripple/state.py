"""State — a keyed reactive object with one Cell per field.

Fields are read and written through get(key)/set(key, value). Setting an
unknown key adds a field; readers of keys() or of a missing key re-run when
fields are added. Computed fields and watchers attached to the State are
disposed together with it.
"""

from __future__ import annotations

from typing import Callable

from ripple._tracking import untracked
from ripple.action import action, transaction
from ripple.cell import Cell
from ripple.computed import Computed
from ripple.effect import Effect, effect, watch


class State:
    """Key-based Cell container with computed fields and effect lifecycle."""

    def __init__(self, initial: dict[str, object] | None = None, *, name: str = "state") -> None:
        self._name = name
        self._cells: dict[str, Cell] = {}
        self._computeds: dict[str, Computed] = {}
        self._effects: list[Effect] = []
        for key, value in (initial or {}).items():
            self._cells[key] = Cell(value, name=f"{name}.{key}")
        self._fields = Cell(tuple(self._cells), name=f"{name}.<fields>")

    def get(self, key: str, default: object = None) -> object:
        """Tracked read of one field. Computed fields recompute as needed."""
        comp = self._computeds.get(key)
        if comp is not None:
            return comp.get()
        c = self._cells.get(key)
        if c is None:
            self._fields.get()
            return default
        return c.get()

    def set(self, key: str, value: object) -> None:
        if key in self._computeds:
            raise TypeError(f"{self._name}.{key} is a computed field and is read-only")
        c = self._cells.get(key)
        if c is not None:
            c.set(value)
            return
        with transaction():
            self._cells[key] = Cell(value, name=f"{self._name}.{key}")
            self._fields.set(tuple(self._cells) + tuple(self._computeds))

    @action
    def update(self, values: dict[str, object]) -> None:
        """Set several fields; effects see all of them change at once."""
        for key, value in values.items():
            self.set(key, value)

    def fields(self) -> dict[str, object]:
        """Tracked dict of the plain (non-computed) fields."""
        self._fields.get()
        return {key: c.get() for key, c in self._cells.items()}

    def keys(self) -> list[str]:
        return list(self._fields.get())

    def __contains__(self, key: str) -> bool:
        return key in self._fields.get()

    def add_computed(self, key: str, fn: Callable[["State"], object]) -> Computed:
        """Add a read-only field derived from fn(state)."""
        if key in self._cells:
            raise KeyError(f"{self._name}.{key} is already a plain field")
        comp = Computed(lambda: fn(self), name=f"{self._name}.{key}")
        self._computeds[key] = comp
        self._fields.set(tuple(self._cells) + tuple(self._computeds))
        return comp

    def watch(
        self,
        key_or_fn: str | Callable[["State"], object],
        callback: Callable[[object, object], None],
        *,
        immediate: bool = False,
    ) -> Effect:
        """Call callback(new, old) when a field (or fn(state)) changes."""
        if isinstance(key_or_fn, str):
            key = key_or_fn
            source = lambda: self.get(key)  # noqa: E731
            label = f"{self._name}.{key}"
        else:
            source = lambda: key_or_fn(self)  # noqa: E731
            label = f"{self._name}.{getattr(key_or_fn, '__name__', 'fn')}"
        w = watch(source, callback, immediate=immediate, name=f"watch({label})")
        self._effects.append(w)
        return w

    def effect(self, fn: Callable[["State"], object]) -> Effect:
        """Run fn(state) now and whenever a field it reads changes."""
        e = effect(lambda: fn(self), name=f"{self._name}.{getattr(fn, '__name__', 'effect')}")
        self._effects.append(e)
        return e

    def snapshot(self) -> dict[str, object]:
        """Plain dict of every field, read without tracking."""
        with untracked():
            data = {key: c.peek() for key, c in self._cells.items()}
            data.update({key: comp.get() for key, comp in self._computeds.items()})
        return data

    def dispose(self) -> None:
        """Stop attached effects and watchers and disconnect computed fields."""
        for e in self._effects:
            e.dispose()
        self._effects.clear()
        for comp in self._computeds.values():
            comp.dispose()

    def __repr__(self) -> str:
        return f"State({self._name}, {self.snapshot()!r})"


def state(initial: dict[str, object] | None = None, **fields: object) -> State:
    """Create a State from a dict and/or keyword fields.

    Usage:
        s = state(count=0, label="clicks")
        s.add_computed("double", lambda st: st.get("count") * 2)
        s.set("count", 2)
        s.get("double")  # 4
    """
    data = dict(initial or {})
    data.update(fields)
    return State(data)
