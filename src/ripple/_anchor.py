"""Data anchor — plain Python structures that hold all reactive state.

Every Cell, Computed and Effect is a thin handle over an integer id. The
records for that id live here, in flat tables, together with an id -> metadata
table (name and kind) used by repr() and log messages.

Records are released explicitly: observers on dispose(), cells when their
handle is collected (see track_handle).
"""

import itertools
import weakref

# Cell state
values: dict[int, object] = {}
observers: dict[int, dict] = {}  # source_id -> ordered set of derivations
equality: dict[int, object] = {}  # source_id -> equals(old, new)

# Derivation state (Computed + Effect)
dependencies: dict[int, dict] = {}  # deriv_id -> ordered set of sources, in read order
states: dict[int, int] = {}  # deriv_id -> CLEAN / CHECK / DIRTY
cached_values: dict[int, object] = {}
derivation_fns: dict[int, object] = {}
cleanups: dict[int, object] = {}
disposed: dict[int, bool] = {}

# Metadata
names: dict[int, str] = {}
kinds: dict[int, str] = {}

_TABLES = (
    values, observers, equality, dependencies, states, cached_values,
    derivation_fns, cleanups, disposed, names, kinds,
)

# ID generation — itertools.count is thread-safe (C-level GIL atomic)
_id_counter = itertools.count(1)


def new_id(kind: str, name: str | None = None) -> int:
    record_id = next(_id_counter)
    kinds[record_id] = kind
    names[record_id] = name or f"{kind}#{record_id}"
    return record_id


def release(record_id: int) -> None:
    """Drop every record stored for record_id."""
    for table in _TABLES:
        table.pop(record_id, None)


def track_handle(handle: object, record_id: int) -> None:
    """Release record_id once handle is garbage collected."""
    weakref.finalize(handle, release, record_id)


def live_count() -> int:
    """Number of ids with metadata still held. Useful for leak tests."""
    return len(kinds)
