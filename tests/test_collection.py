"""Tests for Collection: match-based editing, computed values and filtered views."""

from dataclasses import dataclass

import pytest

from ripple import Cell, Collection, collection, effect, transaction


@dataclass(frozen=True)
class Todo:
    id: int
    title: str
    done: bool = False


@pytest.fixture
def todos():
    return collection(
        [
            {"id": 1, "title": "write", "done": False},
            {"id": 2, "title": "test", "done": True},
            {"id": 3, "title": "ship", "done": False},
        ],
        name="todos",
    )


def by_id(n):
    return lambda todo: todo["id"] == n


class TestReads:
    def test_basic_reads(self, todos):
        assert len(todos) == 3
        assert todos[0]["title"] == "write"
        assert todos.first["id"] == 1
        assert todos.last["id"] == 3
        assert not todos.is_empty()
        assert bool(todos)

    def test_find_by_predicate_or_value(self):
        numbers = collection([1, 2, 3])
        assert numbers.find(lambda n: n > 1) == 2
        assert numbers.find(3) == 3
        assert numbers.find(9) is None

    def test_filter_and_map(self, todos):
        assert [t["id"] for t in todos.filter(lambda t: not t["done"])] == [1, 3]
        assert todos.map(lambda t: t["title"]) == ["write", "test", "ship"]

    def test_empty(self):
        empty = collection()
        assert empty.first is None
        assert empty.last is None
        assert empty.is_empty()

    def test_repr(self):
        assert repr(collection([1], name="nums")) == "Collection(nums, [1])"


class TestMutations:
    def test_each_mutation_notifies_once(self, todos):
        log = []
        effect(lambda: log.append(len(todos)))
        todos.add({"id": 4, "title": "a"}, {"id": 5, "title": "b"})
        assert log == [3, 5]

    def test_remove_first_match(self):
        numbers = collection([1, 2, 1])
        assert numbers.remove(1) is True
        assert numbers.to_list() == [2, 1]
        assert numbers.remove(9) is False

    def test_remove_where(self, todos):
        assert todos.remove_where(lambda t: t["done"]) == 1
        assert [t["id"] for t in todos] == [1, 3]

    def test_no_match_notifies_nobody(self, todos):
        log = []
        effect(lambda: log.append(todos.to_list()))
        assert todos.remove_where(lambda t: t["id"] > 10) == 0
        assert todos.update(by_id(42), {"title": "x"}) is False
        todos.clear()
        todos.clear()
        assert len(log) == 2

    def test_update_builds_new_dict(self, todos):
        before = todos.peek()[0]
        assert todos.update(by_id(1), {"title": "rewrite"}) is True
        assert todos[0] == {"id": 1, "title": "rewrite", "done": False}
        assert before["title"] == "write"

    def test_update_where(self, todos):
        assert todos.update_where(lambda t: not t["done"], {"done": True}) == 2
        assert all(t["done"] for t in todos)

    def test_toggle(self, todos):
        assert todos.toggle(by_id(1)) is True
        assert todos.find(by_id(1))["done"] is True
        todos.toggle(by_id(1))
        assert todos.find(by_id(1))["done"] is False

    def test_toggle_custom_field(self):
        flags = collection([{"id": 1, "starred": False}])
        flags.toggle(lambda f: f["id"] == 1, field="starred")
        assert flags[0]["starred"] is True

    def test_toggle_all(self, todos):
        assert todos.toggle_all() == 3
        assert [t["done"] for t in todos] == [True, False, True]

    def test_dataclass_items_are_replaced(self):
        items = collection([Todo(1, "write")])
        original = items[0]
        items.toggle(lambda t: t.id == 1)
        assert items[0] == Todo(1, "write", done=True)
        assert original.done is False

    def test_pop_sort_reverse_reset(self):
        numbers = collection([3, 1, 2])
        assert numbers.pop() == 2
        numbers.add(5, 4)
        numbers.sort()
        assert numbers.to_list() == [1, 3, 4, 5]
        numbers.reverse()
        assert numbers.to_list() == [5, 4, 3, 1]
        numbers.reset([0])
        assert numbers.to_list() == [0]

    def test_mutations_in_transaction(self, todos):
        log = []
        effect(lambda: log.append(len(todos)))
        with transaction():
            todos.add({"id": 4, "title": "x", "done": False})
            todos.remove(by_id(1))
        assert log == [3, 3]


class TestDerived:
    def test_computed_values(self, todos):
        remaining = todos.add_computed("remaining", lambda c: len(c.filter(lambda t: not t["done"])))
        log = []
        effect(lambda: log.append(todos.computed("remaining")))
        todos.toggle(by_id(1))
        assert remaining.get() == 1
        assert log == [2, 1]

    def test_computed_passed_to_factory(self):
        numbers = collection([1, 2, 3], computed={"total": lambda c: sum(c)})
        assert numbers.computed("total") == 6
        numbers.add(4)
        assert numbers.computed("total") == 10

    def test_unchanged_computed_does_not_rerun_effect(self, todos):
        todos.add_computed("count", lambda c: len(c))
        log = []
        effect(lambda: log.append(todos.computed("count")))
        todos.update(by_id(1), {"title": "renamed"})
        assert log == [3]

    def test_filtered_view_follows_source(self, todos):
        open_items = todos.filtered(lambda t: not t["done"], name="open")
        assert [t["id"] for t in open_items] == [1, 3]
        todos.toggle(by_id(1))
        assert [t["id"] for t in open_items] == [3]
        todos.add({"id": 4, "title": "new", "done": False})
        assert [t["id"] for t in open_items] == [3, 4]
        assert open_items.name == "open"

    def test_filtered_view_tracks_predicate_inputs(self):
        numbers = collection([1, 5, 10])
        threshold = Cell(3)
        big = numbers.filtered(lambda n: n > threshold.get())
        assert big.to_list() == [5, 10]
        threshold.set(7)
        assert big.to_list() == [10]

    def test_disposed_view_stops_following(self, todos):
        view = todos.filtered(lambda t: True)
        view.dispose()
        todos.clear()
        assert len(view) == 3

    def test_collection_type(self, todos):
        assert isinstance(todos.filtered(lambda t: True), Collection)
