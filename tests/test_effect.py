"""Tests for Effect, effect, watch and untracked reads."""

import logging

import pytest

from ripple import (
    Cell,
    Computed,
    CycleError,
    DisposedError,
    Effect,
    effect,
    untracked,
    watch,
)
from ripple import _anchor


class TestEffect:
    def test_runs_immediately(self):
        c = Cell(10)
        log = []
        effect(lambda: log.append(c.get()))
        assert log == [10]

    def test_reruns_on_change(self):
        c = Cell(10)
        log = []
        effect(lambda: log.append(c.get()))
        c.set(20)
        assert log == [10, 20]

    def test_dispose_stops(self):
        c = Cell(10)
        log = []
        e = effect(lambda: log.append(c.get()))
        e.dispose()
        c.set(20)
        assert log == [10]
        assert e.disposed

    def test_calling_stops(self):
        c = Cell(10)
        log = []
        stop = effect(lambda: log.append(c.get()))
        stop()
        c.set(20)
        assert log == [10]
        assert _anchor.observers[c._id] == {}

    def test_dispose_twice_is_harmless(self):
        e = effect(lambda: None)
        e.dispose()
        e.dispose()
        assert e.disposed

    def test_manual_run(self):
        c = Cell(1)
        log = []
        e = effect(lambda: log.append(c.get()))
        e.run()
        assert log == [1, 1]

    def test_run_after_dispose_raises(self):
        e = effect(lambda: None, name="gone")
        e.dispose()
        with pytest.raises(DisposedError, match="gone"):
            e.run()

    def test_dependencies_follow_branch(self):
        flag = Cell(True)
        a = Cell(1)
        b = Cell(2)
        log = []
        e = effect(lambda: log.append(a.get() if flag.get() else b.get()))
        assert e.dependencies == [flag, a]

        flag.set(False)
        assert log == [1, 2]
        assert e.dependencies == [flag, b]

        a.set(100)  # no longer read
        assert log == [1, 2]
        b.set(3)
        assert log == [1, 2, 3]

    def test_fifo_order(self):
        c = Cell(0)
        log = []
        effect(lambda: log.append(("first", c.get())))
        effect(lambda: log.append(("second", c.get())))
        log.clear()
        c.set(1)
        assert log == [("first", 1), ("second", 1)]

    def test_write_inside_effect_reaches_downstream(self):
        x = Cell(0)
        y = Cell(0)
        seen = []
        effect(lambda: y.set(x.get() * 10))
        effect(lambda: seen.append(y.get()))
        x.set(2)
        assert seen == [0, 20]

    def test_reads_through_computed(self):
        c = Cell(2)
        squared = Computed(lambda: c.get() ** 2)
        log = []
        effect(lambda: log.append(squared.get()))
        c.set(3)
        assert log == [4, 9]

    def test_repr(self):
        e = effect(lambda: None, name="printer")
        assert repr(e) == "Effect(printer, active)"
        e.dispose()
        assert repr(e) == "Effect(printer, disposed)"

    def test_class_can_be_constructed_without_running(self):
        log = []
        e = Effect(lambda: log.append(1))
        assert log == []
        e.run()
        assert log == [1]


class TestCleanup:
    def test_cleanup_before_rerun_and_on_dispose(self):
        c = Cell(0)
        log = []

        def fn():
            value = c.get()
            log.append(("run", value))
            return lambda: log.append(("cleanup", value))

        stop = effect(fn)
        c.set(1)
        stop()
        assert log == [("run", 0), ("cleanup", 0), ("run", 1), ("cleanup", 1)]

    def test_cleanup_reads_are_untracked(self):
        a = Cell(0)
        other = Cell(0)
        runs = []

        def fn():
            runs.append(a.get())
            return lambda: other.get()

        effect(fn)
        a.set(1)
        other.set(5)
        assert runs == [0, 1]

    def test_failing_cleanup_is_reported(self, errors):
        c = Cell(0)

        def cleanup():
            raise RuntimeError("cleanup failed")

        def fn():
            c.get()
            return cleanup

        e = effect(fn)
        c.set(1)
        assert len(errors) == 1
        assert isinstance(errors[0][0], RuntimeError)
        assert errors[0][1] is e


class TestErrors:
    def test_failing_effect_does_not_stop_others(self, errors):
        c = Cell(0)
        log = []

        def bad():
            if c.get() > 0:
                raise ValueError("boom")

        failing = effect(bad)
        effect(lambda: log.append(c.get()))
        c.set(1)
        assert log == [0, 1]
        assert len(errors) == 1
        exc, source = errors[0]
        assert isinstance(exc, ValueError)
        assert source is failing

    def test_failing_effect_keeps_running_on_later_changes(self, errors):
        c = Cell(0)
        log = []

        def sometimes():
            value = c.get()
            if value == 1:
                raise ValueError("one")
            log.append(value)

        effect(sometimes)
        c.set(1)
        c.set(2)
        assert log == [0, 2]
        assert len(errors) == 1

    def test_errors_are_logged(self, caplog):
        c = Cell(0)

        def bad():
            if c.get():
                raise KeyError("missing")

        effect(bad, name="bad")
        with caplog.at_level(logging.ERROR, logger="ripple.scheduler"):
            c.set(1)
        assert any("bad" in r.getMessage() for r in caplog.records)

    def test_initial_error_propagates_and_disposes(self):
        c = Cell(0)

        def fn():
            c.get()
            raise ValueError("first run")

        with pytest.raises(ValueError, match="first run"):
            effect(fn)
        assert _anchor.observers[c._id] == {}

    def test_self_triggering_effect_raises_cycle_error(self):
        c = Cell(0)
        with pytest.raises(CycleError, match="re-triggered itself"):
            effect(lambda: c.set(c.get() + 1))


class TestWatch:
    def test_no_initial_call(self):
        c = Cell("a")
        seen = []
        watch(c, lambda new, old: seen.append((new, old)))
        assert seen == []

    def test_fires_with_new_and_old(self):
        c = Cell("a")
        seen = []
        watch(c, lambda new, old: seen.append((new, old)))
        c.set("b")
        c.set("c")
        assert seen == [("b", "a"), ("c", "b")]

    def test_immediate(self):
        c = Cell("a")
        seen = []
        watch(c, lambda new, old: seen.append((new, old)), immediate=True)
        assert seen == [("a", None)]

    def test_function_source_dedups(self):
        n = Cell(1)
        seen = []
        watch(lambda: "even" if n.get() % 2 == 0 else "odd", lambda new, old: seen.append(new))
        n.set(3)
        assert seen == []
        n.set(4)
        assert seen == ["even"]

    def test_callback_is_untracked(self):
        c = Cell(1)
        other = Cell(0)
        seen = []
        watch(c, lambda new, old: seen.append((new, other.get())))
        c.set(2)
        other.set(9)
        assert seen == [(2, 0)]

    def test_dispose(self):
        c = Cell(1)
        seen = []
        stop = watch(c, lambda new, old: seen.append(new))
        c.set(2)
        stop()
        c.set(3)
        assert seen == [2]

    def test_default_name(self):
        c = Cell(1, name="count")
        w = watch(c, lambda new, old: None)
        assert w.name == "watch(count)"


class TestUntracked:
    def test_function_form(self):
        a = Cell(1)
        b = Cell(10)
        log = []
        effect(lambda: log.append(a.get() + untracked(lambda: b.get())))
        b.set(20)
        assert log == [11]
        a.set(2)
        assert log == [11, 22]

    def test_context_manager_form(self):
        a = Cell(1)
        b = Cell(10)
        log = []

        def fn():
            with untracked():
                extra = b.get()
            log.append(a.get() + extra)

        effect(fn)
        b.set(20)
        assert log == [11]
