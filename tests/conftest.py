"""Shared pytest fixtures for Ripple tests."""

import pytest

import importlib

_cell_mod = importlib.import_module("ripple.cell")
from ripple import _tracking


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Reset scheduler globals around each test to prevent state leakage."""
    _tracking.reset_state()
    yield
    _tracking.reset_state()
    _cell_mod._scheduler = None
    _cell_mod._scheduler_thread = None


@pytest.fixture
def errors():
    """Collect (exception, observer) pairs reported by the scheduler."""
    caught = []
    _tracking.set_error_handler(lambda exc, source: caught.append((exc, source)))
    return caught
