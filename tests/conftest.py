"""Pytest configuration for ImmorTerm tests."""

import logging

import pytest
import structlog

from immorterm.core import tmux_bridge


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Keep structlog output out of test runs and reset tmux bridge state."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    tmux_bridge.configure()
    tmux_bridge._failure_counts.clear()  # pylint: disable=protected-access
    yield
    structlog.reset_defaults()


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
