"""
Pytest configuration and fixtures for the desk engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import build_desk


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def desk(tmp_path):
    """Fully wired engine over a fresh store and in-memory remotes."""
    return build_desk(str(tmp_path / "desk.db"))


@pytest.fixture
def store(desk):
    return desk.store
