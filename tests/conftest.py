"""
Pytest configuration and fixtures for clmm-keeper tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import FakeChainGateway, FakeClock


@pytest.fixture(autouse=True)
def clean_lock_file():
    """
    Remove a leftover default lock file around each test.

    Tests that build a KeeperLoop point lock_dir at tmp_path, but a crashed
    run from the repo root would otherwise block them.
    """
    from pathlib import Path

    lock_file = Path("data/clmm-keeper.pid")
    if lock_file.exists():
        lock_file.unlink()

    yield

    if lock_file.exists():
        lock_file.unlink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeChainGateway()
