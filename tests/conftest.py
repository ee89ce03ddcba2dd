"""
meeting_coord test configuration

Shared fixtures for all tests. Services are created fresh for every test
and cleaned up afterwards.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from meeting_coord.communication import CommunicationService
from meeting_coord.config import (
    CommunicationConfig,
    SharedMemoryConfig,
    StateRepositoryConfig,
)
from meeting_coord.memory import SharedMemoryService
from meeting_coord.state import StateRepositoryService


# Temporary directory for test data
@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep MEETING_COORD_* variables from leaking into tests."""
    for name in list(os.environ):
        if name.startswith("MEETING_COORD_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def memory_config():
    return SharedMemoryConfig()


@pytest.fixture
async def memory(memory_config):
    service = SharedMemoryService(memory_config)
    await service.initialize()
    yield service
    await service.cleanup()


@pytest.fixture
async def persistent_memory(temp_dir):
    config = SharedMemoryConfig(persistence_enabled=True, snapshot_dir=str(temp_dir / "snapshots"))
    service = SharedMemoryService(config)
    await service.initialize()
    yield service
    await service.cleanup()


@pytest.fixture
async def state_repo():
    service = StateRepositoryService(StateRepositoryConfig())
    await service.initialize()
    yield service
    await service.cleanup()


@pytest.fixture
async def bus():
    service = CommunicationService(CommunicationConfig(expiry_check_interval_seconds=0.05))
    await service.initialize()
    yield service
    await service.cleanup()


class Recorder:
    """Callable that records every payload it receives."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def __call__(self, payload):
        self.calls.append(payload)
        if self.fail:
            raise RuntimeError("subscriber failed")


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def failing_recorder():
    return Recorder(fail=True)
