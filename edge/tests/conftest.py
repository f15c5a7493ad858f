"""
Pytest configuration and fixtures for Tanklink edge tests.
"""
import os
import sys

# Add edge directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime

import pytest
import pytest_asyncio

from checkpoint_store import CheckpointStore
from device_clock import DeviceClock
from record_store import RecordStore


class FakeTransport:
    """
    Records every payload sent and answers from a script of outcomes.

    Once the script runs out, `default` is returned.
    """

    def __init__(self, outcomes=None, default=True):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.attempts = []
        self.delivered = []
        self.is_connected = True
        self.connect_calls = 0

    def connected(self):
        return self.is_connected

    async def connect(self):
        self.connect_calls += 1
        return self.is_connected

    async def initialize(self):
        pass

    async def send(self, payload, channel):
        ok = self.outcomes.pop(0) if self.outcomes else self.default
        self.attempts.append((channel, payload))
        if ok:
            self.delivered.append((channel, payload))
        return ok

    async def close(self):
        pass


@pytest.fixture
def store(tmp_path):
    record_store = RecordStore(str(tmp_path / "data"))
    record_store.initialize()
    return record_store


@pytest_asyncio.fixture
async def checkpoints(tmp_path):
    checkpoint_store = CheckpointStore(str(tmp_path / "data" / "checkpoints.db"))
    await checkpoint_store.initialize()
    yield checkpoint_store
    await checkpoint_store.close()


@pytest.fixture
def fixed_clock():
    return DeviceClock(source=lambda: datetime(2024, 1, 1, 0, 0, 0))


@pytest.fixture
def transport():
    return FakeTransport()
