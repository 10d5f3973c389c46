"""
Pytest configuration and fixtures for the playback sync service tests.

Everything runs without a speaker or a broker: FakeTransport records the
commands it receives, LocalSharedStore stands in for the MQTT record.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Services use "from lib.x import y", same as running them from services/
SERVICES_DIR = Path(__file__).parent.parent / "services"
sys.path.insert(0, str(SERVICES_DIR))

from lib import config  # noqa: E402
from lib.shared_store import LocalSharedStore  # noqa: E402
from lib.transport_base import TransportBase  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit test (fast, no I/O)")
    config.addinivalue_line("markers", "integration: engine + store + transport wired together")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def empty_config(monkeypatch):
    """Start every test from an empty config so defaults apply."""
    monkeypatch.setattr(config, "_config", {})
    return config


# ==================== FAKES ====================

class FakeTransport(TransportBase):
    """Transport that records every command instead of talking to a speaker."""

    id = "fake"
    name = "Fake"

    def __init__(self, duration=None):
        super().__init__()
        self.calls = []
        self.fail = set()  # command names that should return False
        if duration is not None:
            self._duration = float(duration)

    async def _record(self, name, *args):
        self.calls.append((name, *args))
        return name not in self.fail

    async def play(self):
        return await self._record("play")

    async def pause(self):
        return await self._record("pause")

    async def stop(self):
        return await self._record("stop")

    async def seek(self, position):
        return await self._record("seek", position)

    async def set_source(self, url):
        self._source_url = url
        return await self._record("set_source", url)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return LocalSharedStore(writer="test-device")


@pytest.fixture
def mock_store():
    """Store double for asserting on publish() without echoes."""
    mock = MagicMock()
    mock.writer = "test-device"
    mock.publish = AsyncMock(return_value=True)
    mock.subscribe = MagicMock(return_value=MagicMock())
    return mock
