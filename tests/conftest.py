"""Global pytest configuration and shared fixtures."""

import logging
import pathlib
import sys

import pytest
import pytest_asyncio

from toolwire.events import EventManager
from toolwire.mcp import CapabilityAggregator, ServerRegistry, ToolExecutionGateway
from toolwire.settings import Settings

from fixtures.fake_channels import FakeChannelFactory

# Configure logging for tests
logging.basicConfig(level=logging.DEBUG, format="%(name)s - %(levelname)s - %(message)s")

FAKE_SERVER_SCRIPT = pathlib.Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


@pytest.fixture
def stdio_config():
    """Factory for raw stdio configs that launch the fake MCP server script."""

    def _config(server_id, *flags, **overrides):
        config = {
            "id": server_id,
            "name": f"{server_id} server",
            "type": "stdio",
            "command": sys.executable,
            "args": [str(FAKE_SERVER_SCRIPT), "--name", server_id, *flags],
        }
        config.update(overrides)
        return config

    return _config


@pytest.fixture
def test_settings(tmp_path):
    """Short timeouts and an isolated home directory."""
    return Settings(
        home=tmp_path / "home",
        connect_timeout=10.0,
        request_timeout=5.0,
        call_timeout=2.0,
        failure_threshold=3,
        shutdown_grace=1.0,
    )


@pytest.fixture
def channel_factory():
    return FakeChannelFactory()


@pytest_asyncio.fixture
async def registry(channel_factory):
    registry = ServerRegistry(EventManager(), channel_factory=channel_factory, connect_timeout=2.0, request_timeout=1.0)
    yield registry
    await registry.close()


@pytest.fixture
def aggregator(registry):
    return CapabilityAggregator(registry)


@pytest.fixture
def gateway(registry, aggregator):
    return ToolExecutionGateway(registry, aggregator, call_timeout=1.0, failure_threshold=3)


@pytest.fixture
def events_recorder():
    """Collects every lifecycle event emitted on an EventManager as (name, server_id) pairs."""

    class Recorder:
        def __init__(self):
            self.events = []

        def attach(self, events, *names):
            for name in names:
                events.on_hook(name, self.record)
            return self

        async def record(self, event):
            self.events.append((event.name, event.server_id))

        def names(self, server_id=None):
            return [name for name, sid in self.events if server_id is None or sid == server_id]

    return Recorder()


# Test Markers
def pytest_configure(config):
    """Configure custom test markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test Collection Configuration
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on location."""
    for item in items:
        path = str(item.path)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)
