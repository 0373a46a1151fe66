"""pytest configuration for OpenVibe relay tests."""

import pytest

from openvibe.config import RelayConfig
from openvibe.registry import Registry


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture()
def config():
    return RelayConfig(broadcast_capacity=8, command_capacity=8, log_frames=False)


@pytest.fixture()
def registry(config):
    return Registry(config)
