"""
Pytest configuration and fixtures.

The ``ports`` fixture runs a test once per supported channel shape so the
same engine behaviour can be checked over each of them.
"""

import asyncio
import logging
import sys

import pytest

from portrpc import MessageChannel, PortRegistry

from tests.port_helpers import PORT_KINDS, dispose_all, make_port_pair


def pytest_configure(config):
    """Configure pytest with custom settings."""
    log_level = logging.DEBUG if config.getoption("--debug-portrpc") else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("portrpc").setLevel(log_level)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-portrpc",
        action="store_true",
        default=False,
        help="Enable debug logging for portrpc (shows message routing)",
    )


@pytest.fixture(params=PORT_KINDS)
async def ports(request):
    """A connected ``(port1, port2)`` pair; engines on it are disposed afterwards."""
    port1, port2, cleanup = await make_port_pair(request.param)
    try:
        yield port1, port2
    finally:
        dispose_all(port1)
        dispose_all(port2)
        result = cleanup()
        if asyncio.iscoroutine(result):
            await result


@pytest.fixture
async def channel():
    """A plain in-memory channel for tests that do not depend on the port shape."""
    channel = MessageChannel()
    try:
        yield channel
    finally:
        dispose_all(channel.port1)
        dispose_all(channel.port2)
        channel.close()


@pytest.fixture(autouse=True)
def clean_port_registry():
    yield
    PortRegistry.get_instance().clear()
