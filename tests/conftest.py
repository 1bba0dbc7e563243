"""
Pytest configuration file

Adds the project root to the Python path so tests can import the package,
and provides a speednet server running on an ephemeral loopback port.
"""
import asyncio
import os
import socket
import sys

import pytest
import pytest_asyncio

# Add the project root to the path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from speednet.config import ServerConfig, TestConfig  # noqa: E402
from speednet.server import SpeednetServer  # noqa: E402

LOOPBACK = "127.0.0.1"


@pytest_asyncio.fixture
async def server():
    """speednet server on 127.0.0.1 with an ephemeral port"""
    srv = SpeednetServer(ServerConfig(bind=LOOPBACK, port=0))
    await srv.start()
    yield srv
    await srv.stop()


@pytest.fixture
def make_config(server):
    """Build a TestConfig pointing at the running server"""
    def factory(**overrides):
        fields = {"hostname": LOOPBACK, "port": server.port, "time": 1}
        fields.update(overrides)
        return TestConfig(**fields)
    return factory


async def wait_for_results(server, count, timeout=5.0):
    """Wait until the server has reported `count` finished streams"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(server.get_results()) < count:
        if loop.time() > deadline:
            raise AssertionError(
                f"server reported {len(server.get_results())} streams, expected {count}"
            )
        await asyncio.sleep(0.02)
    return server.get_results()


def unused_port():
    """A loopback TCP port with nothing listening on it"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOOPBACK, 0))
        return sock.getsockname()[1]
