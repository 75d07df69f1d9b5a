"""
Peridot test configuration.

Shared fixtures: an in-memory vault filesystem and a registry served over
httpx.MockTransport. No test touches the network or a real worker process.
"""

import httpx
import pytest
import pytest_asyncio

from peridot.tests.fakes import EXAMPLE_FILES, Registry, make_tarball
from peridot.vault import MemoryFileSystem


@pytest.fixture
def memory_fs():
    return MemoryFileSystem()


@pytest.fixture
def registry():
    registry = Registry()
    registry.publish("preview", "example", "0.1.0", make_tarball(EXAMPLE_FILES, dirs=("src",)))
    return registry


@pytest_asyncio.fixture
async def http_client(registry):
    client = httpx.AsyncClient(transport=httpx.MockTransport(registry.handler))
    yield client
    await client.aclose()
