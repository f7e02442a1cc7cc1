"""Fixtures for integration tests against live market data APIs."""
import os
import socket

import aiohttp
import pytest
import pytest_asyncio


def is_network_available(host: str = "api.binance.com", port: int = 443) -> bool:
    """Check if a public market data API is reachable."""
    try:
        with socket.create_connection((host, port), timeout=2):
            return True
    except OSError:
        return False


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless explicitly enabled and the network is up."""
    if os.environ.get("COINAGENT_LIVE_TESTS") != "1":
        reason = "set COINAGENT_LIVE_TESTS=1 to run live API tests"
    elif not is_network_available():
        reason = "market data APIs not reachable"
    else:
        return
    skip = pytest.mark.skip(reason=reason)
    for item in items:
        if "integration" in str(item.path):
            item.add_marker(skip)


@pytest_asyncio.fixture
async def http_session():
    """Provide a shared aiohttp session for live provider calls."""
    async with aiohttp.ClientSession() as session:
        yield session
