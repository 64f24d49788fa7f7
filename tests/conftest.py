from __future__ import annotations

import asyncio
import sys

import pytest

if sys.platform != 'win32':  # pragma: win32 no cover
    import uvloop

# Fixtures shared by the relay and p2p tests
from testing.relay_server import relay_server
from testing.ssl import tls_files


def pytest_addoption(parser):
    """Add custom command line options for tests."""
    parser.addoption(
        '--use-uvloop',
        action='store_true',
        default=False,
        help='Run asyncio tests on the uvloop event loop',
    )


@pytest.fixture(scope='session')
def use_uvloop(request) -> bool:
    """If the session runs asyncio tests on uvloop."""
    use = request.config.getoption('--use-uvloop')
    if use and sys.platform == 'win32':  # pragma: no cover
        raise pytest.UsageError('uvloop is not available on Windows.')
    return use


@pytest.fixture(scope='session')
def event_loop_policy(use_uvloop: bool) -> asyncio.AbstractEventLoopPolicy:
    """Event loop policy for asyncio tests, switched by `--use-uvloop`."""
    if use_uvloop:  # pragma: no cover
        return uvloop.EventLoopPolicy()
    return asyncio.DefaultEventLoopPolicy()  # pragma: no cover
