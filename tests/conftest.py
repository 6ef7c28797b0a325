from __future__ import annotations

from typing import TypeVar

import pytest
import pytest_asyncio

from taskbridge import AsyncioHost, BridgeConfig, Ready, TaskBridge, TaskFuture

T = TypeVar("T")


async def _drive(bridge: TaskBridge, future: TaskFuture[T]) -> Ready[T]:
    """Poll a future the way the host glue does, yielding through the bridge."""
    while not isinstance(state := future.poll(), Ready):
        await bridge.bridged_yield()
    return state


@pytest.fixture
def drive():
    return _drive


@pytest.fixture
def host():
    return AsyncioHost()


@pytest.fixture
def config():
    return BridgeConfig()


@pytest_asyncio.fixture
async def bridge(host, config):
    b = TaskBridge(host, config)
    yield b
    b.close()
    await host.close()


@pytest.fixture
def raise_fd_limit():
    import resource

    needed = 4096
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    if soft >= needed:
        yield
        return
    if hard != resource.RLIM_INFINITY and hard < needed:
        pytest.skip(f"Hard file descriptor limit {hard} is below {needed}")

    resource.setrlimit(resource.RLIMIT_NOFILE, (needed, hard))
    yield
    resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))
