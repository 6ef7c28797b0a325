from __future__ import annotations

import asyncio

import pytest

from taskbridge import AsyncioHost, BridgeAlreadyInstalledError, TaskBridge
from taskbridge.host import _default_yield
from taskbridge.yield_override import YieldOverride, installed

pytestmark = [pytest.mark.unit]


class FlakyTable:
    """Coroutine table whose yield slot can be made to reject writes."""

    def __init__(self) -> None:
        self._yield = _default_yield
        self.fail = False

    @property
    def yield_(self):
        return self._yield

    @yield_.setter
    def yield_(self, value):
        if self.fail:
            raise RuntimeError("table is read-only")
        self._yield = value


def test_installs_and_restores(host):
    bridge = TaskBridge(host)
    original = host.coroutine.yield_

    with YieldOverride(bridge) as guard:
        assert host.coroutine.yield_ == bridge.bridged_yield
        assert installed() is guard

    assert host.coroutine.yield_ is original
    assert installed() is None


def test_restore_runs_once(host):
    bridge = TaskBridge(host)
    original = host.coroutine.yield_
    guard = YieldOverride(bridge)

    with guard:
        pass

    async def replacement():
        pass

    host.coroutine.yield_ = replacement
    guard.restore()

    assert host.coroutine.yield_ is replacement
    assert host.coroutine.yield_ is not original


def test_restored_on_exception(host):
    bridge = TaskBridge(host)
    original = host.coroutine.yield_

    with pytest.raises(KeyError):
        with YieldOverride(bridge):
            raise KeyError("x")

    assert host.coroutine.yield_ is original
    assert installed() is None


def test_restore_failure_is_swallowed():
    host = AsyncioHost()
    table = FlakyTable()
    host.coroutine = table  # type: ignore[assignment]
    bridge = TaskBridge(host)

    with YieldOverride(bridge):
        table.fail = True

    assert table.yield_ == bridge.bridged_yield
    assert installed() is None


def test_second_installation_is_rejected(host):
    first = TaskBridge(host)
    second = TaskBridge(AsyncioHost())

    with first.install():
        with pytest.raises(BridgeAlreadyInstalledError):
            with second.install():
                pass
        assert host.coroutine.yield_ == first.bridged_yield

    with second.install():
        pass


def test_functions_created_inside_keep_bridged_yield(host):
    bridge = TaskBridge(host)
    captured = []

    def factory():
        return None

    original_create = host.create_async_function

    def spy(f):
        captured.append(host.coroutine.yield_)
        return original_create(f)

    host.create_async_function = spy  # type: ignore[method-assign]
    bridge.create_async_function(factory)

    assert captured == [bridge.bridged_yield]
    assert host.coroutine.yield_ is _default_yield


@pytest.mark.asyncio
async def test_bridged_yield_without_active_task_sleeps(host):
    bridge = TaskBridge(host)
    # No task spawned in this coroutine: a short host sleep, no transport
    await asyncio.wait_for(bridge.bridged_yield(), timeout=1)
    assert not bridge.started
