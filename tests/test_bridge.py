from __future__ import annotations

import asyncio
import random
import threading
import time
from collections import Counter

import pytest

from taskbridge import (
    AsyncioHost,
    BridgeConfig,
    TaskBridge,
    TransportError,
    create_async_function,
    get_bridge,
)
from taskbridge.host import AsyncioSocket
from taskbridge.transport import NotificationClient
from taskbridge.yield_override import _checkout

pytestmark = [pytest.mark.integration]

REQUEST = BridgeConfig(mode="request")
PUSH = BridgeConfig(mode="push")


async def _eventually(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class HangingSocket:
    """Host socket that accepts writes and never answers."""

    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self._closed = False

    async def connect(self, host: str, port: int) -> None:
        pass

    async def send(self, data: bytes) -> None:
        self.sent.append(data)

    async def receive_line(self) -> bytes:
        await asyncio.Event().wait()
        return b""

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class TestSingleCall:
    @pytest.mark.timeout(30)
    @pytest.mark.parametrize("config", [REQUEST, PUSH], ids=["request", "push"])
    @pytest.mark.asyncio
    async def test_async_operation(self, bridge, host):
        async def greet(name):
            await asyncio.sleep(0.01)
            return f"hello {name}"

        fn = bridge.create_async_function(greet)
        assert await host.spawn(fn("bridge")) == "hello bridge"
        assert len(bridge.registry) == 0

    @pytest.mark.timeout(30)
    @pytest.mark.parametrize("config", [REQUEST, PUSH], ids=["request", "push"])
    @pytest.mark.asyncio
    async def test_blocking_operation_does_not_stall_host(self, bridge, host):
        def slow():
            time.sleep(0.2)
            return threading.current_thread().name

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        fn = bridge.create_async_function(slow)
        tick_task = asyncio.ensure_future(ticker())
        name = await host.spawn(fn())
        tick_task.cancel()

        assert name.startswith("taskbridge-worker")
        assert ticks >= 5

    @pytest.mark.timeout(30)
    @pytest.mark.parametrize("config", [REQUEST, PUSH], ids=["request", "push"])
    @pytest.mark.asyncio
    async def test_user_error_reaches_script(self, bridge, host):
        async def fail(message):
            await asyncio.sleep(0.01)
            raise ValueError(message)

        fn = bridge.create_async_function(fail)

        async def script():
            try:
                await fn("bad input")
            except ValueError as e:
                return str(e)
            return "no error"

        assert await host.spawn(script()) == "bad input"
        assert len(bridge.registry) == 0

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_function_metadata_preserved(self, bridge):
        async def documented():
            """Returns nothing."""

        fn = bridge.create_async_function(documented)
        assert fn.__name__ == "documented"
        assert fn.__doc__ == "Returns nothing."


class TestConcurrency:
    @pytest.mark.timeout(120)
    @pytest.mark.parametrize("config", [BridgeConfig(mode="push", pool_capacity=64)], ids=["push"])
    @pytest.mark.asyncio
    async def test_thousand_operations_push(self, bridge, host):
        await self._thousand_random_latency_operations(bridge, host)

    @pytest.mark.timeout(120)
    @pytest.mark.parametrize(
        "config", [BridgeConfig(mode="request", pool_capacity=64)], ids=["request"]
    )
    @pytest.mark.asyncio
    async def test_thousand_operations_request(self, bridge, host, raise_fd_limit):
        # One loopback connection per waiting coroutine, both ends in this process
        await self._thousand_random_latency_operations(bridge, host)

    @staticmethod
    async def _thousand_random_latency_operations(bridge, host):
        rng = random.Random(1234)
        delays = [rng.uniform(0, 0.05) for _ in range(1000)]
        calls: Counter[int] = Counter()
        lock = threading.Lock()

        async def op(i):
            await asyncio.sleep(delays[i])
            with lock:
                calls[i] += 1
            return i * 2

        fn = bridge.create_async_function(op)

        async def script(i):
            return i, await fn(i)

        results = await asyncio.gather(*(host.spawn(script(i)) for i in range(1000)))

        assert sorted(results) == [(i, i * 2) for i in range(1000)]
        assert all(calls[i] == 1 for i in range(1000))
        assert len(bridge.registry) == 0
        assert bridge.connections.available <= bridge.config.pool_capacity
        assert bridge.wake_queues.available <= bridge.config.pool_capacity

    @pytest.mark.timeout(60)
    @pytest.mark.parametrize("config", [REQUEST, PUSH], ids=["request", "push"])
    @pytest.mark.asyncio
    async def test_connections_reused_between_calls(self, bridge, host):
        async def op(i):
            await asyncio.sleep(0.01)
            return i

        fn = bridge.create_async_function(op)
        for i in range(20):
            assert await host.spawn(fn(i)) == i

        # Sequential calls never need more than one pooled resource
        pooled = bridge.connections if bridge.config.mode == "request" else bridge.wake_queues
        assert pooled.available == 1


class TestIdReuse:
    @pytest.mark.timeout(30)
    @pytest.mark.parametrize(
        "config",
        [BridgeConfig(mode="request", id_bits=2), BridgeConfig(mode="push", id_bits=2)],
        ids=["request", "push"],
    )
    @pytest.mark.asyncio
    async def test_sequential_reuse_does_not_cross_deliver(self, bridge, drive):
        async def op(i):
            await asyncio.sleep(0.005)
            return f"result-{i}"

        seen_ids = []
        for i in range(10):
            future = bridge.spawn(op, i)
            ready = await asyncio.wait_for(drive(bridge, future), timeout=5)
            seen_ids.append(future.task_id)
            assert ready.unwrap() == f"result-{i}"

        # Only ids 1..3 exist in a two-bit space
        assert set(seen_ids) == {1, 2, 3}
        assert seen_ids[:4] == [1, 2, 3, 1]
        assert len(bridge.registry) == 0


class TestTransportRecovery:
    @pytest.mark.timeout(60)
    @pytest.mark.parametrize("config", [REQUEST, PUSH], ids=["request", "push"])
    @pytest.mark.asyncio
    async def test_server_killed_and_restarted_mid_flight(self, bridge, host):
        async def op(i):
            await asyncio.sleep(0.02 + (i % 10) * 0.02)
            return i

        fn = bridge.create_async_function(op)
        bridge.start()

        tasks = [host.spawn(fn(i)) for i in range(100)]
        await asyncio.sleep(0.05)

        bridge.server.stop()
        # Some operations finish while nobody listens
        await asyncio.sleep(0.15)
        bridge.server.start()

        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=30)
        assert results == list(range(100))
        assert len(bridge.registry) == 0

    @pytest.mark.timeout(30)
    @pytest.mark.parametrize(
        "config", [BridgeConfig(mode="request", validate_idle=0.0)], ids=["request"]
    )
    @pytest.mark.asyncio
    async def test_stale_pooled_connection_is_discarded(self, bridge, host):
        async def op(i):
            await asyncio.sleep(0.01)
            return i

        fn = bridge.create_async_function(op)
        assert await host.spawn(fn(1)) == 1

        stale = bridge.connections.checkout()
        assert stale is not None
        bridge.connections.checkin(stale)

        bridge.server.restart()

        assert await host.spawn(fn(2)) == 2
        assert stale.closed

        fresh = bridge.connections.checkout()
        assert fresh is not None and fresh is not stale
        assert await fresh.ping()
        fresh.close()

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_stale_connection_never_carries_a_task_id(self, bridge, host, monkeypatch):
        async def op(i):
            await asyncio.sleep(0.01)
            return i

        fn = bridge.create_async_function(op)
        assert await host.spawn(fn(1)) == 1

        stale = bridge.connections.checkout()
        assert stale is not None
        bridge.connections.checkin(stale)
        stale_socket = stale._socket

        sent: list[bytes] = []
        original_send = AsyncioSocket.send

        async def recording_send(self, data):
            if self is stale_socket:
                sent.append(data)
            await original_send(self, data)

        monkeypatch.setattr(AsyncioSocket, "send", recording_send)

        # Checked in a moment ago, well within any idle threshold
        bridge.server.restart()

        assert await host.spawn(fn(2)) == 2
        assert stale.closed
        assert all(line == b"PING\n" for line in sent)

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_cancelled_during_ping_closes_connection(self, bridge):
        bridge.start()
        socket = HangingSocket()
        bridge.connections.checkin(NotificationClient(socket, bridge.address))

        checkout = asyncio.ensure_future(_checkout(bridge))
        await _eventually(lambda: socket.sent == [b"PING\n"])
        checkout.cancel()

        with pytest.raises(asyncio.CancelledError):
            await checkout
        assert socket.closed
        assert bridge.connections.available == 0

    @pytest.mark.timeout(30)
    @pytest.mark.parametrize("config", [PUSH], ids=["push"])
    @pytest.mark.asyncio
    async def test_watcher_reconnects_after_restart(self, bridge, host):
        async def op(i):
            await asyncio.sleep(0.01)
            return i

        fn = bridge.create_async_function(op)
        assert await host.spawn(fn(1)) == 1

        watcher = bridge.watcher
        assert watcher is not None
        assert watcher.connections == 1

        bridge.server.restart()
        await _eventually(lambda: watcher.connections >= 2)

        assert await host.spawn(fn(2)) == 2


class TestLifecycle:
    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_lazy_start(self, bridge, host):
        async def op():
            return "ok"

        fn = bridge.create_async_function(op)
        assert not bridge.started

        assert await host.spawn(fn()) == "ok"
        assert bridge.started
        assert bridge.server.running

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, bridge):
        bridge.start()
        address = bridge.address
        bridge.start()
        assert bridge.address == address

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_close_stops_server_and_drops_pooled(self, bridge, host):
        fn = bridge.create_async_function(lambda: None)
        await host.spawn(fn())
        server = bridge.server

        bridge.close()

        assert not bridge.started
        assert not server.running
        assert bridge.connections.available == 0

    @pytest.mark.timeout(30)
    @pytest.mark.parametrize("config", [REQUEST, PUSH], ids=["request", "push"])
    @pytest.mark.asyncio
    async def test_close_with_calls_in_flight_stays_closed(self, bridge, host):
        async def op():
            await asyncio.sleep(0.3)
            return "late"

        fn = bridge.create_async_function(op)
        task = host.spawn(fn())
        await asyncio.sleep(0.05)

        bridge.close()

        # The waiter falls back to the cooldown path and still gets its result
        assert await asyncio.wait_for(task, timeout=10) == "late"
        assert not bridge.started
        assert bridge.watcher is None

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_address_requires_started_bridge(self, bridge):
        with pytest.raises(TransportError):
            bridge.address
        assert not bridge.started

    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_context_manager(self, host):
        with TaskBridge(host) as bridge:
            assert bridge.started
            server = bridge.server
        assert not server.running
        await host.close()


class TestModuleLevel:
    @pytest.mark.timeout(30)
    @pytest.mark.asyncio
    async def test_default_bridge_per_host(self):
        host = AsyncioHost()
        other = AsyncioHost()

        assert get_bridge(host) is get_bridge(host)
        assert get_bridge(host) is not get_bridge(other)

        async def op(x):
            return x + 1

        fn = create_async_function(host, op)
        try:
            assert await host.spawn(fn(41)) == 42
            assert get_bridge(host).started
        finally:
            get_bridge(host).close()
            await host.close()
