"""
Test suite for the Z-Wave JS connection loop and background scheduling.

Tests cover:
- Reconnect backoff
- Error reporting and retry
- Handing a ready driver to the bridge
- Fire-and-forget failures reaching the loop exception handler
- Server errors from maintenance calls being logged only
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock, patch

from zwbridge.Driver import Driver, backoff_seconds
from zwbridge.tasks import fire_and_forget, fire_and_log


class TestBackoff:
    """Tests for backoff_seconds."""

    @pytest.mark.parametrize("attempt, delay", [(1, 1), (2, 2), (3, 4), (5, 16), (6, 30), (20, 30)])
    def test_backoff(self, attempt, delay):
        assert backoff_seconds(attempt) == delay


class TestDriverRun:
    """Tests for the reconnect loop."""

    def test_errors_reported_and_retried(self):
        bridge = Mock()
        driver = Driver("ws://localhost:3000", bridge)
        attempts = []

        async def scenario():
            stop_event = asyncio.Event()

            async def failing(event):
                attempts.append(event)
                if len(attempts) == 2:
                    event.set()
                raise ConnectionRefusedError("refused")

            driver._connect_and_listen = failing
            with patch("zwbridge.Driver.backoff_seconds", return_value=0):
                await driver.run(stop_event)

        asyncio.run(scenario())

        assert len(attempts) == 2
        assert bridge.on_error.call_count == 2
        assert str(bridge.on_error.call_args.args[0]) == "refused"

    def test_stop_before_start(self):
        driver = Driver("ws://localhost:3000", Mock())
        driver._connect_and_listen = AsyncMock()

        async def scenario():
            stop_event = asyncio.Event()
            stop_event.set()
            await driver.run(stop_event)

        asyncio.run(scenario())

        driver._connect_and_listen.assert_not_called()

    def test_ready_driver_handed_to_bridge(self):
        bridge = Mock()
        driver = Driver("ws://localhost:3000", bridge)
        zwave_driver = Mock()

        async def scenario():
            stop_event = asyncio.Event()
            client = Mock()
            client.driver = zwave_driver
            client.connect = AsyncMock()
            client.disconnect = AsyncMock()

            async def listen(driver_ready):
                driver_ready.set()
                await asyncio.sleep(0)
                stop_event.set()
                await asyncio.Event().wait()

            client.listen = listen
            with patch("zwbridge.Driver.Client", return_value=client), \
                    patch("zwbridge.Driver.aiohttp.ClientSession") as session:
                session.return_value.__aenter__ = AsyncMock(return_value=Mock())
                session.return_value.__aexit__ = AsyncMock(return_value=False)
                await driver.run(stop_event)
            return client

        client = asyncio.run(scenario())

        bridge.on_driver_ready.assert_called_once_with(zwave_driver)
        bridge.on_error.assert_not_called()
        client.disconnect.assert_awaited_once()
        assert driver.client is None


class TestFireAndForget:
    """Tests for tasks.fire_and_forget and fire_and_log."""

    def test_runs_coroutine(self):
        done = []

        async def work():
            done.append(True)

        async def scenario():
            await fire_and_forget(work())

        asyncio.run(scenario())

        assert done == [True]

    def test_failure_reaches_exception_handler(self):
        seen = []

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.set_exception_handler(lambda _loop, context: seen.append(context))

            async def write():
                raise RuntimeError("write failed")

            task = fire_and_forget(write())
            await asyncio.wait([task])
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert len(seen) == 1
        assert str(seen[0]["exception"]) == "write failed"

    def test_server_errors_only_logged(self):
        seen = []

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.set_exception_handler(lambda _loop, context: seen.append(context))

            async def refresh():
                raise ConnectionError("ws closed")

            task = fire_and_log(refresh(), "node 5 refresh")
            await asyncio.wait([task])
            await asyncio.sleep(0)
            return task

        task = asyncio.run(scenario())

        assert seen == []
        assert task.result() is None

    def test_other_errors_still_reach_exception_handler(self):
        seen = []

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.set_exception_handler(lambda _loop, context: seen.append(context))

            async def refresh():
                raise KeyError("bug")

            task = fire_and_log(refresh(), "node 5 refresh")
            await asyncio.wait([task])
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert len(seen) == 1
        assert isinstance(seen[0]["exception"], KeyError)
