"""Connection to the Z-Wave JS server.

Driver keeps one websocket connection to a zwave-js-server instance alive,
reconnecting with exponential backoff, and hands every freshly ready driver
to the NetworkBridge. Connection failures are reported to the bridge, which
surfaces them on its state topic; they never stop the process.
"""

# std libraries
import asyncio
import contextlib
from typing import Optional

# external libraries
import aiohttp
from zwave_js_server.client import Client

# personal libraries
from .log import LOGGER

RECONNECT_MIN_SECONDS = 1
RECONNECT_MAX_SECONDS = 30


def backoff_seconds(attempt: int, min_seconds: int = RECONNECT_MIN_SECONDS,
                    max_seconds: int = RECONNECT_MAX_SECONDS) -> int:
    """Delay before reconnect attempt number attempt (1-based): 1, 2, 4, ... capped."""
    return min(min_seconds * 2 ** max(attempt - 1, 0), max_seconds)


class Driver:
    """Owner of the zwave-js-server websocket.

    Attributes:
        url (str): Websocket URL of the zwave-js-server.
        bridge (NetworkBridge): Receives ready drivers and errors.
        client (Client): Current zwave_js_server client, None when down.
    """

    def __init__(self, url: str, bridge):
        self.url = url
        self.bridge = bridge
        self.client: Optional[Client] = None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Connect, listen and reconnect until stop_event is set."""
        attempt = 0
        while not stop_event.is_set():
            try:
                await self._connect_and_listen(stop_event)
                attempt = 0
            except Exception as ex:
                LOGGER.warning(f"Z-Wave JS connection to {self.url} failed: {ex}")
                self.bridge.on_error(ex)
            if stop_event.is_set():
                return
            attempt += 1
            delay = backoff_seconds(attempt)
            LOGGER.info(f"Reconnecting to {self.url} in {delay}s")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=delay)

    async def _connect_and_listen(self, stop_event: asyncio.Event) -> None:
        async with aiohttp.ClientSession() as session:
            self.client = Client(self.url, session)
            LOGGER.info(f"Connecting to Z-Wave JS server {self.url}")
            await self.client.connect()
            driver_ready = asyncio.Event()
            listen_task = asyncio.create_task(self.client.listen(driver_ready))
            ready_task = asyncio.create_task(driver_ready.wait())
            stop_task = asyncio.create_task(stop_event.wait())
            try:
                await asyncio.wait({listen_task, ready_task, stop_task},
                                   return_when=asyncio.FIRST_COMPLETED)
                if driver_ready.is_set():
                    LOGGER.info("Z-Wave driver ready")
                    self.bridge.on_driver_ready(self.client.driver)
                    await asyncio.wait({listen_task, stop_task},
                                       return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (ready_task, stop_task):
                    task.cancel()
                await self.client.disconnect()
                self.client = None
            if stop_event.is_set():
                if not listen_task.done():
                    listen_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await listen_task
                elif not listen_task.cancelled() and listen_task.exception() is not None:
                    LOGGER.debug(f"listen ended during shutdown: {listen_task.exception()}")
                return
            # re-raises whatever ended the listen loop
            listen_task.result()
            raise ConnectionError("Z-Wave JS server closed the connection")
