"""Fire-and-forget scheduling of device and controller calls.

Handlers never await the coroutines they start. Failures are not swallowed:
they are handed to the loop exception handler, which the entry point turns
into a logged, fatal error. Maintenance calls whose failure only means the
Z-Wave JS server went away use fire_and_log instead, so the driver reconnect
loop gets to deal with it.
"""

# std libraries
import asyncio
from typing import Any, Coroutine, Set

# external libraries
from aiohttp import ClientError
from zwave_js_server.exceptions import BaseZwaveJSServerError

# personal libraries
from .log import LOGGER

# errors that mean the server connection or the command failed, not the bridge
SERVER_ERRORS = (BaseZwaveJSServerError, ClientError, ConnectionError)

# tasks are held here until done so they are not garbage collected mid-flight
_pending: Set[asyncio.Task] = set()


def fire_and_forget(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """Schedule coro on the running loop without waiting for it."""
    task = asyncio.get_running_loop().create_task(coro)
    _pending.add(task)
    task.add_done_callback(_finished)
    return task


def fire_and_log(coro: Coroutine[Any, Any, Any], what: str) -> asyncio.Task:
    """Like fire_and_forget, but server and connection errors are only logged."""
    return fire_and_forget(logged(coro, what))


async def logged(coro: Coroutine[Any, Any, Any], what: str) -> Any:
    try:
        return await coro
    except SERVER_ERRORS as ex:
        LOGGER.error(f"{what} failed: {ex}")
        return None


def _finished(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        task.get_loop().call_exception_handler({
            "message": "Unhandled error in background call",
            "exception": exc,
            "task": task,
        })
