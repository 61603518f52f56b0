"""Shared fixtures for the bridge tests."""

import inspect

import pytest
from unittest.mock import patch


@pytest.fixture
def fire():
    """Patch fire-and-forget scheduling so calls can be asserted synchronously.

    Real coroutines handed to it are closed rather than left un-awaited.
    """
    def discard(coro):
        if inspect.iscoroutine(coro):
            coro.close()

    with patch("zwbridge.tasks.fire_and_forget", side_effect=discard) as mock_fire:
        yield mock_fire
