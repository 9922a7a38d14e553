"""Polling helpers for asyncio tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


async def eventually(condition: Callable[[], bool], *, timeout: float = 2.0, step: float = 0.005) -> None:
    """Wait until ``condition()`` holds or fail after ``timeout`` seconds."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(step)
