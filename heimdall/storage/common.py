"""Helpers shared by the memory and postgres stores and their async callers."""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

T = TypeVar("T")

DEFAULT_STORE_TIMEOUT = 10.0


async def call_store(
    func: Callable[..., T], *args: Any, timeout: float = DEFAULT_STORE_TIMEOUT, **kwargs: Any
) -> T:
    """Run a blocking store method off the event loop under a deadline.

    Raises ``asyncio.TimeoutError`` when the deadline passes; the worker thread
    is left to finish on its own.
    """
    return await asyncio.wait_for(
        asyncio.to_thread(functools.partial(func, *args, **kwargs)), timeout
    )
