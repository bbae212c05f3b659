"""
api/concurrency.py -- Run blocking service calls from async routes with a time bound.

Services and the store are synchronous (SQLAlchemy Core). Route handlers
await them on the event loop's default executor so the loop keeps serving
other requests, and bound each call with asyncio.wait_for.

On timeout the worker thread cannot be interrupted: the store call may still
commit after the client has been told it failed. OperationTimeout says so in
its message, and the client's correct reaction (retry the whole operation or
log in again) is safe either way because rotation is atomic.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

from auth.errors import OperationTimeout

T = TypeVar("T")


async def run_bounded(func: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run func(*args) in the default executor; raise OperationTimeout after timeout seconds."""
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, functools.partial(func, *args))
    try:
        return await asyncio.wait_for(future, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise OperationTimeout(getattr(func, "__name__", "operation"), timeout) from exc
