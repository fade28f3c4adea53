"""Synchronous helpers for the async session API.

Provides blocking wrappers so threaded, non-async code can ask for a token.
Coroutines run on a shared background event loop that persists across
calls, so the gateway's HTTP client is never bound to a loop that
``asyncio.run()`` already closed.
"""

from __future__ import annotations

import asyncio
import threading
import time

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar


if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Coroutine


T = TypeVar("T")


class _BackgroundLoopHolder:
    """Holder for the background event loop to avoid global statement."""

    loop: asyncio.AbstractEventLoop | None = None
    thread: threading.Thread | None = None


_holder = _BackgroundLoopHolder()
_holder_lock = threading.Lock()


def _get_or_create_loop() -> asyncio.AbstractEventLoop:
    """Get or start the background event loop."""
    with _holder_lock:
        if _holder.loop is not None and _holder.loop.is_running():
            return _holder.loop

        loop = asyncio.new_event_loop()
        _holder.loop = loop

        def run_loop() -> None:
            asyncio.set_event_loop(loop)
            loop.run_forever()

        _holder.thread = threading.Thread(
            target=run_loop, name="sessionvault-loop", daemon=True
        )
        _holder.thread.start()

        for _ in range(50):  # 500ms max wait
            if loop.is_running():
                break
            time.sleep(0.01)

        return loop


def run_async(coro: Coroutine[Any, Any, T], timeout: float | None = 30.0) -> T:
    """Run a coroutine from sync code and wait for its result.

    NOTE: This function cannot be called from the background loop itself;
    it would deadlock. Use ``await`` directly in async code.

    Parameters
    ----------
    coro : Coroutine
        The coroutine to run.
    timeout : float, optional
        Timeout in seconds. Default is 30.0.

    Returns
    -------
    T
        The result of the coroutine.

    Raises
    ------
    TimeoutError
        If the operation times out.
    RuntimeError
        If called from within the background loop.
    """
    loop = _get_or_create_loop()

    try:
        running_loop = asyncio.get_running_loop()
    except RuntimeError:
        running_loop = None

    if running_loop is loop:
        coro.close()
        raise RuntimeError(
            "run_async() cannot be called from the sessionvault background loop. "
            "Use 'await' directly instead."
        )

    future = asyncio.run_coroutine_threadsafe(coro, loop)
    return future.result(timeout=timeout)


def shutdown_loop() -> None:
    """Stop the background loop, if one was started."""
    with _holder_lock:
        loop, thread = _holder.loop, _holder.thread
        _holder.loop = None
        _holder.thread = None
    if loop is None:
        return
    loop.call_soon_threadsafe(loop.stop)
    if thread is not None:
        thread.join(timeout=2.0)
    if not loop.is_running():
        loop.close()


@asynccontextmanager
async def hold_lock(lock: threading.Lock, poll_interval: float = 0.005) -> AsyncIterator[None]:
    """Hold a ``threading.Lock`` from async code without blocking the event loop.

    Unlike ``asyncio.Lock`` this serializes coroutines running on different
    event loops and threads. Cancellation while waiting never leaves the
    lock held.

    Parameters
    ----------
    lock : threading.Lock
        The lock to hold for the duration of the block.
    poll_interval : float, optional
        Seconds to sleep between acquisition attempts.
    """
    while not lock.acquire(blocking=False):
        await asyncio.sleep(poll_interval)
    try:
        yield
    finally:
        lock.release()
