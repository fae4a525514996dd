"""
Helper functions for system_utils package.
Pure utility functions with minimal dependencies.

Dependencies: state (for task tracking)
"""
from __future__ import annotations

import asyncio
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Optional, Set

from . import state
from logging_config import get_logger

logger = get_logger(__name__)


# =============================================================================
# Thread Executor for Blocking Operations
# =============================================================================
# Blocking I/O (audio device reads, HTTP requests) runs here so the event loop
# never blocks. shutdown(wait=False) keeps exit fast if a thread is stuck.

_thread_executor: Optional[ThreadPoolExecutor] = None


def _get_daemon_executor() -> ThreadPoolExecutor:
    """Get or create the thread executor for blocking operations."""
    global _thread_executor
    if _thread_executor is None:
        _thread_executor = ThreadPoolExecutor(
            max_workers=8,
            thread_name_prefix="VJSync_Worker"
        )
    return _thread_executor


async def run_in_daemon_executor(func: Callable, *args: Any) -> Any:
    """
    Run a blocking function in the shared worker executor.

    Cancelling the awaiting task settles the await immediately; the worker
    thread itself runs to completion (callers bound it with their own timeout
    or abort flag).

    Args:
        func: Blocking function to run
        *args: Arguments to pass to the function

    Returns:
        Result of the function
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_get_daemon_executor(), func, *args)


def submit_to_daemon_executor(func: Callable, *args: Any) -> Future:
    """Submit a blocking function from non-async code (e.g. audio callbacks)."""
    return _get_daemon_executor().submit(func, *args)


def shutdown_daemon_executor() -> None:
    """Shutdown the thread executor. Call during app cleanup."""
    global _thread_executor
    if _thread_executor is not None:
        _thread_executor.shutdown(wait=False, cancel_futures=True)
        _thread_executor = None


def create_tracked_task(coro: Awaitable, tasks: Optional[Set[asyncio.Task]] = None,
                        name: Optional[str] = None) -> asyncio.Task:
    """
    Create a background task with automatic cleanup and error logging.
    Prevents silent failures and ensures tasks complete even if references are lost.

    Args:
        coro: Coroutine to schedule
        tasks: Registry the task is added to (defaults to the process-wide one)
        name: Optional task name for debugging
    """
    registry = state._background_tasks if tasks is None else tasks
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    registry.add(task)

    def cleanup(t: asyncio.Task) -> None:
        registry.discard(t)
        if t.cancelled():
            return  # Expected during shutdown / pre-emption
        exc = t.exception()
        if exc is not None:
            logger.error(f"Background task failed: {exc}", exc_info=exc)

    task.add_done_callback(cleanup)
    return task


async def cancel_tracked_tasks(tasks: Optional[Set[asyncio.Task]] = None, timeout: float = 0.5) -> None:
    """Cancel every task of a registry and wait briefly for them to settle."""
    registry = state._background_tasks if tasks is None else tasks
    for task in list(registry):
        if task is asyncio.current_task() or task.done():
            continue
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass


def truncate(text: Optional[str], limit: int = 100) -> str:
    """Shorten text for logs and diagnostic messages."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]
