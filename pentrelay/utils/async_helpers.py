# pentrelay/utils/async_helpers.py
"""
Async utilities for safe task management.
"""

import asyncio
import logging
from typing import Any, Coroutine, Iterable, Optional

logger = logging.getLogger(__name__)


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log_errors: bool = True
) -> asyncio.Task:
    """
    Create an asyncio task whose unhandled exception is logged, not lost.

    Args:
        coro: The coroutine to run as a task
        name: Optional name for the task (for logging)
        log_errors: Whether to log errors (default True)

    Returns:
        The created asyncio.Task

    Example:
        create_safe_task(monitor.run(), name="liveness-monitor")
    """
    task = asyncio.create_task(coro, name=name)

    def _handle_exception(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc and log_errors:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task


async def cancel_and_wait(tasks: Iterable[asyncio.Task], timeout: float = 5.0) -> None:
    """
    Cancel tasks and wait (bounded) for them to unwind.

    The calling task is skipped so a handler can tear down its own session.
    """
    current = asyncio.current_task()
    pending = [t for t in tasks if t is not current and not t.done()]
    for task in pending:
        task.cancel()
    if not pending:
        return
    done, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in still_running:
        logger.warning(f"[AsyncTask:{task.get_name()}] Did not finish within {timeout}s of cancellation")
