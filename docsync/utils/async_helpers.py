"""
Async helper utilities for safe background task execution.

Background tasks (sync passes, change watches, queue workers) must never
lose an exception silently; these helpers log them with the task name.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Coroutine, Optional, TypeVar, Union
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def create_safe_task(
    coro: Coroutine[Any, Any, T],
    name: Optional[str] = None,
    on_error: Optional[Callable[[BaseException], None]] = None,
    on_done: Optional[Callable[[asyncio.Task], None]] = None,
) -> "asyncio.Task[T]":
    """
    Create an asyncio task with automatic error logging.

    Args:
        coro: The coroutine to run
        name: Optional task name for logging
        on_error: Optional callback for error handling
        on_done: Optional callback run after every outcome, including cancel

    Example:
        >>> create_safe_task(
        ...     orchestrator.sync_source(source_id),
        ...     name=f"sync_{source_id}",
        ... )
    """
    task = asyncio.create_task(coro, name=name)

    def handle_result(t: asyncio.Task) -> None:
        try:
            if t.cancelled():
                logger.debug("Background task cancelled", task_name=name)
                return
            exc = t.exception()
            if exc:
                logger.error(
                    "Background task failed",
                    task_name=name or "unnamed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                if on_error:
                    try:
                        on_error(exc)
                    except Exception as callback_error:
                        logger.error(
                            "Error callback failed",
                            task_name=name,
                            callback_error=str(callback_error),
                        )
        finally:
            if on_done:
                try:
                    on_done(t)
                except Exception as callback_error:
                    logger.error(
                        "Done callback failed",
                        task_name=name,
                        callback_error=str(callback_error),
                    )

    task.add_done_callback(handle_result)
    return task


async def cancel_and_wait(task: Optional[asyncio.Task], timeout: float = 5.0) -> None:
    """Cancel a task and wait (bounded) for it to unwind."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except (asyncio.CancelledError, asyncio.TimeoutError):
        pass
    except Exception as e:
        logger.warning("Task raised while cancelling", task_name=task.get_name(), error=str(e))


async def maybe_await(value: Union[T, Awaitable[T]]) -> T:
    """Await value if it is awaitable, so callbacks may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value
