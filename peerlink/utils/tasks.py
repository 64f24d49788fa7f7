"""Background tasks whose failures stop the process."""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Raised inside a guarded task to end it without stopping the process."""

    pass


async def _run_logged(
    task_name: str,
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except SafeTaskExitError:
        raise
    except Exception:
        logger.exception(f'Unhandled error in background task {task_name}')
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Task done callback raising `SystemExit` if the task failed.

    Cancelled tasks and tasks ending with
    [`SafeTaskExitError`][peerlink.utils.tasks.SafeTaskExitError] are
    ignored.
    """
    if task.cancelled():
        return
    exception = task.exception()
    if exception is None or isinstance(exception, SafeTaskExitError):
        return
    logger.error(
        f'Background task {task.get_name()} failed with {exception!r}, '
        'exiting',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    task_name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine function as a guarded background task.

    The relay client reconnect loop, the call manager message loop, and the
    relay's connected client logger all run unawaited. A failure in one of
    them would otherwise leave the process alive but unresponsive, so the
    traceback is logged and
    [`exit_on_error()`][peerlink.utils.tasks.exit_on_error] stops the
    process.

    Args:
        coro: Coroutine function to run.
        args: Positional arguments for `coro`.
        task_name: Name given to the task and used in log messages.
        kwargs: Keyword arguments for `coro`.

    Returns:
        Asyncio task handle.
    """
    task_name = coro.__name__ if task_name is None else task_name
    task = asyncio.create_task(
        _run_logged(task_name, coro, *args, **kwargs),
        name=task_name,
    )
    task.add_done_callback(exit_on_error)
    return task
