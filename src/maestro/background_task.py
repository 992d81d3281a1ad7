import asyncio
import datetime
import functools
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, ParamSpec

from tenacity import TryAgain, before_sleep_log, retry, retry_if_exception_type
from tenacity.wait import wait_fixed

from .logging_utils import log_catch, log_context

_logger = logging.getLogger(__name__)


P = ParamSpec("P")


async def cancel_wait_task(
    task: asyncio.Task, *, max_delay: float | None = None
) -> None:
    """Cancels the given task and waits for it to complete

    Keyword Arguments:
        max_delay -- duration (in seconds) to wait before giving
        up the cancellation. If None the timeout is not set. (default: {None})

    Raises:
        TimeoutError: raised if cannot cancel the task.
        CancelledError: raised ONLY if owner is being cancelled.
    """

    cancelling = task.cancel()
    if not cancelling:
        return  # task was already done

    try:
        await asyncio.shield(
            # NOTE shield ensures that cancellation of the caller function won't stop you
            # from observing the cancellation/finalization of task.
            asyncio.wait_for(task, timeout=max_delay)
        )

    except asyncio.CancelledError:
        if not task.cancelled():
            # task owner function is being cancelled -> propagate cancellation
            raise

        _logger.debug("Task %s cancellation is complete", task.get_name())


def periodic(
    *, interval: datetime.timedelta
) -> Callable[
    [Callable[P, Coroutine[Any, Any, None]]], Callable[P, Coroutine[Any, Any, None]]
]:
    """Calls the function every `interval` until cancelled, whatever it raises"""

    def _decorator(
        func: Callable[P, Coroutine[Any, Any, None]],
    ) -> Callable[P, Coroutine[Any, Any, None]]:
        @retry(
            sleep=asyncio.sleep,
            wait=wait_fixed(interval.total_seconds()),
            retry=retry_if_exception_type(),
            before_sleep=before_sleep_log(_logger, logging.DEBUG),
        )
        @functools.wraps(func)
        async def _wrapper(*args: P.args, **kwargs: P.kwargs) -> None:
            with log_catch(_logger, reraise=True):
                await func(*args, **kwargs)
            raise TryAgain

        return _wrapper

    return _decorator


def create_periodic_task(
    task: Callable[..., Awaitable[None]],
    *,
    interval: datetime.timedelta,
    task_name: str,
    **kwargs,
) -> asyncio.Task:
    @periodic(interval=interval)
    async def _() -> None:
        await task(**kwargs)

    with log_context(
        _logger, logging.DEBUG, msg=f"create periodic background task '{task_name}'"
    ):
        return asyncio.create_task(_(), name=task_name)
