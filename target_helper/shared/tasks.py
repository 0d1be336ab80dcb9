import asyncio
import traceback
from typing import Any, Coroutine, Optional

from .observability import get_logger

log = get_logger(__name__)


def _format(exception: BaseException) -> str:
    return "".join(
        traceback.format_exception(type(exception), exception, exception.__traceback__)
    )


def global_exception_handler(
    loop: asyncio.AbstractEventLoop, context: dict[str, Any]
) -> None:
    """
    Event loop handler for exceptions nobody retrieved.

    Installed with ``loop.set_exception_handler`` so failures in callbacks and
    orphaned tasks end up in the structured log instead of stderr.
    """
    exception = context.get("exception")
    task = context.get("task")
    future = context.get("future")

    log_context: dict[str, Any] = {
        "error_message": context.get("message", "Unhandled exception in asyncio"),
        "exception_type": type(exception).__name__ if exception else "Unknown",
        "exception_str": str(exception) if exception else None,
    }
    if task:
        log_context["task_name"] = task.get_name()
    elif future:
        log_context["future"] = str(future)
    if exception:
        log_context["traceback"] = _format(exception)

    log.error("asyncio_unhandled_exception", **log_context)


def log_task_exception_callback(task: asyncio.Task) -> None:
    """Done callback: log a background task's failure as soon as it finishes."""
    try:
        exception = task.exception()
    except asyncio.CancelledError:
        log.debug("asyncio_task_cancelled", task_name=task.get_name())
        return
    if exception is not None:
        log.error(
            "asyncio_task_failed",
            task_name=task.get_name(),
            exception_type=type(exception).__name__,
            exception_str=str(exception),
            traceback=_format(exception),
        )


def create_monitored_task(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    """
    asyncio.create_task() with failure logging attached.

    Use for every background task (watch consumers, the reaper loop, job
    runs) so none of them can fail silently.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(log_task_exception_callback)
    return task
