"""Exception logging shared by the pipeline, the worker and the process hooks.

Handlers catch the concrete exception tuples defined next to them (built on
``COMMON_HANDLER_EXCEPTIONS``) and report through ``log_exception``, so every
failure line carries the same ``message | key=value`` shape.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Mapping
    from types import TracebackType

COMMON_HANDLER_EXCEPTIONS = (
    AssertionError,
    AttributeError,
    LookupError,
    OSError,
    RuntimeError,
    TimeoutError,
    TypeError,
    ValueError,
)

_process_logger = logging.getLogger("personacord.process")


def format_log_context(context: Mapping[str, object]) -> str:
    """Render `context` as ``key=value`` pairs sorted by key."""
    return ", ".join(f"{key}={context[key]!r}" for key in sorted(context))


def log_exception(
    *,
    logger: logging.Logger,
    message: str,
    error: BaseException,
    context: Mapping[str, object] | None = None,
) -> None:
    """Log `error` with its traceback under `message` and optional context."""
    line = f"{message} | {format_log_context(context)}" if context else message
    logger.error("%s", line, exc_info=error)


def log_job_failure(
    *,
    logger: logging.Logger,
    job_type: str,
    request_id: str,
    error: BaseException,
    stage: str | None = None,
) -> None:
    """Log a job that ended in an exception, tagged with its request id."""
    context: dict[str, object] = {"job_type": job_type, "request_id": request_id}
    if stage is not None:
        context["stage"] = stage
    log_exception(
        logger=logger,
        message="Job processing failed",
        error=error,
        context=context,
    )


def _handle_loop_exception(
    _loop: asyncio.AbstractEventLoop,
    context: dict[str, Any],
) -> None:
    message = str(context.get("message") or "Unhandled asyncio exception")
    details = {
        key: value
        for key, value in context.items()
        if key not in {"exception", "message"}
    }
    error = context.get("exception")
    if isinstance(error, BaseException):
        log_exception(
            logger=_process_logger,
            message=message,
            error=error,
            context=details,
        )
        return
    line = f"{message} | {format_log_context(details)}" if details else message
    _process_logger.error("%s", line)


def _sys_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    _process_logger.error(
        "Unhandled exception at process boundary",
        exc_info=(exc_type, exc_value, exc_traceback),
    )


def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
    if issubclass(args.exc_type, KeyboardInterrupt):
        threading.__excepthook__(args)
        return
    thread_name = args.thread.name if args.thread else "unknown"
    exc_info = (
        (args.exc_type, args.exc_value, args.exc_traceback)
        if isinstance(args.exc_value, BaseException)
        else None
    )
    _process_logger.error(
        "Unhandled thread exception | thread=%s",
        thread_name,
        exc_info=exc_info,
    )


def install_exception_hooks(loop: asyncio.AbstractEventLoop | None = None) -> None:
    """Route uncaught exceptions from threads, the process and `loop` to logging."""
    sys.excepthook = _sys_excepthook
    threading.excepthook = _thread_excepthook
    if loop is not None:
        loop.set_exception_handler(_handle_loop_exception)
