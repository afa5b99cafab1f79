# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Run-time helpers shared by the backup and restore orchestrators.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from dbsnap.exceptions import DBSnapError, RunCancelled, TransientError

logger = structlog.get_logger()

T = TypeVar("T")

# Errors worth another attempt. Integrity errors never are.
_TRANSIENT = (OSError, ConnectionError, TimeoutError)


def is_transient(error: BaseException) -> bool:
    if isinstance(error, DBSnapError):
        return error.retryable
    return isinstance(error, _TRANSIENT)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_seconds: float,
    step: str,
    **log_context,
) -> T:
    """
    Await ``operation()`` up to ``attempts`` times.

    Only transient errors are retried, with exponential backoff
    (backoff, 2x backoff, 4x backoff, ...). The last error propagates.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not is_transient(e):
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "transient_error_retrying",
                step=step,
                attempt=attempt,
                delay=delay,
                error=str(e),
                **log_context,
            )
            await asyncio.sleep(delay)
            attempt += 1


def error_kind(error: BaseException) -> str:
    """Machine-checkable kind recorded on failed runs."""
    if isinstance(error, DBSnapError):
        return error.kind
    if isinstance(error, asyncio.CancelledError):
        return RunCancelled.kind
    if isinstance(error, _TRANSIENT):
        # Timeouts raised by a source or store, not the run deadline
        return TransientError.kind
    return type(error).__name__


def error_message(error: BaseException) -> str:
    if isinstance(error, DBSnapError):
        return error.message
    return str(error) or type(error).__name__


def caller_cancelled() -> bool:
    """True if the task awaiting a run was itself asked to cancel."""
    current = asyncio.current_task()
    return current is not None and current.cancelling() > 0
