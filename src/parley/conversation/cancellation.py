"""
Cooperative cancellation for agent turns.

``CancellationToken`` is the caller-side handle used to interrupt an in-flight
LLM request or tool call (for example when the user presses Ctrl-C while a
response is streaming). Every network read and tool dispatch in the
conversation package awaits through ``CancellationToken.guard`` so that a
cancel request makes the pending operation fail promptly with
``RequestCancelledError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCancelledError(Exception):
    """Raised when an in-flight request or tool call is cancelled by the caller."""


class CancellationToken:
    """Signals that the current request should be abandoned.

    A token is single-use: once cancelled it stays cancelled. Create a fresh
    token for every ``Agent.chat()`` call.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """True once ``cancel()`` has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Safe to call from a signal handler."""
        if not self._event.is_set():
            logger.debug("Cancellation requested")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise ``RequestCancelledError`` if the token has been cancelled."""
        if self._event.is_set():
            raise RequestCancelledError("Request was cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token is cancelled first.

        The awaitable is wrapped in a task and raced against the token. If the
        token fires first, the task is cancelled and ``RequestCancelledError``
        is raised.

        Raises:
            RequestCancelledError: If the token is (or becomes) cancelled
                before *awaitable* completes.
        """
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise RequestCancelledError("Request was cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledError("Request was cancelled")


async def guarded(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """Await *awaitable* through *token* when one is supplied."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
