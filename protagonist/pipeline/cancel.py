"""Cooperative cancellation shared by every task launched for one operation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class AbortedError(Exception):
    """The operation was cancelled by the caller. Not a failure; never shown to users."""


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError("operation aborted")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first.

        On cancellation the pending work is cancelled and AbortedError is
        raised. A result that arrives after cancellation is discarded.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if not task.done():
            task.cancel()
            raise AbortedError("operation aborted")
        if self.cancelled:
            if not task.cancelled():
                task.exception()  # retrieved; the result is discarded either way
            raise AbortedError("operation aborted")
        return task.result()
