"""
stackpilot/utils/abort_signal.py

A cooperative cancellation signal handed to a stack controller at construction
and propagated, unchanged, to whichever Terraform backend it builds.

Aborting does not touch the controller's own state machine. It makes every
in-flight backend call that is guarded by the signal fail promptly with
OperationAborted, which the controller then reports like any other failure.

Usage example:
    signal = AbortSignal()
    try:
        await signal.guard(some_long_call())
    except OperationAborted as exc:
        print(exc.reason)

    # elsewhere, e.g. in a SIGINT handler:
    signal.abort("interrupted by user")
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class OperationAborted(Exception):
    """Raised by a backend call that was interrupted through an AbortSignal.

    Attributes:
        reason (str): Why the signal was aborted.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"Operation aborted: {reason}")
        self.reason = reason


class AbortSignal:
    """A one-way flag that can be awaited, shared read-only by many awaiters."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        """True once abort() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """The reason given to abort(), or None while not aborted."""
        return self._reason

    def abort(self, reason: str = "aborted") -> None:
        """Trip the signal. Calling it again keeps the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_aborted(self) -> None:
        """Raise OperationAborted if the signal has already been tripped."""
        if self.aborted:
            raise OperationAborted(self._reason or "aborted")

    async def wait(self) -> None:
        """Suspend until the signal is tripped."""
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, cancelling it if the signal trips first.

        Args:
            awaitable: The work to race against the signal.

        Returns:
            The awaitable's result.

        Raises:
            OperationAborted: If the signal tripped before the work finished.
        """
        self.raise_if_aborted()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise OperationAborted(self._reason or "aborted")
