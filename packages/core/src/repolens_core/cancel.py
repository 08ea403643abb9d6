"""Cooperative cancellation shared by every task of one review run."""

from __future__ import annotations

import asyncio

from repolens_core.errors import RunCancelledError

CANCEL_MESSAGE = "Review cancelled by user"


class CancelToken:
    """One token per run.

    Agent loops check it at turn boundaries and around every tool dispatch;
    subprocess helpers await :meth:`wait` to kill in-flight children.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCEL_MESSAGE) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or CANCEL_MESSAGE)

    async def wait(self) -> None:
        await self._event.wait()
