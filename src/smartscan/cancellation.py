# src/smartscan/cancellation.py
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from .exceptions import ScanAborted

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation signal passed explicitly through every async stage.

    A token is cancelled once and stays cancelled. Awaiting `wait()` completes
    when `cancel()` is called, which lets a stage race its work against it.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run `callback` on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScanAborted(self.reason or "cancelled")

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    return token if token is not None else CancellationToken()


async def race(awaitable: Awaitable[T], token: Optional[CancellationToken], timeout: Optional[float]) -> T:
    """
    Await `awaitable` against a timeout and a cancellation token.

    Whichever settles first wins: the awaitable's result (or exception), a
    ScanAborted when the token fires, or asyncio.TimeoutError. The losers are
    cancelled before returning.
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if cancel_waiter is not None and cancel_waiter in done:
            raise ScanAborted(token.reason or "cancelled")
        if task in done:
            return task.result()
        raise asyncio.TimeoutError()
    finally:
        for fut in waiters:
            if not fut.done():
                fut.cancel()
