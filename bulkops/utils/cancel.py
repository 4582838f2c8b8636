# utils/cancel.py

"""
Cooperative cancellation and pause signals for in-process job loops
"""

import asyncio
from typing import Optional


class CancellationToken:
    def __init__(self) -> None:
        self._cancel_requested = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        self._cancel_requested = True


class JobSignals:
    """Cancellation token plus a resumable pause gate.

    The flags are the source of truth; the wake event only nudges a loop that
    is suspended in :meth:`wait` so it re-checks them immediately.
    """

    def __init__(self, token: Optional[CancellationToken] = None) -> None:
        self.token = token or CancellationToken()
        self._paused = False
        self._wake = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def interrupted(self) -> bool:
        return self.cancelled or self._paused

    def request_cancel(self) -> None:
        self.token.request_cancel()
        self._wake.set()

    def pause(self) -> None:
        self._paused = True
        self._wake.set()

    def resume(self) -> None:
        self._paused = False
        self._wake.set()

    def clear_wake(self) -> None:
        self._wake.clear()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds or until a signal arrives; True if woken"""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
            woken = True
        except asyncio.TimeoutError:
            woken = False
        self._wake.clear()
        return woken

    async def wait_until_resumed(self) -> None:
        """Block while paused; returns on resume or cancellation"""
        while self._paused and not self.cancelled:
            await self.wait()
