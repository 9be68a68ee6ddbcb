"""
Single-slot debouncing on asyncio.

Each scheduler owns one DebounceSlot. Scheduling replaces whatever is pending
in the slot: the previous CancellationToken is cancelled and, if its timer
has not fired yet, the waiting task is cancelled too. Work that already
started is left to observe its token at its own checkpoints.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class CancellationToken:
    """
    Cooperative cancellation flag.

    Everything runs on one event loop, so no locking is needed. Work checks
    `is_cancelled()` at its suspension points and stops on its own.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.started = False
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def is_cancelled(self) -> bool:
        return self._cancelled


SlotCallback = Callable[[CancellationToken], Awaitable[object]]


class DebounceSlot:
    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None
        self._live: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """True while a timer is waiting to fire."""
        return self._task is not None and not self._task.done() and not self._token.started

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and self._token.started

    def schedule(self, delay: float, callback: SlotCallback) -> Optional[CancellationToken]:
        """
        Runs `callback(token)` after `delay` seconds unless replaced first.
        Returns None (and schedules nothing) outside a running event loop.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; '{self.name}' not scheduled")
            return None

        self.cancel(reason="replaced")
        token = CancellationToken()
        self._token = token
        self._task = asyncio.create_task(self._fire(delay, callback, token), name=f"debounce-{self.name}")
        self._live.add(self._task)
        self._task.add_done_callback(self._live.discard)
        return token

    async def _fire(self, delay: float, callback: SlotCallback, token: CancellationToken) -> None:
        await asyncio.sleep(max(delay, 0))
        if token.is_cancelled():
            return
        token.started = True
        try:
            await callback(token)
        except Exception as e:
            # Scheduled work has no caller to raise to.
            logger.error(f"Scheduled '{self.name}' failed: {e}", exc_info=True)

    def cancel(self, reason: Optional[str] = None, include_running: bool = False) -> None:
        """
        Cancels the pending timer. Work that already started keeps running
        unless `include_running` is set, in which case its token is cancelled.
        """
        token, task = self._token, self._task
        if token is None or task is None or task.done():
            return
        if token.started:
            if include_running:
                token.cancel(reason)
            return

        token.cancel(reason)
        task.cancel()
        self._task = None
        self._token = None

    async def join(self) -> None:
        """Waits until nothing is pending or running in the slot, including replacements."""
        while self._live:
            await asyncio.wait(set(self._live))
