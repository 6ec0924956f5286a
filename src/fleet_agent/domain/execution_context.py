"""
Execution Context

Cancellation scope owned by one job. A stop request and an expired timeout
cancel it the same way; adapters watch it to terminate their process.
"""

import asyncio
import time
from typing import Optional


REASON_STOPPED = "stopped by request"
REASON_TIMEOUT = "timeout"
REASON_SHUTDOWN = "agent shutdown"


class ExecutionContext:
    """
    Cancellable, optionally deadline-bound execution scope.

    Examples:
        >>> ctx = ExecutionContext(timeout=0.01)
        >>> ctx.arm()            # inside a running event loop
        >>> await ctx.wait()     # returns once stopped or timed out
        >>> ctx.reason
        'timeout'
    """

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._deadline: Optional[float] = None

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    @property
    def deadline(self) -> Optional[float]:
        """Monotonic deadline, set once the context is armed with a timeout."""
        return self._deadline

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def arm(self) -> None:
        """Start the timeout clock. Must be called from a running event loop."""
        if self._timeout is None or self._timer is not None or self.is_cancelled:
            return
        loop = asyncio.get_running_loop()
        self._deadline = time.monotonic() + self._timeout
        self._timer = loop.call_later(self._timeout, self.cancel, REASON_TIMEOUT)

    def cancel(self, reason: str = REASON_STOPPED) -> bool:
        """
        Cancel the context.

        Returns:
            True if this call cancelled it, False if it was already cancelled
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        self._disarm()
        return True

    def release(self) -> None:
        """Drop the pending timeout once the job no longer needs it."""
        self._disarm()

    async def wait(self) -> None:
        await self._event.wait()

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
