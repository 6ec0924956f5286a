"""
ExecutionContext unit tests
"""

import asyncio

import pytest

from fleet_agent.domain.execution_context import (
    REASON_STOPPED,
    REASON_TIMEOUT,
    ExecutionContext,
)


class TestExecutionContext:

    @pytest.mark.asyncio
    async def test_timeout_cancels_with_reason(self):
        ctx = ExecutionContext(timeout=0.01)
        ctx.arm()

        await asyncio.wait_for(ctx.wait(), timeout=1)

        assert ctx.is_cancelled
        assert ctx.reason == REASON_TIMEOUT

    @pytest.mark.asyncio
    async def test_cancel_is_reported_once(self):
        ctx = ExecutionContext()

        assert ctx.cancel() is True
        assert ctx.cancel("again") is False
        assert ctx.reason == REASON_STOPPED

    @pytest.mark.asyncio
    async def test_stop_before_timeout_keeps_stop_reason(self):
        ctx = ExecutionContext(timeout=0.02)
        ctx.arm()
        ctx.cancel()

        await asyncio.sleep(0.05)

        assert ctx.reason == REASON_STOPPED

    @pytest.mark.asyncio
    async def test_release_disarms_timeout(self):
        ctx = ExecutionContext(timeout=0.01)
        ctx.arm()
        ctx.release()

        await asyncio.sleep(0.05)

        assert not ctx.is_cancelled

    @pytest.mark.asyncio
    async def test_no_timeout_never_expires(self):
        ctx = ExecutionContext()
        ctx.arm()

        assert ctx.deadline is None
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ctx.wait(), timeout=0.02)
