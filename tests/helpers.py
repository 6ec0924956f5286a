"""
Test helpers

Factories for jobs, identities and fakes of the backend and adapters.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional
from unittest.mock import AsyncMock, Mock

from fleet_agent.domain.ports import IExecutionAdapter, JobRuntime
from fleet_agent.domain.value_objects import AdapterOutcome, AgentIdentity, Job, JobKind
from fleet_agent.errors import ExecutionCancelled


def make_job(job_id: str = "job-1", kind: str = "shell", **kwargs) -> Job:
    """Create a job with sensible defaults."""
    kwargs.setdefault("command", "echo hi")
    return Job(id=job_id, kind=kind, **kwargs)


def make_identity(agent_id: str = "agent-local-1") -> AgentIdentity:
    return AgentIdentity(
        agent_id=agent_id,
        hostname="worker-01",
        ip="10.0.0.5",
        os="linux",
        arch="x86_64",
        k6_version="0.49.0",
        resources={"cpu": 4, "memory": 8192},
        tags={"region": "eu"},
    )


def make_backend(assigned_id: Optional[str] = "agent-42") -> Mock:
    """Backend port fake; every call succeeds unless a test says otherwise."""
    backend = Mock()
    backend.register = AsyncMock(return_value=assigned_id)
    backend.send_heartbeat = AsyncMock()
    backend.poll_job = AsyncMock(return_value=None)
    backend.report_status = AsyncMock()
    backend.report_result = AsyncMock()
    backend.fetch_script = AsyncMock(return_value="export default function () {}")
    backend.send_callback = AsyncMock()
    backend.close = AsyncMock()
    return backend


Behavior = Callable[[JobRuntime], Awaitable[AdapterOutcome]]


class FakeAdapter(IExecutionAdapter):
    """Adapter whose run() is a coroutine supplied by the test."""

    def __init__(self, behavior: Behavior, kind: JobKind = JobKind.SHELL):
        self.kind = kind
        self.behavior = behavior
        self.started: List[str] = []

    async def run(self, runtime: JobRuntime) -> AdapterOutcome:
        self.started.append(runtime.job.id)
        return await self.behavior(runtime)


async def succeed(runtime: JobRuntime) -> AdapterOutcome:
    runtime.log("hello")
    return AdapterOutcome(exit_code=0, result={"metrics_json": "{\"http_reqs\": 10}"})


async def wait_for_cancel(runtime: JobRuntime) -> AdapterOutcome:
    await runtime.context.wait()
    raise ExecutionCancelled(runtime.context.reason)


def gated(gate: asyncio.Event) -> Behavior:
    """Behavior that runs until the gate opens (or the job is cancelled)."""

    async def behavior(runtime: JobRuntime) -> AdapterOutcome:
        runtime.log("waiting for gate")
        waiter = asyncio.create_task(gate.wait())
        cancelled = asyncio.create_task(runtime.context.wait())
        await asyncio.wait({waiter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        cancelled.cancel()
        if runtime.context.is_cancelled:
            raise ExecutionCancelled(runtime.context.reason)
        return AdapterOutcome()

    return behavior


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
