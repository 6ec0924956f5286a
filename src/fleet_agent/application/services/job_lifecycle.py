"""
Job Lifecycle

Drives an accepted job from pending to exactly one terminal state, reports
the outcome to the backend once, and keeps the registry and log channel in
step with it.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from fleet_agent.application.services.log_broadcaster import LogBroadcaster, LogChannel
from fleet_agent.application.services.task_registry import TaskRegistry
from fleet_agent.domain.entities import TaskState
from fleet_agent.domain.execution_context import REASON_SHUTDOWN, REASON_STOPPED, ExecutionContext
from fleet_agent.domain.ports import IBackendPort, JobRuntime
from fleet_agent.domain.value_objects import AdapterOutcome, Job, JobStatusUpdate, TaskStatus
from fleet_agent.errors import AgentError, ExecutionCancelled, ProcessExitError
from fleet_agent.infrastructure.adapters import AdapterRegistry
from fleet_agent.infrastructure.logging import bind_context, clear_context


logger = structlog.get_logger(__name__)

# Minimum progress change that triggers a status ping to the backend.
PROGRESS_REPORT_STEP = 0.05


@dataclass
class JobHandle:
    """Runtime companions of a TaskState while the agent holds the job."""

    job: Job
    state: TaskState
    context: ExecutionContext
    channel: LogChannel
    task: Optional[asyncio.Task] = None
    reported_progress: float = 0.0
    result_reported: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


def describe_error(error: BaseException) -> str:
    if isinstance(error, AgentError):
        return error.message
    return str(error) or type(error).__name__


class JobLifecycleController:
    """
    Owns job execution.

    submit() records the job as pending and spawns its execution task; the
    task waits for a free slot (max_concurrent_jobs), runs the kind's adapter
    and settles the terminal state:
    - context cancelled (stop request, timeout, shutdown) -> stopped
    - adapter raised -> failed
    - adapter returned -> completed
    Whatever the adapter does, the job ends terminal and the result is
    reported exactly once.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        broadcaster: LogBroadcaster,
        adapters: AdapterRegistry,
        backend: IBackendPort,
        max_concurrent_jobs: int = 4,
    ):
        self._registry = registry
        self._broadcaster = broadcaster
        self._adapters = adapters
        self._backend = backend
        self.max_concurrent_jobs = max_concurrent_jobs
        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._handles: Dict[str, JobHandle] = {}
        self._active = 0
        self._pings: Set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        """Jobs accepted but not yet terminal."""
        return self._active

    @property
    def has_capacity(self) -> bool:
        return self._active < self.max_concurrent_jobs

    def submit(self, job: Job) -> TaskState:
        """
        Accept a job and start executing it in the background.

        Must be called from the running event loop.

        Raises:
            TaskAlreadyExistsError: The registry already holds this job id
        """
        state = TaskState.for_job(job)
        self._registry.put(job.id, state)

        timeout = job.timeout_seconds
        if job.timeout and timeout is None:
            logger.warning("Ignoring invalid job timeout", job_id=job.id, timeout=job.timeout)

        context = ExecutionContext(timeout=timeout)
        context.arm()
        channel = self._broadcaster.open(job.id, state)
        handle = JobHandle(job=job, state=state, context=context, channel=channel)
        self._handles[job.id] = handle
        self._active += 1

        handle.task = asyncio.create_task(self._execute(handle), name=f"job:{job.id}")
        logger.info("Job accepted", job_id=job.id, kind=job.kind, timeout=timeout)
        return state

    def stop(self, task_id: str) -> TaskState:
        """
        Request cancellation of a job.

        Stopping a terminal job is a no-op; the caller still gets its state.

        Raises:
            TaskNotFoundError: Unknown task id
        """
        state = self._registry.get(task_id)
        handle = self._handles.get(task_id)
        if handle is not None and not state.is_terminal:
            if handle.context.cancel(REASON_STOPPED):
                logger.info("Stop requested", job_id=task_id, status=state.status.value)
        return state

    def channel(self, task_id: str) -> Optional[LogChannel]:
        return self._broadcaster.get(task_id)

    async def wait(self, task_id: str) -> TaskState:
        """Wait until the job is terminal and its result has been reported."""
        handle = self._handles.get(task_id)
        if handle is None:
            return self._registry.get(task_id)
        await handle.done.wait()
        return handle.state

    def reap(self, now: Optional[datetime] = None) -> List[str]:
        """Apply the retention policy and drop the evicted jobs' companions."""
        evicted = self._registry.reap(now)
        for task_id in evicted:
            self._handles.pop(task_id, None)
        self._broadcaster.discard(evicted)
        return evicted

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Cancel every unfinished job and wait for them to settle.

        Jobs still running after timeout have their tasks cancelled.
        """
        running = [handle for handle in self._handles.values() if not handle.done.is_set()]
        for handle in running:
            handle.context.cancel(REASON_SHUTDOWN)

        tasks = [handle.task for handle in running if handle.task is not None]
        if tasks:
            logger.info("Waiting for jobs to stop", count=len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Jobs did not stop in time, cancelled", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        await self.drain_status_updates()
        self._broadcaster.close_all()

    async def drain_status_updates(self) -> None:
        """Wait for status pings still in flight."""
        while self._pings:
            await asyncio.gather(*list(self._pings), return_exceptions=True)

    async def _execute(self, handle: JobHandle) -> None:
        job, state, context = handle.job, handle.state, handle.context
        # The task copied the submitter's context (an HTTP request, a poll tick).
        clear_context()
        bind_context(job_id=job.id)
        log = logger.bind(kind=job.kind)
        try:
            try:
                if not await self._acquire_slot(context):
                    self._settle(handle, None, None)
                else:
                    try:
                        outcome, error = await self._run_adapter(handle, log)
                        self._settle(handle, outcome, error)
                    finally:
                        self._slots.release()
            except asyncio.CancelledError:
                if not state.is_terminal:
                    context.cancel(REASON_SHUTDOWN)
                    self._settle(handle, None, None)
                raise
            finally:
                self._release(handle)

            await self._report_result(handle)
            await self._notify_callback(handle)
        finally:
            handle.done.set()

    async def _acquire_slot(self, context: ExecutionContext) -> bool:
        """Wait for an execution slot unless the job is cancelled first."""
        if context.is_cancelled:
            return False

        acquire = asyncio.create_task(self._slots.acquire())
        cancelled = asyncio.create_task(context.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cancelled

        if acquire.done() and not acquire.cancelled() and not context.is_cancelled:
            return True

        acquire.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await acquire
        if not acquire.cancelled():
            self._slots.release()
        return False

    async def _run_adapter(
        self, handle: JobHandle, log: Any
    ) -> Tuple[Optional[AdapterOutcome], Optional[BaseException]]:
        job, state = handle.job, handle.state
        try:
            adapter = self._adapters.get(job.kind)
        except AgentError as e:
            log.warning("Rejecting job", error=e.message)
            return None, e

        state.mark_running()
        self._ping(job.id, TaskStatus.RUNNING, 0.0, "Job started")
        log.info("Job started")

        runtime = JobRuntime(
            job=job,
            context=handle.context,
            emit=handle.channel.publish,
            progress=partial(self._on_progress, handle),
        )

        try:
            outcome = await adapter.run(runtime)
            return outcome, None
        except ExecutionCancelled:
            return None, None
        except Exception as e:
            # Adapters must never take the agent down; any error fails the job.
            if not isinstance(e, AgentError):
                log.error("Unexpected adapter error", error=str(e), exc_info=True)
            return None, e

    def _settle(
        self,
        handle: JobHandle,
        outcome: Optional[AdapterOutcome],
        error: Optional[BaseException],
    ) -> None:
        """Move the task to its terminal state and close its log channel."""
        state, context, channel = handle.state, handle.context, handle.channel
        runtime_log = JobRuntime(handle.job, context, channel.publish, state.set_progress).log

        if context.is_cancelled:
            exit_code = error.exit_code if isinstance(error, ProcessExitError) else None
            state.mark_stopped(context.reason, exit_code)
            runtime_log(f"Job stopped: {context.reason}")
        elif error is not None:
            exit_code = error.exit_code if isinstance(error, ProcessExitError) else None
            message = describe_error(error)
            state.mark_failed(message, exit_code)
            runtime_log(f"Job failed: {message}")
        else:
            outcome = outcome or AdapterOutcome()
            state.mark_completed(outcome.result, outcome.exit_code)
            runtime_log("Job completed successfully")

        channel.close()
        logger.info(
            "Job finished",
            job_id=state.id,
            status=state.status.value,
            exit_code=state.exit_code,
            duration_ms=state.duration_ms,
        )

    def _release(self, handle: JobHandle) -> None:
        handle.context.release()
        self._active -= 1

    def _on_progress(self, handle: JobHandle, value: float) -> None:
        handle.state.set_progress(value)
        if value - handle.reported_progress >= PROGRESS_REPORT_STEP:
            handle.reported_progress = value
            self._ping(handle.job.id, TaskStatus.RUNNING, value)

    def _ping(self, job_id: str, status: TaskStatus, progress: float, message: str = "") -> None:
        """Send a status update without waiting for it."""
        update = JobStatusUpdate(job_id=job_id, status=status, progress=progress, log=message)
        task = asyncio.create_task(self._send_status(update))
        self._pings.add(task)
        task.add_done_callback(self._pings.discard)

    async def _send_status(self, update: JobStatusUpdate) -> None:
        try:
            await self._backend.report_status(update)
        except AgentError as e:
            logger.warning("Status update failed", job_id=update.job_id, error=e.message)

    async def _report_result(self, handle: JobHandle) -> None:
        if handle.result_reported:
            return
        handle.result_reported = True

        report = handle.state.to_result_report()
        try:
            await self._backend.report_result(report)
        except AgentError as e:
            logger.error("Job result could not be reported", job_id=report.job_id, error=e.message)

    async def _notify_callback(self, handle: JobHandle) -> None:
        url = handle.job.callback_url
        if not url:
            return
        try:
            await self._backend.send_callback(url, callback_payload(handle.state))
        except AgentError as e:
            logger.warning("Callback failed", job_id=handle.job.id, url=url, error=e.message)


def callback_payload(state: TaskState) -> Dict[str, Any]:
    """Outcome notification posted to a job's callback URL."""
    snapshot = state.to_dict()
    return {
        "taskId": snapshot["id"],
        "status": snapshot["status"],
        "result": snapshot.get("result"),
        "error": snapshot.get("error"),
        "startTime": snapshot["startTime"],
        "endTime": snapshot.get("endTime"),
        "logs": snapshot["logs"],
    }
