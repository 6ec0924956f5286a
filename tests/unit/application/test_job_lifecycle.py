"""
JobLifecycleController unit tests

Terminal outcomes, stop and timeout, admission control and reporting.
"""

import asyncio
import os
from datetime import timedelta

import pytest
import structlog
from structlog.testing import LogCapture

from fleet_agent.application.services.job_lifecycle import JobLifecycleController
from fleet_agent.application.services.log_broadcaster import LogBroadcaster
from fleet_agent.application.services.task_registry import TaskRegistry
from fleet_agent.domain.execution_context import ExecutionContext
from fleet_agent.domain.value_objects import JobKind, TaskStatus, utc_now
from fleet_agent.errors import BackendError, ProcessExitError, TaskAlreadyExistsError, TaskNotFoundError
from fleet_agent.infrastructure.adapters import AdapterRegistry, ShellAdapter
from fleet_agent.infrastructure.logging import bind_context, clear_context
from tests.helpers import FakeAdapter, gated, make_backend, make_job, succeed, wait_for_cancel, wait_until


def build_lifecycle(adapter, backend=None, max_concurrent_jobs=4):
    adapters = AdapterRegistry()
    adapters.register(adapter)
    registry = TaskRegistry(retention_seconds=60, max_retained=100)
    lifecycle = JobLifecycleController(
        registry=registry,
        broadcaster=LogBroadcaster(queue_size=100),
        adapters=adapters,
        backend=backend or make_backend(),
        max_concurrent_jobs=max_concurrent_jobs,
    )
    return lifecycle, registry


class TestTerminalOutcomes:

    @pytest.mark.asyncio
    async def test_successful_job_completes_and_reports_once(self):
        backend = make_backend()
        lifecycle, registry = build_lifecycle(FakeAdapter(succeed), backend)

        state = lifecycle.submit(make_job("job-1"))
        assert state.status == TaskStatus.PENDING

        await asyncio.wait_for(lifecycle.wait("job-1"), timeout=2)

        assert state.status == TaskStatus.COMPLETED
        assert state.progress == 1.0
        assert state.exit_code == 0
        assert state.end_time >= state.start_time
        assert any("hello" in line for line in state.logs)
        assert registry.get("job-1") is state

        backend.report_result.assert_awaited_once()
        report = backend.report_result.await_args.args[0]
        assert report.job_id == "job-1"
        assert report.status == TaskStatus.COMPLETED
        assert report.metrics_json == "{\"http_reqs\": 10}"

    @pytest.mark.asyncio
    async def test_running_status_is_pinged(self):
        backend = make_backend()
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed), backend)

        lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")
        await lifecycle.drain_status_updates()

        update = backend.report_status.await_args_list[0].args[0]
        assert update.job_id == "job-1"
        assert update.status == TaskStatus.RUNNING
        assert update.progress == 0.0

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails_with_exit_code(self):
        async def exit_three(runtime):
            raise ProcessExitError("/bin/sh", 3, "boom")

        backend = make_backend()
        lifecycle, _ = build_lifecycle(FakeAdapter(exit_three), backend)

        state = lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")

        assert state.status == TaskStatus.FAILED
        assert state.exit_code == 3
        assert "exited with code 3" in state.error
        assert backend.report_result.await_args.args[0].status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_fails_job(self):
        async def explode(runtime):
            raise RuntimeError("adapter bug")

        lifecycle, _ = build_lifecycle(FakeAdapter(explode))

        state = lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")

        assert state.status == TaskStatus.FAILED
        assert state.error == "adapter bug"
        assert state.end_time is not None

    @pytest.mark.asyncio
    async def test_unknown_kind_fails_without_running(self):
        backend = make_backend()
        adapter = FakeAdapter(succeed)
        lifecycle, _ = build_lifecycle(adapter, backend)

        state = lifecycle.submit(make_job("job-1", kind="perl"))
        await lifecycle.wait("job-1")

        assert state.status == TaskStatus.FAILED
        assert "Unsupported job kind" in state.error
        assert adapter.started == []
        backend.report_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_result_report_failure_keeps_terminal_state(self):
        backend = make_backend()
        backend.report_result.side_effect = BackendError("backend down", status_code=503)
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed), backend)

        state = lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")

        assert state.status == TaskStatus.COMPLETED
        backend.report_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_job_rejected(self):
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed))
        lifecycle.submit(make_job("job-1"))

        with pytest.raises(TaskAlreadyExistsError):
            lifecycle.submit(make_job("job-1"))

        await lifecycle.wait("job-1")

    @pytest.mark.asyncio
    async def test_callback_receives_outcome(self):
        backend = make_backend()
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed, kind=JobKind.K6), backend)

        lifecycle.submit(make_job("job-1", kind="k6", callback_url="http://caller.test/done"))
        await lifecycle.wait("job-1")

        backend.send_callback.assert_awaited_once()
        url, payload = backend.send_callback.await_args.args
        assert url == "http://caller.test/done"
        assert payload["taskId"] == "job-1"
        assert payload["status"] == "completed"
        assert payload["endTime"] is not None


class TestCancellation:

    @pytest.mark.asyncio
    async def test_stop_running_job(self):
        lifecycle, _ = build_lifecycle(FakeAdapter(wait_for_cancel))

        state = lifecycle.submit(make_job("job-1"))
        await wait_until(lambda: state.status == TaskStatus.RUNNING)

        lifecycle.stop("job-1")
        await asyncio.wait_for(lifecycle.wait("job-1"), timeout=2)

        assert state.status == TaskStatus.STOPPED
        assert state.error == "stopped by request"

    @pytest.mark.asyncio
    async def test_timeout_stops_job(self):
        backend = make_backend()
        lifecycle, _ = build_lifecycle(FakeAdapter(wait_for_cancel), backend)

        state = lifecycle.submit(make_job("job-1", timeout="10ms"))
        await asyncio.wait_for(lifecycle.wait("job-1"), timeout=2)

        assert state.status == TaskStatus.STOPPED
        assert state.error == "timeout"
        assert backend.report_result.await_args.args[0].status == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_adapter_error_after_cancel_still_counts_as_stopped(self):
        async def killed(runtime):
            await runtime.context.wait()
            raise ProcessExitError("/bin/sh", 143)

        lifecycle, _ = build_lifecycle(FakeAdapter(killed))

        state = lifecycle.submit(make_job("job-1"))
        await wait_until(lambda: state.status == TaskStatus.RUNNING)
        lifecycle.stop("job-1")
        await lifecycle.wait("job-1")

        assert state.status == TaskStatus.STOPPED
        assert state.exit_code == 143

    @pytest.mark.asyncio
    async def test_stop_unknown_task(self):
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed))

        with pytest.raises(TaskNotFoundError):
            lifecycle.stop("missing")

    @pytest.mark.asyncio
    async def test_stop_finished_task_is_noop(self):
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed))
        state = lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")

        assert lifecycle.stop("job-1") is state
        assert state.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_jobs(self):
        lifecycle, _ = build_lifecycle(FakeAdapter(wait_for_cancel))
        state = lifecycle.submit(make_job("job-1"))
        await wait_until(lambda: state.status == TaskStatus.RUNNING)

        await asyncio.wait_for(lifecycle.shutdown(timeout=1), timeout=2)

        assert state.status == TaskStatus.STOPPED
        assert state.error == "agent shutdown"


class TestAdmissionControl:

    @pytest.mark.asyncio
    async def test_jobs_beyond_limit_wait_pending(self):
        gate = asyncio.Event()
        adapter = FakeAdapter(gated(gate))
        lifecycle, _ = build_lifecycle(adapter, max_concurrent_jobs=1)

        first = lifecycle.submit(make_job("job-1"))
        second = lifecycle.submit(make_job("job-2"))
        await wait_until(lambda: first.status == TaskStatus.RUNNING)
        await asyncio.sleep(0.02)

        assert second.status == TaskStatus.PENDING
        assert not lifecycle.has_capacity
        assert adapter.started == ["job-1"]

        gate.set()
        await asyncio.wait_for(lifecycle.wait("job-2"), timeout=2)

        assert first.status == TaskStatus.COMPLETED
        assert second.status == TaskStatus.COMPLETED
        assert lifecycle.has_capacity
        assert lifecycle.active_jobs == 0

    @pytest.mark.asyncio
    async def test_waiting_job_can_be_stopped(self):
        gate = asyncio.Event()
        adapter = FakeAdapter(gated(gate))
        lifecycle, _ = build_lifecycle(adapter, max_concurrent_jobs=1)

        first = lifecycle.submit(make_job("job-1"))
        second = lifecycle.submit(make_job("job-2"))
        await wait_until(lambda: first.status == TaskStatus.RUNNING)

        lifecycle.stop("job-2")
        await asyncio.wait_for(lifecycle.wait("job-2"), timeout=2)

        assert second.status == TaskStatus.STOPPED
        assert adapter.started == ["job-1"]

        gate.set()
        await lifecycle.wait("job-1")
        assert first.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_slot_wait_leaves_no_pending_helpers(self):
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed), max_concurrent_jobs=1)
        before = asyncio.all_tasks()

        assert await lifecycle._acquire_slot(ExecutionContext()) is True

        leftover = [task for task in asyncio.all_tasks() - before if not task.done()]
        assert leftover == []
        lifecycle._slots.release()


class TestProgressAndRetention:

    @pytest.mark.asyncio
    async def test_small_progress_steps_are_not_pinged(self):
        async def creep(runtime):
            for value in (0.01, 0.02, 0.1, 0.12, 0.5):
                runtime.progress(value)
            return await succeed(runtime)

        backend = make_backend()
        lifecycle, _ = build_lifecycle(FakeAdapter(creep), backend)

        lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")
        await lifecycle.drain_status_updates()

        progress = [call.args[0].progress for call in backend.report_status.await_args_list]
        assert progress == [0.0, 0.1, 0.5]

    @pytest.mark.asyncio
    async def test_reap_drops_task_and_channel(self):
        lifecycle, registry = build_lifecycle(FakeAdapter(succeed))
        lifecycle.submit(make_job("job-1"))
        await lifecycle.wait("job-1")

        evicted = lifecycle.reap(now=utc_now() + timedelta(hours=1))

        assert evicted == ["job-1"]
        assert "job-1" not in registry
        assert lifecycle.channel("job-1") is None


@pytest.mark.integration
@pytest.mark.skipif(os.name == "nt", reason="requires a POSIX shell")
class TestShellJobs:

    @pytest.mark.asyncio
    async def test_echo_job_completes(self):
        lifecycle, _ = build_lifecycle(ShellAdapter(kill_grace=1))

        state = lifecycle.submit(make_job("job-1", command="echo hi"))
        await asyncio.wait_for(lifecycle.wait("job-1"), timeout=5)

        assert state.status == TaskStatus.COMPLETED
        assert state.progress == 1.0
        assert state.exit_code == 0
        assert any(line.endswith("[stdout] hi") for line in state.logs)

    @pytest.mark.asyncio
    async def test_short_timeout_stops_long_command_promptly(self):
        backend = make_backend()
        lifecycle, _ = build_lifecycle(ShellAdapter(kill_grace=1), backend)

        state = lifecycle.submit(make_job("job-1", command="sleep 1", timeout="10ms"))
        await asyncio.wait_for(lifecycle.wait("job-1"), timeout=5)

        assert state.status == TaskStatus.STOPPED
        assert state.error == "timeout"
        assert (state.end_time - state.start_time).total_seconds() < 0.5
        assert backend.report_result.await_args.args[0].status == TaskStatus.STOPPED


class TestLogContext:

    @pytest.fixture
    def captured(self):
        capture = LogCapture()
        structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])
        yield capture
        structlog.reset_defaults()

    @pytest.mark.asyncio
    async def test_job_logs_do_not_inherit_submitter_context(self, captured):
        lifecycle, _ = build_lifecycle(FakeAdapter(succeed))

        bind_context(request_id="req-1", method="POST", path="/execute")
        try:
            lifecycle.submit(make_job("job-1"))
        finally:
            clear_context()
        await lifecycle.wait("job-1")

        job_events = [
            entry for entry in captured.entries
            if entry["event"] in ("Job started", "Job finished")
        ]
        assert len(job_events) == 2
        for entry in job_events:
            assert entry["job_id"] == "job-1"
            assert "request_id" not in entry
            assert "path" not in entry
