"""
Shell job adapter.
"""

from fleet_agent.domain.ports import JobRuntime
from fleet_agent.domain.value_objects import AdapterOutcome, JobKind
from fleet_agent.errors import AgentError
from fleet_agent.infrastructure.adapters.process import IS_WINDOWS, ProcessAdapter, job_environment


class ShellAdapter(ProcessAdapter):
    """Runs the job's command through /bin/sh (PowerShell on Windows)."""

    kind = JobKind.SHELL

    async def run(self, runtime: JobRuntime) -> AdapterOutcome:
        command = (runtime.job.command or "").strip()
        if not command:
            raise AgentError("Shell job has no command", {"job_id": runtime.job.id})

        if IS_WINDOWS:
            argv = ["powershell", "-Command", command]
        else:
            argv = ["/bin/sh", "-c", command]

        runtime.log("Running shell command")
        runtime.progress(0.1)
        exit_code = await self._run_process(runtime, argv, env=job_environment(runtime))
        runtime.log("Shell command finished")
        return AdapterOutcome(exit_code=exit_code)
