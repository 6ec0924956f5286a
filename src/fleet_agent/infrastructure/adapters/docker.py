"""
Container command job adapter.
"""

import shlex

from fleet_agent.domain.ports import JobRuntime
from fleet_agent.domain.value_objects import AdapterOutcome, JobKind
from fleet_agent.errors import AgentError
from fleet_agent.infrastructure.adapters.process import ProcessAdapter


class DockerAdapter(ProcessAdapter):
    """Runs `docker <command>`; the command string is split shell-style."""

    kind = JobKind.DOCKER

    def __init__(self, binary: str = "docker", kill_grace: float = 5.0):
        super().__init__(kill_grace=kill_grace)
        self.binary = binary

    async def run(self, runtime: JobRuntime) -> AdapterOutcome:
        try:
            args = shlex.split(runtime.job.command or "")
        except ValueError as e:
            raise AgentError(f"Invalid docker command: {e}", {"job_id": runtime.job.id}) from e
        if not args:
            raise AgentError("Docker job has no command", {"job_id": runtime.job.id})

        runtime.log(f"Running docker {args[0]}")
        runtime.progress(0.1)
        exit_code = await self._run_process(runtime, [self.binary, *args])
        runtime.log("Docker command finished")
        return AdapterOutcome(exit_code=exit_code)
