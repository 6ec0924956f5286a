"""
Interpreted script job adapter.
"""

import tempfile
from pathlib import Path

from fleet_agent.domain.ports import JobRuntime
from fleet_agent.domain.value_objects import AdapterOutcome, JobKind
from fleet_agent.errors import AgentError, ScriptPreparationError
from fleet_agent.infrastructure.adapters.process import ProcessAdapter, job_environment


class PythonScriptAdapter(ProcessAdapter):
    """
    Writes the inline script to a scratch directory and runs it with the
    configured interpreter. The directory is removed on every exit path.
    """

    kind = JobKind.PYTHON

    def __init__(self, interpreter: str = "python3", kill_grace: float = 5.0):
        super().__init__(kill_grace=kill_grace)
        self.interpreter = interpreter

    async def run(self, runtime: JobRuntime) -> AdapterOutcome:
        job = runtime.job
        if not job.script_content:
            raise AgentError("Python job has no script content", {"job_id": job.id})

        with tempfile.TemporaryDirectory(prefix=f"fleet-agent-{job.id}-") as scratch:
            script_path = Path(scratch) / "script.py"
            try:
                script_path.write_text(job.script_content, encoding="utf-8")
            except OSError as e:
                raise ScriptPreparationError(f"Failed to write script: {e}") from e

            runtime.log("Running python script")
            runtime.progress(0.1)
            exit_code = await self._run_process(
                runtime,
                [self.interpreter, str(script_path)],
                cwd=scratch,
                env=job_environment(runtime),
            )

        runtime.log("Python script finished")
        return AdapterOutcome(exit_code=exit_code)
