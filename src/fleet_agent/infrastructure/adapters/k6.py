"""
Load-test job adapter.

Runs a k6 script and turns its summary export into the job's result payload.
"""

import json
import re
import shlex
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from fleet_agent.domain.ports import IBackendPort, JobRuntime
from fleet_agent.domain.value_objects import AdapterOutcome, Job, JobKind, LogStream, parse_duration
from fleet_agent.errors import BackendError, ScriptPreparationError
from fleet_agent.infrastructure.adapters.process import ProcessAdapter


SUMMARY_FILE = "summary.json"
SCRIPT_FILE = "script.js"

# "default   [  45% ] 10 VUs  0m27.0s/1m0s"
_PERCENT_PATTERN = re.compile(r"\[\s*(\d{1,3})%\s*\]")
# "running (0m27.0s/1m00.0s)" or the bar's "0m27.0s/1m0s"
_ELAPSED_PATTERN = re.compile(r"(\d+m\d+(?:\.\d+)?s)/(\d+m\d+(?:\.\d+)?s)")

# Progress stays below this until the process has exited successfully.
PROGRESS_CEILING = 0.99


class ProgressTracker:
    """
    Best-effort progress derived from k6 console output.

    k6 only prints a progress bar; the value is a heuristic, kept monotonic
    and never reported as finished before the process exits.
    """

    def __init__(self, runtime: JobRuntime, floor: float = 0.1):
        self._runtime = runtime
        self.value = floor

    def feed(self, line: str, stream: LogStream) -> None:
        estimate = self.estimate(line)
        if estimate is None:
            return
        estimate = min(estimate, PROGRESS_CEILING)
        if estimate > self.value:
            self.value = estimate
            self._runtime.progress(estimate)

    @staticmethod
    def estimate(line: str) -> Optional[float]:
        match = _PERCENT_PATTERN.search(line)
        if match:
            return min(int(match.group(1)), 100) / 100.0

        match = _ELAPSED_PATTERN.search(line)
        if match:
            try:
                elapsed = parse_duration(match.group(1))
                total = parse_duration(match.group(2))
            except ValueError:
                return None
            if total > 0:
                return min(elapsed / total, 1.0)
        return None


def format_stages(stages: Any) -> str:
    """
    Render stages for the --stage flag.

    Accepts a ready string ("30s:10,1m:20") or a list of
    {"duration": "30s", "target": 10} mappings.
    """
    if isinstance(stages, str):
        return stages
    parts = []
    for stage in stages or []:
        parts.append(f"{stage['duration']}:{stage['target']}")
    return ",".join(parts)


class K6Adapter(ProcessAdapter):
    """
    Load-test adapter.

    Flow:
    1. Take the inline script or download it from the backend by script_id
    2. Write it to a scratch directory
    3. Run `k6 run` with options and parameters
    4. Parse the summary export into the result payload
    The scratch directory is removed on every exit path.
    """

    kind = JobKind.K6

    def __init__(self, backend: IBackendPort, binary: str = "k6", kill_grace: float = 5.0):
        super().__init__(kill_grace=kill_grace)
        self.backend = backend
        self.binary = binary

    async def run(self, runtime: JobRuntime) -> AdapterOutcome:
        job = runtime.job
        runtime.log("Preparing script file...")

        with tempfile.TemporaryDirectory(prefix=f"k6-agent-{job.id}-") as scratch:
            scratch_dir = Path(scratch)
            script_path = await self._prepare_script(runtime, scratch_dir)
            summary_path = scratch_dir / SUMMARY_FILE

            argv = self.build_command(job, script_path, summary_path)
            runtime.log(f"k6 command: {shlex.join(argv)}")
            runtime.log("Starting k6 test...")

            tracker = ProgressTracker(runtime)
            runtime.progress(tracker.value)
            exit_code = await self._run_process(runtime, argv, cwd=scratch, on_line=tracker.feed)

            runtime.log("Processing results...")
            result = self._parse_summary(runtime, summary_path)

        runtime.log("k6 test finished")
        return AdapterOutcome(exit_code=exit_code, result=result)

    async def _prepare_script(self, runtime: JobRuntime, scratch_dir: Path) -> Path:
        job = runtime.job
        if job.script_content:
            content = job.script_content
            runtime.log("Using inline script content")
        elif job.script_id:
            try:
                content = await self.backend.fetch_script(job.script_id)
            except BackendError as e:
                raise ScriptPreparationError(f"Failed to download script {job.script_id}: {e.message}") from e
            runtime.log(f"Downloaded script {job.script_id}")
        else:
            raise ScriptPreparationError("Neither script content nor script id provided")

        script_path = scratch_dir / SCRIPT_FILE
        try:
            script_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ScriptPreparationError(f"Failed to write script: {e}") from e

        runtime.log(f"Script file ready: {script_path}")
        return script_path

    def build_command(self, job: Job, script_path: Path, summary_path: Path) -> List[str]:
        """Translate options and parameters into the k6 command line."""
        args = [self.binary, "run", "--summary-export", str(summary_path)]

        options = job.options
        if "vus" in options:
            args += ["--vus", str(options["vus"])]
        if "duration" in options:
            args += ["--duration", str(options["duration"])]
        if "iterations" in options:
            args += ["--iterations", str(options["iterations"])]
        if options.get("stages"):
            args += ["--stage", format_stages(options["stages"])]

        for key in sorted(job.params):
            args += ["-e", f"{key}={job.params[key]}"]

        args.append(str(script_path))
        return args

    def _parse_summary(self, runtime: JobRuntime, summary_path: Path) -> Optional[Dict[str, Any]]:
        if not summary_path.exists():
            runtime.log("No summary file produced")
            return None

        try:
            raw = summary_path.read_text(encoding="utf-8")
            summary = json.loads(raw)
        except (OSError, ValueError) as e:
            runtime.log(f"Failed to parse results: {e}")
            return None

        runtime.log("Results parsed")
        metrics = summary.get("metrics", summary) if isinstance(summary, dict) else summary
        return {
            "summary": summary,
            "metrics_json": json.dumps(metrics),
        }
