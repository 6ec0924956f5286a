"""
Execution Adapter Port

Defines the contract every job kind implements to run its external process.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fleet_agent.domain.execution_context import ExecutionContext
from fleet_agent.domain.value_objects import AdapterOutcome, Job, JobKind, LogStream


@dataclass
class JobRuntime:
    """
    Everything an adapter may touch while running one job.

    Attributes:
        job: The job being executed
        context: Cancellation scope; adapters must stop their process once it is cancelled
        emit: Sink receiving each formatted log line (history + live fan-out)
        progress: Sink receiving best-effort progress in [0, 1]
    """

    job: Job
    context: ExecutionContext
    emit: Callable[[str], None]
    progress: Callable[[float], None]

    def log(self, message: str, stream: Optional[LogStream] = None) -> None:
        """Format and emit one log line, tagged with its stream when known."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        if stream is not None:
            self.emit(f"[{timestamp}] [{stream.value}] {message}")
        else:
            self.emit(f"[{timestamp}] {message}")


class IExecutionAdapter(ABC):
    """
    Port interface for kind-specific job execution.

    run() returns an AdapterOutcome when the process exits cleanly and
    raises otherwise:
    - ExecutionCancelled once the context is cancelled (process terminated)
    - ProcessExitError for a non-zero exit
    - any other AgentError for launch or preparation failures
    Scratch files created by the adapter are removed on every path.
    """

    kind: JobKind

    @abstractmethod
    async def run(self, runtime: JobRuntime) -> AdapterOutcome:
        """
        Run the job to completion.

        Args:
            runtime: Job, context and log/progress sinks

        Returns:
            AdapterOutcome with exit code and optional structured result
        """
        pass
