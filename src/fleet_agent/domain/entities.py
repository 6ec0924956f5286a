"""
Task Entities

The mutable execution record kept for every accepted job.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from fleet_agent.errors import InvalidTransitionError
from fleet_agent.domain.value_objects import (
    ALLOWED_TRANSITIONS,
    Job,
    JobResultReport,
    TaskStatus,
    utc_now,
)


@dataclass
class TaskState:
    """
    Tracks one job from acceptance to its terminal outcome.

    Every field mutation goes through a method that takes the entry's own
    lock, so updates to one task never contend with reads of another.
    Status moves follow ALLOWED_TRANSITIONS; end_time is set exactly when
    the status becomes terminal.
    """

    id: str
    script_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    progress: float = 0.0
    logs: List[str] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @classmethod
    def for_job(cls, job: Job) -> "TaskState":
        """Create the pending record for a freshly accepted job."""
        return cls(id=job.id, script_id=job.script_id, parameters=dict(job.params))

    @property
    def is_terminal(self) -> bool:
        with self._lock:
            return self.status.is_terminal

    def mark_running(self) -> None:
        """Enter running; start_time becomes the moment execution began."""
        with self._lock:
            self._transition(TaskStatus.RUNNING)
            self.start_time = utc_now()

    def mark_completed(self, result: Optional[Dict[str, Any]] = None, exit_code: int = 0) -> None:
        with self._lock:
            self._transition(TaskStatus.COMPLETED)
            self.progress = 1.0
            self.result = result
            self.exit_code = exit_code
            self._stamp_end()

    def mark_failed(self, error: str, exit_code: Optional[int] = None) -> None:
        with self._lock:
            self._transition(TaskStatus.FAILED)
            self.error = error or "unknown error"
            self.exit_code = exit_code if exit_code is not None else -1
            self._stamp_end()

    def mark_stopped(self, reason: Optional[str] = None, exit_code: Optional[int] = None) -> None:
        with self._lock:
            self._transition(TaskStatus.STOPPED)
            if reason:
                self.error = reason
            self.exit_code = exit_code if exit_code is not None else -1
            self._stamp_end()

    def append_log(self, line: str) -> int:
        """
        Append a line to the history.

        Returns:
            The 1-based sequence number of the appended line
        """
        with self._lock:
            self.logs.append(line)
            return len(self.logs)

    def set_progress(self, progress: float) -> None:
        """Record best-effort progress; ignored once the task is terminal."""
        with self._lock:
            if self.status.is_terminal:
                return
            self.progress = min(max(float(progress), 0.0), 1.0)

    def log_history(self) -> List[str]:
        with self._lock:
            return list(self.logs)

    @property
    def duration_ms(self) -> int:
        """Execution time in milliseconds, 0 until the task is terminal."""
        with self._lock:
            if self.end_time is None:
                return 0
            return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        """Consistent snapshot for the local query surface."""
        with self._lock:
            payload: Dict[str, Any] = {
                "id": self.id,
                "status": self.status.value,
                "startTime": self.start_time.isoformat(),
                "progress": self.progress,
                "logs": list(self.logs),
                "scriptId": self.script_id or "",
                "parameters": dict(self.parameters),
            }
            if self.end_time is not None:
                payload["endTime"] = self.end_time.isoformat()
            if self.result is not None:
                payload["result"] = self.result
            if self.error:
                payload["error"] = self.error
            if self.exit_code is not None:
                payload["exitCode"] = self.exit_code
            return payload

    def to_result_report(self) -> JobResultReport:
        """Build the final report sent to the backend controller."""
        with self._lock:
            result = self.result or {}
            metrics_json = result.get("metrics_json")
            html_report_url = result.get("html_report_url")
            return JobResultReport(
                job_id=self.id,
                status=self.status,
                exit_code=self.exit_code if self.exit_code is not None else 0,
                execution_time=self.duration_ms,
                log="\n".join(self.logs),
                metrics_json=metrics_json if isinstance(metrics_json, str) else None,
                html_report_url=html_report_url if isinstance(html_report_url, str) else None,
                error=self.error,
            )

    def _transition(self, target: TaskStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def _stamp_end(self) -> None:
        end = utc_now()
        self.end_time = end if end >= self.start_time else self.start_time
