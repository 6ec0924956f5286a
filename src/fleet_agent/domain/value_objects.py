"""
Agent Value Objects

Immutable value objects describing the agent, the jobs it receives and the
messages it sends back to the backend controller.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class TaskStatus(str, Enum):
    """Lifecycle status of an accepted job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.STOPPED})

# Allowed lifecycle moves. A job may be stopped or failed before it ever ran
# (stop request while waiting for a slot, unknown kind).
ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.STOPPED}),
    TaskStatus.RUNNING: frozenset(TERMINAL_STATUSES),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.STOPPED: frozenset(),
}


class JobKind(str, Enum):
    """Kinds of work the agent knows how to execute."""

    K6 = "k6"
    SHELL = "shell"
    PYTHON = "python"
    DOCKER = "docker"


class LogStream(str, Enum):
    """Origin of a captured process output line."""

    STDOUT = "stdout"
    STDERR = "stderr"


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """
    Parse a duration string such as "10ms", "1.5s" or "1h30m" into seconds.

    Raises:
        ValueError: If the string is empty or not a valid duration
    """
    text = value.strip()
    if not text:
        raise ValueError("Empty duration")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if text == "0":
        return 0.0

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")

    return sign * total


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Job:
    """
    A unit of work handed out by the backend controller.

    Attributes:
        id: Job identifier, unique per poll response
        kind: Job kind as sent on the wire (k6, shell, python, docker)
        script_id: Reference to a script stored by the backend
        script_content: Inline script body
        command: Command string for shell and docker jobs
        params: Parameters (environment variables for load tests)
        timeout: Optional duration string bounding the execution
        priority: Scheduling priority assigned by the backend
        tags: Free-form labels
        options: Load-test runner options (vus, duration, iterations, stages)
        callback_url: URL notified with the full outcome once the job ends
    """

    id: str
    kind: str
    script_id: Optional[str] = None
    script_content: Optional[str] = None
    command: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[str] = None
    priority: int = 0
    tags: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    callback_url: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Job id cannot be empty")

    @property
    def timeout_seconds(self) -> Optional[float]:
        """Timeout in seconds, or None when absent or unparsable."""
        if not self.timeout:
            return None
        try:
            seconds = parse_duration(self.timeout)
        except ValueError:
            return None
        return seconds if seconds > 0 else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Build a job from the backend's JSON representation."""
        return cls(
            id=str(data["id"]),
            kind=str(data.get("type") or data.get("kind") or ""),
            script_id=data.get("script_id") or None,
            script_content=data.get("script_content") or None,
            command=data.get("command") or None,
            params=dict(data.get("params") or {}),
            timeout=data.get("timeout") or None,
            priority=int(data.get("priority") or 0),
            tags=dict(data.get("tags") or {}),
            options=dict(data.get("options") or {}),
            callback_url=data.get("callback_url") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "type": self.kind,
            "script_id": self.script_id,
            "script_content": self.script_content,
            "command": self.command,
            "params": self.params,
            "timeout": self.timeout,
            "priority": self.priority,
            "tags": self.tags,
            "options": self.options,
            "callback_url": self.callback_url,
        }


@dataclass(frozen=True)
class AgentIdentity:
    """
    Who this agent is, as advertised to the backend.

    The identity is replaced, not mutated: registration produces a copy
    carrying the server-issued id.
    """

    agent_id: str
    hostname: str
    ip: str
    os: str
    arch: str
    k6_version: str = "unknown"
    resources: Dict[str, int] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def with_agent_id(self, agent_id: str) -> "AgentIdentity":
        return replace(self, agent_id=agent_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "agent_id": self.agent_id,
            "hostname": self.hostname,
            "ip": self.ip,
            "os": self.os,
            "arch": self.arch,
            "k6_version": self.k6_version,
            "resources": dict(self.resources),
            "tags": dict(self.tags),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class HeartbeatSignal:
    """Periodic liveness signal with a resource snapshot."""

    agent_id: str
    timestamp: datetime
    resources: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "timestamp": self.timestamp.isoformat(),
            "resources": dict(self.resources),
        }


@dataclass(frozen=True)
class JobStatusUpdate:
    """Intermediate progress ping for a job."""

    job_id: str
    status: TaskStatus
    progress: float
    log: str = ""
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.log:
            payload["log"] = self.log
        return payload


@dataclass(frozen=True)
class JobResultReport:
    """
    Final outcome of a job, sent once after it reaches a terminal state.

    Attributes:
        execution_time: Wall-clock duration in milliseconds
        log: Full log history joined by newlines
    """

    job_id: str
    status: TaskStatus
    exit_code: int
    execution_time: int
    log: str
    metrics_json: Optional[str] = None
    html_report_url: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "execution_time": self.execution_time,
            "log": self.log,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.metrics_json:
            payload["metrics_json"] = self.metrics_json
        if self.html_report_url:
            payload["html_report_url"] = self.html_report_url
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class AdapterOutcome:
    """What an execution adapter returns when its process finished cleanly."""

    exit_code: int = 0
    result: Optional[Dict[str, Any]] = None
