"""
Agent Domain

Jobs, task state, the lifecycle state machine and the ports to the outside world.
"""

from .entities import TaskState
from .execution_context import ExecutionContext
from .value_objects import (
    AdapterOutcome,
    AgentIdentity,
    HeartbeatSignal,
    Job,
    JobKind,
    JobResultReport,
    JobStatusUpdate,
    LogStream,
    TaskStatus,
    parse_duration,
)

__all__ = [
    "TaskState",
    "ExecutionContext",
    "AdapterOutcome",
    "AgentIdentity",
    "HeartbeatSignal",
    "Job",
    "JobKind",
    "JobResultReport",
    "JobStatusUpdate",
    "LogStream",
    "TaskStatus",
    "parse_duration",
]
