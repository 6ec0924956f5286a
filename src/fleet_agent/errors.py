"""
Agent Errors

Error types shared across the domain, application and infrastructure layers.
"""

import json
from typing import Any, Dict, Optional


class AgentError(Exception):
    """Base error carrying a message and optional structured details."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary format."""
        error_dict: Dict[str, Any] = {"message": self.message}
        error_dict.update(self.details)
        return {k: v for k, v in error_dict.items() if v is not None}

    def to_json(self) -> str:
        """Convert error to JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)


class TaskNotFoundError(AgentError):
    """No task with the given id is held by the registry."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", {"task_id": task_id})
        self.task_id = task_id


class InvalidTransitionError(AgentError):
    """A task status change that the lifecycle state machine forbids."""

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(
            f"Invalid transition for task {task_id}: {current} -> {target}",
            {"task_id": task_id, "current": current, "target": target},
        )


class BackendError(AgentError):
    """The backend controller could not be reached or answered with an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message, {"status_code": status_code, "body": body})
        self.status_code = status_code
        self.body = body


class RegistrationError(AgentError):
    """Registration with the backend failed; the agent must not start its loops."""


class UnsupportedJobKindError(AgentError):
    """No execution adapter is registered for the job's kind."""

    def __init__(self, kind: str):
        super().__init__(f"Unsupported job kind: {kind}", {"kind": kind})
        self.kind = kind


class ScriptPreparationError(AgentError):
    """The job's script could not be obtained or written to scratch storage."""


class ExecutionCancelled(AgentError):
    """The execution context was cancelled while the adapter was running."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(f"Execution cancelled: {reason or 'cancelled'}", {"reason": reason})
        self.reason = reason


class ProcessExitError(AgentError):
    """An external process exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr_tail: str = ""):
        message = f"{command} exited with code {exit_code}"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message, {"exit_code": exit_code})
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class TaskAlreadyExistsError(AgentError):
    """A task with the same id is already held by the registry."""

    def __init__(self, task_id: str):
        super().__init__(f"Task already exists: {task_id}", {"task_id": task_id})
        self.task_id = task_id
