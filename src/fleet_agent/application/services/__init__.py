"""
Application Services
"""

from .heartbeat_service import HeartbeatService
from .job_lifecycle import JobLifecycleController
from .log_broadcaster import LogBroadcaster, LogChannel, Subscription
from .poll_service import JobPollService
from .registration_service import RegistrationService
from .task_registry import ReadWriteLock, TaskRegistry

__all__ = [
    "HeartbeatService",
    "JobLifecycleController",
    "LogBroadcaster",
    "LogChannel",
    "Subscription",
    "JobPollService",
    "RegistrationService",
    "ReadWriteLock",
    "TaskRegistry",
]
