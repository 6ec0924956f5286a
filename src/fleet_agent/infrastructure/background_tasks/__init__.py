"""
Background Tasks Module

Periodic loop management.
"""

from .task_manager import BackgroundTask, BackgroundTaskManager

__all__ = ["BackgroundTask", "BackgroundTaskManager"]
