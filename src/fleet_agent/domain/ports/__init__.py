"""
Domain Ports

Port interfaces defining contracts between layers.
All dependencies on external systems are abstracted through ports.
"""

from .backend_port import IBackendPort
from .adapter_port import IExecutionAdapter, JobRuntime

__all__ = [
    # Backend controller
    "IBackendPort",
    # Execution adapters
    "IExecutionAdapter",
    "JobRuntime",
]
