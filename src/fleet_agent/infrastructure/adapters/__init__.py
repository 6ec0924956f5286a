"""
Execution Adapters

One adapter per job kind, sharing the process runner.
"""

from .docker import DockerAdapter
from .k6 import K6Adapter
from .process import ProcessAdapter
from .python_script import PythonScriptAdapter
from .registry import AdapterRegistry, build_default_registry
from .shell import ShellAdapter

__all__ = [
    "AdapterRegistry",
    "build_default_registry",
    "DockerAdapter",
    "K6Adapter",
    "ProcessAdapter",
    "PythonScriptAdapter",
    "ShellAdapter",
]
