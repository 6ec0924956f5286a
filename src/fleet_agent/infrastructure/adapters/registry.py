"""
Adapter registry.

Maps job kinds to their execution adapters. Supporting a new kind means
adding a JobKind value and registering one adapter here.
"""

from typing import Dict, List

from fleet_agent.domain.ports import IBackendPort, IExecutionAdapter
from fleet_agent.domain.value_objects import JobKind
from fleet_agent.errors import UnsupportedJobKindError
from fleet_agent.infrastructure.adapters.docker import DockerAdapter
from fleet_agent.infrastructure.adapters.k6 import K6Adapter
from fleet_agent.infrastructure.adapters.python_script import PythonScriptAdapter
from fleet_agent.infrastructure.adapters.shell import ShellAdapter
from fleet_agent.infrastructure.config import AgentSettings


class AdapterRegistry:
    """Closed lookup table from job kind to adapter."""

    def __init__(self):
        self._adapters: Dict[JobKind, IExecutionAdapter] = {}

    def register(self, adapter: IExecutionAdapter) -> None:
        self._adapters[JobKind(adapter.kind)] = adapter

    def get(self, kind: str) -> IExecutionAdapter:
        """
        Raises:
            UnsupportedJobKindError: Unknown kind or no adapter registered
        """
        try:
            return self._adapters[JobKind(kind)]
        except (KeyError, ValueError):
            raise UnsupportedJobKindError(kind) from None

    def kinds(self) -> List[str]:
        return [kind.value for kind in self._adapters]


def build_default_registry(settings: AgentSettings, backend: IBackendPort) -> AdapterRegistry:
    """Registry with one adapter per built-in job kind."""
    grace = settings.process_kill_grace
    registry = AdapterRegistry()
    registry.register(K6Adapter(backend, binary=settings.k6_binary, kill_grace=grace))
    registry.register(ShellAdapter(kill_grace=grace))
    registry.register(PythonScriptAdapter(interpreter=settings.python_binary, kill_grace=grace))
    registry.register(DockerAdapter(binary=settings.docker_binary, kill_grace=grace))
    return registry
