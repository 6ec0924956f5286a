"""
Backend Port Interface

Defines the contract for talking to the backend controller.
This is an output port - implemented by infrastructure layer.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from fleet_agent.domain.value_objects import (
    AgentIdentity,
    HeartbeatSignal,
    Job,
    JobResultReport,
    JobStatusUpdate,
)


class IBackendPort(ABC):
    """
    Port interface for backend controller operations.

    Implementations raise BackendError when the backend is unreachable or
    answers with a non-success status.
    """

    @abstractmethod
    async def register(self, identity: AgentIdentity, registration_token: str) -> Optional[str]:
        """
        Register the agent.

        Args:
            identity: Identity advertised by the agent
            registration_token: Shared secret accepted by the backend

        Returns:
            Server-assigned agent id, or None if the backend returned none
        """
        pass

    @abstractmethod
    async def send_heartbeat(self, signal: HeartbeatSignal) -> None:
        """Send a liveness signal."""
        pass

    @abstractmethod
    async def poll_job(self, agent_id: str) -> Optional[Job]:
        """
        Ask for at most one job.

        Returns:
            The job, or None when the backend has nothing for this agent
        """
        pass

    @abstractmethod
    async def report_status(self, update: JobStatusUpdate) -> None:
        """Send an intermediate progress ping."""
        pass

    @abstractmethod
    async def report_result(self, report: JobResultReport) -> None:
        """Send the final outcome of a job."""
        pass

    @abstractmethod
    async def fetch_script(self, script_id: str) -> str:
        """Download a stored script body by reference."""
        pass

    @abstractmethod
    async def send_callback(self, url: str, payload: Dict[str, Any]) -> None:
        """POST a job outcome to a caller-supplied URL."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources. Called during shutdown."""
        pass
