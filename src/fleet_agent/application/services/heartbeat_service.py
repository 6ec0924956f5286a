"""
Heartbeat Service

Periodic liveness signal to the backend.
"""

from typing import Callable, Dict, Optional

import structlog

from fleet_agent.domain.ports import IBackendPort
from fleet_agent.domain.value_objects import AgentIdentity, HeartbeatSignal, utc_now
from fleet_agent.errors import BackendError


logger = structlog.get_logger(__name__)


class HeartbeatService:
    """
    Sends one heartbeat per tick.

    A failed heartbeat is logged and does not stop later ticks; the backend
    decides liveness from what it receives.
    """

    def __init__(
        self,
        backend: IBackendPort,
        identity: Callable[[], AgentIdentity],
        resource_probe: Optional[Callable[[], Dict[str, int]]] = None,
    ):
        """
        Args:
            backend: Backend port
            identity: Returns the current identity (id changes at registration)
            resource_probe: Returns the resource snapshot; defaults to the identity's resources
        """
        self._backend = backend
        self._identity = identity
        self._resource_probe = resource_probe
        self.sent = 0
        self.failed = 0

    async def beat(self) -> bool:
        identity = self._identity()
        resources = self._resource_probe() if self._resource_probe else dict(identity.resources)
        signal = HeartbeatSignal(agent_id=identity.agent_id, timestamp=utc_now(), resources=resources)

        try:
            await self._backend.send_heartbeat(signal)
        except BackendError as e:
            self.failed += 1
            logger.error("Heartbeat failed", agent_id=identity.agent_id, error=e.message, status_code=e.status_code)
            return False

        self.sent += 1
        logger.debug("Heartbeat sent", agent_id=identity.agent_id)
        return True
