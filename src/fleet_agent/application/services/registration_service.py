"""
Registration Service

Announces the agent to the backend and adopts the id the backend assigns.
"""

import asyncio

import structlog

from fleet_agent.domain.ports import IBackendPort
from fleet_agent.domain.value_objects import AgentIdentity
from fleet_agent.errors import BackendError, RegistrationError


logger = structlog.get_logger(__name__)


class RegistrationService:
    """
    Registration with bounded retries.

    Each failed attempt waits base_delay * 2^attempt (capped at max_delay)
    before the next one. When every attempt fails RegistrationError is
    raised and the agent must not start its loops.
    """

    def __init__(
        self,
        backend: IBackendPort,
        registration_token: str,
        attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
    ):
        self._backend = backend
        self._token = registration_token
        self.attempts = max(attempts, 1)
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def register(self, identity: AgentIdentity) -> AgentIdentity:
        """
        Register and return the identity carrying the backend-issued id.

        Raises:
            RegistrationError: Every attempt failed
        """
        last_error = None
        for attempt in range(self.attempts):
            try:
                agent_id = await self._backend.register(identity, self._token)
            except BackendError as e:
                last_error = e
                logger.warning(
                    "Registration attempt failed",
                    attempt=attempt + 1,
                    max_attempts=self.attempts,
                    error=e.message,
                    status_code=e.status_code,
                )
                if attempt < self.attempts - 1:
                    await asyncio.sleep(min(self.base_delay * (2 ** attempt), self.max_delay))
                continue

            if not agent_id:
                logger.warning("Backend returned no agent id, keeping provisional id", agent_id=identity.agent_id)
                return identity

            logger.info("Agent registered", agent_id=agent_id, hostname=identity.hostname)
            return identity.with_agent_id(agent_id)

        raise RegistrationError(
            f"Registration failed after {self.attempts} attempts: {last_error.message if last_error else 'unknown'}",
            {"attempts": self.attempts},
        )
