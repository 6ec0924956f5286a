"""
Job Poll Service

Asks the backend for work and hands accepted jobs to the lifecycle.
"""

from typing import Callable, Optional

import structlog

from fleet_agent.application.services.job_lifecycle import JobLifecycleController
from fleet_agent.domain.entities import TaskState
from fleet_agent.domain.ports import IBackendPort
from fleet_agent.errors import BackendError, TaskAlreadyExistsError


logger = structlog.get_logger(__name__)


class JobPollService:
    """
    One poll per tick.

    The tick is skipped while every execution slot is taken, so the agent
    never pulls more work than it can start. A job id the registry already
    holds is ignored.
    """

    def __init__(
        self,
        backend: IBackendPort,
        lifecycle: JobLifecycleController,
        agent_id: Callable[[], str],
    ):
        self._backend = backend
        self._lifecycle = lifecycle
        self._agent_id = agent_id

    async def poll_once(self) -> Optional[TaskState]:
        """
        Returns:
            State of the accepted job, or None when nothing was started
        """
        if not self._lifecycle.has_capacity:
            logger.debug("All execution slots busy, skipping poll", active=self._lifecycle.active_jobs)
            return None

        agent_id = self._agent_id()
        try:
            job = await self._backend.poll_job(agent_id)
        except BackendError as e:
            logger.error("Job poll failed", agent_id=agent_id, error=e.message, status_code=e.status_code)
            return None

        if job is None:
            return None

        logger.info("Received job", job_id=job.id, kind=job.kind, priority=job.priority)
        try:
            return self._lifecycle.submit(job)
        except TaskAlreadyExistsError:
            logger.warning("Ignoring duplicate job", job_id=job.id)
            return None
