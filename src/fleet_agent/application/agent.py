"""
Agent

Assembles identity, backend client, task registry, lifecycle controller
and the background loops into one object the HTTP surface talks to.
"""

import time
from typing import Any, Callable, Dict, List, Optional

import structlog

from fleet_agent import __version__
from fleet_agent.application.services.heartbeat_service import HeartbeatService
from fleet_agent.application.services.job_lifecycle import JobLifecycleController
from fleet_agent.application.services.log_broadcaster import LogBroadcaster, Subscription
from fleet_agent.application.services.poll_service import JobPollService
from fleet_agent.application.services.registration_service import RegistrationService
from fleet_agent.application.services.task_registry import TaskRegistry
from fleet_agent.domain.entities import TaskState
from fleet_agent.domain.ports import IBackendPort
from fleet_agent.domain.value_objects import AgentIdentity, Job, JobKind, TaskStatus, utc_now
from fleet_agent.errors import TaskNotFoundError
from fleet_agent.infrastructure.adapters import AdapterRegistry, build_default_registry
from fleet_agent.infrastructure.background_tasks import BackgroundTaskManager
from fleet_agent.infrastructure.config import AgentSettings
from fleet_agent.infrastructure.host import collect_identity, snapshot_resources
from fleet_agent.infrastructure.http import BackendClient


logger = structlog.get_logger(__name__)

EXTRA_CAPABILITIES = ["websocket", "realtime-logs"]

# Seconds on top of the kill grace that shutdown waits for jobs to settle.
SHUTDOWN_MARGIN = 5.0


def generate_task_id() -> str:
    """Id for jobs submitted directly to the agent."""
    return f"task-{time.time_ns()}"


class Agent:
    """
    The fleet worker.

    start() registers with the backend (fatal on failure) and then starts
    the heartbeat, poll and retention loops; stop() stops the loops,
    cancels in-flight jobs and closes the backend client.
    """

    def __init__(
        self,
        settings: AgentSettings,
        backend: Optional[IBackendPort] = None,
        adapters: Optional[AdapterRegistry] = None,
        identity: Optional[AgentIdentity] = None,
        resource_probe: Optional[Callable[[], Dict[str, int]]] = None,
    ):
        self.settings = settings
        self.backend = backend or BackendClient(
            backend_url=settings.backend_url,
            api_prefix=settings.api_prefix,
            timeout=settings.request_timeout,
            result_attempts=settings.result_report_attempts,
            base_retry_delay=settings.base_retry_delay,
            max_retry_delay=settings.max_retry_delay,
        )
        self.identity = identity or collect_identity(settings.tags, settings.k6_binary)
        self.registered = False

        self.registry = TaskRegistry(
            retention_seconds=settings.task_retention_seconds,
            max_retained=settings.max_retained_tasks,
        )
        self.broadcaster = LogBroadcaster(queue_size=settings.log_queue_size)
        self.adapters = adapters or build_default_registry(settings, self.backend)
        self.lifecycle = JobLifecycleController(
            registry=self.registry,
            broadcaster=self.broadcaster,
            adapters=self.adapters,
            backend=self.backend,
            max_concurrent_jobs=settings.max_concurrent_jobs,
        )

        self.registration = RegistrationService(
            self.backend,
            settings.registration_token,
            attempts=settings.registration_attempts,
            base_delay=settings.base_retry_delay,
            max_delay=settings.max_retry_delay,
        )
        self.heartbeat = HeartbeatService(
            self.backend,
            identity=lambda: self.identity,
            resource_probe=resource_probe or snapshot_resources,
        )
        self.poller = JobPollService(self.backend, self.lifecycle, agent_id=lambda: self.identity.agent_id)

        self.background = BackgroundTaskManager()
        self.background.register_task("heartbeat", self.send_heartbeat, settings.heartbeat_interval)
        self.background.register_task("job-poll", self.poll, settings.poll_interval)
        self.background.register_task(
            "retention",
            self.reap,
            settings.retention_interval,
            initial_delay_seconds=settings.retention_interval,
        )

    @property
    def agent_id(self) -> str:
        return self.identity.agent_id

    async def start(self) -> None:
        """
        Raises:
            RegistrationError: The backend could not be reached or refused us
        """
        logger.info("Starting agent", agent_id=self.identity.agent_id, backend_url=self.settings.backend_url)
        self.identity = await self.registration.register(self.identity)
        self.registered = True
        await self.background.start_all()
        logger.info("Agent started", agent_id=self.identity.agent_id)

    async def stop(self) -> None:
        logger.info("Stopping agent", agent_id=self.identity.agent_id)
        await self.background.stop_all()
        await self.lifecycle.shutdown(timeout=self.settings.process_kill_grace + SHUTDOWN_MARGIN)
        await self.backend.close()
        logger.info("Agent stopped", agent_id=self.identity.agent_id)

    async def send_heartbeat(self) -> None:
        await self.heartbeat.beat()

    async def poll(self) -> Optional[TaskState]:
        if not self.registered:
            return None
        return await self.poller.poll_once()

    async def reap(self) -> List[str]:
        return self.lifecycle.reap()

    def execute(
        self,
        script_id: Optional[str] = None,
        script_content: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
        timeout: Optional[str] = None,
    ) -> TaskState:
        """Submit a load-test job directly; it runs exactly like a polled one."""
        job = Job(
            id=generate_task_id(),
            kind=JobKind.K6.value,
            script_id=script_id or None,
            script_content=script_content or None,
            params=dict(parameters or {}),
            options=dict(options or {}),
            callback_url=callback_url or None,
            timeout=timeout or None,
        )
        return self.lifecycle.submit(job)

    def get_task(self, task_id: str) -> TaskState:
        return self.registry.get(task_id)

    def stop_task(self, task_id: str) -> TaskState:
        return self.lifecycle.stop(task_id)

    def subscribe(self, task_id: str) -> Subscription:
        """
        Attach a live log observer.

        Raises:
            TaskNotFoundError: Unknown (or already evicted) task
        """
        self.registry.get(task_id)
        channel = self.lifecycle.channel(task_id)
        if channel is None:
            raise TaskNotFoundError(task_id)
        return channel.subscribe()

    def info(self) -> Dict[str, Any]:
        return {
            "agentId": self.identity.agent_id,
            "hostname": self.identity.hostname,
            "version": __version__,
            "status": "online",
            "registered": self.registered,
            "totalTasks": len(self.registry),
            "runningTasks": self.registry.count(TaskStatus.RUNNING),
            "timestamp": utc_now().isoformat(),
            "capabilities": self.adapters.kinds() + EXTRA_CAPABILITIES,
            "resources": dict(self.identity.resources),
            "tags": dict(self.identity.tags),
        }
