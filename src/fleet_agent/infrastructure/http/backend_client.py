"""
Backend controller client.

Implements IBackendPort over HTTP/JSON with httpx:
- registration, heartbeat and job polling for the control loops
- status pings and final results for the job lifecycle
- script download and caller callbacks for load-test jobs
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from fleet_agent.domain.ports import IBackendPort
from fleet_agent.domain.value_objects import (
    AgentIdentity,
    HeartbeatSignal,
    Job,
    JobResultReport,
    JobStatusUpdate,
)
from fleet_agent.errors import BackendError
from fleet_agent.infrastructure.logging import get_logger


logger = get_logger(__name__)

SUCCESS_CODES = (200, 201)


class BackendClient(IBackendPort):
    """
    Async HTTP client for the backend controller.

    Every call raises BackendError on transport failures and non-success
    responses; callers decide whether that is fatal. Only result reports
    are retried, with exponential backoff (1s, 2s, 4s, max 10s).
    """

    def __init__(
        self,
        backend_url: str,
        api_prefix: str = "/api/v1",
        timeout: float = 30.0,
        result_attempts: int = 3,
        base_retry_delay: float = 1.0,
        max_retry_delay: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize backend client.

        Args:
            backend_url: Backend base URL
            api_prefix: Path prefix of the agent endpoints
            timeout: Request timeout in seconds
            result_attempts: Attempts for result reports before dropping them
            base_retry_delay: Base delay for exponential backoff (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.backend_url = backend_url.rstrip("/")
        self.api_prefix = api_prefix
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, 5.0))
        self.result_attempts = max(result_attempts, 1)
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self._transport = transport

        # Lazy-initialized async client
        self._client: Optional[httpx.AsyncClient] = None

    def _url(self, path: str) -> str:
        return f"{self.backend_url}{self.api_prefix}{path}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {url} failed: {e}") from e

        if response.status_code not in SUCCESS_CODES:
            raise BackendError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                f"Invalid JSON from {response.request.url}",
                status_code=response.status_code,
                body=response.text,
            ) from e

    async def register(self, identity: AgentIdentity, registration_token: str) -> Optional[str]:
        payload = identity.to_dict()
        payload["registration_token"] = registration_token

        response = await self._request("POST", self._url("/agents/register"), json=payload)
        data = self._json(response)

        agent_id = None
        if isinstance(data, dict):
            agent_id = data.get("id") or data.get("agent_id")
            if agent_id is None and isinstance(data.get("data"), dict):
                agent_id = data["data"].get("id")

        logger.info("Registration accepted", assigned_id=agent_id)
        return str(agent_id) if agent_id else None

    async def send_heartbeat(self, signal: HeartbeatSignal) -> None:
        response = await self._request("POST", self._url("/agents/heartbeat"), json=signal.to_dict())
        logger.debug("Heartbeat acknowledged", agent_id=signal.agent_id, status_code=response.status_code)

    async def poll_job(self, agent_id: str) -> Optional[Job]:
        response = await self._request(
            "GET",
            self._url("/agents/jobs/poll"),
            params={"agent_id": agent_id},
        )
        data = self._json(response)
        if not isinstance(data, dict) or not data.get("job"):
            return None

        try:
            return Job.from_dict(data["job"])
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"Malformed job in poll response: {e}", body=response.text) from e

    async def report_status(self, update: JobStatusUpdate) -> None:
        await self._request("POST", self._url("/agents/jobs/status"), json=update.to_dict())
        logger.debug(
            "Job status reported",
            job_id=update.job_id,
            status=update.status.value,
            progress=update.progress,
        )

    async def report_result(self, report: JobResultReport) -> None:
        """
        Report a job's final outcome.

        Retries on network errors and 5xx responses; 4xx fails immediately.

        Raises:
            BackendError: When every attempt failed
        """
        url = self._url("/agents/jobs/result")
        payload = report.to_dict()
        last_error: Optional[BackendError] = None

        for attempt in range(self.result_attempts):
            try:
                await self._request("POST", url, json=payload)
                logger.info("Job result reported", job_id=report.job_id, status=report.status.value)
                return
            except BackendError as e:
                last_error = e
                if e.status_code is not None and e.status_code < 500:
                    break
                if attempt + 1 < self.result_attempts:
                    logger.warning(
                        "Result report failed - will retry",
                        job_id=report.job_id,
                        attempt=attempt + 1,
                        error=e.message,
                    )
                    await self._backoff(attempt)

        raise last_error

    async def fetch_script(self, script_id: str) -> str:
        # Script storage lives outside the agent API prefix.
        url = f"{self.backend_url}/api/scripts/{script_id}/content"
        response = await self._request("GET", url)
        data = self._json(response)
        if not isinstance(data, dict) or not isinstance(data.get("content"), str):
            raise BackendError(f"No content for script {script_id}", body=response.text)
        return data["content"]

    async def send_callback(self, url: str, payload: Dict[str, Any]) -> None:
        await self._request("POST", url, json=payload)
        logger.info("Callback delivered", url=url)

    async def _backoff(self, attempt: int) -> None:
        """Wait base * 2^attempt seconds, capped at max_retry_delay."""
        delay = min(self.base_retry_delay * (2 ** attempt), self.max_retry_delay)
        logger.debug("Backing off before retry", attempt=attempt + 1, delay_seconds=delay)
        await asyncio.sleep(delay)
