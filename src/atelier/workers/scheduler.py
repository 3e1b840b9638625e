"""Job schedulers.

Submission code calls `enqueue` after its transaction committed and never
learns which backend runs the job:

- LocalScheduler: deferred in-process task (development, single instance)
- BrokerScheduler: publish to an external message broker, which delivers the
  payload back to a signed callback endpoint with at-least-once semantics
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional, Protocol

import httpx
import structlog

from atelier.core.config import Settings
from atelier.services.exceptions import SchedulingError
from atelier.workers.jobs import JobPayload, JobResult, TrialJobPayload, job_id_of

logger = structlog.get_logger()

JobHandler = Callable[[JobPayload], Awaitable[JobResult]]

CREATION_CALLBACK_PATH = "/api/worker/create"
TRIAL_CALLBACK_PATH = "/api/try/worker"


class Scheduler(Protocol):
    async def enqueue(self, payload: JobPayload, handler: JobHandler) -> None:
        """Hand a job off for asynchronous execution and return immediately."""
        ...


class LocalScheduler:
    """Runs each job as a task on the running event loop.

    The task cannot start before the caller yields, so the row the job reads
    is always committed first. Tasks are referenced until they finish.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    async def enqueue(self, payload: JobPayload, handler: JobHandler) -> None:
        task = asyncio.get_running_loop().create_task(self._run(payload, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight jobs, including jobs they enqueue."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, payload: JobPayload, handler: JobHandler) -> None:
        try:
            result = await handler(payload)
        except Exception:
            # Broker delivery would retry here; locally the sweep picks the row up
            logger.exception(
                "scheduler.local.job_failed",
                job_type=payload.job_type,
                job_id=job_id_of(payload),
            )
            return
        logger.info(
            "scheduler.local.job_finished",
            job_type=payload.job_type,
            job_id=result.job_id,
            outcome=result.outcome.value,
        )


class BrokerScheduler:
    """Publishes jobs to a broker that calls back our worker endpoints."""

    def __init__(
        self,
        broker_url: str,
        token: str,
        callback_base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        """Initialize the broker scheduler.

        Args:
            broker_url: Broker base URL
            token: Publish token (Bearer auth)
            callback_base_url: Public base URL the broker calls back
            client: Shared httpx client; a short-lived one is opened per call when None
            timeout_seconds: Timeout for the publish request

        Raises:
            SchedulingError: Token is missing
        """
        if not token:
            raise SchedulingError("Broker scheduling requires a publish token")
        self.broker_url = broker_url.rstrip("/")
        self.token = token
        self.callback_base_url = callback_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    def callback_url(self, payload: JobPayload) -> str:
        if isinstance(payload, TrialJobPayload):
            return f"{self.callback_base_url}{TRIAL_CALLBACK_PATH}"
        return f"{self.callback_base_url}{CREATION_CALLBACK_PATH}"

    async def enqueue(self, payload: JobPayload, handler: JobHandler) -> None:
        """Publish the payload; the handler runs later in the callback process.

        Raises:
            SchedulingError: Broker unreachable or publish rejected
        """
        url = f"{self.broker_url}/v2/publish/{self.callback_url(payload)}"
        headers = {"Authorization": f"Bearer {self.token}"}
        body = payload.model_dump(mode="json")
        try:
            response = await self._post(url, headers, body)
        except httpx.HTTPError as e:
            raise SchedulingError(f"Broker publish failed: {e}") from e
        if not response.is_success:
            raise SchedulingError(
                f"Broker publish rejected ({response.status_code}): {response.text[:500]}"
            )
        logger.info(
            "scheduler.broker.published",
            job_type=payload.job_type,
            job_id=job_id_of(payload),
        )

    async def _post(self, url: str, headers: dict[str, str], body: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                url, headers=headers, json=body, timeout=self.timeout_seconds
            )
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, headers=headers, json=body)


def build_scheduler(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> Scheduler:
    """Scheduler selected by SCHEDULER_BACKEND."""
    if settings.uses_broker:
        return BrokerScheduler(
            broker_url=settings.broker_url,
            token=settings.broker_token,
            callback_base_url=settings.public_base_url,
            client=client,
        )
    return LocalScheduler()
