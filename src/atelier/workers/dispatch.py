"""Route job payloads to their worker function."""

from atelier.workers.context import JobContext
from atelier.workers.creation_worker import run_creation_job, run_trial_job
from atelier.workers.jobs import (
    CreationJobPayload,
    JobPayload,
    JobResult,
    LandscapeJobPayload,
    TrialJobPayload,
)
from atelier.workers.landscape_worker import run_landscape_job
from atelier.workers.scheduler import JobHandler


async def dispatch_job(payload: JobPayload, ctx: JobContext) -> JobResult:
    """Execute the worker matching the payload's job type."""
    if isinstance(payload, CreationJobPayload):
        return await run_creation_job(payload, ctx)
    if isinstance(payload, TrialJobPayload):
        return await run_trial_job(payload, ctx)
    if isinstance(payload, LandscapeJobPayload):
        return await run_landscape_job(payload, ctx)
    raise TypeError(f"Unsupported job payload: {type(payload).__name__}")


def job_handler(ctx: JobContext) -> JobHandler:
    """Bind the context so schedulers can call `handler(payload)`."""

    async def _handle(payload: JobPayload) -> JobResult:
        return await dispatch_job(payload, ctx)

    return _handle
