"""Broker callback endpoints that execute scheduled jobs.

The broker delivers each job at least once. Handlers answer 200 for every
ordinary outcome (including provider failures recorded on the row) so the
broker does not redeliver; only unexpected errors surface as 5xx and are
retried, which the jobs' idempotency gates make safe.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from atelier.api.dependencies import get_job_context, validate_broker_callback
from atelier.services.exceptions import InvalidJobPayloadError
from atelier.workers.context import JobContext
from atelier.workers.dispatch import dispatch_job
from atelier.workers.jobs import JobPayload, TrialJobPayload, parse_job_payload

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["workers"])


def _parse_body(raw_body: bytes) -> JobPayload:
    try:
        data = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload"
        ) from e
    try:
        return parse_job_payload(data)
    except InvalidJobPayloadError as e:
        logger.warning("worker.callback.invalid_payload", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.post("/worker/create")
async def run_creation_callback(
    raw_body: bytes = Depends(validate_broker_callback),
    ctx: JobContext = Depends(get_job_context),
) -> dict:
    """Execute a creation or landscape job delivered by the broker."""
    payload = _parse_body(raw_body)
    if isinstance(payload, TrialJobPayload):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Trial jobs are delivered to /api/try/worker",
        )
    result = await dispatch_job(payload, ctx)
    return result.to_dict()


@router.post("/try/worker")
async def run_trial_callback(
    raw_body: bytes = Depends(validate_broker_callback),
    ctx: JobContext = Depends(get_job_context),
) -> dict:
    """Execute an anonymous trial job delivered by the broker."""
    payload = _parse_body(raw_body)
    if not isinstance(payload, TrialJobPayload):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only trial jobs are delivered to this endpoint",
        )
    result = await dispatch_job(payload, ctx)
    return result.to_dict()
