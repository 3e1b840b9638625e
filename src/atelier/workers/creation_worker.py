"""Creation and trial job execution.

Each execution runs strictly in order: gate, validate provider, call
provider, reconcile.

## Transaction layout

No database transaction is open while the provider is called (up to the
provider deadline). The job therefore works in short units of work:

1. **Gate** (read): the row must exist, still be `creating`, and belong to
   the attempt named in the payload. Anything else is a duplicate or stale
   delivery and exits as `already_handled` without side effects.
2. **Provider call + upload**: outside any transaction.
3. **Reconcile** (locked): the gate is re-checked under `FOR UPDATE` before
   the terminal write, so two concurrent executions produce exactly one
   terminal write. A stale execution deletes the file it uploaded.
4. **Refund** (locked, failure path only): a second transaction claims the
   `credits_refunded` flag and credits the ledger together.

Provider and storage errors never escape: they become a `failed` row and a
JobResult. Unexpected errors propagate to the scheduler, which logs them
(local) or redelivers (broker); the gate makes the redelivery safe.
"""

from typing import Optional, Union

import structlog

from atelier.core.timezone import epoch_ms
from atelier.models.creation import Creation, CreationStatus
from atelier.models.metadata import ErrorCode, JobMetadata
from atelier.models.provider import Provider
from atelier.models.trial import TrialCreation
from atelier.services.exceptions import ProviderCallError, StorageError
from atelier.services.ledger import credit_provider_owner, refund_creation_once
from atelier.services.storage import StorageSink
from atelier.workers.context import JobContext
from atelier.workers.jobs import (
    CreationJobPayload,
    JobFailure,
    JobOutcome,
    JobResult,
    TrialJobPayload,
)

logger = structlog.get_logger()

PROVIDER_UNAVAILABLE_MESSAGE = "Provider is not available."
UPLOAD_FAILED_MESSAGE = "Failed to save image."


def _is_current(row: Union[Creation, TrialCreation, None], attempt: int) -> bool:
    return (
        row is not None
        and row.status == CreationStatus.CREATING
        and row.job_meta.attempt == attempt
    )


async def generate_png(
    ctx: JobContext, provider: Provider, method: Optional[str], args: dict
) -> tuple[bytes, int, int, Optional[str]]:
    """Call the provider and normalize its output.

    Returns:
        (png bytes, width, height, color)

    Raises:
        ProviderCallError: Any provider or decoding failure
    """
    image = await ctx.gateway.invoke(
        provider.base_url, provider.auth_token, {"method": method, "args": args}
    )
    content = await ctx.normalizer.ensure_png(image.content)
    return content, image.width, image.height, image.color


async def discard_upload(storage: StorageSink, key: str) -> None:
    """Best-effort removal of a file no row ended up referencing."""
    try:
        await storage.delete(key)
    except StorageError as e:
        logger.warning("storage.cleanup_failed", key=key, error=str(e))


async def _load_provider(ctx: JobContext, meta: JobMetadata) -> Optional[Provider]:
    if meta.provider_id is None:
        return None
    async with await ctx.uow_factory() as uow:
        provider = await uow.providers.get_by_id(meta.provider_id)
    if provider is None or not provider.is_active:
        return None
    return provider


async def run_creation_job(payload: CreationJobPayload, ctx: JobContext) -> JobResult:
    """Execute one authenticated creation attempt.

    Safe under at-least-once delivery: every duplicate or stale execution
    exits at a gate with `already_handled`.

    Args:
        payload: Ids of the creation, owner, provider and attempt
        ctx: Shared collaborators

    Returns:
        JobResult describing what this execution did
    """
    log = logger.bind(creation_id=payload.creation_id, attempt=payload.attempt)

    # Step 1: idempotency gate
    async with await ctx.uow_factory() as uow:
        creation = await uow.creations.get_by_id(payload.creation_id)
    if creation is None:
        log.warning("creation.job.not_found")
        return JobResult(outcome=JobOutcome.NOT_FOUND, job_id=payload.creation_id)
    if not _is_current(creation, payload.attempt):
        log.info("creation.job.skipped", status=creation.status.value)
        return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.creation_id)

    meta = creation.job_meta
    log.info("creation.job.started", provider_id=meta.provider_id, method=meta.method)

    # Step 2: provider validation (no network call for an invalid provider)
    provider = await _load_provider(ctx, meta)
    if provider is None:
        return await _fail_creation(
            ctx, payload, JobFailure(ErrorCode.INVALID_PROVIDER, PROVIDER_UNAVAILABLE_MESSAGE)
        )

    # Step 3: provider call
    try:
        content, width, height, color = await generate_png(ctx, provider, meta.method, meta.args)
    except ProviderCallError as e:
        return await _fail_creation(ctx, payload, JobFailure.from_provider_error(e))

    now = ctx.clock()
    filename = ctx.creation_filename(creation.user_id, payload.creation_id, now)
    try:
        url = await ctx.storage.upload(content, filename)
    except StorageError as e:
        log.error("creation.job.upload_failed", error=str(e))
        return await _fail_creation(
            ctx, payload, JobFailure(ErrorCode.UPLOAD_FAILED, UPLOAD_FAILED_MESSAGE)
        )

    # Step 4: reconcile under the row lock
    completed_at = ctx.clock()
    async with await ctx.uow_factory() as uow:
        locked = await uow.creations.get_for_update(payload.creation_id)
        stale = not _is_current(locked, payload.attempt)
        if not stale:
            locked.mark_completed(
                filename=filename,
                url=url,
                width=width,
                height=height,
                color=color,
                completed_at=completed_at,
            )
            await uow.creations.save(locked)

    if stale:
        log.info("creation.job.superseded")
        await discard_upload(ctx.storage, filename)
        return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.creation_id)

    log.info(
        "creation.job.completed",
        filename=filename,
        duration_ms=epoch_ms(completed_at) - epoch_ms(meta.started_at),
    )

    await credit_provider_owner(
        ctx.uow_factory,
        provider,
        payer_user_id=creation.user_id,
        charged=meta.credit_cost,
        share=ctx.settings.provider_revenue_share,
    )

    return JobResult(
        outcome=JobOutcome.COMPLETED, job_id=payload.creation_id, filename=filename, url=url
    )


async def _fail_creation(
    ctx: JobContext, payload: CreationJobPayload, failure: JobFailure
) -> JobResult:
    """Record a failure, then refund in a separate transaction."""
    failed_at = ctx.clock()
    async with await ctx.uow_factory() as uow:
        creation = await uow.creations.get_for_update(payload.creation_id)
        if creation is None:
            return JobResult(outcome=JobOutcome.NOT_FOUND, job_id=payload.creation_id)
        if not _is_current(creation, payload.attempt):
            return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.creation_id)
        creation.mark_failed(
            error_code=failure.error_code,
            message=failure.message,
            failed_at=failed_at,
            provider_error=failure.detail,
        )
        await uow.creations.save(creation)

    logger.warning(
        "creation.job.failed",
        creation_id=payload.creation_id,
        attempt=payload.attempt,
        error_code=failure.error_code.value,
        error=failure.message,
    )

    await refund_creation_once(ctx.uow_factory, payload.creation_id)

    return JobResult(
        outcome=JobOutcome.FAILED,
        job_id=payload.creation_id,
        error_code=failure.error_code,
        error=failure.message,
    )


async def run_trial_job(payload: TrialJobPayload, ctx: JobContext) -> JobResult:
    """Execute one anonymous trial generation (free, no refunds).

    On completion every waiting trial request linked to the row is marked
    fulfilled in the same transaction.
    """
    log = logger.bind(trial_id=payload.trial_id)

    async with await ctx.uow_factory() as uow:
        trial = await uow.trials.get_by_id(payload.trial_id)
    if trial is None:
        log.warning("trial.job.not_found")
        return JobResult(outcome=JobOutcome.NOT_FOUND, job_id=payload.trial_id)
    if trial.status != CreationStatus.CREATING:
        log.info("trial.job.skipped", status=trial.status.value)
        return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.trial_id)

    meta = trial.job_meta
    attempt = meta.attempt
    log.info("trial.job.started", pool_refill=meta.pool_refill, method=meta.method)

    provider = await _load_provider(ctx, meta)
    if provider is None:
        failure = JobFailure(ErrorCode.INVALID_PROVIDER, PROVIDER_UNAVAILABLE_MESSAGE)
        return await _fail_trial(ctx, payload.trial_id, attempt, failure)

    try:
        content, width, height, color = await generate_png(ctx, provider, meta.method, meta.args)
    except ProviderCallError as e:
        return await _fail_trial(ctx, payload.trial_id, attempt, JobFailure.from_provider_error(e))

    now = ctx.clock()
    filename = ctx.trial_filename(payload.trial_id, now)
    try:
        url = await ctx.trial_storage.upload(content, filename)
    except StorageError as e:
        log.error("trial.job.upload_failed", error=str(e))
        failure = JobFailure(ErrorCode.UPLOAD_FAILED, UPLOAD_FAILED_MESSAGE)
        return await _fail_trial(ctx, payload.trial_id, attempt, failure)

    completed_at = ctx.clock()
    async with await ctx.uow_factory() as uow:
        locked = await uow.trials.get_for_update(payload.trial_id)
        stale = not _is_current(locked, attempt)
        if not stale:
            locked.mark_completed(
                filename=filename,
                url=url,
                width=width,
                height=height,
                color=color,
                completed_at=completed_at,
            )
            await uow.trials.save(locked)
            await uow.trial_requests.mark_fulfilled(payload.trial_id, completed_at)

    if stale:
        log.info("trial.job.superseded")
        await discard_upload(ctx.trial_storage, filename)
        return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.trial_id)

    log.info("trial.job.completed", filename=filename)
    return JobResult(
        outcome=JobOutcome.COMPLETED, job_id=payload.trial_id, filename=filename, url=url
    )


async def _fail_trial(
    ctx: JobContext, trial_id: int, attempt: int, failure: JobFailure
) -> JobResult:
    failed_at = ctx.clock()
    async with await ctx.uow_factory() as uow:
        trial = await uow.trials.get_for_update(trial_id)
        if trial is None:
            return JobResult(outcome=JobOutcome.NOT_FOUND, job_id=trial_id)
        if not _is_current(trial, attempt):
            return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=trial_id)
        trial.mark_failed(
            error_code=failure.error_code,
            message=failure.message,
            failed_at=failed_at,
            provider_error=failure.detail,
        )
        await uow.trials.save(trial)

    logger.warning(
        "trial.job.failed",
        trial_id=trial_id,
        error_code=failure.error_code.value,
        error=failure.message,
    )
    return JobResult(
        outcome=JobOutcome.FAILED,
        job_id=trial_id,
        error_code=failure.error_code,
        error=failure.message,
    )
