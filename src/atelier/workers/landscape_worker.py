"""Landscape (outpainting) job attached to an existing completed creation.

The landscape state lives in the creation's metadata as a tagged union
(loading / ready / failed). A job is identified by the `requested_at` of the
loading state it was scheduled for; if the state moved on (removed, or a
newer request) the execution is stale and exits without writing.
"""

import structlog

from atelier.models.creation import Creation
from atelier.models.metadata import ErrorCode, LandscapeFailed, LandscapeLoading, LandscapeReady
from atelier.services.exceptions import ProviderCallError, ShareTokenError, StorageError
from atelier.services.ledger import refund_landscape_once
from atelier.workers.context import JobContext
from atelier.workers.creation_worker import discard_upload, generate_png
from atelier.workers.jobs import JobFailure, JobOutcome, JobResult, LandscapeJobPayload

logger = structlog.get_logger()

LANDSCAPE_METHOD = "advanced_generate"

SERVER_UNAVAILABLE_MESSAGE = "Landscape server is not available."
GENERATION_FAILED_MESSAGE = "The image failed to generate."
UPLOAD_FAILED_MESSAGE = "Failed to save landscape image."


def _pending_state(
    creation: Creation | None, payload: LandscapeJobPayload
) -> LandscapeLoading | None:
    if creation is None:
        return None
    state = creation.job_meta.landscape
    if isinstance(state, LandscapeLoading) and state.requested_at == payload.requested_at:
        return state
    return None


def source_image_url(ctx: JobContext, creation: Creation) -> str:
    """URL the provider fetches the source image from (share link when possible)."""
    try:
        return ctx.share_tokens.image_url(creation.id, creation.user_id)  # type: ignore[arg-type]
    except ShareTokenError as e:
        logger.warning("landscape.share_token_failed", creation_id=creation.id, error=str(e))
        return creation.url or ""


async def run_landscape_job(payload: LandscapeJobPayload, ctx: JobContext) -> JobResult:
    """Generate a landscape for a creation and record the result.

    Args:
        payload: Creation, owner, provider and the request instant being served
        ctx: Shared collaborators

    Returns:
        JobResult describing what this execution did
    """
    log = logger.bind(creation_id=payload.creation_id)

    async with await ctx.uow_factory() as uow:
        creation = await uow.creations.get_by_id(payload.creation_id)
        provider = await uow.providers.get_by_id(payload.provider_id)
    if creation is None:
        log.warning("landscape.job.not_found")
        return JobResult(outcome=JobOutcome.NOT_FOUND, job_id=payload.creation_id)
    if _pending_state(creation, payload) is None:
        log.info("landscape.job.skipped")
        return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.creation_id)

    if provider is None or not provider.is_active:
        return await record_landscape_failure(
            ctx, payload, JobFailure(ErrorCode.INVALID_PROVIDER, SERVER_UNAVAILABLE_MESSAGE)
        )

    args = {"operation": "outpaint", "image_url": source_image_url(ctx, creation)}
    try:
        content, _, _, _ = await generate_png(ctx, provider, LANDSCAPE_METHOD, args)
    except ProviderCallError as e:
        log.warning("landscape.job.provider_failed", error_code=e.error_code.value, error=e.message)
        message = e.message.strip() or GENERATION_FAILED_MESSAGE
        return await record_landscape_failure(
            ctx, payload, JobFailure(e.error_code, message, e.detail)
        )

    now = ctx.clock()
    filename = ctx.landscape_filename(creation.user_id, creation.id, now)  # type: ignore[arg-type]
    try:
        url = await ctx.storage.upload(content, filename)
    except StorageError as e:
        log.error("landscape.job.upload_failed", error=str(e))
        return await record_landscape_failure(
            ctx, payload, JobFailure(ErrorCode.UPLOAD_FAILED, UPLOAD_FAILED_MESSAGE)
        )

    previous_filename = None
    async with await ctx.uow_factory() as uow:
        locked = await uow.creations.get_for_update(payload.creation_id)
        pending = _pending_state(locked, payload)
        if pending is not None:
            previous_filename = pending.previous_filename
            meta = locked.job_meta
            meta.landscape = LandscapeReady(url=url, filename=filename, completed_at=ctx.clock())
            locked.set_job_meta(meta)
            await uow.creations.save(locked)

    if pending is None:
        log.info("landscape.job.superseded")
        await discard_upload(ctx.storage, filename)
        return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.creation_id)

    log.info("landscape.job.completed", filename=filename)

    # Regeneration: the old file goes only after the new one is recorded
    if previous_filename and previous_filename != filename:
        await discard_upload(ctx.storage, previous_filename)

    return JobResult(
        outcome=JobOutcome.COMPLETED, job_id=payload.creation_id, filename=filename, url=url
    )


async def record_landscape_failure(
    ctx: JobContext, payload: LandscapeJobPayload, failure: JobFailure
) -> JobResult:
    """Record the failed state, then refund it in a second transaction."""
    async with await ctx.uow_factory() as uow:
        creation = await uow.creations.get_for_update(payload.creation_id)
        pending = _pending_state(creation, payload)
        if pending is None:
            return JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=payload.creation_id)
        meta = creation.job_meta
        meta.landscape = LandscapeFailed(
            message=failure.message,
            error_code=failure.error_code,
            failed_at=ctx.clock(),
            credit_cost=pending.credit_cost,
        )
        creation.set_job_meta(meta)
        await uow.creations.save(creation)

    logger.warning(
        "landscape.job.failed",
        creation_id=payload.creation_id,
        error_code=failure.error_code.value,
        error=failure.message,
    )

    async with await ctx.uow_factory() as uow:
        creation = await uow.creations.get_for_update(payload.creation_id)
        if creation is not None:
            await refund_landscape_once(uow, creation)

    # The failed state no longer references the previous landscape
    if pending.previous_filename:
        await discard_upload(ctx.storage, pending.previous_filename)

    return JobResult(
        outcome=JobOutcome.FAILED,
        job_id=payload.creation_id,
        error_code=failure.error_code,
        error=failure.message,
    )
