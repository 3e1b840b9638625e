"""Anonymous trial submissions backed by a shared per-prompt result pool.

Identical prompts from unrelated anonymous visitors are served from a small
pool of recent completed results. A cache hit picks a pool member uniformly
at random, records a cache copy row pointing at the same stored file, and
tops the pool up in the background. Files are shared, so discarding a
result deletes the file only when no other row references it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from atelier.core.timezone import as_utc
from atelier.models.creation import CreationStatus
from atelier.models.metadata import ErrorCode, JobMetadata
from atelier.models.trial import TrialCreation, TrialRequest
from atelier.services.exceptions import (
    InvalidJobPayloadError,
    MethodNotAvailableError,
    ProviderUnavailableError,
    SchedulingError,
    StorageError,
    TrialNotFoundError,
)
from atelier.workers.context import JobContext, trial_placeholder
from atelier.workers.dispatch import job_handler
from atelier.workers.jobs import TrialJobPayload

logger = structlog.get_logger()

SCHEDULE_FAILED_MESSAGE = "Failed to schedule the trial job."


@dataclass
class TrialSubmission:
    """State of an anonymous request as returned to the client."""

    trial_id: Optional[int]
    request_id: Optional[int]
    status: CreationStatus
    prompt: str
    filename: Optional[str] = None
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    from_cache: bool = False
    existing: bool = False
    error_code: Optional[ErrorCode] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_rows(
        cls,
        trial: TrialCreation,
        request: Optional[TrialRequest],
        existing: bool = False,
    ) -> "TrialSubmission":
        meta = trial.job_meta
        completed = trial.status == CreationStatus.COMPLETED
        return cls(
            trial_id=trial.id,
            request_id=request.id if request is not None else None,
            status=trial.status,
            prompt=trial.prompt or "",
            filename=trial.filename if completed else None,
            url=trial.url if completed else None,
            width=trial.width,
            height=trial.height,
            from_cache=meta.from_cache,
            existing=existing,
            error_code=meta.error_code,
            created_at=trial.created_at,
        )


def _is_safe_filename(filename: str) -> bool:
    return bool(filename) and ".." not in filename and "/" not in filename and "\\" not in filename


class TrialService:
    """Entry points for anonymous trial creation."""

    def __init__(self, ctx: JobContext):
        self.ctx = ctx
        self.settings = ctx.settings

    async def submit(
        self,
        client_id: str,
        prompt: Optional[str],
        provider_id: Optional[int] = None,
        method: Optional[str] = None,
        args: Optional[dict[str, Any]] = None,
    ) -> TrialSubmission:
        """Serve a trial request from the pool, an earlier request, or a new job.

        Order: pool cache hit, then the client's existing request for the same
        prompt (page refresh, double submit), then a new generation.

        Raises:
            InvalidJobPayloadError: Missing client id
            ProviderUnavailableError: Trial provider missing or inactive
            MethodNotAvailableError: Trial provider lacks the method
        """
        if not client_id:
            raise InvalidJobPayloadError("client_id is required")
        prompt = (prompt or "").strip()

        if prompt:
            hit = await self._serve_from_pool(client_id, prompt)
            if hit is not None:
                return hit
            existing = await self._existing_request(client_id, prompt)
            if existing is not None:
                return existing

        return await self._start_trial(
            client_id, prompt, provider_id=provider_id, method=method, args=args
        )

    async def list_for_client(self, client_id: str, limit: int = 50) -> list[TrialSubmission]:
        """The client's requests, newest first, with their current state."""
        async with await self.ctx.uow_factory() as uow:
            requests = await uow.trial_requests.list_by_client(client_id, limit)
            trials = await uow.trials.get_by_ids(
                [r.trial_id for r in requests if r.trial_id is not None]
            )
        return [
            TrialSubmission.from_rows(trials[r.trial_id], r, existing=True)
            for r in requests
            if r.trial_id in trials
        ]

    async def discard(self, client_id: str, filename: str) -> bool:
        """Discard one of the client's results.

        The client's requests are unlinked and its row removed. The stored
        file is deleted only if this row was its last reference.

        Returns:
            True if the stored file was deleted

        Raises:
            TrialNotFoundError: Invalid filename, or no such result for this client
        """
        if not _is_safe_filename(filename):
            raise TrialNotFoundError("Invalid filename")

        async with await self.ctx.uow_factory() as uow:
            trial = await uow.trials.get_by_client_and_filename(client_id, filename)
            if trial is None:
                raise TrialNotFoundError(f"No trial result {filename} for this client")
            references = await uow.trials.count_by_filename(filename)
            await uow.trial_requests.unlink_trial(trial.id)  # type: ignore[arg-type]
            await uow.trials.delete(trial.id)  # type: ignore[arg-type]
            has_file = trial.status == CreationStatus.COMPLETED

        delete_file = has_file and references <= 1
        if delete_file:
            try:
                await self.ctx.trial_storage.delete(filename)
            except StorageError as e:
                logger.warning("trial.discard.delete_failed", filename=filename, error=str(e))
                delete_file = False

        logger.info(
            "trial.discarded",
            trial_id=trial.id,
            filename=filename,
            references=references,
            file_deleted=delete_file,
        )
        return delete_file

    async def _serve_from_pool(self, client_id: str, prompt: str) -> Optional[TrialSubmission]:
        now = self.ctx.clock()
        since = now - timedelta(seconds=self.settings.trial_pool_ttl_seconds)

        async with await self.ctx.uow_factory() as uow:
            pool = await uow.trials.find_recent_completed_by_prompt(
                prompt, since, limit=self.settings.trial_pool_max
            )
            if not pool:
                return None

            # Uniform pick, not the newest: repeat visits get variety
            chosen = self.ctx.rng.choice(pool)
            meta = chosen.job_meta.model_copy(
                update={
                    "from_cache": True,
                    "cached_at": now,
                    "original_created_at": as_utc(chosen.created_at),
                    "pool_refill": False,
                }
            )
            copy = TrialCreation(
                client_id=client_id,
                prompt=prompt,
                source_trial_id=chosen.id,
                status=CreationStatus.COMPLETED,
                filename=chosen.filename,
                url=chosen.url,
                width=chosen.width,
                height=chosen.height,
                color=chosen.color,
                meta=meta.to_json(),
                created_at=now,
            )
            await uow.trials.add(copy)
            request = await uow.trial_requests.add(
                TrialRequest(
                    client_id=client_id,
                    prompt=prompt,
                    trial_id=copy.id,
                    created_at=now,
                    fulfilled_at=now,
                )
            )
            pool_size = len(pool)

        logger.info(
            "trial.pool.hit",
            trial_id=copy.id,
            source_trial_id=chosen.id,
            pool_size=pool_size,
        )

        if pool_size < self.settings.trial_pool_max:
            await self._refill_pool(prompt, pool_size)

        return TrialSubmission.from_rows(copy, request)

    async def _refill_pool(self, prompt: str, pool_size: int) -> None:
        """Schedule one more pool generation for the prompt. Best-effort."""
        pool_client_id = self.settings.trial_pool_client_id
        try:
            async with await self.ctx.uow_factory() as uow:
                in_flight = await uow.trials.count_in_flight_pool_refills(prompt, pool_client_id)
            if pool_size + in_flight >= self.settings.trial_pool_max:
                return
            await self._start_trial(pool_client_id, prompt, pool_refill=True)
        except Exception as e:
            logger.warning("trial.pool.refill_failed", prompt_length=len(prompt), error=str(e))

    async def _existing_request(self, client_id: str, prompt: str) -> Optional[TrialSubmission]:
        async with await self.ctx.uow_factory() as uow:
            request = await uow.trial_requests.get_latest_by_client_and_prompt(client_id, prompt)
            if request is None or request.trial_id is None:
                return None
            trial = await uow.trials.get_by_id(request.trial_id)
        # A failed earlier attempt does not block a fresh one
        if trial is None or trial.status == CreationStatus.FAILED:
            return None
        return TrialSubmission.from_rows(trial, request, existing=True)

    async def _start_trial(
        self,
        client_id: str,
        prompt: str,
        provider_id: Optional[int] = None,
        method: Optional[str] = None,
        args: Optional[dict[str, Any]] = None,
        pool_refill: bool = False,
    ) -> TrialSubmission:
        provider_id = provider_id or self.settings.trial_default_provider_id
        method = method or self.settings.trial_default_method
        args = dict(args or {})
        if prompt:
            args.setdefault("prompt", prompt)
        now = self.ctx.clock()

        async with await self.ctx.uow_factory() as uow:
            provider = await uow.providers.get_by_id(provider_id)
            if provider is None or not provider.is_active:
                raise ProviderUnavailableError(f"Provider {provider_id} is not available")
            if not provider.has_method(method):
                raise MethodNotAvailableError(
                    f"Method '{method}' is not available on provider {provider_id}"
                )

            meta = JobMetadata(
                provider_id=provider.id,
                provider_name=provider.name,
                method=method,
                method_name=provider.method_name(method),
                args=args,
                started_at=now,
                timeout_at=self.ctx.timeout_at(now),
                pool_refill=pool_refill,
            )
            trial = await uow.trials.add(
                TrialCreation(
                    client_id=client_id,
                    prompt=prompt or None,
                    status=CreationStatus.CREATING,
                    filename=trial_placeholder(now, pool_refill=pool_refill),
                    meta=meta.to_json(),
                    created_at=now,
                )
            )
            request = None
            if not pool_refill:
                request = await uow.trial_requests.add(
                    TrialRequest(
                        client_id=client_id, prompt=prompt, trial_id=trial.id, created_at=now
                    )
                )

        logger.info(
            "trial.submitted",
            trial_id=trial.id,
            provider_id=provider_id,
            method=method,
            pool_refill=pool_refill,
        )

        payload = TrialJobPayload(trial_id=trial.id, provider_id=provider_id)  # type: ignore[arg-type]
        try:
            await self.ctx.scheduler.enqueue(payload, job_handler(self.ctx))
        except SchedulingError as e:
            logger.error("trial.schedule_failed", trial_id=trial.id, error=str(e))
            trial = await self._fail_unscheduled(trial.id)  # type: ignore[arg-type]

        return TrialSubmission.from_rows(trial, request)

    async def _fail_unscheduled(self, trial_id: int) -> TrialCreation:
        async with await self.ctx.uow_factory() as uow:
            trial = await uow.trials.get_for_update(trial_id)
            if trial.status == CreationStatus.CREATING:  # type: ignore[union-attr]
                trial.mark_failed(  # type: ignore[union-attr]
                    error_code=ErrorCode.SCHEDULE_FAILED,
                    message=SCHEDULE_FAILED_MESSAGE,
                    failed_at=self.ctx.clock(),
                )
                await uow.trials.save(trial)  # type: ignore[arg-type]
        return trial  # type: ignore[return-value]
