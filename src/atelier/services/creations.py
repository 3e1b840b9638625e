"""Authenticated creation submission, retry, abandonment and landscape requests.

Every operation here finishes its database work (charge included) in one
unit of work and only then hands a job to the scheduler, so a job can never
run against a row that is not durable yet and no credit is ever debited
without the row that accounts for it.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from atelier.models.creation import Creation, CreationStatus
from atelier.models.metadata import (
    ErrorCode,
    JobMetadata,
    LandscapeLoading,
    LandscapeReady,
)
from atelier.models.provider import Provider
from atelier.services.exceptions import (
    CreationNotFoundError,
    InvalidJobPayloadError,
    LandscapeInProgressError,
    LandscapeNotAllowedError,
    MethodNotAvailableError,
    ProviderUnavailableError,
    RetryNotAllowedError,
    SchedulingError,
    ShareTokenError,
)
from atelier.services.ledger import (
    charge,
    refund_creation_once,
    refund_landscape_once,
    refund_once,
)
from atelier.uow import UnitOfWork
from atelier.workers.context import JobContext, creation_placeholder
from atelier.workers.creation_worker import discard_upload
from atelier.workers.dispatch import job_handler
from atelier.workers.jobs import CreationJobPayload, JobFailure, LandscapeJobPayload
from atelier.workers.landscape_worker import LANDSCAPE_METHOD, record_landscape_failure

logger = structlog.get_logger()

SCHEDULE_FAILED_MESSAGE = "Failed to schedule the creation job."
ABANDONED_MESSAGE = "Timed out waiting for the provider."


@dataclass
class SubmissionResult:
    """What a caller learns right after submitting; the job runs later."""

    id: int
    status: CreationStatus
    created_at: datetime
    metadata: JobMetadata
    credits_remaining: Optional[Decimal] = None

    @classmethod
    def from_creation(
        cls, creation: Creation, credits_remaining: Optional[Decimal] = None
    ) -> "SubmissionResult":
        return cls(
            id=creation.id,  # type: ignore[arg-type]
            status=creation.status,
            created_at=creation.created_at,
            metadata=creation.job_meta,
            credits_remaining=credits_remaining,
        )


class CreationService:
    """Entry points of the creation job pipeline for authenticated users."""

    def __init__(self, ctx: JobContext):
        self.ctx = ctx
        self.settings = ctx.settings

    async def submit(
        self,
        *,
        user_id: int,
        provider_id: int,
        method: str,
        args: Optional[dict[str, Any]] = None,
        credit_cost: Optional[Decimal] = None,
        mutate_of_id: Optional[int] = None,
        creation_token: Optional[str] = None,
        is_admin: bool = False,
    ) -> SubmissionResult:
        """Charge, record a `creating` row, and schedule the job.

        Args:
            user_id: Owner and payer
            provider_id: Provider to generate with
            method: Provider method key
            args: Provider arguments (passed through)
            credit_cost: Explicit cost, overriding the method's configured credits
            mutate_of_id: Source creation this one derives from
            creation_token: Client-side submission token (kept when >= 10 chars)
            is_admin: Requester may derive from any creation

        Returns:
            SubmissionResult (status `failed` if the job could not be scheduled)

        Raises:
            InvalidJobPayloadError: Required fields are missing
            ProviderUnavailableError: Provider missing or inactive
            MethodNotAvailableError: Provider lacks the method
            CreationNotFoundError: Source creation not visible to the requester
            InsufficientCreditsError: Balance lower than the cost
        """
        if not method or not isinstance(method, str):
            raise InvalidJobPayloadError("method is required")
        if user_id is None or provider_id is None:
            raise InvalidJobPayloadError("user_id and provider_id are required")
        args = dict(args or {})
        now = self.ctx.clock()

        async with await self.ctx.uow_factory() as uow:
            provider = await self._require_provider(uow, provider_id)
            if not provider.has_method(method):
                raise MethodNotAvailableError(
                    f"Method '{method}' is not available on provider {provider_id}"
                )
            cost = self._resolve_cost(provider, method, credit_cost)
            history, args = await self._resolve_lineage(uow, user_id, mutate_of_id, args, is_admin)

            balance = await charge(uow, user_id, cost, self.settings.initial_credit_balance)

            meta = JobMetadata(
                provider_id=provider.id,
                provider_name=provider.name,
                method=method,
                method_name=provider.method_name(method),
                args=args,
                creation_token=creation_token,
                started_at=now,
                timeout_at=self.ctx.timeout_at(now),
                credit_cost=cost,
                mutate_of_id=mutate_of_id,
                history=history,
            )
            creation = Creation(
                user_id=user_id,
                status=CreationStatus.CREATING,
                filename=creation_placeholder(user_id, now),
                meta=meta.to_json(),
                created_at=now,
            )
            await uow.creations.add(creation)

        logger.info(
            "creation.submitted",
            creation_id=creation.id,
            user_id=user_id,
            provider_id=provider_id,
            method=method,
            credit_cost=str(cost),
            mutate_of_id=mutate_of_id,
        )

        payload = CreationJobPayload(
            creation_id=creation.id,  # type: ignore[arg-type]
            user_id=user_id,
            provider_id=provider_id,
            attempt=meta.attempt,
        )
        return await self._schedule(creation, payload, balance)

    async def retry_in_place(
        self, creation_id: int, user_id: int, credit_cost: Optional[Decimal] = None
    ) -> SubmissionResult:
        """Re-run a failed or abandoned creation under the same id.

        The previous attempt is refunded first (if it was paid and not yet
        refunded), then the new attempt is charged. Lineage is preserved and
        the attempt counter advances so a straggling worker of the previous
        attempt cannot write to the row.

        Raises:
            CreationNotFoundError: Unknown creation or not owned
            RetryNotAllowedError: Completed, or still within its deadline
            ProviderUnavailableError: Original provider missing or inactive
            InsufficientCreditsError: Balance (after refund) lower than the cost
        """
        now = self.ctx.clock()

        async with await self.ctx.uow_factory() as uow:
            creation = await self._require_owned(uow, creation_id, user_id, lock=True)
            if creation.status == CreationStatus.COMPLETED:
                raise RetryNotAllowedError("Completed creations cannot be retried.")
            if creation.status == CreationStatus.CREATING and not creation.is_past_timeout(now):
                raise RetryNotAllowedError("Creation is still in progress.")

            prior = creation.job_meta
            provider = await self._require_provider(uow, prior.provider_id)
            cost = credit_cost if credit_cost is not None else prior.credit_cost

            refunded = await refund_once(uow, creation)
            balance = await charge(uow, user_id, cost, self.settings.initial_credit_balance)

            meta = JobMetadata(
                provider_id=provider.id,
                provider_name=provider.name,
                method=prior.method,
                method_name=prior.method_name,
                args=prior.args,
                creation_token=prior.creation_token,
                attempt=prior.attempt + 1,
                started_at=now,
                timeout_at=self.ctx.timeout_at(now),
                credit_cost=cost,
                mutate_of_id=prior.mutate_of_id,
                history=list(prior.history),
            )
            creation.reset_for_retry(meta=meta, filename=creation_placeholder(user_id, now))
            await uow.creations.save(creation)

        logger.info(
            "creation.retried",
            creation_id=creation_id,
            attempt=meta.attempt,
            refunded=str(refunded),
            credit_cost=str(cost),
        )

        payload = CreationJobPayload(
            creation_id=creation_id,
            user_id=user_id,
            provider_id=provider.id,  # type: ignore[arg-type]
            attempt=meta.attempt,
        )
        return await self._schedule(creation, payload, balance)

    async def mark_abandoned_as_failed(self, creation_id: int, user_id: int) -> SubmissionResult:
        """Give up on a stuck creation: fail it as timed out and refund once.

        Calling it on an already failed creation only settles a pending refund.

        Raises:
            CreationNotFoundError: Unknown creation or not owned
            RetryNotAllowedError: Completed, or still within its deadline
        """
        now = self.ctx.clock()

        async with await self.ctx.uow_factory() as uow:
            creation = await self._require_owned(uow, creation_id, user_id, lock=True)
            if creation.status == CreationStatus.COMPLETED:
                raise RetryNotAllowedError("Completed creations cannot be marked as failed.")
            if creation.status == CreationStatus.CREATING:
                if not creation.is_past_timeout(now):
                    raise RetryNotAllowedError("Creation is still in progress.")
                creation.mark_failed(
                    error_code=ErrorCode.TIMEOUT, message=ABANDONED_MESSAGE, failed_at=now
                )
                await uow.creations.save(creation)
                logger.info("creation.abandoned", creation_id=creation_id, user_id=user_id)

        await refund_creation_once(self.ctx.uow_factory, creation_id)

        async with await self.ctx.uow_factory() as uow:
            refreshed = await uow.creations.get_by_id(creation_id)
            balance = await uow.credits.get_balance(user_id)
        return SubmissionResult.from_creation(refreshed, balance)  # type: ignore[arg-type]

    async def start_landscape(
        self, creation_id: int, user_id: int, credit_cost: Optional[Decimal] = None
    ) -> SubmissionResult:
        """Charge for and schedule a landscape of a completed creation.

        Raises:
            CreationNotFoundError: Unknown creation or not owned
            LandscapeNotAllowedError: Creation is not completed
            LandscapeInProgressError: A landscape is already generating
            ProviderUnavailableError: No active provider
            InsufficientCreditsError: Balance lower than the cost
        """
        now = self.ctx.clock()

        async with await self.ctx.uow_factory() as uow:
            creation = await self._require_owned(uow, creation_id, user_id, lock=True)
            if creation.status != CreationStatus.COMPLETED or not creation.url:
                raise LandscapeNotAllowedError("Landscape requires a completed creation.")
            meta = creation.job_meta
            if isinstance(meta.landscape, LandscapeLoading):
                raise LandscapeInProgressError("Landscape is already being generated.")

            provider = await self._landscape_provider(uow, meta.provider_id)
            if credit_cost is not None:
                cost = credit_cost
            else:
                configured = provider.method_credits(LANDSCAPE_METHOD)
                cost = configured if configured is not None else self.settings.default_credit_cost

            # Settle an unrefunded earlier failure before its state is replaced
            await refund_landscape_once(uow, creation)
            meta = creation.job_meta

            balance = await charge(uow, user_id, cost, self.settings.initial_credit_balance)

            previous = None
            if isinstance(meta.landscape, LandscapeReady):
                previous = meta.landscape.filename
            meta.landscape = LandscapeLoading(
                provider_id=provider.id,  # type: ignore[arg-type]
                credit_cost=cost,
                requested_at=now,
                previous_filename=previous,
            )
            creation.set_job_meta(meta)
            await uow.creations.save(creation)

        logger.info(
            "landscape.requested",
            creation_id=creation_id,
            provider_id=provider.id,
            credit_cost=str(cost),
        )

        payload = LandscapeJobPayload(
            creation_id=creation_id,
            user_id=user_id,
            provider_id=provider.id,  # type: ignore[arg-type]
            requested_at=now,
        )
        try:
            await self.ctx.scheduler.enqueue(payload, job_handler(self.ctx))
        except SchedulingError as e:
            logger.error("landscape.schedule_failed", creation_id=creation_id, error=str(e))
            await record_landscape_failure(
                self.ctx, payload, JobFailure(ErrorCode.SCHEDULE_FAILED, str(e))
            )

        return await self._result(creation_id, user_id)

    async def remove_landscape(self, creation_id: int, user_id: int) -> SubmissionResult:
        """Clear the landscape of a creation and delete its file (best-effort).

        Raises:
            CreationNotFoundError: Unknown creation or not owned
            LandscapeInProgressError: A landscape is still generating
        """
        async with await self.ctx.uow_factory() as uow:
            creation = await self._require_owned(uow, creation_id, user_id, lock=True)
            meta = creation.job_meta
            if isinstance(meta.landscape, LandscapeLoading):
                raise LandscapeInProgressError("Landscape is still being generated.")

            await refund_landscape_once(uow, creation)
            meta = creation.job_meta
            filename = None
            if isinstance(meta.landscape, LandscapeReady):
                filename = meta.landscape.filename
            meta.landscape = None
            creation.set_job_meta(meta)
            await uow.creations.save(creation)

        if filename:
            await discard_upload(self.ctx.storage, filename)
        logger.info("landscape.removed", creation_id=creation_id, filename=filename)
        return await self._result(creation_id, user_id)

    async def _schedule(
        self, creation: Creation, payload: CreationJobPayload, balance: Decimal
    ) -> SubmissionResult:
        try:
            await self.ctx.scheduler.enqueue(payload, job_handler(self.ctx))
        except SchedulingError as e:
            logger.error(
                "creation.schedule_failed", creation_id=payload.creation_id, error=str(e)
            )
            await self._fail_unscheduled(payload)
            return await self._result(payload.creation_id, payload.user_id)
        return SubmissionResult.from_creation(creation, balance)

    async def _fail_unscheduled(self, payload: CreationJobPayload) -> None:
        async with await self.ctx.uow_factory() as uow:
            creation = await uow.creations.get_for_update(payload.creation_id)
            if (
                creation is not None
                and creation.status == CreationStatus.CREATING
                and creation.job_meta.attempt == payload.attempt
            ):
                creation.mark_failed(
                    error_code=ErrorCode.SCHEDULE_FAILED,
                    message=SCHEDULE_FAILED_MESSAGE,
                    failed_at=self.ctx.clock(),
                )
                await uow.creations.save(creation)
        await refund_creation_once(self.ctx.uow_factory, payload.creation_id)

    async def _result(self, creation_id: int, user_id: int) -> SubmissionResult:
        async with await self.ctx.uow_factory() as uow:
            creation = await uow.creations.get_by_id(creation_id)
            balance = await uow.credits.get_balance(user_id)
        if creation is None:
            raise CreationNotFoundError(f"Creation {creation_id} not found")
        return SubmissionResult.from_creation(creation, balance)

    def _resolve_cost(
        self, provider: Provider, method: str, credit_cost: Optional[Decimal]
    ) -> Decimal:
        if credit_cost is not None:
            cost = Decimal(str(credit_cost))
            if not cost.is_finite() or cost < 0:
                raise InvalidJobPayloadError("credit_cost must be a non-negative number")
            return cost
        if method == LANDSCAPE_METHOD:
            raise InvalidJobPayloadError(f"{LANDSCAPE_METHOD} requires an explicit credit_cost")
        configured = provider.method_credits(method)
        return configured if configured is not None else self.settings.default_credit_cost

    async def _resolve_lineage(
        self,
        uow: UnitOfWork,
        user_id: int,
        mutate_of_id: Optional[int],
        args: dict[str, Any],
        is_admin: bool,
    ) -> tuple[list[int], dict[str, Any]]:
        """History for a derived creation, plus args pointing at a fetchable source URL."""
        if mutate_of_id is None:
            return [], args

        source = await uow.creations.get_by_id(mutate_of_id)
        if source is None or not (source.user_id == user_id or source.published or is_admin):
            raise CreationNotFoundError(f"Creation {mutate_of_id} not found")

        history = [*source.job_meta.history, source.id]

        if not source.published and source.status == CreationStatus.COMPLETED:
            try:
                args["image_url"] = self.ctx.share_tokens.image_url(source.id, user_id)  # type: ignore[arg-type]
            except ShareTokenError as e:
                # Provider may fail to fetch the original URL; the job reports that
                logger.warning(
                    "creation.share_token_failed", source_id=source.id, error=str(e)
                )
        return history, args

    async def _require_provider(self, uow: UnitOfWork, provider_id: Optional[int]) -> Provider:
        provider = await uow.providers.get_by_id(provider_id) if provider_id is not None else None
        if provider is None or not provider.is_active:
            raise ProviderUnavailableError(f"Provider {provider_id} is not available")
        return provider

    async def _landscape_provider(self, uow: UnitOfWork, provider_id: Optional[int]) -> Provider:
        if provider_id is not None:
            provider = await uow.providers.get_by_id(provider_id)
            if provider is not None and provider.is_active:
                return provider
        provider = await uow.providers.get_first_active()
        if provider is None:
            raise ProviderUnavailableError("Landscape server is not available.")
        return provider

    async def _require_owned(
        self, uow: UnitOfWork, creation_id: int, user_id: int, lock: bool = False
    ) -> Creation:
        if lock:
            creation = await uow.creations.get_for_update(creation_id)
        else:
            creation = await uow.creations.get_by_id(creation_id)
        if creation is None or creation.user_id != user_id:
            raise CreationNotFoundError(f"Creation {creation_id} not found")
        return creation
