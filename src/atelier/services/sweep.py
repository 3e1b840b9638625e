"""Reconciliation sweep for jobs a crash or lost delivery left unsettled.

The job runner records a failure before refunding it, so a crash between the
two leaves a failed-but-unrefunded row; a lost delivery leaves a row stuck in
`creating`. The sweep settles both, using the same flag-guarded refund helpers
as the jobs, so running it concurrently with jobs or repeatedly is safe.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from atelier.models.creation import Creation, CreationStatus
from atelier.models.metadata import ErrorCode, LandscapeFailed
from atelier.models.trial import TrialCreation
from atelier.services.ledger import refund_creation_once, refund_landscape_once
from atelier.uow import UnitOfWork
from atelier.workers.context import JobContext

logger = structlog.get_logger()

ABANDONED_MESSAGE = "Timed out waiting for the provider."

Row = TypeVar("Row", Creation, TrialCreation)


@dataclass
class SweepReport:
    """What one sweep run changed (or would change, in dry-run mode)."""

    abandoned_creations: list[int] = field(default_factory=list)
    abandoned_trials: list[int] = field(default_factory=list)
    refunded_creations: list[int] = field(default_factory=list)
    refunded_landscapes: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return (
            len(self.abandoned_creations)
            + len(self.abandoned_trials)
            + len(self.refunded_creations)
            + len(self.refunded_landscapes)
        )


class ReconciliationSweep:
    """Settles stuck and unrefunded jobs in batches."""

    def __init__(self, ctx: JobContext, batch_size: int = 100):
        self.ctx = ctx
        self.batch_size = batch_size

    async def run(self, dry_run: bool = False) -> SweepReport:
        """Run every reconciliation step once.

        Args:
            dry_run: Report candidates without writing

        Returns:
            SweepReport listing affected ids and per-row errors
        """
        report = SweepReport()
        now = self.ctx.clock()

        await self._abandon_stale_creations(now, report, dry_run)
        await self._abandon_stale_trials(now, report, dry_run)
        await self._refund_failed_creations(report, dry_run)
        await self._refund_failed_landscapes(report, dry_run)

        logger.info(
            "sweep.completed",
            dry_run=dry_run,
            abandoned_creations=len(report.abandoned_creations),
            abandoned_trials=len(report.abandoned_trials),
            refunded_creations=len(report.refunded_creations),
            refunded_landscapes=len(report.refunded_landscapes),
            errors=len(report.errors),
        )
        return report

    async def _pages(
        self, fetch: Callable[[UnitOfWork, int], Awaitable[list[Row]]]
    ) -> AsyncIterator[list[Row]]:
        after_id = 0
        while True:
            async with await self.ctx.uow_factory() as uow:
                rows = await fetch(uow, after_id)
            if not rows:
                return
            yield rows
            if len(rows) < self.batch_size:
                return
            after_id = rows[-1].id  # type: ignore[assignment]

    async def _abandon_stale_creations(
        self, now: datetime, report: SweepReport, dry_run: bool
    ) -> None:
        pages = self._pages(
            lambda uow, after: uow.creations.list_by_status(
                CreationStatus.CREATING, self.batch_size, after
            )
        )
        async for rows in pages:
            for row in rows:
                if not row.is_past_timeout(now):
                    continue
                if dry_run:
                    report.abandoned_creations.append(row.id)  # type: ignore[arg-type]
                    continue
                try:
                    async with await self.ctx.uow_factory() as uow:
                        locked = await uow.creations.get_for_update(row.id)  # type: ignore[arg-type]
                        if locked is None or locked.status != CreationStatus.CREATING:
                            continue
                        if not locked.is_past_timeout(now):
                            continue
                        locked.mark_failed(
                            error_code=ErrorCode.TIMEOUT, message=ABANDONED_MESSAGE, failed_at=now
                        )
                        await uow.creations.save(locked)
                    await refund_creation_once(self.ctx.uow_factory, row.id)  # type: ignore[arg-type]
                    report.abandoned_creations.append(row.id)  # type: ignore[arg-type]
                except SQLAlchemyError as e:
                    report.errors.append(f"creation {row.id}: {e}")
                    logger.error("sweep.creation_failed", creation_id=row.id, error=str(e))

    async def _abandon_stale_trials(
        self, now: datetime, report: SweepReport, dry_run: bool
    ) -> None:
        pages = self._pages(
            lambda uow, after: uow.trials.list_by_status(
                CreationStatus.CREATING, self.batch_size, after
            )
        )
        async for rows in pages:
            for row in rows:
                if not row.is_past_timeout(now):
                    continue
                if dry_run:
                    report.abandoned_trials.append(row.id)  # type: ignore[arg-type]
                    continue
                try:
                    async with await self.ctx.uow_factory() as uow:
                        locked = await uow.trials.get_for_update(row.id)  # type: ignore[arg-type]
                        if locked is None or locked.status != CreationStatus.CREATING:
                            continue
                        locked.mark_failed(
                            error_code=ErrorCode.TIMEOUT, message=ABANDONED_MESSAGE, failed_at=now
                        )
                        await uow.trials.save(locked)
                    report.abandoned_trials.append(row.id)  # type: ignore[arg-type]
                except SQLAlchemyError as e:
                    report.errors.append(f"trial {row.id}: {e}")
                    logger.error("sweep.trial_failed", trial_id=row.id, error=str(e))

    async def _refund_failed_creations(self, report: SweepReport, dry_run: bool) -> None:
        pages = self._pages(
            lambda uow, after: uow.creations.list_by_status(
                CreationStatus.FAILED, self.batch_size, after
            )
        )
        async for rows in pages:
            for row in rows:
                meta = row.job_meta
                if not meta.is_paid or meta.credits_refunded:
                    continue
                if dry_run:
                    report.refunded_creations.append(row.id)  # type: ignore[arg-type]
                    continue
                try:
                    amount = await refund_creation_once(self.ctx.uow_factory, row.id)  # type: ignore[arg-type]
                except SQLAlchemyError as e:
                    report.errors.append(f"refund {row.id}: {e}")
                    logger.error("sweep.refund_failed", creation_id=row.id, error=str(e))
                    continue
                if amount > 0:
                    report.refunded_creations.append(row.id)  # type: ignore[arg-type]

    async def _refund_failed_landscapes(self, report: SweepReport, dry_run: bool) -> None:
        pages = self._pages(
            lambda uow, after: uow.creations.list_with_failed_landscape(self.batch_size, after)
        )
        async for rows in pages:
            for row in rows:
                state = row.job_meta.landscape
                if not isinstance(state, LandscapeFailed) or state.credits_refunded:
                    continue
                if state.credit_cost <= 0:
                    continue
                if dry_run:
                    report.refunded_landscapes.append(row.id)  # type: ignore[arg-type]
                    continue
                try:
                    async with await self.ctx.uow_factory() as uow:
                        locked = await uow.creations.get_for_update(row.id)  # type: ignore[arg-type]
                        amount = await refund_landscape_once(uow, locked) if locked else 0
                except SQLAlchemyError as e:
                    report.errors.append(f"landscape {row.id}: {e}")
                    logger.error("sweep.landscape_refund_failed", creation_id=row.id, error=str(e))
                    continue
                if amount > 0:
                    report.refunded_landscapes.append(row.id)  # type: ignore[arg-type]
