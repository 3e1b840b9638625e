"""Periodic reconciliation sweep running inside the API process."""

import asyncio

import structlog

from atelier.services.sweep import ReconciliationSweep
from atelier.workers.context import JobContext

logger = structlog.get_logger()


async def run_sweep_worker(ctx: JobContext) -> None:
    """Run the reconciliation sweep forever, every SWEEP_INTERVAL_SECONDS.

    Exceptions escape so the resilient-worker wrapper logs and restarts it.
    """
    interval = ctx.settings.sweep_interval_seconds
    sweep = ReconciliationSweep(ctx, batch_size=ctx.settings.sweep_batch_size)
    logger.info("sweep_worker.started", interval_seconds=interval)

    while True:
        report = await sweep.run()
        if report.total_changes or report.errors:
            logger.info(
                "sweep_worker.cycle",
                changes=report.total_changes,
                errors=len(report.errors),
            )
        await asyncio.sleep(interval)
