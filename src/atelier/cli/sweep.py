"""CLI command for settling stuck and unrefunded creation jobs.

Usage:
    python -m atelier.cli.sweep [OPTIONS]

Examples:
    # Settle everything the sweep finds
    python -m atelier.cli.sweep

    # Report candidates only (no database writes)
    python -m atelier.cli.sweep --dry-run

    # Smaller pages, verbose logging
    python -m atelier.cli.sweep --batch-size 20 -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from atelier.core import timezone  # noqa: F401
from atelier.core.config import Settings, configure_logging
from atelier.core.database import setup_db_session
from atelier.services.sweep import ReconciliationSweep, SweepReport
from atelier.uow import create_uow_factory
from atelier.workers.context import build_job_context

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail abandoned creation jobs and refund unsettled charges",
        epilog="Safe to run repeatedly and alongside live job workers",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Rows fetched per page (default: SWEEP_BATCH_SIZE)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List affected rows without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def print_summary(report: SweepReport, dry_run: bool) -> None:
    print("\n" + "=" * 60)
    print("Reconciliation Sweep Summary")
    print("=" * 60)
    print(f"Abandoned creations failed: {len(report.abandoned_creations)}")
    print(f"Abandoned trials failed: {len(report.abandoned_trials)}")
    print(f"Creation charges refunded: {len(report.refunded_creations)}")
    print(f"Landscape charges refunded: {len(report.refunded_landscapes)}")

    if report.errors:
        print(f"\nErrors encountered: {len(report.errors)}")
        for error in report.errors[:5]:
            print(f"  - {error}")
        if len(report.errors) > 5:
            print(f"  ... and {len(report.errors) - 5} more errors")

    if dry_run:
        print("\n[DRY RUN] No changes were persisted to database")

    print("=" * 60 + "\n")


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    batch_size = args.batch_size or settings.sweep_batch_size
    logger.info("cli.started", dry_run=args.dry_run, batch_size=batch_size)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    ctx = build_job_context(settings, uow_factory)
    sweep = ReconciliationSweep(ctx, batch_size=batch_size)

    try:
        report = await sweep.run(dry_run=args.dry_run)
        print_summary(report, args.dry_run)

        if not report.errors:
            logger.info("cli.success", changes=report.total_changes)
            return 0
        elif report.total_changes > 0:
            logger.warning("cli.partial_success", errors=len(report.errors))
            return 2
        else:
            logger.error("cli.failure", errors=len(report.errors))
            return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nSweep interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
