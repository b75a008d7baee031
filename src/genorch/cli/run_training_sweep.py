"""CLI command for running one training lifecycle sweep by hand.

Usage:
    python -m genorch.cli.run_training_sweep [OPTIONS]

Examples:
    # Run one sweep (takes the same lock as the in-app monitor)
    python -m genorch.cli.run_training_sweep

    # Dry run (log decisions, no state writes, refunds or resubmissions)
    python -m genorch.cli.run_training_sweep --dry-run

    # Verbose logging
    python -m genorch.cli.run_training_sweep -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genorch.core.config import Settings, configure_logging
from genorch.core.database import setup_db_session
from genorch.core.redis import create_redis_client
from genorch.services.ledger.client import LedgerClient
from genorch.services.orchestrator.client import OrchestratorClient
from genorch.services.training.service import TrainingService
from genorch.uow import create_uow_factory
from genorch.workers.training_monitor import TrainingMonitor, run_locked_sweep

logger = structlog.get_logger()


def parse_args() -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reconcile long-running training jobs with the orchestrator",
        epilog="Fails, refunds or resubmits jobs that stopped reporting progress",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log decisions without state writes, refunds or resubmissions",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args()


async def async_main() -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (some jobs failed), 3 (sweep locked)
    """
    args = parse_args()

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis = create_redis_client(settings)

    orchestrator = OrchestratorClient(settings)
    ledger = LedgerClient(settings)
    monitor = TrainingMonitor(
        uow_factory,
        orchestrator,
        ledger,
        TrainingService(orchestrator, ledger, uow_factory, settings),
        settings,
    )

    try:
        result = await run_locked_sweep(monitor, redis, settings, dry_run=args.dry_run)
        if result is None:
            print("Another sweep is running; nothing done.", file=sys.stderr)
            return 3

        print("\n" + "=" * 60)
        print("Training Sweep Summary")
        print("=" * 60)
        for name, value in result.summary().items():
            print(f"{name.replace('_', ' ').capitalize()}: {value}")
        if args.dry_run:
            print("\n[DRY RUN] No changes were made")
        print("=" * 60 + "\n")

        if result.errors:
            logger.warning("cli.partial_success", errors=result.errors)
            return 2
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nSweep interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await redis.aclose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
