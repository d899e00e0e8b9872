"""CLI command for running one recovery cycle on demand.

Usage:
    python -m permitflow.cli [OPTIONS]

Examples:
    # Run all sweeps once (stuck applications, payments, expirations, housekeeping)
    python -m permitflow.cli

    # Only the stuck-application sweep
    python -m permitflow.cli --sweep stuck

    # Larger batches, verbose logging
    python -m permitflow.cli --batch-size 500 -v
"""

import asyncio
import json
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from permitflow.core import timezone  # noqa: F401
from permitflow.core.config import Settings, configure_logging
from permitflow.core.database import setup_db_session
from permitflow.workers.recovery_scheduler import RecoveryReport, build_recovery_scheduler

logger = structlog.get_logger()

SWEEPS = ("stuck", "payments", "expirations", "housekeeping")


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Run one recovery / reconciliation cycle")

    parser.add_argument(
        "--sweep",
        choices=SWEEPS,
        action="append",
        help="Run only this sweep (repeatable; default: all sweeps)",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        help="Rows handled per sweep (default: RECOVERY_BATCH_SIZE)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (completed with row errors)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.batch_size:
        settings.recovery_batch_size = args.batch_size
    if args.verbose:
        settings.log_level = "DEBUG"

    configure_logging(settings)

    try:
        session_factory = setup_db_session(settings.database_url, pool_size=2)
        scheduler = build_recovery_scheduler(session_factory, settings)

        if args.sweep:
            report = RecoveryReport()
            by_name = {
                "stuck": scheduler.sweep_stuck_applications,
                "payments": scheduler.sweep_payments,
                "expirations": scheduler.sweep_expirations,
                "housekeeping": scheduler.housekeeping,
            }
            for name in args.sweep:
                logger.info("run_recovery.sweep", sweep=name)
                await by_name[name](report)
        else:
            report = await scheduler.run_cycle()

    except KeyboardInterrupt:
        logger.warning("run_recovery.interrupted", message="Recovery interrupted by user")
        return 2

    except Exception as e:
        logger.error("run_recovery.fatal_error", error=str(e), exc_info=True)
        return 1

    print(json.dumps(report.as_dict(), indent=2))
    return 2 if report.errors else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
