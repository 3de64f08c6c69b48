#!/usr/bin/env python3
"""Entrypoint for running the notification delivery workers.

Usage:
    # Single run (one dispatch tick and one retention sweep)
    python scripts/run_workers.py --once

    # Continuous loop (Ctrl+C to stop)
    python scripts/run_workers.py --loop

    # Loop with custom tick interval
    python scripts/run_workers.py --loop --interval-ms 2000

    # Deliver only, no retention sweep, with debug logging
    python scripts/run_workers.py --once --no-retention --log-level DEBUG

Environment variables:
    DATABASE_URL: Queue database (default: sqlite:///./notifications.db)
    WORKER_BATCH_SIZE: Records claimed per tick (default: 50)
    WORKER_POOL_SIZE: Concurrent delivery attempts (default: 4)
    WORKER_POLL_INTERVAL_MS: Milliseconds between ticks (default: 5000)
    DELIVERY_TIMEOUT_MS: Per-attempt timeout (default: 10000)
    RETENTION_WINDOW_DAYS: Age of purged SENT/DEAD records (default: 30)
"""

import argparse
import logging
import sys

from notifyqueue.config import get_settings
from notifyqueue.db.session import create_db_and_tables
from notifyqueue.workers import (
    run_worker_once,
    run_worker_loop,
    configure_worker_logging,
)


def main() -> int:
    """Main entrypoint for worker runner."""
    parser = argparse.ArgumentParser(
        description="Run notification delivery workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    # Mode selection
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run workers once and exit",
    )
    mode.add_argument(
        "--loop",
        action="store_true",
        help="Run workers continuously in a loop",
    )

    # Configuration
    parser.add_argument(
        "--interval-ms",
        type=int,
        default=None,
        help="Milliseconds between dispatch ticks (loop mode only)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum iterations before stopping (loop mode only)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Records to claim per tick",
    )
    parser.add_argument(
        "--pool-size",
        type=int,
        default=None,
        help="Concurrent delivery attempts",
    )

    parser.add_argument(
        "--no-retention",
        action="store_true",
        help="Skip the retention sweep (--once only)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )

    args = parser.parse_args()
    configure_worker_logging(getattr(logging, args.log_level))

    logger = logging.getLogger(__name__)

    try:
        get_settings().validate()
        create_db_and_tables()

        if args.once:
            result = run_worker_once(
                batch_size=args.batch_size,
                pool_size=args.pool_size,
                include_retention=not args.no_retention,
            )

            print(result.summary())
            for err in result.errors:
                print(f"  - {err}", file=sys.stderr)
            return 0 if not result.errors else 1

        elif args.loop:
            logger.info("Starting worker loop (Ctrl+C to stop)...")
            run_worker_loop(
                interval_ms=args.interval_ms,
                max_iterations=args.max_iterations,
                batch_size=args.batch_size,
                pool_size=args.pool_size,
            )
            return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
