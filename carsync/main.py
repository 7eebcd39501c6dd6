"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carsync.config import config, Config
from carsync.errors import SyncError
from carsync.logging_conf import setup_logging
from carsync.jobs.runner import create_runner

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Car listings sync")

    # Range arguments
    parser.add_argument(
        "--start-page",
        type=int,
        default=None,
        help="Start at this page instead of the checkpoint",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help=f"Last page to fetch (default: {config.MAX_PAGES})",
    )

    # Mode flags
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Ignore any checkpoint and start a new run",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Development mode (few pages, low concurrency, verbose logs)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run: fetch and transform only, no Supabase or checkpoint writes",
    )
    parser.add_argument(
        "--direct",
        action="store_true",
        help="Upsert straight into the cache table (no staging, merge or mark-inactive)",
    )

    # Run control flags
    parser.add_argument(
        "--stop-after-minutes",
        type=float,
        default=None,
        help="Pause after M minutes; the next run resumes from the checkpoint",
    )
    parser.add_argument(
        "--max-api-errors",
        type=int,
        default=None,
        help=f"Fail if API errors > N (default: {config.MAX_API_ERRORS})",
    )

    # Performance arguments
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Pages processed in parallel (default: {config.CONCURRENCY})",
    )
    parser.add_argument(
        "--rps",
        type=float,
        default=None,
        help=f"API requests per second (default: {config.RPS})",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help=f"Listings per page (default: {config.PAGE_SIZE})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Rows per Supabase upsert (default: {config.BATCH_SIZE})",
    )

    return parser.parse_args(argv)


def apply_overrides(args: argparse.Namespace, cfg: Config = config) -> None:
    """Apply DEV defaults and CLI flags onto the config."""
    if args.dev:
        if args.max_pages is None:
            args.max_pages = 5
        if args.concurrency is None:
            cfg.CONCURRENCY = 2
        if args.rps is None:
            cfg.RPS = 2
            cfg.RATE_BURST = 2
        logging.getLogger().setLevel(logging.DEBUG)

    if args.max_pages is not None:
        cfg.MAX_PAGES = args.max_pages
    if args.max_api_errors is not None:
        cfg.MAX_API_ERRORS = args.max_api_errors
    if args.concurrency is not None:
        cfg.CONCURRENCY = args.concurrency
    if args.rps is not None:
        cfg.RPS = args.rps
        cfg.RATE_BURST = args.rps
    if args.page_size is not None:
        cfg.PAGE_SIZE = args.page_size
    if args.batch_size is not None:
        cfg.BATCH_SIZE = args.batch_size


def main(argv=None) -> None:
    """Main entry point."""
    setup_logging(config.LOG_LEVEL)

    args = parse_args(argv)
    apply_overrides(args, config)

    try:
        config.validate(require_supabase=not args.dry_run)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.dry_run:
        logger.info("DRY-RUN mode: Supabase and checkpoint writes disabled")

    logger.info("=" * 60)
    logger.info("Car Sync Starting")
    logger.info(f"Mode: {'DEV' if args.dev else 'PROD'}")
    logger.info(f"API: {config.API_BASE_URL}")
    logger.info(f"Start page: {args.start_page or 'checkpoint'}")
    logger.info(f"Max pages: {config.MAX_PAGES}")
    logger.info(f"Concurrency: {config.CONCURRENCY}")
    logger.info(f"Rate: {config.RPS} req/s")
    logger.info(f"Page size: {config.PAGE_SIZE}")
    logger.info(f"Batch size: {config.BATCH_SIZE}")
    logger.info(f"Resume: {not args.fresh}")
    logger.info(f"Target: {config.SUPABASE_CACHE_TABLE if args.direct else config.SUPABASE_STAGING_TABLE}")
    logger.info(f"Dry-run: {args.dry_run}")
    logger.info("=" * 60)

    try:
        runner = create_runner(
            config,
            resume=not args.fresh,
            start_page=args.start_page,
            direct=args.direct,
            dry_run=args.dry_run,
            stop_after_minutes=args.stop_after_minutes,
        )
        asyncio.run(runner.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user, progress kept in checkpoint")
        sys.exit(1)
    except SyncError as e:
        logger.error(f"Sync failed in phase {e.phase}: {e.message}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
