import argparse
import asyncio
import dataclasses
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dotenv import load_dotenv

from .config import LOG_FILE_BACKUPS, LOG_FILE_MAX_BYTES, CrawlerConfig
from .crawler import Crawler, CrawlSummary
from .database import Database, Store
from .tabs import BrowserSession, TabManager

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: CrawlerConfig, verbose: bool = False) -> None:
    """Log to stdout, or to a size-rotated file when running silently."""
    log_level = logging.DEBUG if verbose or config.debug else logging.INFO

    if config.silent:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            config.log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8",
        )
        logging.basicConfig(level=log_level, format=LOG_FORMAT, handlers=[handler], force=True)
    else:
        logging.basicConfig(level=log_level, format=LOG_FORMAT, force=True)


def _open_db(config: CrawlerConfig) -> Database:
    db = Database(config.db_path)
    db.init_schema()
    return db


async def _crawl(config: CrawlerConfig, db: Database) -> CrawlSummary:
    async with BrowserSession(config) as session:
        crawler = Crawler(config, Store(db), TabManager(session))
        return await crawler.run()


def cmd_crawl(args: argparse.Namespace) -> None:
    """Crawl popular members, their films, activities and reviews."""
    overrides = {}
    if args.max_pages is not None:
        overrides["max_pages"] = args.max_pages
    if args.headless is not None:
        overrides["headless"] = args.headless
    if args.fail_fast:
        overrides["fail_fast"] = True
    if args.screenshot_dir:
        overrides["screenshot_dir"] = Path(args.screenshot_dir)
    config = dataclasses.replace(args.config, **overrides)

    db = _open_db(config)
    try:
        summary = asyncio.run(_crawl(config, db))
    except KeyboardInterrupt:
        logger.warning("Crawl interrupted, progress so far is saved")
        return
    finally:
        db.close()

    logger.info(
        f"\nCrawled {summary.users} users: {summary.movies} new movies, {summary.activities} activities"
    )
    if summary.failures:
        logger.warning(f"{len(summary.failures)} users failed:")
        for failure in summary.failures:
            shot = f" (screenshot: {failure.screenshot})" if failure.screenshot else ""
            logger.warning(f"  {failure.unit}: {failure.error}{shot}")


def cmd_init_db(args: argparse.Namespace) -> None:
    db = _open_db(args.config)
    db.close()
    logger.info(f"Database ready at {args.config.db_path}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show row counts per table."""
    db = _open_db(args.config)
    try:
        counts = db.table_counts()
    finally:
        db.close()

    logger.info("\nDatabase Stats")
    logger.info("-" * 36)
    for table, count in counts.items():
        logger.info(f"  {table:22} {count:>10,}")


def cmd_session_history(args: argparse.Namespace) -> None:
    """Show crawl session history."""
    db = _open_db(args.config)
    try:
        sessions = db.get_session_history(limit=args.limit)
    finally:
        db.close()

    if not sessions:
        logger.info("No crawl sessions recorded yet.")
        return

    logger.info("\nRecent Crawl Sessions")
    logger.info("-" * 60)
    for s in sessions:
        started = s['started_at'][:16].replace('T', ' ')
        if s.get('completed_at'):
            elapsed = datetime.fromisoformat(s['completed_at']) - datetime.fromisoformat(s['started_at'])
            duration_str = f"{elapsed.total_seconds() / 3600:.1f}h"
        else:
            duration_str = "ongoing"

        logger.info(
            f"  [{s['id']}] {started} | {s['status']:11} | {s['users_crawled'] or 0:4} users | "
            f"{s['movies_added'] or 0:5} movies | {s['failures'] or 0:3} failed | {duration_str}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Letterboxd Crawler")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl_parser = subparsers.add_parser("crawl", help="Crawl popular members and everything they watched")
    crawl_parser.add_argument("--max-pages", type=int, help="Popular members pages to crawl (default: LETTERBOXD_MAX_PAGE)")
    crawl_parser.add_argument("--headless", dest="headless", action="store_true", default=None,
                              help="Run the local browser headless")
    crawl_parser.add_argument("--no-headless", dest="headless", action="store_false",
                              help="Show the local browser window")
    crawl_parser.add_argument("--fail-fast", action="store_true",
                              help="Abort the whole crawl on the first failed user")
    crawl_parser.add_argument("--screenshot-dir", help="Save a screenshot of each failing tab here")
    crawl_parser.set_defaults(func=cmd_crawl)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    stats_parser = subparsers.add_parser("stats", help="Show row counts per table")
    stats_parser.set_defaults(func=cmd_stats)

    session_parser = subparsers.add_parser("session-history", help="Show crawl session history")
    session_parser.add_argument("--limit", type=int, default=10, help="Number of sessions to display")
    session_parser.set_defaults(func=cmd_session_history)

    return parser


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)

    args.config = CrawlerConfig.from_env()
    setup_logging(args.config, verbose=args.verbose)

    args.func(args)


if __name__ == "__main__":
    main()
