"""Main entry point for the Interview Signals scheduler."""
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from config.settings import settings
from src.gmail.sync_service import SyncService
from src.logging_config import setup_logging
from src.persistence.database import get_session, init_db
from src.persistence.models import ConnectedAccount
from src.scraping.jobs import cleanup_stuck_attempts, retry_scheduled_attempts, scrape_pending_listings
from src.signals.jobs import process_pending_extractions

logger = logging.getLogger(__name__)


def run_email_sync() -> dict:
    """Sync every connected account that has sync enabled.

    Returns:
        Mapping of account email to its sync result
    """
    results = {}
    with get_session() as session:
        accounts = session.execute(
            select(ConnectedAccount).where(
                ConnectedAccount.provider == "google_oauth2",
                ConnectedAccount.sync_enabled.is_(True),
                ConnectedAccount.needs_reauth.is_(False),
            )
        ).scalars().all()

        for account in accounts:
            result = SyncService(session, account).run()
            results[account.email] = result
            if result["success"]:
                session.commit()
            else:
                logger.warning("Sync failed for %s: %s", account.email, result.get("error"))
                session.rollback()

    logger.info("Email sync finished for %d accounts", len(results))
    return results


def run_signal_extraction() -> int:
    """Extract signals for pending processed emails."""
    with get_session() as session:
        count = process_pending_extractions(session)
    if count:
        logger.info("Signal extraction ran for %d emails", count)
    return count


async def run_listing_scrapes() -> int:
    """Scrape job listings that have never been attempted."""
    with get_session() as session:
        count = await scrape_pending_listings(session)
    if count:
        logger.info("Scraped %d new job listings", count)
    return count


async def run_scraping_retries() -> int:
    """Retry scraping attempts waiting in the retry queue."""
    with get_session() as session:
        count = await retry_scheduled_attempts(session)
    if count:
        logger.info("Retried %d scraping attempts", count)
    return count


def run_stuck_cleanup() -> int:
    """Fail scraping attempts that stopped making progress."""
    with get_session() as session:
        return cleanup_stuck_attempts(session)


def build_scheduler() -> AsyncIOScheduler:
    """Create the scheduler with every background job registered."""
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_email_sync,
        IntervalTrigger(minutes=settings.email_sync_interval_minutes),
        id="email_sync",
        name="Gmail Sync",
        max_instances=1,
    )
    scheduler.add_job(
        run_signal_extraction,
        IntervalTrigger(minutes=settings.signal_extraction_interval_minutes),
        id="signal_extraction",
        name="Signal Extraction",
        max_instances=1,
    )
    scheduler.add_job(
        run_listing_scrapes,
        IntervalTrigger(minutes=settings.scraping_interval_minutes),
        id="listing_scrapes",
        name="Listing Scrapes",
        max_instances=1,
    )
    scheduler.add_job(
        run_scraping_retries,
        IntervalTrigger(minutes=settings.scraping_retry_interval_minutes),
        id="scraping_retries",
        name="Scraping Retries",
        max_instances=1,
    )
    scheduler.add_job(
        run_stuck_cleanup,
        IntervalTrigger(minutes=settings.stuck_cleanup_interval_minutes),
        id="stuck_cleanup",
        name="Stuck Attempt Cleanup",
        max_instances=1,
    )
    return scheduler


async def async_main():
    """Async main entry point."""
    setup_logging(level=settings.log_level, log_file=settings.log_file)
    logger.info("Interview Signals starting...")
    logger.info("Database: %s", settings.database_url)

    init_db()
    logger.info("Database initialized")

    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Scheduler started:")
    logger.info("  - Gmail sync every %d minutes", settings.email_sync_interval_minutes)
    logger.info("  - Signal extraction every %d minutes", settings.signal_extraction_interval_minutes)
    logger.info("  - Listing scrapes every %d minutes", settings.scraping_interval_minutes)
    logger.info("  - Scraping retries every %d minutes", settings.scraping_retry_interval_minutes)
    logger.info("  - Stuck cleanup every %d minutes", settings.stuck_cleanup_interval_minutes)

    try:
        run_email_sync()
        run_signal_extraction()

        logger.info("Interview Signals running. Press Ctrl+C to stop.")

        # Keep running forever
        while True:
            await asyncio.sleep(60)

    except asyncio.CancelledError:
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()


def main():
    """Main entry point."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown complete.")


if __name__ == "__main__":
    main()
