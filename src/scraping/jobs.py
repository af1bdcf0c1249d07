"""Scraping background jobs: scrape, retry and stuck-attempt cleanup."""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from src.lifecycle import SCRAPING_STATUS
from src.persistence.models import JobListing, ScrapingAttempt, ScrapingEvent, utcnow
from src.scraping.orchestrator import ScrapingOrchestrator
from src.scraping.retry_service import RETRYABLE_STATUSES, RetryService

logger = logging.getLogger(__name__)

INTERMEDIATE_STATUSES = ("pending", "fetching", "extracting", "retrying")


async def scrape_job_listing(
    session: Session,
    job_listing: JobListing,
    attempt_id: Optional[str] = None,
    orchestrator_factory=ScrapingOrchestrator,
    retry_service_factory=RetryService,
) -> bool:
    """
    Scrape a listing, or retry a failed attempt when ``attempt_id`` is given.

    Failures never raise: the attempt is either scheduled for retry
    (``retrying``) or sent to the dead letter queue.

    Returns:
        True when the listing was extracted
    """
    if not job_listing.url:
        return False

    if attempt_id:
        attempt = session.get(ScrapingAttempt, attempt_id)
        if attempt is not None and attempt.status in RETRYABLE_STATUSES:
            try:
                result = await retry_service_factory(session, attempt).retry()
            except Exception as e:
                logger.exception("Retry of attempt %s raised", attempt.id)
                result = {"success": False, "attempt": attempt, "error": str(e)}
            if result["success"]:
                logger.info("Retry succeeded: attempt=%s listing=%s", attempt.id, job_listing.id)
                session.commit()
                return True
            handle_failure(session, result.get("attempt") or attempt)
            return False

    orchestrator = orchestrator_factory(session, job_listing)
    try:
        success = await orchestrator.call()
    except Exception as e:
        logger.error("Scraping error for listing %s (%s): %s", job_listing.id, job_listing.url, e)
        success = False

    if success:
        logger.info("Scraping succeeded: listing=%s url=%s", job_listing.id, job_listing.url)
        session.commit()
        return True
    handle_failure(session, orchestrator.attempt)
    return False


def handle_failure(session: Session, attempt: Optional[ScrapingAttempt]) -> None:
    """Schedule a retry, or dead-letter the attempt once retries are exhausted."""
    if attempt is None:
        session.commit()
        return
    if attempt.status != "failed" and SCRAPING_STATUS.can_fire(attempt, "mark_failed"):
        SCRAPING_STATUS.fire(attempt, "mark_failed", session=session)

    retry_count = attempt.retry_count or 0
    if retry_count >= settings.scraping_max_retries:
        SCRAPING_STATUS.fire(attempt, "send_to_dlq", session=session, reason=attempt.error_message)
        logger.error(
            "Scraping attempt %s sent to dead letter queue (failed_step=%s, retries=%d)",
            attempt.id,
            attempt.failed_step,
            retry_count,
        )
    else:
        attempt.retry_count = retry_count + 1
        SCRAPING_STATUS.fire(attempt, "retry_attempt", session=session)
        logger.warning(
            "Scraping retry scheduled: attempt=%s failed_step=%s retry=%d/%d",
            attempt.id,
            attempt.failed_step,
            attempt.retry_count,
            settings.scraping_max_retries,
        )
    session.commit()


async def scrape_pending_listings(
    session: Session, limit: int = 10, orchestrator_factory=ScrapingOrchestrator
) -> int:
    """Run the first scrape for active listings never attempted; returns how many ran."""
    candidates = session.execute(
        select(JobListing)
        .where(JobListing.status == "active", ~JobListing.scraping_attempts.any())
        .order_by(JobListing.created_at.asc())
    ).scalars().all()
    pending = [listing for listing in candidates if listing.url and not listing.scraped_data][:limit]
    for listing in pending:
        await scrape_job_listing(session, listing, orchestrator_factory=orchestrator_factory)
    return len(pending)


async def retry_scheduled_attempts(session: Session, limit: int = 20) -> int:
    """Run attempts waiting in ``retrying``; returns how many were processed."""
    attempts = session.execute(
        select(ScrapingAttempt)
        .where(ScrapingAttempt.status == "retrying")
        .order_by(ScrapingAttempt.updated_at.asc())
        .limit(limit)
    ).scalars().all()
    for attempt in attempts:
        await scrape_job_listing(session, attempt.job_listing, attempt_id=attempt.id)
    return len(attempts)


def cleanup_stuck_attempts(session: Session, threshold_minutes: Optional[int] = None) -> int:
    """
    Fail attempts stuck in an intermediate status.

    Args:
        session: Database session (committed here)
        threshold_minutes: Minutes without updates; defaults to settings.stuck_attempt_minutes

    Returns:
        Number of attempts cleaned up
    """
    minutes = threshold_minutes or settings.stuck_attempt_minutes
    threshold = utcnow() - timedelta(minutes=minutes)
    stuck = session.execute(
        select(ScrapingAttempt)
        .where(ScrapingAttempt.status.in_(INTERMEDIATE_STATUSES), ScrapingAttempt.updated_at < threshold)
        .order_by(ScrapingAttempt.updated_at.asc())
    ).scalars().all()

    for attempt in stuck:
        events = attempt.events
        stuck_step = events[-1].event_type if events else attempt.status
        for event in events:
            if event.status == "started":
                _time_out(event, minutes)

        from_status = attempt.status
        attempt.failed_step = stuck_step
        attempt.error_message = (
            f"Attempt stuck at '{stuck_step}' for over {minutes} minutes - automatically cleaned up"
        )
        SCRAPING_STATUS.fire(attempt, "mark_failed", session=session, reason="stuck")
        logger.warning(
            "Stuck scraping attempt cleaned: attempt=%s listing=%s step=%s status=%s",
            attempt.id,
            attempt.job_listing_id,
            stuck_step,
            from_status,
        )

    session.commit()
    if stuck:
        logger.info("Cleaned up %d stuck scraping attempts", len(stuck))
    return len(stuck)


def _time_out(event: ScrapingEvent, minutes: int) -> None:
    event.status = "failed"
    event.completed_at = utcnow()
    event.error_type = "StuckTimeout"
    event.error_message = f"Step timed out after {minutes} minutes"
