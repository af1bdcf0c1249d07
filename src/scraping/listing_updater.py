"""Apply extraction results to a JobListing and close out attempts."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.lifecycle import SCRAPING_STATUS
from src.persistence.models import JobListing, ScrapingAttempt, ensure_aware, utcnow
from src.tracking.application_service import ApplicationService

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.7

LISTING_FIELDS = (
    "title",
    "location",
    "remote_type",
    "description",
    "requirements",
    "responsibilities",
    "salary_min",
    "salary_max",
    "salary_currency",
)


def confident(result: Optional[dict]) -> bool:
    return bool(result) and (result.get("confidence") or 0.0) >= MIN_CONFIDENCE


def apply_preliminary(session: Session, listing: JobListing, fields: dict) -> list[str]:
    """Fill only blank listing fields from selector extraction."""
    filled = []
    for name in LISTING_FIELDS:
        if fields.get(name) and not getattr(listing, name):
            setattr(listing, name, fields[name])
            filled.append(name)
    if fields.get("company_name") and listing.company_id is None:
        listing.company = ApplicationService(session).find_or_create_company(fields["company_name"])
        filled.append("company")
    session.flush()
    return filled


def apply_extraction(session: Session, listing: JobListing, result: dict, retried: bool = False) -> None:
    """Overwrite listing fields with an accepted extraction, keeping old values for gaps."""
    for name in LISTING_FIELDS:
        if result.get(name) not in (None, ""):
            setattr(listing, name, result[name])
    if result.get("company_name") and listing.company_id is None:
        listing.company = ApplicationService(session).find_or_create_company(result["company_name"])
    if result.get("source_id"):
        listing.source_id = result["source_id"]
    listing.scraped_data = {
        "status": "completed",
        "extraction_method": result.get("extraction_method") or "ai",
        "provider": result.get("provider"),
        "model": result.get("model"),
        "confidence_score": result.get("confidence"),
        "extracted_at": utcnow().isoformat(),
        "retried": retried,
    }
    session.flush()


def complete_attempt(session: Session, attempt: ScrapingAttempt, result: dict) -> None:
    created_at = ensure_aware(attempt.created_at) or utcnow()
    attempt.extraction_method = result.get("extraction_method") or "ai"
    attempt.provider = result.get("provider")
    attempt.confidence_score = result.get("confidence")
    attempt.duration_seconds = round((utcnow() - created_at).total_seconds(), 3)
    attempt.response_metadata = {"model": result.get("model"), "llm_api_log_id": result.get("llm_api_log_id")}
    SCRAPING_STATUS.fire(attempt, "mark_completed", session=session)
    session.flush()
    logger.info(
        "Scraping attempt %s completed via %s (confidence %.2f)",
        attempt.id,
        attempt.extraction_method,
        attempt.confidence_score or 0.0,
    )


def fail_attempt(session: Session, attempt: ScrapingAttempt, step: str, message: Optional[str]) -> None:
    """Record the failing step and move the attempt to failed when allowed."""
    attempt.failed_step = step
    attempt.error_message = message
    if SCRAPING_STATUS.can_fire(attempt, "mark_failed"):
        SCRAPING_STATUS.fire(attempt, "mark_failed", session=session, reason=message)
    else:
        logger.warning("Attempt %s can't be marked failed from %s", attempt.id, attempt.status)
    session.flush()
    logger.warning("Scraping attempt %s failed at %s: %s", attempt.id, step, message)
