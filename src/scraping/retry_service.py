"""Retry a failed scraping attempt from the step that failed."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.lifecycle import SCRAPING_STATUS
from src.persistence.models import ScrapingAttempt
from src.scraping.ai_extractor import AiExtractor
from src.scraping.api_fetchers import fetcher_for
from src.scraping.html_fetcher import HtmlFetcher
from src.scraping.job_board_detector import JobBoardDetector
from src.scraping.listing_updater import apply_extraction, complete_attempt, confident, fail_attempt
from src.scraping.orchestrator import ScrapingOrchestrator

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = ("failed", "retrying")


class RetryService:
    """Re-runs a failed attempt, reusing cached HTML where possible.

    Every method returns ``{success, attempt, message|error}`` where
    ``attempt`` is the attempt whose outcome counts (a full retry creates a
    new one).
    """

    def __init__(
        self,
        session: Session,
        attempt: ScrapingAttempt,
        fetcher: Optional[HtmlFetcher] = None,
        ai_extractor_factory=AiExtractor,
        api_fetcher_for=fetcher_for,
        orchestrator_factory=ScrapingOrchestrator,
    ):
        self.session = session
        self.attempt = attempt
        self.job_listing = attempt.job_listing
        self.fetcher = fetcher or HtmlFetcher(session)
        self.ai_extractor_factory = ai_extractor_factory
        self.api_fetcher_for = api_fetcher_for
        self.orchestrator_factory = orchestrator_factory

    async def retry(self) -> dict:
        """Dispatch on ``failed_step``."""
        step = self.attempt.failed_step
        logger.info("Retrying attempt %s (failed_step=%s)", self.attempt.id, step)
        if step == "html_fetch":
            return await self.retry_html_fetch()
        if step in ("api_extraction", "ai_extraction"):
            return await self.retry_extraction()
        return await self.retry_full()

    async def retry_html_fetch(self) -> dict:
        """Fetch again bypassing the cache, then extract."""
        if self.attempt.status not in RETRYABLE_STATUSES:
            return self._error("Attempt is not in a retryable state")

        self._resume()
        fetched = await self.fetcher.fetch(self.job_listing.url, use_cache=False)
        self.attempt.http_status = fetched.get("status")
        if not fetched["success"]:
            fail_attempt(self.session, self.attempt, "html_fetch", fetched.get("error"))
            return self._error(fetched.get("error") or "HTML fetch failed")
        return await self._extract(fetched["html"])

    async def retry_extraction(self) -> dict:
        """Re-extract from cached HTML; without a cached page, retry everything."""
        if self.attempt.status not in RETRYABLE_STATUSES:
            return self._error("Attempt is not in a retryable state")

        page = self.fetcher.cached(self.job_listing.url)
        if page is None:
            logger.info("No cached HTML for attempt %s, falling back to a full retry", self.attempt.id)
            return await self.retry_full()

        self._resume()
        return await self._extract(page.html)

    async def retry_full(self) -> dict:
        """Run the orchestrator again; the new attempt carries the retry count."""
        orchestrator = self.orchestrator_factory(
            self.session,
            self.job_listing,
            fetcher=self.fetcher,
            ai_extractor_factory=self.ai_extractor_factory,
            api_fetcher_for=self.api_fetcher_for,
        )
        try:
            success = await orchestrator.call()
        except Exception as e:
            logger.error("Full retry raised for listing %s: %s", self.job_listing.id, e)
            success = False

        new_attempt = orchestrator.attempt or self.attempt
        if new_attempt is not self.attempt:
            new_attempt.retry_count = self.attempt.retry_count or 0
            self.attempt.response_metadata = {**(self.attempt.response_metadata or {}), "superseded_by": new_attempt.id}
            if SCRAPING_STATUS.can_fire(self.attempt, "mark_failed"):
                SCRAPING_STATUS.fire(self.attempt, "mark_failed", session=self.session, reason="Superseded by full retry")
            self.session.flush()

        if success:
            return {"success": True, "attempt": new_attempt, "message": "Full retry succeeded"}
        return {"success": False, "attempt": new_attempt, "error": "Full retry failed"}

    async def _extract(self, html: str) -> dict:
        SCRAPING_STATUS.fire(self.attempt, "start_extract", session=self.session)
        try:
            detector = JobBoardDetector(self.job_listing.url)
            fetcher = self.api_fetcher_for(detector.detect()) if detector.api_supported else None
            if fetcher is not None and detector.company_slug:
                api_result = await fetcher.fetch(detector.company_slug, detector.job_id)
                if confident(api_result):
                    return self._complete(api_result, "API extraction succeeded")

            ai_result = self.ai_extractor_factory(self.session, self.job_listing).extract(html)
        except Exception as e:
            fail_attempt(self.session, self.attempt, "ai_extraction", str(e))
            return self._error(str(e))

        if confident(ai_result):
            return self._complete(ai_result, "AI extraction succeeded")
        fail_attempt(self.session, self.attempt, "ai_extraction", f"Low confidence: {ai_result.get('confidence') or 0.0}")
        return self._error("Extraction failed: Low confidence")

    def _resume(self) -> None:
        """failed -> retrying -> fetching."""
        if self.attempt.status == "failed":
            SCRAPING_STATUS.fire(self.attempt, "retry_attempt", session=self.session)
        SCRAPING_STATUS.fire(self.attempt, "start_fetch", session=self.session)
        self.session.flush()

    def _complete(self, result: dict, message: str) -> dict:
        apply_extraction(self.session, self.job_listing, result, retried=True)
        complete_attempt(self.session, self.attempt, result)
        return {"success": True, "attempt": self.attempt, "message": message}

    def _error(self, message: str) -> dict:
        return {"success": False, "attempt": self.attempt, "error": message}
