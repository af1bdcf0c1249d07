"""Coordinate fetch, selector, API and AI extraction for one job listing."""
import logging
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from src.lifecycle import SCRAPING_STATUS
from src.persistence.models import JobListing, ScrapingAttempt
from src.scraping.ai_extractor import AiExtractor
from src.scraping.api_fetchers import fetcher_for
from src.scraping.event_recorder import ScrapingEventRecorder
from src.scraping.html_cleaner import HtmlCleaner
from src.scraping.html_fetcher import HtmlFetcher
from src.scraping.job_board_detector import JobBoardDetector
from src.scraping.listing_updater import (
    apply_extraction,
    apply_preliminary,
    complete_attempt,
    confident,
    fail_attempt,
)

logger = logging.getLogger(__name__)


def extract_domain(url: str) -> str:
    return (urlparse(url or "").hostname or "unknown").lower()


def fetch_output(result: dict) -> dict:
    return {
        "success": result.get("success"),
        "html_size": len(result.get("html") or ""),
        "http_status": result.get("status"),
        "from_cache": result.get("from_cache"),
        "rendered": result.get("rendered"),
        "error": result.get("error"),
    }


def extraction_output(result: Optional[dict]) -> dict:
    if not result:
        return {"success": False, "error": "No result from API"}
    return {
        "success": confident(result),
        "confidence": result.get("confidence"),
        "provider": result.get("provider"),
        "model": result.get("model"),
        "extracted_fields": sorted(k for k, v in result.items() if v not in (None, "")),
        "error": result.get("error"),
    }


class ScrapingOrchestrator:
    """
    Extract a job listing: fetch HTML, selectors, board API, then AI.

    Example:
        >>> success = await ScrapingOrchestrator(session, listing).call()
    """

    def __init__(
        self,
        session: Session,
        job_listing: JobListing,
        fetcher: Optional[HtmlFetcher] = None,
        ai_extractor_factory=AiExtractor,
        api_fetcher_for=fetcher_for,
    ):
        self.session = session
        self.job_listing = job_listing
        self.fetcher = fetcher or HtmlFetcher(session)
        self.ai_extractor_factory = ai_extractor_factory
        self.api_fetcher_for = api_fetcher_for
        self.attempt: Optional[ScrapingAttempt] = None
        self.recorder: Optional[ScrapingEventRecorder] = None

    async def call(self) -> bool:
        """
        Run the extraction.

        Returns:
            True when the listing was extracted with enough confidence

        Raises:
            Exception: Unexpected errors, after failing the attempt at
                "orchestration"
        """
        listing = self.job_listing
        if not listing.url:
            return False

        self.attempt = self._create_attempt()
        self.recorder = ScrapingEventRecorder(self.session, self.attempt)
        try:
            return await self._run()
        except Exception as e:
            logger.exception("Scraping orchestration failed for %s", listing.url)
            self.recorder.failure(str(e), error_type=type(e).__name__)
            fail_attempt(self.session, self.attempt, "orchestration", str(e))
            raise

    async def _run(self) -> bool:
        listing, attempt, recorder = self.job_listing, self.attempt, self.recorder

        detector = JobBoardDetector(listing.url)
        board = detector.detect()
        recorder.record(
            "job_board_detection",
            "success",
            input_payload={"url": listing.url},
            output_payload={
                "board": board,
                "company_slug": detector.company_slug,
                "job_id": detector.job_id,
                "api_supported": detector.api_supported,
                "limited_extraction": detector.limited_extraction,
            },
        )
        if board != "unknown":
            listing.job_board_id = board

        SCRAPING_STATUS.fire(attempt, "start_fetch", session=self.session)
        with recorder.measure("html_fetch", input_payload={"url": listing.url}, output_payload_override=fetch_output) as step:
            fetched = await self.fetcher.fetch(listing.url)
            step.result = fetched
        self._record_fetch_diagnosis(fetched)
        attempt.http_status = fetched.get("status")

        if not fetched["success"]:
            recorder.failure(fetched.get("error") or "HTML fetch failed", error_type="html_fetch_failed")
            fail_attempt(self.session, attempt, "html_fetch", fetched.get("error"))
            return False
        html = fetched["html"]

        with recorder.measure("selectors_extraction", input_payload={"html_size": len(html)}) as step:
            fields = HtmlCleaner().extract_with_selectors(html)
            filled = apply_preliminary(self.session, listing, fields) if fields else []
            step.result = {"extracted_fields": sorted(fields), "filled": filled}

        if detector.api_supported and detector.company_slug:
            api_result = await self._api_extraction(board, detector.company_slug, detector.job_id)
            if confident(api_result):
                SCRAPING_STATUS.fire(attempt, "start_extract", session=self.session)
                self._finish_success(api_result)
                return True
        else:
            recorder.skipped(
                "api_extraction", "API not supported for this board type", metadata={"board": board}
            )

        SCRAPING_STATUS.fire(attempt, "start_extract", session=self.session)
        return self._ai_extraction(html)

    async def _api_extraction(self, board: str, company_slug: str, job_id: Optional[str]) -> Optional[dict]:
        fetcher = self.api_fetcher_for(board)
        with self.recorder.measure(
            "api_extraction",
            input_payload={"board": board, "company_slug": company_slug, "job_id": job_id},
            output_payload_override=extraction_output,
        ) as step:
            step.result = await fetcher.fetch(company_slug, job_id) if fetcher else None
        return step.result

    def _ai_extraction(self, html: str) -> bool:
        with self.recorder.measure(
            "ai_extraction", input_payload={"html_size": len(html)}, output_payload_override=extraction_output
        ) as step:
            step.result = self.ai_extractor_factory(self.session, self.job_listing).extract(html)
        ai_result = step.result

        if confident(ai_result):
            self._finish_success(ai_result)
            return True

        message = f"Low confidence: {ai_result.get('confidence') or 0.0}"
        self.recorder.failure(message, error_type="low_confidence", details={"confidence": ai_result.get("confidence")})
        fail_attempt(self.session, self.attempt, "ai_extraction", message)
        return False

    def _finish_success(self, result: dict) -> None:
        method = result.get("extraction_method") or "ai"
        self.recorder.record(
            "data_update", "success", input_payload={"source": method}, output_payload={"confidence": result.get("confidence")}
        )
        apply_extraction(self.session, self.job_listing, result)
        self.recorder.completion(
            {"method": method, "confidence": result.get("confidence"), "provider": result.get("provider"), "model": result.get("model")}
        )
        complete_attempt(self.session, self.attempt, result)

    def _record_fetch_diagnosis(self, fetched: dict) -> None:
        diagnosis = fetched.get("diagnosis")
        if diagnosis is None:
            return
        self.recorder.record("js_heavy_detected", "success", output_payload=diagnosis)
        if fetched.get("rendered"):
            self.recorder.record("rendered_html_fetch", "success", output_payload={"html_size": len(fetched["html"])})

    def _create_attempt(self) -> ScrapingAttempt:
        listing = self.job_listing
        if listing.id is None:
            self.session.add(listing)
            self.session.flush()
        attempt = ScrapingAttempt(
            job_listing_id=listing.id,
            url=listing.url,
            domain=extract_domain(listing.url),
            status="pending",
            retry_count=0,
            request_metadata={},
        )
        self.session.add(attempt)
        listing.scraping_attempts.append(attempt)
        self.session.flush()
        return attempt
