"""Tests for job listing scraping: detection, fetching, extraction, retries and jobs."""
import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from sqlalchemy import select

from config.settings import settings
from src.persistence.models import CachedPage, JobListing, ScrapingAttempt, ScrapingEvent, utcnow
from src.scraping import jobs
from src.scraping.ai_extractor import AiExtractor, listing_fields, parse_salary
from src.scraping.api_fetchers import GreenhouseFetcher, LeverFetcher, fetcher_for
from src.scraping.event_recorder import ScrapingEventRecorder
from src.scraping.exceptions import RenderError
from src.scraping.html_cleaner import HtmlCleaner, infer_remote_type
from src.scraping.html_fetcher import HtmlFetcher, js_heavy_diagnosis
from src.scraping.http import get_json, get_text
from src.scraping.job_board_detector import JobBoardDetector
from src.scraping.listing_updater import apply_extraction, apply_preliminary, complete_attempt, fail_attempt
from src.scraping.orchestrator import ScrapingOrchestrator
from src.scraping.retry_service import RetryService

LONG_PAGE = "<html><body><h1 class='job-title'>Staff Engineer</h1><main>" + "word " * 400 + "</main></body></html>"

API_RESULT = {
    "title": "Senior Engineer",
    "description": "Own the API",
    "company_name": "Acme Corp",
    "confidence": 0.95,
    "extraction_method": "api",
    "provider": "greenhouse",
    "source_id": "12345",
}

AI_RESULT = {
    "title": "Data Engineer",
    "location": "Remote",
    "remote_type": "remote",
    "confidence": 0.9,
    "extraction_method": "ai",
    "provider": "anthropic",
    "model": "claude",
    "llm_api_log_id": None,
}


class _AsyncContext:
    def __init__(self, resp):
        self.resp = resp

    async def __aenter__(self):
        return self.resp

    async def __aexit__(self, *args):
        pass


def _response(status, text=None, json=None):
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    resp.json = AsyncMock(return_value=json)
    return resp


def _http_session(*responses):
    session = MagicMock()
    session.get = MagicMock(side_effect=[_AsyncContext(r) for r in responses])
    return session


class StubFetcher:
    """HtmlFetcher stand-in with a canned fetch result and cache entry."""

    def __init__(self, result=None, page=None):
        self.result = result
        self.page = page
        self.calls = []

    async def fetch(self, url, use_cache=True):
        self.calls.append((url, use_cache))
        return self.result

    def cached(self, url):
        return self.page


def _fetched(html=LONG_PAGE, diagnosis=None):
    return {"success": True, "html": html, "status": 200, "from_cache": False, "rendered": False, "diagnosis": diagnosis}


def _extractor(result=None, error=None):
    def _factory(session, listing):
        extractor = MagicMock()
        if error:
            extractor.extract.side_effect = error
        else:
            extractor.extract.return_value = result
        return extractor

    return _factory


def _api(result):
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=result)
    return lambda board: fetcher


def _listing(test_db, url="https://careers.globex.io/jobs/42"):
    listing = JobListing(url=url)
    test_db.add(listing)
    test_db.commit()
    return listing


def _attempt(test_db, listing, **overrides):
    data = {
        "job_listing_id": listing.id,
        "url": listing.url,
        "domain": "careers.globex.io",
        "status": "failed",
        "failed_step": "ai_extraction",
        "retry_count": 0,
    }
    data.update(overrides)
    attempt = ScrapingAttempt(**data)
    test_db.add(attempt)
    test_db.commit()
    return attempt


# =============================================================================
# DETECTION AND CLEANING
# =============================================================================


class TestJobBoardDetector:
    """Tests for JobBoardDetector."""

    def test_greenhouse(self):
        detector = JobBoardDetector("https://boards.greenhouse.io/acme/jobs/12345")
        assert detector.detect() == "greenhouse"
        assert detector.company_slug == "acme"
        assert detector.job_id == "12345"
        assert detector.api_supported

    def test_lever_job_id_is_second_segment(self):
        detector = JobBoardDetector("https://jobs.lever.co/globex/7c1e-44ab?lever-source=x")
        assert detector.detect() == "lever"
        assert detector.company_slug == "globex"
        assert detector.job_id == "7c1e-44ab"

    def test_linkedin_canonical_url(self):
        detector = JobBoardDetector("https://www.linkedin.com/jobs/search/?currentJobId=998877&keywords=python")
        assert detector.limited_extraction
        assert detector.job_id == "998877"
        assert detector.canonical_url == "https://www.linkedin.com/jobs/view/998877"

    def test_unknown_board(self):
        detector = JobBoardDetector("https://careers.globex.io/positions/42")
        assert detector.detect() == "unknown"
        assert detector.company_slug is None
        assert detector.job_id == "42"
        assert not detector.api_supported


class TestHtmlCleaner:
    """Tests for HtmlCleaner."""

    def test_clean_drops_noise(self):
        html = (
            "<html><head><style>.x{}</style></head><body><nav>Menu</nav>"
            "<div id='cookie-banner'>Accept cookies</div><p>Hello   world</p><script>var a</script></body></html>"
        )
        assert HtmlCleaner().clean(html) == "Hello world"
        assert HtmlCleaner().clean("") == ""

    def test_json_ld_wins_over_selectors(self):
        html = """
        <html><head><script type="application/ld+json">
        {"@context": "https://schema.org", "@graph": [{"@type": "Organization"}, {
          "@type": "JobPosting", "title": "Platform Engineer",
          "hiringOrganization": {"name": "Initech"},
          "description": "<p>Keep systems up</p>",
          "jobLocation": {"address": {"addressLocality": "Austin", "addressRegion": "TX"}},
          "jobLocationType": "TELECOMMUTE",
          "baseSalary": {"currency": "USD", "value": {"minValue": 120000, "maxValue": 150000}}
        }]}
        </script></head><body><h1>Other title</h1></body></html>
        """
        result = HtmlCleaner().extract_with_selectors(html)

        assert result["title"] == "Platform Engineer"
        assert result["company_name"] == "Initech"
        assert result["description"] == "Keep systems up"
        assert result["location"] == "Austin, TX"
        assert result["remote_type"] == "remote"
        assert (result["salary_min"], result["salary_max"], result["salary_currency"]) == (120000, 150000, "USD")

    def test_selector_fallback(self):
        html = (
            "<h1 class='job-title'>QA Lead</h1><span class='job-location'>Hybrid - NYC</span>"
            "<div class='job-description'>Test all the things</div>"
        )
        result = HtmlCleaner().extract_with_selectors(html)
        assert result == {
            "title": "QA Lead",
            "location": "Hybrid - NYC",
            "description": "Test all the things",
            "remote_type": "hybrid",
        }

    def test_infer_remote_type(self):
        assert infer_remote_type("Work from home") == "remote"
        assert infer_remote_type("Berlin", None) == "on_site"
        assert infer_remote_type(None) == "unknown"


# =============================================================================
# HTTP
# =============================================================================


class TestHttp:
    """Tests for the aiohttp retry helpers."""

    @pytest.mark.asyncio
    async def test_get_text_success(self):
        session = _http_session(_response(200, text="<p>ok</p>"))
        assert await get_text(session, "https://example.com/job") == (200, "<p>ok</p>")

    @pytest.mark.asyncio
    async def test_get_text_non_2xx(self):
        session = _http_session(_response(404))
        assert await get_text(session, "https://example.com/job") == (404, None)
        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_get_text_retries_server_errors(self):
        session = _http_session(_response(503), _response(200, text="done"))
        with patch("src.scraping.http._backoff", return_value=0):
            result = await get_text(session, "https://example.com/job", retries=2)
        assert result == (200, "done")

    @pytest.mark.asyncio
    async def test_get_text_connection_errors(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with patch("src.scraping.http._backoff", return_value=0):
            result = await get_text(session, "https://example.com/job", retries=2)
        assert result == (None, None)
        assert session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_get_json(self):
        assert await get_json(_http_session(_response(200, json={"ok": True})), "https://api.example.com") == {
            "ok": True
        }
        assert await get_json(_http_session(_response(404)), "https://api.example.com") is None

    @pytest.mark.asyncio
    async def test_get_json_retries_on_timeout(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=[asyncio.TimeoutError(), _AsyncContext(_response(200, json=[1]))])
        with patch("src.scraping.http._backoff", return_value=0):
            assert await get_json(session, "https://api.example.com", retries=2) == [1]


# =============================================================================
# EXTRACTORS
# =============================================================================


class TestApiFetchers:
    """Tests for Greenhouse and Lever API fetchers."""

    @pytest.mark.asyncio
    async def test_greenhouse(self):
        data = {
            "title": "Senior Engineer",
            "location": {"name": "Remote, US"},
            "content": "&lt;p&gt;Build &amp;amp; ship&lt;/p&gt;",
            "company_name": "Acme",
        }
        with patch("src.scraping.api_fetchers.get_json", new=AsyncMock(return_value=data)) as get:
            result = await GreenhouseFetcher(MagicMock()).fetch("acme", "12345")

        assert get.call_args.args[1] == "https://boards-api.greenhouse.io/v1/boards/acme/jobs/12345"
        assert result["description"] == "Build & ship"
        assert result["remote_type"] == "remote"
        assert result["confidence"] == 0.95
        assert (result["extraction_method"], result["provider"], result["source_id"]) == ("api", "greenhouse", "12345")

    @pytest.mark.asyncio
    async def test_lever(self):
        data = {
            "text": "Backend Engineer",
            "categories": {"location": "Berlin"},
            "descriptionPlain": "Do things",
            "lists": [{"text": "Requirements", "content": "<li>Go</li>"}],
            "workplaceType": "hybrid",
            "salaryRange": {"min": 90000, "max": 110000, "currency": "EUR"},
        }
        with patch("src.scraping.api_fetchers.get_json", new=AsyncMock(return_value=data)):
            result = await LeverFetcher(MagicMock()).fetch("globex", "abc")

        assert result["title"] == "Backend Engineer"
        assert result["requirements"] == "Go"
        assert result["remote_type"] == "hybrid"
        assert result["salary_currency"] == "EUR"
        assert "responsibilities" not in result

    @pytest.mark.asyncio
    async def test_title_only_and_missing(self):
        with patch("src.scraping.api_fetchers.get_json", new=AsyncMock(return_value={"title": "X"})):
            assert (await GreenhouseFetcher(MagicMock()).fetch("acme", "1"))["confidence"] == 0.6
        with patch("src.scraping.api_fetchers.get_json", new=AsyncMock(return_value=None)):
            assert await GreenhouseFetcher(MagicMock()).fetch("acme", "1") is None
        assert await GreenhouseFetcher(MagicMock()).fetch(None, "1") is None

    def test_fetcher_for(self):
        assert isinstance(fetcher_for("lever"), LeverFetcher)
        assert fetcher_for("workable") is None


class TestAiExtractor:
    """Tests for LLM job extraction."""

    def test_parse_salary(self):
        assert parse_salary("$150,000") == 150000
        assert parse_salary("180k") == 180000
        assert parse_salary(95000.5) == 95000
        assert parse_salary("competitive") is None

    def test_listing_fields(self):
        fields = listing_fields(
            {
                "title": "Staff Engineer",
                "company": "Globex",
                "location": "Remote",
                "requirements": ["Python", "SQL"],
                "remote_type": "On-Site",
                "salary_min": "$150,000",
                "description": "",
            }
        )
        assert fields == {
            "title": "Staff Engineer",
            "company_name": "Globex",
            "location": "Remote",
            "requirements": "Python\nSQL",
            "remote_type": "on_site",
            "salary_min": 150000,
        }

    def test_extract(self, test_db, job_listing, runner_factory):
        parsed = {"title": "Staff Engineer", "company": "Globex", "confidence_score": 0.85, "notes": "clean page"}
        factory = runner_factory(
            {"success": True, "parsed": parsed, "provider": "anthropic", "model": "claude", "llm_api_log_id": "log-1"}
        )

        result = AiExtractor(test_db, job_listing, runner_factory=factory).extract(LONG_PAGE)

        assert result["title"] == "Staff Engineer"
        assert result["company_name"] == "Globex"
        assert result["confidence"] == 0.85
        assert result["extraction_method"] == "ai"
        assert result["llm_api_log_id"] == "log-1"
        call = factory.calls[0]
        assert call["operation"] == "job_extraction"
        assert call["loggable"] is job_listing
        assert job_listing.url in call["prompt"]

    def test_no_content(self, test_db, job_listing, runner_factory):
        factory = runner_factory({"success": False})
        result = AiExtractor(test_db, job_listing, runner_factory=factory).extract("<script>x</script>")
        assert result == {"confidence": 0.0, "error": "No page content"}
        assert factory.calls == []

    def test_failure_reports_best_confidence(self, test_db, job_listing, runner_factory):
        extractor = AiExtractor(
            test_db, job_listing, runner_factory=runner_factory({"success": False, "error": "All providers failed"})
        )
        parsed, log_data, accepted = extractor._accept({"content": '{"title": "X", "confidence_score": 0.6}'})
        assert not accepted
        assert log_data == {"confidence": 0.6}
        assert not extractor._accept({"content": '{"confidence_score": 0.9}'})[2]

        result = extractor.extract(LONG_PAGE)

        assert result == {"confidence": 0.9, "error": "All providers failed"}


# =============================================================================
# HTML FETCHER
# =============================================================================


class TestHtmlFetcher:
    """Tests for cached HTML fetching."""

    def test_js_heavy_diagnosis(self):
        assert js_heavy_diagnosis("<div id=\"root\"></div>", "Loading")["reason"] == "spa_marker_detected"
        assert js_heavy_diagnosis("<p>hi</p>", "hi")["reason"] == "very_low_text"
        assert js_heavy_diagnosis("", "x" * 500)["js_heavy"] is False
        assert js_heavy_diagnosis("", "x" * 2000)["reason"] == "text_above_threshold"

    @pytest.mark.asyncio
    async def test_fetch_stores_and_reuses_cache(self, test_db):
        fetcher = HtmlFetcher(test_db, http_session=MagicMock())
        url = "https://careers.globex.io/jobs/1"
        with patch("src.scraping.html_fetcher.get_text", new=AsyncMock(return_value=(200, LONG_PAGE))) as get:
            first = await fetcher.fetch(url)
            second = await fetcher.fetch(url)
            third = await fetcher.fetch(url, use_cache=False)

        assert first["from_cache"] is False
        assert first["diagnosis"]["js_heavy"] is False
        assert second["from_cache"] is True
        assert second["html"] == LONG_PAGE
        assert third["from_cache"] is False
        assert get.await_count == 2
        page = test_db.execute(select(CachedPage)).scalar_one()
        assert page.http_status == 200
        assert fetcher.cached(url) is page

    def test_expired_cache_is_ignored(self, test_db):
        url = "https://careers.globex.io/jobs/2"
        test_db.add(CachedPage(url=url, html="<p>old</p>", valid_until=utcnow() - timedelta(minutes=1)))
        test_db.commit()
        assert HtmlFetcher(test_db).cached(url) is None

    @pytest.mark.asyncio
    async def test_fetch_errors(self, test_db):
        fetcher = HtmlFetcher(test_db, http_session=MagicMock())
        with patch("src.scraping.html_fetcher.get_text", new=AsyncMock(return_value=(404, None))):
            assert await fetcher.fetch("https://x.io/j") == {
                "success": False,
                "error": "HTTP 404: Failed to fetch HTML",
                "status": 404,
            }
        with patch("src.scraping.html_fetcher.get_text", new=AsyncMock(return_value=(None, None))):
            assert await fetcher.fetch("https://x.io/j") == {
                "success": False,
                "error": "Connection failed: no response after retries",
                "status": None,
            }
        with patch("src.scraping.html_fetcher.get_text", new=AsyncMock(side_effect=asyncio.TimeoutError())):
            result = await fetcher.fetch("https://x.io/j")
        assert result["error"].startswith("Failed to fetch HTML")
        assert (await fetcher.fetch(""))["error"] == "URL is required"

    @pytest.mark.asyncio
    async def test_renders_js_heavy_pages(self, test_db):
        renderer = AsyncMock(return_value="<p>rendered</p>")
        fetcher = HtmlFetcher(test_db, http_session=MagicMock(), renderer=renderer)
        spa = '<div id="root"></div>'
        with patch.object(settings, "rendered_fetch_enabled", True), patch(
            "src.scraping.html_fetcher.get_text", new=AsyncMock(return_value=(200, spa))
        ):
            result = await fetcher.fetch("https://spa.io/jobs/1")

        assert result["rendered"] is True
        assert result["html"] == "<p>rendered</p>"
        renderer.assert_awaited_once_with("https://spa.io/jobs/1", settings.scraping_timeout_seconds)
        assert fetcher.cached("https://spa.io/jobs/1").rendered is True

    @pytest.mark.asyncio
    async def test_render_failure_keeps_static_html(self, test_db):
        renderer = AsyncMock(side_effect=RenderError("https://spa.io/jobs/2", "timeout"))
        fetcher = HtmlFetcher(test_db, http_session=MagicMock(), renderer=renderer)
        spa = '<div id="root"></div>'
        with patch.object(settings, "rendered_fetch_enabled", True), patch(
            "src.scraping.html_fetcher.get_text", new=AsyncMock(return_value=(200, spa))
        ):
            result = await fetcher.fetch("https://spa.io/jobs/2")

        assert result["success"] is True
        assert result["rendered"] is False
        assert result["html"] == spa


# =============================================================================
# RECORDING AND LISTING UPDATES
# =============================================================================


class TestScrapingEventRecorder:
    """Tests for ScrapingEventRecorder."""

    def test_measure_truncates_and_orders(self, test_db, job_listing):
        attempt = _attempt(test_db, job_listing, status="fetching")
        recorder = ScrapingEventRecorder(test_db, attempt)

        with recorder.measure("html_fetch", input_payload={"html": "x" * 3000}) as step:
            step.result = {"ok": True}
        recorder.skipped("api_extraction", "API not supported")
        recorder.completion({"method": "ai"})

        events = attempt.events
        assert [(e.step_order, e.event_type, e.status) for e in events] == [
            (1, "html_fetch", "success"),
            (2, "api_extraction", "skipped"),
            (3, "completion", "success"),
        ]
        assert len(events[0].input_payload["html"]) == 2003
        assert events[1].output_payload == {"skipped_reason": "API not supported"}
        assert events[2].meta == {"total_steps": 2}

    def test_measure_failure(self, test_db, job_listing):
        recorder = ScrapingEventRecorder(test_db, _attempt(test_db, job_listing, status="fetching"))
        with pytest.raises(ValueError):
            with recorder.measure("ai_extraction"):
                raise ValueError("bad json")
        event = test_db.execute(select(ScrapingEvent)).scalar_one()
        assert (event.status, event.error_type, event.error_message) == ("failed", "ValueError", "bad json")


class TestListingUpdater:
    """Tests for listing and attempt updates."""

    def test_apply_preliminary_fills_blanks(self, test_db, job_listing):
        filled = apply_preliminary(test_db, job_listing, {"title": "A", "location": "B", "company_name": "Acme Corp"})
        again = apply_preliminary(test_db, job_listing, {"title": "C"})

        assert filled == ["title", "location", "company"]
        assert again == []
        assert job_listing.title == "A"
        assert job_listing.company.name == "Acme Corp"

    def test_apply_extraction_overwrites(self, test_db, job_listing):
        job_listing.title = "Old"
        job_listing.location = "Austin"
        apply_extraction(test_db, job_listing, {**API_RESULT, "location": ""}, retried=True)

        assert job_listing.title == "Senior Engineer"
        assert job_listing.location == "Austin"
        assert job_listing.source_id == "12345"
        assert job_listing.scraped_data["extraction_method"] == "api"
        assert job_listing.scraped_data["retried"] is True

    def test_complete_and_fail_attempt(self, test_db, job_listing):
        attempt = _attempt(test_db, job_listing, status="extracting", failed_step=None)
        complete_attempt(test_db, attempt, AI_RESULT)

        assert attempt.status == "completed"
        assert attempt.provider == "anthropic"
        assert attempt.duration_seconds >= 0
        assert attempt.response_metadata == {"model": "claude", "llm_api_log_id": None}

        fail_attempt(test_db, attempt, "ai_extraction", "late failure")
        assert attempt.status == "completed"
        assert attempt.failed_step == "ai_extraction"


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class TestScrapingOrchestrator:
    """Tests for the full extraction flow."""

    @pytest.mark.asyncio
    async def test_api_extraction(self, test_db, job_listing):
        orchestrator = ScrapingOrchestrator(
            test_db, job_listing, fetcher=StubFetcher(_fetched()), api_fetcher_for=_api(API_RESULT)
        )

        assert await orchestrator.call() is True

        attempt = orchestrator.attempt
        assert attempt.status == "completed"
        assert attempt.extraction_method == "api"
        assert attempt.domain == "boards.greenhouse.io"
        assert job_listing.title == "Senior Engineer"
        assert job_listing.job_board_id == "greenhouse"
        assert job_listing.company.name == "Acme Corp"
        assert [e.event_type for e in attempt.events] == [
            "job_board_detection",
            "html_fetch",
            "selectors_extraction",
            "api_extraction",
            "data_update",
            "completion",
        ]
        assert attempt.events[1].output_payload["html_size"] == len(LONG_PAGE)

    @pytest.mark.asyncio
    async def test_ai_fallback_for_unknown_board(self, test_db):
        listing = _listing(test_db)
        fetched = _fetched(diagnosis={"js_heavy": False, "reason": "text_above_threshold"})
        orchestrator = ScrapingOrchestrator(
            test_db, listing, fetcher=StubFetcher(fetched), ai_extractor_factory=_extractor(AI_RESULT)
        )

        assert await orchestrator.call() is True

        events = {e.event_type: e for e in orchestrator.attempt.events}
        assert events["api_extraction"].status == "skipped"
        assert events["js_heavy_detected"].output_payload["reason"] == "text_above_threshold"
        assert events["ai_extraction"].output_payload["success"] is True
        assert listing.title == "Data Engineer"
        assert listing.remote_type == "remote"

    @pytest.mark.asyncio
    async def test_low_api_confidence_falls_back_to_ai(self, test_db, job_listing):
        orchestrator = ScrapingOrchestrator(
            test_db,
            job_listing,
            fetcher=StubFetcher(_fetched()),
            api_fetcher_for=_api({"title": "X", "confidence": 0.6}),
            ai_extractor_factory=_extractor(AI_RESULT),
        )
        assert await orchestrator.call() is True
        assert orchestrator.attempt.extraction_method == "ai"

    @pytest.mark.asyncio
    async def test_fetch_failure(self, test_db):
        listing = _listing(test_db)
        fetcher = StubFetcher({"success": False, "error": "HTTP 404: Failed to fetch HTML", "status": 404})

        assert await ScrapingOrchestrator(test_db, listing, fetcher=fetcher).call() is False

        attempt = listing.scraping_attempts[0]
        assert attempt.status == "failed"
        assert attempt.failed_step == "html_fetch"
        assert attempt.http_status == 404
        assert attempt.events[-1].error_type == "html_fetch_failed"

    @pytest.mark.asyncio
    async def test_low_confidence(self, test_db):
        listing = _listing(test_db)
        orchestrator = ScrapingOrchestrator(
            test_db,
            listing,
            fetcher=StubFetcher(_fetched()),
            ai_extractor_factory=_extractor({"confidence": 0.4, "error": "All providers failed"}),
        )

        assert await orchestrator.call() is False

        assert orchestrator.attempt.failed_step == "ai_extraction"
        assert orchestrator.attempt.error_message == "Low confidence: 0.4"
        assert listing.title == "Staff Engineer"

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_attempt_and_raises(self, test_db):
        listing = _listing(test_db)
        orchestrator = ScrapingOrchestrator(
            test_db, listing, fetcher=StubFetcher(_fetched()), ai_extractor_factory=_extractor(error=RuntimeError("boom"))
        )

        with pytest.raises(RuntimeError):
            await orchestrator.call()

        assert orchestrator.attempt.status == "failed"
        assert orchestrator.attempt.failed_step == "orchestration"
        assert [e.event_type for e in orchestrator.attempt.events][-2:] == ["ai_extraction", "failure"]

    @pytest.mark.asyncio
    async def test_listing_without_url(self, test_db):
        assert await ScrapingOrchestrator(test_db, JobListing(url="")).call() is False


# =============================================================================
# RETRIES AND JOBS
# =============================================================================


class StubOrchestrator:
    """Creates a fresh attempt with a fixed outcome."""

    succeed = True

    def __init__(self, session, listing, **kwargs):
        self.session = session
        self.listing = listing
        self.attempt = None

    async def call(self):
        self.attempt = ScrapingAttempt(
            job_listing_id=self.listing.id,
            url=self.listing.url,
            domain="careers.globex.io",
            status="completed" if self.succeed else "failed",
        )
        self.session.add(self.attempt)
        self.session.flush()
        return self.succeed


class FailingOrchestrator(StubOrchestrator):
    succeed = False


class TestRetryService:
    """Tests for RetryService."""

    @pytest.mark.asyncio
    async def test_retry_extraction_from_cache(self, test_db):
        listing = _listing(test_db)
        attempt = _attempt(test_db, listing, retry_count=1)
        fetcher = StubFetcher(page=SimpleNamespace(html=LONG_PAGE))

        result = await RetryService(test_db, attempt, fetcher=fetcher, ai_extractor_factory=_extractor(AI_RESULT)).retry()

        assert result == {"success": True, "attempt": attempt, "message": "AI extraction succeeded"}
        assert attempt.status == "completed"
        assert listing.scraped_data["retried"] is True
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_retry_html_fetch_bypasses_cache(self, test_db):
        listing = _listing(test_db)
        attempt = _attempt(test_db, listing, failed_step="html_fetch")
        fetcher = StubFetcher({"success": False, "error": "HTTP 500: Failed to fetch HTML", "status": 500})

        result = await RetryService(test_db, attempt, fetcher=fetcher).retry()

        assert result["success"] is False
        assert result["error"] == "HTTP 500: Failed to fetch HTML"
        assert fetcher.calls == [(listing.url, False)]
        assert attempt.status == "failed"
        assert attempt.http_status == 500

    @pytest.mark.asyncio
    async def test_not_retryable(self, test_db):
        attempt = _attempt(test_db, _listing(test_db), status="completed")
        result = await RetryService(test_db, attempt, fetcher=StubFetcher()).retry()
        assert result["error"] == "Attempt is not in a retryable state"

    @pytest.mark.asyncio
    async def test_missing_cache_runs_full_retry(self, test_db):
        listing = _listing(test_db)
        attempt = _attempt(test_db, listing, retry_count=2)

        result = await RetryService(
            test_db, attempt, fetcher=StubFetcher(page=None), orchestrator_factory=StubOrchestrator
        ).retry()

        new_attempt = result["attempt"]
        assert result["message"] == "Full retry succeeded"
        assert new_attempt is not attempt
        assert new_attempt.retry_count == 2
        assert attempt.response_metadata["superseded_by"] == new_attempt.id

    @pytest.mark.asyncio
    async def test_extraction_error_fails_attempt(self, test_db):
        attempt = _attempt(test_db, _listing(test_db))
        service = RetryService(
            test_db,
            attempt,
            fetcher=StubFetcher(page=SimpleNamespace(html=LONG_PAGE)),
            ai_extractor_factory=_extractor(error=ValueError("bad output")),
        )

        result = await service.retry()

        assert result == {"success": False, "attempt": attempt, "error": "bad output"}
        assert attempt.status == "failed"


class TestScrapingJobs:
    """Tests for scrape/retry/cleanup jobs."""

    @pytest.mark.asyncio
    async def test_success(self, test_db):
        listing = _listing(test_db)
        assert await jobs.scrape_job_listing(test_db, listing, orchestrator_factory=StubOrchestrator) is True

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, test_db):
        listing = _listing(test_db)

        assert await jobs.scrape_job_listing(test_db, listing, orchestrator_factory=FailingOrchestrator) is False

        attempt = test_db.execute(select(ScrapingAttempt)).scalar_one()
        assert attempt.status == "retrying"
        assert attempt.retry_count == 1

    def test_exhausted_retries_go_to_dead_letter(self, test_db):
        attempt = _attempt(test_db, _listing(test_db), status="extracting", retry_count=settings.scraping_max_retries)

        jobs.handle_failure(test_db, attempt)

        assert attempt.status == "dead_letter"
        assert attempt.needs_review

    @pytest.mark.asyncio
    async def test_retry_by_attempt_id(self, test_db):
        listing = _listing(test_db)
        attempt = _attempt(test_db, listing, status="retrying", retry_count=1)
        service = MagicMock()
        service.return_value.retry = AsyncMock(return_value={"success": False, "attempt": attempt, "error": "x"})
        orchestrator = MagicMock()

        result = await jobs.scrape_job_listing(
            test_db, listing, attempt_id=attempt.id, orchestrator_factory=orchestrator, retry_service_factory=service
        )

        assert result is False
        orchestrator.assert_not_called()
        assert attempt.status == "retrying"
        assert attempt.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_scheduled_attempts(self, test_db):
        listing = _listing(test_db)
        retrying = _attempt(test_db, listing, status="retrying")
        _attempt(test_db, listing, status="dead_letter")

        with patch("src.scraping.jobs.scrape_job_listing", new=AsyncMock(return_value=True)) as scrape:
            count = await jobs.retry_scheduled_attempts(test_db)

        assert count == 1
        scrape.assert_awaited_once_with(test_db, listing, attempt_id=retrying.id)

    @pytest.mark.asyncio
    async def test_scrape_pending_listings(self, test_db):
        fresh = _listing(test_db, url="https://careers.globex.io/jobs/1")
        _attempt(test_db, _listing(test_db, url="https://careers.globex.io/jobs/2"))
        scraped = _listing(test_db, url="https://careers.globex.io/jobs/3")
        scraped.scraped_data = {"title": "Engineer"}
        closed = _listing(test_db, url="https://careers.globex.io/jobs/4")
        closed.status = "closed"
        test_db.commit()

        with patch("src.scraping.jobs.scrape_job_listing", new=AsyncMock(return_value=True)) as scrape:
            count = await jobs.scrape_pending_listings(test_db)

        assert count == 1
        assert scrape.await_args.args == (test_db, fresh)

    @pytest.mark.asyncio
    async def test_scrape_pending_listings_runs_first_attempt(self, test_db):
        listing = _listing(test_db)

        assert await jobs.scrape_pending_listings(test_db, orchestrator_factory=StubOrchestrator) == 1
        assert await jobs.scrape_pending_listings(test_db, orchestrator_factory=StubOrchestrator) == 0

        attempt = test_db.execute(select(ScrapingAttempt)).scalar_one()
        assert attempt.job_listing_id == listing.id
        assert attempt.status == "completed"

    def test_cleanup_stuck_attempts(self, test_db):
        listing = _listing(test_db)
        old = utcnow() - timedelta(minutes=30)
        stuck = _attempt(test_db, listing, status="fetching", failed_step=None, updated_at=old)
        fresh = _attempt(test_db, listing, status="fetching", failed_step=None)
        test_db.add(
            ScrapingEvent(scraping_attempt_id=stuck.id, event_type="html_fetch", step_order=1, status="started")
        )
        test_db.commit()

        assert jobs.cleanup_stuck_attempts(test_db) == 1

        assert stuck.status == "failed"
        assert stuck.failed_step == "html_fetch"
        assert "automatically cleaned up" in stuck.error_message
        assert stuck.events[0].error_type == "StuckTimeout"
        assert fresh.status == "fetching"
