"""Fetch job listing HTML with a database-backed page cache."""
import asyncio
import logging
from datetime import timedelta
from typing import Optional

import aiohttp
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from sqlalchemy import select
from sqlalchemy.orm import Session

from config.settings import settings
from src.persistence.models import CachedPage, utcnow
from src.scraping.exceptions import RenderError
from src.scraping.html_cleaner import HtmlCleaner
from src.scraping.http import get_text

logger = logging.getLogger(__name__)

JS_HEAVY_TEXT_THRESHOLD = 1500
VERY_LOW_TEXT = 200
SPA_MARKERS = ("__NEXT_DATA__", "data-reactroot", 'id="app"', 'id="root"')
RENDER_SETTLE_MS = 2000


def js_heavy_diagnosis(html: str, cleaned_text: str) -> dict:
    """Whether a page looks like a client-rendered SPA, with the signals used."""
    text_length = len(cleaned_text or "")
    markers = [m for m in SPA_MARKERS if m in (html or "")]
    if text_length >= JS_HEAVY_TEXT_THRESHOLD:
        js_heavy, reason = False, "text_above_threshold"
    elif markers:
        js_heavy, reason = True, "spa_marker_detected"
    elif text_length < VERY_LOW_TEXT:
        js_heavy, reason = True, "very_low_text"
    else:
        js_heavy, reason = False, "below_threshold"
    return {
        "js_heavy": js_heavy,
        "reason": reason,
        "text_length": text_length,
        "threshold": JS_HEAVY_TEXT_THRESHOLD,
        "spa_markers_found": markers,
    }


async def render_page(url: str, timeout_seconds: int) -> str:
    """Render a page in headless Chromium and return the resulting HTML."""
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                page = await browser.new_page(user_agent=settings.scraping_user_agent)
                await page.goto(url, timeout=timeout_seconds * 1000, wait_until="domcontentloaded")
                await page.wait_for_timeout(RENDER_SETTLE_MS)
                return await page.content()
            finally:
                await browser.close()
    except PlaywrightError as e:
        raise RenderError(url, str(e)) from e


class HtmlFetcher:
    """Cached HTML fetch with an optional headless-browser fallback.

    Cached pages are reused until ``valid_until`` so retries can re-run
    extraction without hitting the network.
    """

    def __init__(
        self,
        session: Session,
        http_session: Optional[aiohttp.ClientSession] = None,
        renderer=render_page,
        cleaner: Optional[HtmlCleaner] = None,
    ):
        """
        Args:
            session: Database session (for the page cache)
            http_session: Shared aiohttp session; a short-lived one is opened when omitted
            renderer: Coroutine ``(url, timeout_seconds) -> html`` for JS-heavy pages
            cleaner: HtmlCleaner used for JS-heavy detection
        """
        self.session = session
        self.http_session = http_session
        self.renderer = renderer
        self.cleaner = cleaner or HtmlCleaner()

    def cached(self, url: str) -> Optional[CachedPage]:
        """The cached page for a URL while it is still valid."""
        page = self.session.execute(select(CachedPage).where(CachedPage.url == url)).scalar_one_or_none()
        if page is not None and page.is_valid:
            return page
        return None

    async def fetch(self, url: str, use_cache: bool = True) -> dict:
        """
        Fetch HTML for a URL.

        Args:
            url: Job listing URL
            use_cache: Reuse a valid cached page

        Returns:
            {success, html, status, from_cache, rendered, diagnosis} or
            {success: False, error, status}
        """
        if not url:
            return {"success": False, "error": "URL is required", "status": None}

        if use_cache:
            page = self.cached(url)
            if page is not None:
                logger.debug("HTML cache hit for %s", url)
                return {
                    "success": True,
                    "html": page.html,
                    "status": page.http_status,
                    "from_cache": True,
                    "rendered": bool(page.rendered),
                    "diagnosis": None,
                }

        try:
            status, html = await self._get(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("HTML fetch failed for %s: %s", url, e)
            return {"success": False, "error": f"Failed to fetch HTML: {e}", "status": None}
        if html is None:
            if status is None:
                return {"success": False, "error": "Connection failed: no response after retries", "status": None}
            return {"success": False, "error": f"HTTP {status}: Failed to fetch HTML", "status": status}

        diagnosis = js_heavy_diagnosis(html, self.cleaner.clean(html))
        rendered = False
        if diagnosis["js_heavy"] and settings.rendered_fetch_enabled:
            try:
                html = await self.renderer(url, settings.scraping_timeout_seconds)
                rendered = True
            except RenderError as e:
                logger.warning("%s; keeping static HTML", e)

        self._store(url, html, status, rendered)
        return {
            "success": True,
            "html": html,
            "status": status,
            "from_cache": False,
            "rendered": rendered,
            "diagnosis": diagnosis,
        }

    async def _get(self, url: str) -> tuple[Optional[int], Optional[str]]:
        headers = {
            "User-Agent": settings.scraping_user_agent,
            "Accept": "text/html",
            "Accept-Language": "en-US,en;q=0.9",
        }
        timeout = aiohttp.ClientTimeout(total=settings.scraping_timeout_seconds)
        if self.http_session is not None:
            return await get_text(self.http_session, url, headers=headers, timeout=timeout)
        async with aiohttp.ClientSession() as http:
            return await get_text(http, url, headers=headers, timeout=timeout)

    def _store(self, url: str, html: str, status: Optional[int], rendered: bool) -> CachedPage:
        now = utcnow()
        page = self.session.execute(select(CachedPage).where(CachedPage.url == url)).scalar_one_or_none()
        if page is None:
            page = CachedPage(url=url)
            self.session.add(page)
        page.html = html
        page.http_status = status
        page.rendered = rendered
        page.fetched_at = now
        page.valid_until = now + timedelta(hours=settings.html_cache_ttl_hours)
        self.session.flush()
        return page
