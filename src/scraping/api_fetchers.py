"""Public job board APIs (Greenhouse, Lever) mapped to listing fields."""
import html
import logging
from typing import Optional

import aiohttp
from bs4 import BeautifulSoup

from config.settings import settings
from src.scraping.html_cleaner import infer_remote_type
from src.scraping.http import get_json

logger = logging.getLogger(__name__)

FULL_CONFIDENCE = 0.95
TITLE_ONLY_CONFIDENCE = 0.6


def html_to_plain(content: Optional[str]) -> Optional[str]:
    """Strip tags from (possibly HTML-escaped) content."""
    if not content:
        return None
    soup = BeautifulSoup(html.unescape(content), "html.parser")
    return soup.get_text(separator=" ", strip=True) or None


def confidence_for(result: dict) -> float:
    if result.get("title") and result.get("description"):
        return FULL_CONFIDENCE
    if result.get("title"):
        return TITLE_ONLY_CONFIDENCE
    return 0.0


class BaseApiFetcher:
    """Fetch one posting from a board API; returns None when unavailable."""

    board: str = ""

    def __init__(self, http_session: Optional[aiohttp.ClientSession] = None):
        self.http_session = http_session

    def api_url(self, company_slug: str, job_id: str) -> str:
        raise NotImplementedError

    def parse(self, data: dict) -> dict:
        raise NotImplementedError

    async def fetch(self, company_slug: Optional[str], job_id: Optional[str]) -> Optional[dict]:
        """
        Fetch and map a posting.

        Returns:
            Listing fields plus confidence, extraction_method "api" and provider,
            or None when the API has no data
        """
        if not company_slug or not job_id:
            return None
        url = self.api_url(company_slug, job_id)
        timeout = aiohttp.ClientTimeout(total=settings.scraping_timeout_seconds)
        if self.http_session is not None:
            data = await get_json(self.http_session, url, timeout=timeout)
        else:
            async with aiohttp.ClientSession() as http:
                data = await get_json(http, url, timeout=timeout)
        if not isinstance(data, dict):
            logger.info("%s API returned no posting for %s/%s", self.board, company_slug, job_id)
            return None

        result = {k: v for k, v in self.parse(data).items() if v not in (None, "")}
        result["remote_type"] = result.get("remote_type") or infer_remote_type(result.get("location"))
        result.update(
            confidence=confidence_for(result),
            extraction_method="api",
            provider=self.board,
            source_id=str(job_id),
        )
        return result


class GreenhouseFetcher(BaseApiFetcher):
    board = "greenhouse"

    def api_url(self, company_slug: str, job_id: str) -> str:
        return f"https://boards-api.greenhouse.io/v1/boards/{company_slug}/jobs/{job_id}"

    def parse(self, data: dict) -> dict:
        return {
            "title": data.get("title"),
            "location": (data.get("location") or {}).get("name"),
            "description": html_to_plain(data.get("content")),
            "company_name": data.get("company_name"),
        }


class LeverFetcher(BaseApiFetcher):
    board = "lever"

    def api_url(self, company_slug: str, job_id: str) -> str:
        return f"https://api.lever.co/v0/postings/{company_slug}/{job_id}"

    def parse(self, data: dict) -> dict:
        categories = data.get("categories") or {}
        lists = {(item.get("text") or "").lower(): html_to_plain(item.get("content")) for item in data.get("lists") or []}
        salary = data.get("salaryRange") or {}

        workplace = (data.get("workplaceType") or "").lower()
        remote_type = {"remote": "remote", "hybrid": "hybrid", "onsite": "on_site", "on-site": "on_site"}.get(workplace)

        return {
            "title": data.get("text"),
            "location": categories.get("location"),
            "description": data.get("descriptionPlain") or html_to_plain(data.get("description")),
            "requirements": next((v for k, v in lists.items() if "requirement" in k or "qualification" in k), None),
            "responsibilities": next((v for k, v in lists.items() if "responsib" in k or "you will" in k), None),
            "remote_type": remote_type,
            "salary_min": salary.get("min"),
            "salary_max": salary.get("max"),
            "salary_currency": salary.get("currency"),
        }


FETCHERS = {"greenhouse": GreenhouseFetcher, "lever": LeverFetcher}


def fetcher_for(board: str, http_session: Optional[aiohttp.ClientSession] = None) -> Optional[BaseApiFetcher]:
    fetcher_class = FETCHERS.get(board)
    return fetcher_class(http_session) if fetcher_class else None
