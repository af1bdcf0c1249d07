"""HTML cleanup and selector-based field extraction with BeautifulSoup."""
import json
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

NOISE_TAGS = ["script", "style", "noscript", "svg", "iframe", "nav", "footer", "header", "form", "button"]
COOKIE_BANNER_RE = re.compile(r"cookie|consent|gdpr", re.I)

FIELD_SELECTORS = {
    "title": ["h1.job-title", "[data-job-title]", "[class*='job-title']", "[id*='job-title']", "h1", ".title"],
    "location": ["[data-location]", "[class*='location']", "[id*='location']", "address", ".location"],
    "company_name": ["[data-company]", "[class*='company-name']", ".company", "[itemprop='hiringOrganization']"],
    "description": [
        "[data-description]",
        "[class*='job-description']",
        "[id*='job-description']",
        "[class*='description']",
        "[id*='description']",
        "main",
        "article",
    ],
}

MAX_FIELD_CHARS = {"title": 200, "location": 200, "company_name": 200, "description": 20000}
REMOTE_RE = re.compile(r"\bremote\b|work from home|anywhere", re.I)
HYBRID_RE = re.compile(r"\bhybrid\b", re.I)


def _text(node) -> str:
    return re.sub(r"\s+", " ", node.get_text(" ", strip=True)).strip()


def infer_remote_type(*texts: Optional[str]) -> str:
    """on_site, remote or hybrid from location-ish text; unknown when nothing matches."""
    searchable = " ".join(t for t in texts if t)
    if not searchable:
        return "unknown"
    if HYBRID_RE.search(searchable):
        return "hybrid"
    if REMOTE_RE.search(searchable):
        return "remote"
    return "on_site"


class HtmlCleaner:
    """Strips noise from job listing HTML and reads common fields."""

    def soup(self, html: str) -> BeautifulSoup:
        soup = BeautifulSoup(html or "", "html.parser")
        for tag in soup(NOISE_TAGS):
            tag.decompose()
        for tag in soup.find_all(attrs={"id": COOKIE_BANNER_RE}) + soup.find_all(attrs={"class": COOKIE_BANNER_RE}):
            tag.decompose()
        return soup

    def clean(self, html: str) -> str:
        """Visible text of the page with whitespace collapsed."""
        if not html:
            return ""
        return _text(self.soup(html))

    def json_ld_job_posting(self, html: str) -> Optional[dict]:
        """First JSON-LD object of @type JobPosting, if any."""
        soup = BeautifulSoup(html or "", "html.parser")
        for script in soup.find_all("script", type="application/ld+json"):
            try:
                data = json.loads(script.string or "")
            except (TypeError, ValueError):
                continue
            if isinstance(data, dict):
                data = data.get("@graph", [data])
            if not isinstance(data, list):
                continue
            for item in data:
                if isinstance(item, dict) and item.get("@type") == "JobPosting":
                    return item
        return None

    def extract_with_selectors(self, html: str) -> dict:
        """
        Read title, company, location and description.

        JSON-LD JobPosting data wins over CSS selectors.

        Returns:
            Dict with only the fields that were found, plus remote_type
        """
        if not html:
            return {}

        result = self._from_json_ld(self.json_ld_job_posting(html))
        soup = self.soup(html)
        for field, selectors in FIELD_SELECTORS.items():
            if result.get(field):
                continue
            for selector in selectors:
                node = soup.select_one(selector)
                value = _text(node) if node else ""
                if value:
                    result[field] = value[: MAX_FIELD_CHARS[field]]
                    break

        if result:
            result["remote_type"] = result.get("remote_type") or infer_remote_type(result.get("location"))
        logger.debug("Selector extraction found fields: %s", sorted(result))
        return result

    @staticmethod
    def _from_json_ld(posting: Optional[dict]) -> dict:
        if not posting:
            return {}
        result = {}
        if posting.get("title"):
            result["title"] = str(posting["title"]).strip()
        org = posting.get("hiringOrganization")
        if isinstance(org, dict) and org.get("name"):
            result["company_name"] = str(org["name"]).strip()
        if posting.get("description"):
            description = _text(BeautifulSoup(str(posting["description"]), "html.parser"))
            result["description"] = description[: MAX_FIELD_CHARS["description"]]

        location = posting.get("jobLocation")
        if isinstance(location, list):
            location = location[0] if location else None
        address = location.get("address") if isinstance(location, dict) else None
        if isinstance(address, dict):
            parts = [address.get("addressLocality"), address.get("addressRegion"), address.get("addressCountry")]
            text = ", ".join(str(p) for p in parts if p and isinstance(p, str))
            if text:
                result["location"] = text
        if posting.get("jobLocationType") == "TELECOMMUTE":
            result["remote_type"] = "remote"

        salary = posting.get("baseSalary")
        if isinstance(salary, dict):
            value = salary.get("value") if isinstance(salary.get("value"), dict) else {}
            result["salary_min"] = value.get("minValue")
            result["salary_max"] = value.get("maxValue")
            result["salary_currency"] = salary.get("currency")
        return {k: v for k, v in result.items() if v not in (None, "")}
