"""LLM extraction of job listing fields from cleaned page text."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.llm import prompts
from src.llm.response_parser import parse_json_response
from src.llm.runner import ProviderRunner
from src.persistence.models import JobListing
from src.scraping.html_cleaner import HtmlCleaner, infer_remote_type

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.7
MAX_CONTENT_CHARS = 30000
REMOTE_TYPES = {"on_site", "remote", "hybrid"}

TEXT_FIELDS = ("title", "location", "description", "requirements", "responsibilities", "salary_currency")


def parse_salary(value) -> Optional[int]:
    """Salary as an integer from numbers or strings like "$150,000" or "150k"."""
    if value is None:
        return None
    try:
        if isinstance(value, str):
            cleaned = value.replace("$", "").replace(",", "").strip().lower()
            if cleaned.endswith("k"):
                return int(float(cleaned[:-1]) * 1000)
            return int(float(cleaned))
        return int(float(value))
    except (ValueError, TypeError):
        return None


def listing_fields(parsed: dict) -> dict:
    """Map LLM output to JobListing columns, dropping empties."""
    fields = {name: parsed.get(name) for name in TEXT_FIELDS}
    fields["company_name"] = parsed.get("company")
    fields["salary_min"] = parse_salary(parsed.get("salary_min"))
    fields["salary_max"] = parse_salary(parsed.get("salary_max"))
    remote_type = (parsed.get("remote_type") or "").lower().replace("-", "_")
    fields["remote_type"] = remote_type if remote_type in REMOTE_TYPES else infer_remote_type(parsed.get("location"))
    for name in ("requirements", "responsibilities", "description"):
        if isinstance(fields[name], list):
            fields[name] = "\n".join(str(item) for item in fields[name])
    return {k: v for k, v in fields.items() if v not in (None, "")}


class AiExtractor:
    """Runs the job_extraction prompt; a response counts only at confidence >= 0.7."""

    OPERATION = "job_extraction"

    def __init__(
        self,
        session: Session,
        job_listing: JobListing,
        runner_factory=ProviderRunner,
        cleaner: Optional[HtmlCleaner] = None,
    ):
        self.session = session
        self.job_listing = job_listing
        self.runner_factory = runner_factory
        self.cleaner = cleaner or HtmlCleaner()
        self._best_confidence = 0.0

    def extract(self, html: str) -> dict:
        """
        Extract listing fields from page HTML.

        Returns:
            Listing fields with confidence, provider, model, extraction_method
            "ai" and llm_api_log_id; on failure {confidence, error}
        """
        content = self.cleaner.clean(html)[:MAX_CONTENT_CHARS]
        if not content:
            return {"confidence": 0.0, "error": "No page content"}

        system, prompt = prompts.render(self.OPERATION, url=self.job_listing.url, html_content=content)
        runner = self.runner_factory(
            self.session,
            operation=self.OPERATION,
            prompt=prompt,
            system_message=system,
            content_size=len(content),
            loggable=self.job_listing,
            max_tokens=4000,
            temperature=0.0,
        )
        result = runner.run(self._accept)
        if not result["success"]:
            logger.info(
                "AI extraction failed for %s: %s (best confidence %.2f)",
                self.job_listing.url,
                result.get("error"),
                self._best_confidence,
            )
            return {"confidence": self._best_confidence, "error": result.get("error")}

        parsed = result["parsed"]
        return {
            **listing_fields(parsed),
            "confidence": float(parsed.get("confidence_score") or 0.0),
            "extraction_method": "ai",
            "provider": result["provider"],
            "model": result["model"],
            "llm_api_log_id": result["llm_api_log_id"],
            "notes": parsed.get("notes"),
        }

    def _accept(self, response: dict) -> tuple[dict, dict, bool]:
        parsed = parse_json_response(response.get("content")) or {}
        try:
            confidence = float(parsed.get("confidence_score") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        self._best_confidence = max(self._best_confidence, confidence)
        return parsed, {"confidence": confidence}, bool(parsed.get("title")) and confidence >= MIN_CONFIDENCE
