"""Extract actionable signals (company, recruiter, job, links) from synced emails."""
import logging
import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.gmail.client import html_to_text
from src.llm import prompts
from src.llm.response_parser import parse_json_response
from src.llm.runner import ProviderRunner
from src.persistence.models import Company, EmailSender, SyncedEmail, utcnow

logger = logging.getLogger(__name__)

MIN_CONFIDENCE_SCORE = 0.5
MIN_PREVIEW_LENGTH = 200
MAX_BODY_CHARS = 6000

IGNORED_LINK_LABELS = [
    re.compile(p, re.I)
    for p in (r"unsubscribe", r"view in browser", r"privacy", r"terms", r"learn more", r"forwarding", r"event details")
]
CALENDAR_URL_PATTERNS = [
    re.compile(p, re.I) for p in (r"calendar\.google\.com", r"google\.com/calendar", r"support\.google\.com")
]
TRACKING_PARAMS = {"gclid", "fbclid", "mc_cid", "mc_eid"}
RECRUITER_TITLE_RE = re.compile(r"recruit|talent|sourcing", re.I)


def normalize_text(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def email_body(email: SyncedEmail) -> str:
    """Body text for prompts: a long enough preview, else cleaned HTML, else the snippet."""
    if email.body_preview and len(email.body_preview) >= MIN_PREVIEW_LENGTH:
        body = normalize_text(email.body_preview)
    elif email.body_html:
        body = normalize_text(html_to_text(email.body_html))
    else:
        body = normalize_text(email.snippet)
    return body[:MAX_BODY_CHARS]


def canonical_url_key(url: str) -> Optional[str]:
    """
    Canonical form of a URL for de-duplication.

    Google ``/url`` redirect wrappers are unwrapped; utm_* and click-id
    parameters, fragments and trailing slashes are dropped.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.hostname:
        return None

    query = parse_qsl(parts.query, keep_blank_values=True)
    if re.search(r"google\.com", parts.hostname, re.I) and parts.path == "/url":
        target = dict(query).get("q") or dict(query).get("url")
        if target:
            return canonical_url_key(target)

    kept = [(k, v) for k, v in query if not k.lower().startswith("utm_") and k not in TRACKING_PARAMS]
    normalized = f"{parts.scheme}://{parts.hostname}{parts.path}"
    if kept:
        normalized += f"?{urlencode(kept)}"
    return normalized.rstrip("/")


def normalize_action_links(links) -> list[dict]:
    """Coerce LLM link entries to {url, action_label, priority} and drop incomplete ones."""
    normalized = []
    for link in links or []:
        if not isinstance(link, dict):
            continue
        try:
            priority = int(link.get("priority") or 5)
        except (TypeError, ValueError):
            priority = 5
        entry = {
            "url": str(link.get("url") or "").strip(),
            "action_label": str(link.get("action_label") or "").strip(),
            "priority": priority,
        }
        if entry["url"] and entry["action_label"]:
            normalized.append(entry)
    return normalized


def filter_action_links(links: list[dict]) -> list[dict]:
    """Drop boilerplate links, calendar links without a schedule/join label, and duplicates."""
    seen = set()
    filtered = []
    for link in sorted(links, key=lambda item: item.get("priority") or 5):
        url = link["url"]
        label = link["action_label"]
        if any(p.search(label) for p in IGNORED_LINK_LABELS):
            continue
        if any(p.search(url) for p in CALENDAR_URL_PATTERNS) and not re.search(
            r"schedule|reschedule|join", label, re.I
        ):
            continue

        key = canonical_url_key(url)
        if key and key in seen:
            continue
        if key:
            seen.add(key)
        filtered.append(link)
    return filtered


def signals_from_extraction(data: dict) -> dict:
    """Flatten the LLM response into signal_* keys stored on the email."""
    extracted = {}
    sections = {
        "company": {
            "name": "signal_company_name",
            "website": "signal_company_website",
            "careers_url": "signal_company_careers_url",
            "domain": "signal_company_domain",
        },
        "recruiter": {
            "name": "signal_recruiter_name",
            "email": "signal_recruiter_email",
            "title": "signal_recruiter_title",
            "linkedin_url": "signal_recruiter_linkedin",
        },
        "job": {
            "title": "signal_job_title",
            "department": "signal_job_department",
            "location": "signal_job_location",
            "url": "signal_job_url",
            "salary_hint": "signal_job_salary_hint",
        },
    }
    for section, fields in sections.items():
        values = data.get(section)
        if not isinstance(values, dict):
            continue
        for source_key, signal_key in fields.items():
            if values.get(source_key):
                extracted[signal_key] = values[source_key]

    if isinstance(data.get("action_links"), list):
        extracted["signal_action_links"] = filter_action_links(normalize_action_links(data["action_links"]))

    if isinstance(data.get("suggested_actions"), list):
        actions = [a for a in data["suggested_actions"] if a in SyncedEmail.SUGGESTED_ACTIONS]
        if actions:
            extracted["signal_suggested_actions"] = actions

    if data.get("key_insights"):
        extracted["key_insights"] = data["key_insights"]
    if data.get("is_forwarded"):
        extracted["is_forwarded"] = data["is_forwarded"]
    extracted["raw_extraction"] = data
    extracted["extracted_at"] = utcnow().isoformat()
    return extracted


class SignalExtractionService:
    """Runs the signal_extraction prompt for one synced email."""

    def __init__(self, session: Session, synced_email: SyncedEmail, runner_factory=ProviderRunner):
        self.session = session
        self.synced_email = synced_email
        self.runner_factory = runner_factory

    def extract(self) -> dict:
        """
        Extract signals and store them on the email.

        Returns:
            {success: True, data, provider} on success,
            {success: False, skipped: True, reason} when skipped,
            {success: False, error} on failure
        """
        email = self.synced_email
        if not self._has_content():
            return self._skip("No email content available")
        if not self._should_extract():
            return self._skip("Email type not suitable for extraction")

        email.mark_extraction_processing()
        try:
            result = self._run_llm()
            if not result["success"]:
                error = result.get("error") or "Extraction failed"
                email.mark_extraction_failed(error)
                return {"success": False, "error": error}

            data = result["parsed"]
            extracted = signals_from_extraction(data)
            email.update_extraction(extracted, confidence=data.get("confidence_score"))
            self.session.flush()
            self._save_company_and_recruiter(extracted)
            return {"success": True, "data": data, "provider": result["provider"]}
        except Exception as e:
            logger.error("Signal extraction failed for email %s: %s", email.id, e)
            email.mark_extraction_failed(str(e))
            return {"success": False, "error": str(e)}

    def _has_content(self) -> bool:
        email = self.synced_email
        return any([email.body_preview, email.body_html, email.snippet, email.subject])

    def _should_extract(self) -> bool:
        email = self.synced_email
        if email.status in ("ignored", "auto_ignored"):
            return False
        return not (email.email_type == "other" and not email.matched)

    def _skip(self, reason: str) -> dict:
        self.synced_email.mark_extraction_skipped()
        logger.debug("Skipping extraction for email %s: %s", self.synced_email.id, reason)
        return {"success": False, "skipped": True, "reason": reason}

    def _run_llm(self) -> dict:
        email = self.synced_email
        body = email_body(email)
        system_message, prompt = prompts.render(
            "signal_extraction",
            subject=email.subject or "(No subject)",
            body=body,
            from_email=email.from_email or "",
            from_name=email.from_name or "",
            email_type=email.email_type or "unknown",
        )
        runner = self.runner_factory(
            self.session,
            operation="signal_extraction",
            prompt=prompt,
            system_message=system_message,
            content_size=len(body.encode("utf-8")),
            loggable=email,
            max_tokens=2000,
            temperature=0.1,
        )
        return runner.run(self._accept)

    @staticmethod
    def _accept(response: dict) -> tuple[dict, dict, bool]:
        parsed = parse_json_response(response.get("content")) or {"confidence_score": 0.0}
        log_data = {
            "confidence": parsed.get("confidence_score"),
            "company_name": (parsed.get("company") or {}).get("name"),
            "recruiter_name": (parsed.get("recruiter") or {}).get("name"),
            "job_title": (parsed.get("job") or {}).get("title"),
        }
        log_data = {k: v for k, v in log_data.items() if v is not None}
        confidence = parsed.get("confidence_score")
        accepted = isinstance(confidence, (int, float)) and confidence >= MIN_CONFIDENCE_SCORE
        return parsed, log_data, accepted

    # ---- company and sender directory ----

    def _save_company_and_recruiter(self, extracted: dict) -> None:
        try:
            with self.session.begin_nested():
                company = self._find_or_create_company(extracted) if extracted.get("signal_company_name") else None
                self._enrich_email_sender(extracted, company)
                self.session.flush()
        except SQLAlchemyError as e:
            logger.warning("Failed to save company/recruiter for email %s: %s", self.synced_email.id, e)

    def _find_or_create_company(self, extracted: dict) -> Company:
        name = extracted["signal_company_name"]
        website = extracted.get("signal_company_website")
        existing = self.session.execute(
            select(Company).where(func.lower(Company.name) == name.lower())
        ).scalars().first()
        if existing:
            if website and not existing.website:
                existing.website = website
            return existing

        company = Company(name=name, website=website)
        self.session.add(company)
        self.session.flush()
        logger.info("Created company %s from email %s", name, self.synced_email.id)
        return company

    def _enrich_email_sender(self, extracted: dict, company: Optional[Company]) -> None:
        email = self.synced_email
        sender = email.email_sender or EmailSender.find_or_create_from_email(
            self.session,
            email.from_email,
            extracted.get("signal_recruiter_name") or email.from_name,
        )
        if sender is None:
            return

        title = extracted.get("signal_recruiter_title")
        if extracted.get("signal_recruiter_name") and not sender.name:
            sender.name = extracted["signal_recruiter_name"]
        if title:
            sender.title = title
            if RECRUITER_TITLE_RE.search(title):
                sender.sender_type = "recruiter"
        if extracted.get("signal_recruiter_linkedin"):
            sender.linkedin_url = extracted["signal_recruiter_linkedin"]
        if company and sender.effective_company is None:
            sender.auto_detected_company = company
        sender.last_seen_at = utcnow()

        if email.email_sender_id != sender.id:
            email.email_sender = sender
