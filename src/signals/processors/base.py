"""Shared plumbing for processors that act on matched emails."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.gmail.client import html_to_text
from src.llm import prompts
from src.llm.response_parser import parse_json_response
from src.llm.runner import ProviderRunner
from src.persistence.models import InterviewApplication, SyncedEmail

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 5000


class BaseProcessor:
    """Base for signal processors.

    Subclasses set ``PROCESSABLE_TYPES``, ``OPERATION`` (prompt key and
    LlmApiLog operation type) and ``MIN_CONFIDENCE_SCORE``, and implement
    ``prompt_values`` and ``apply``.
    """

    PROCESSABLE_TYPES: tuple[str, ...] = ()
    OPERATION: str = ""
    MIN_CONFIDENCE_SCORE = 0.5
    MAX_TOKENS = 1500

    def __init__(self, session: Session, synced_email: SyncedEmail, runner_factory=ProviderRunner):
        self.session = session
        self.synced_email = synced_email
        self.application: Optional[InterviewApplication] = synced_email.interview_application
        self.runner_factory = runner_factory

    @property
    def name(self) -> str:
        return type(self).__name__

    def process(self) -> dict:
        """
        Run the processor.

        Returns:
            Result dict: success plus action details, or skipped/reason,
            or error
        """
        email = self.synced_email
        logger.info("[%s] Processing email %s: %s", self.name, email.id, email.subject)
        if self.application is None:
            return self.skip_result("Email not matched to application")
        if not self.processable():
            return self.skip_result("Email type not processable")
        if not self.content_available():
            return self.skip_result("No email content")

        try:
            early = self.before_extraction()
            if early is not None:
                return early

            extraction = self.extract()
            if not extraction["success"]:
                logger.warning(
                    "[%s] Extraction failed for email %s: %s", self.name, email.id, extraction.get("error")
                )
                return {"success": False, "error": extraction.get("error")}

            result = self.apply(extraction["parsed"])
            if extraction.get("llm_api_log_id"):
                result["llm_api_log_id"] = extraction["llm_api_log_id"]
            self.session.flush()
            return result
        except Exception as e:
            logger.error("[%s] Error processing email %s: %s", self.name, email.id, e)
            return {"success": False, "error": str(e)}

    # ---- hooks ----

    def processable(self) -> bool:
        return self.synced_email.email_type in self.PROCESSABLE_TYPES

    def before_extraction(self) -> Optional[dict]:
        """Return a result dict to stop before calling the LLM."""
        return None

    def prompt_values(self) -> dict:
        raise NotImplementedError

    def apply(self, data: dict) -> dict:
        raise NotImplementedError

    # ---- helpers ----

    def content_available(self) -> bool:
        email = self.synced_email
        return bool(email.body_preview or email.body_html or email.snippet)

    def body_content(self) -> str:
        email = self.synced_email
        if email.body_preview:
            body = email.body_preview
        elif email.body_html:
            body = html_to_text(email.body_html)
        else:
            body = email.snippet or ""
        return body[:MAX_BODY_CHARS]

    def company_name(self) -> str:
        company = self.application.company if self.application else None
        return (company.name if company else None) or self.synced_email.signal_company_name or ""

    def skip_result(self, reason: str, **data) -> dict:
        logger.info("[%s] Skipped email %s: %s", self.name, self.synced_email.id, reason)
        return {"success": False, "skipped": True, "reason": reason, **data}

    def extract(self) -> dict:
        email = self.synced_email
        body = self.body_content()
        values = {
            "subject": email.subject or "(No subject)",
            "body": body,
            "from_email": email.from_email or "",
            "from_name": email.from_name or "",
            "company_name": self.company_name(),
            **self.prompt_values(),
        }
        system_message, prompt = prompts.render(self.OPERATION, **values)
        runner = self.runner_factory(
            self.session,
            operation=self.OPERATION,
            prompt=prompt,
            system_message=system_message,
            content_size=len(body.encode("utf-8")),
            loggable=email,
            max_tokens=self.MAX_TOKENS,
            temperature=0.1,
        )
        result = runner.run(self._accept)
        if not result["success"]:
            result["error"] = f"Failed to extract {self.OPERATION.replace('_', ' ')} from email"
        return result

    def _accept(self, response: dict) -> tuple[Optional[dict], dict, bool]:
        parsed = parse_json_response(response.get("content"))
        if parsed is None:
            return None, {}, False
        confidence = parsed.get("confidence_score")
        accepted = confidence is None or (
            isinstance(confidence, (int, float)) and confidence >= self.MIN_CONFIDENCE_SCORE
        )
        return parsed, {"confidence": confidence}, accepted
