"""Keep company feedback from extracted signals.

Works from data already extracted onto the email, so it never calls an LLM.
"""
import logging
from typing import Optional

from sqlalchemy import select

from src.persistence.models import CompanyFeedback, utcnow
from src.signals.processors.base import BaseProcessor

logger = logging.getLogger(__name__)

FEEDBACK_TYPES = {"rejection": "rejection", "offer": "offer"}


class CompanyFeedbackProcessor(BaseProcessor):
    """One CompanyFeedback per email built from feedback text or key insights."""

    def processable(self) -> bool:
        return True

    def process(self) -> dict:
        email = self.synced_email
        if self.application is None:
            return self.skip_result("Email not matched to application")
        if self._feedback_exists_for_email():
            return self.skip_result("Feedback already exists for this email")
        if not self.content_available():
            return self.skip_result("No email content")

        extracted = email.extracted_data or {}
        feedback_text = (extracted.get("feedback") or {}).get("feedback_text") or extracted.get("feedback_text")
        key_insights = extracted.get("key_insights")
        if not feedback_text and not key_insights:
            return self.skip_result("No feedback content found in email")

        feedback_type = FEEDBACK_TYPES.get(email.email_type, "general")
        try:
            feedback = self._create_feedback(feedback_type, feedback_text, key_insights)
        except Exception as e:
            logger.error("[%s] Error processing email %s: %s", self.name, email.id, e)
            return {"success": False, "error": str(e)}
        if feedback is None:
            return {"success": False, "error": "Failed to create feedback record"}
        return {"success": True, "feedback": feedback, "action": "created"}

    def _feedback_exists_for_email(self) -> bool:
        stmt = select(CompanyFeedback.id).where(CompanyFeedback.source_email_id == self.synced_email.id)
        return self.session.execute(stmt).first() is not None

    def _create_feedback(
        self, feedback_type: str, feedback_text: Optional[str], key_insights: Optional[str]
    ) -> Optional[CompanyFeedback]:
        # Rejection/offer feedback is kept once per application
        if self.application.company_feedback is not None and feedback_type != "general":
            return None

        text = feedback_text or f"Key Insights:\n{key_insights}"
        record = CompanyFeedback(
            interview_application_id=self.application.id,
            source_email_id=self.synced_email.id,
            feedback_type=feedback_type,
            feedback_text=text.strip(),
            received_at=self.synced_email.email_date or utcnow(),
        )
        self.session.add(record)
        self.application.company_feedbacks.append(record)
        self.session.flush()
        logger.info("[%s] Created CompanyFeedback %s for email %s", self.name, record.id, self.synced_email.id)
        return record
