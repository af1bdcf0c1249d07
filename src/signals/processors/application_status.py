"""Apply rejections, offers and other status changes detected in emails."""
import logging
from typing import Optional

from src.lifecycle import APPLICATION_STAGE, APPLICATION_STATUS
from src.persistence.models import CompanyFeedback, utcnow
from src.signals.processors.base import BaseProcessor

logger = logging.getLogger(__name__)

OTHER_STATUS_SUMMARIES = {
    "withdrawal": "Position withdrawn",
    "ghosted": "No response - possible ghost",
    "on_hold": "Position/process on hold",
}


def rejection_reason(rejection: dict) -> str:
    parts = []
    if rejection.get("reason"):
        parts.append(rejection["reason"])
    if rejection.get("stage_rejected_at"):
        parts.append(f"Rejected at: {rejection['stage_rejected_at']} stage")
    if rejection.get("is_generic"):
        parts.append("(Generic rejection email)")
    return "\n".join(parts)


def offer_text(offer: dict, feedback: dict) -> str:
    parts = ["Offer received!"]
    if offer.get("role_title"):
        parts.append(f"Role: {offer['role_title']}")
    if offer.get("department"):
        parts.append(f"Department: {offer['department']}")
    if feedback.get("feedback_text"):
        parts.append(feedback["feedback_text"])
    return "\n".join(parts)


class ApplicationStatusProcessor(BaseProcessor):
    """Moves the application through its status/stage machines for rejection and offer emails."""

    PROCESSABLE_TYPES = ("rejection", "offer")
    OPERATION = "status_extraction"
    MIN_CONFIDENCE_SCORE = 0.6

    def prompt_values(self) -> dict:
        return {"current_status": self.application.status}

    def apply(self, data: dict) -> dict:
        change_type = (data.get("status_change") or {}).get("type")
        if change_type == "rejection":
            return self._handle_rejection(data)
        if change_type == "offer":
            return self._handle_offer(data)
        if change_type in OTHER_STATUS_SUMMARIES:
            return self._handle_other(change_type, data)
        return self.skip_result("No status change detected")

    def _fire(self, machine, event: str, reason: str) -> bool:
        if not machine.can_fire(self.application, event):
            return False
        machine.fire(self.application, event, session=self.session, reason=reason)
        return True

    def _handle_rejection(self, data: dict) -> dict:
        app = self.application
        if app.status == "active":
            self._fire(APPLICATION_STATUS, "reject", "Rejection email")
            self._fire(APPLICATION_STAGE, "move_to_closed", "Rejection email")
            logger.info("[%s] Application %s rejected/closed", self.name, app.id)

        rejection = data.get("rejection_details") or {}
        self._create_feedback(
            "rejection",
            feedback_text=(data.get("feedback") or {}).get("feedback_text"),
            rejection_reason=rejection_reason(rejection),
            next_steps="Keep in touch for future opportunities" if rejection.get("door_open") else None,
        )
        return {"success": True, "action": "rejection", "application": app}

    def _handle_offer(self, data: dict) -> dict:
        app = self.application
        if self._fire(APPLICATION_STAGE, "move_to_offer", "Offer email"):
            logger.info("[%s] Application %s moved to offer stage", self.name, app.id)

        offer = data.get("offer_details") or {}
        next_steps = []
        if offer.get("next_steps"):
            next_steps.append(offer["next_steps"])
        if offer.get("response_deadline"):
            next_steps.append(f"Respond by: {offer['response_deadline']}")
        if offer.get("start_date"):
            next_steps.append(f"Start date: {offer['start_date']}")

        self._create_feedback(
            "offer",
            feedback_text=offer_text(offer, data.get("feedback") or {}),
            next_steps="\n".join(next_steps),
        )
        return {"success": True, "action": "offer", "application": app}

    def _handle_other(self, change_type: str, data: dict) -> dict:
        app = self.application
        if change_type == "withdrawal" and app.status == "active":
            self._fire(APPLICATION_STATUS, "archive", "Position withdrawn")
            logger.info("[%s] Archived application %s (withdrawal)", self.name, app.id)

        feedback_text = (data.get("feedback") or {}).get("feedback_text") or ""
        self._create_feedback(
            "general",
            feedback_text=f"{OTHER_STATUS_SUMMARIES[change_type]}\n\n{feedback_text}".strip(),
        )
        return {"success": True, "action": change_type, "application": app}

    def _create_feedback(self, feedback_type: str, **fields) -> Optional[CompanyFeedback]:
        if self.application.company_feedback is not None:
            return None
        record = CompanyFeedback(
            interview_application_id=self.application.id,
            source_email_id=self.synced_email.id,
            feedback_type=feedback_type,
            received_at=self.synced_email.email_date or utcnow(),
            **fields,
        )
        self.session.add(record)
        self.application.company_feedbacks.append(record)
        self.session.flush()
        logger.info("[%s] Created %s CompanyFeedback %s", self.name, feedback_type, record.id)
        return record
