"""Record round results and interviewer feedback from feedback emails."""
import json
import logging
import re
from typing import Optional

from src.persistence.models import InterviewFeedback, InterviewRound, ensure_aware, utcnow
from src.signals.processors.base import BaseProcessor
from src.tracking.application_service import ApplicationService

logger = logging.getLogger(__name__)

STAGE_HINTS = [
    ("screening", re.compile(r"screen|phone|initial|intro", re.I)),
    ("technical", re.compile(r"technical|coding|system design|live coding", re.I)),
    ("hiring_manager", re.compile(r"hiring manager|manager|lead", re.I)),
    ("culture_fit", re.compile(r"culture|behavioral|values|team fit", re.I)),
]
RESULTS = {"passed", "failed", "waitlisted"}


def infer_stage_from_text(text: Optional[str]) -> Optional[str]:
    for stage, pattern in STAGE_HINTS:
        if text and pattern.search(text):
            return stage
    return None


def map_result(value: Optional[str]) -> str:
    result = (value or "").lower()
    return result if result in RESULTS else "pending"


def recommended_action(data: dict) -> Optional[str]:
    result = data.get("result")
    if result == "passed":
        next_steps = data.get("next_steps") or {}
        if next_steps.get("has_next_round"):
            return f"Prepare for {next_steps.get('next_round_type') or 'next round'}"
        return "Follow up on next steps"
    if result == "failed":
        return "Review feedback and apply learnings to future interviews"
    if result == "waitlisted":
        return "Follow up in 1-2 weeks if no update"
    return None


def _latest_first(rounds: list[InterviewRound]) -> list[InterviewRound]:
    return sorted(
        rounds,
        key=lambda r: ensure_aware(r.scheduled_at) or ensure_aware(r.created_at) or utcnow(),
        reverse=True,
    )


class RoundFeedbackProcessor(BaseProcessor):
    """Matches a feedback email to a pending round and records the outcome."""

    PROCESSABLE_TYPES = ("round_feedback",)
    OPERATION = "round_feedback_extraction"
    MIN_CONFIDENCE_SCORE = 0.5

    def prompt_values(self) -> dict:
        return {"recent_rounds": self._recent_rounds_context()}

    def _recent_rounds_context(self) -> str:
        rounds = _latest_first(list(self.application.rounds))[:5]
        data = [
            {
                "id": r.id,
                "stage": r.stage,
                "stage_name": r.stage_name,
                "scheduled_at": r.scheduled_at.isoformat() if r.scheduled_at else None,
                "interviewer_name": r.interviewer_name,
                "result": r.result,
            }
            for r in rounds
        ]
        return json.dumps(data, indent=2)

    def apply(self, data: dict) -> dict:
        round_ = self.find_matching_round(data)
        if round_:
            round_.result = map_result(data.get("result"))
            round_.completed_at = utcnow()
            round_.source_email_id = self.synced_email.id
            self._maybe_create_feedback(round_, data)
            logger.info("[%s] Updated round %s result to %s", self.name, round_.id, round_.result)
            return {"success": True, "round": round_, "action": "updated"}

        round_ = self._create_round_from_feedback(data)
        logger.info("[%s] Created round %s from feedback", self.name, round_.id)
        return {"success": True, "round": round_, "action": "created"}

    def find_matching_round(self, data: dict) -> Optional[InterviewRound]:
        """Pending round by interviewer name, then by stage, then the most recent pending one."""
        context = data.get("round_context") or {}
        pending = _latest_first(self.application.pending_rounds)

        interviewer = (context.get("interviewer_mentioned") or "").strip().lower()
        if interviewer:
            for round_ in pending:
                if round_.interviewer_name and interviewer in round_.interviewer_name.lower():
                    return round_

        stage = infer_stage_from_text(context.get("stage_mentioned"))
        if stage:
            for round_ in pending:
                if round_.stage == stage:
                    return round_

        return pending[0] if pending else None

    def _create_round_from_feedback(self, data: dict) -> InterviewRound:
        context = data.get("round_context") or {}
        round_ = InterviewRound(
            interview_application_id=self.application.id,
            position=ApplicationService.next_round_position(self.application),
            stage=infer_stage_from_text(context.get("stage_mentioned")) or "other",
            stage_name=context.get("stage_mentioned"),
            result=map_result(data.get("result")),
            completed_at=utcnow(),
            source_email_id=self.synced_email.id,
            interviewer_name=context.get("interviewer_mentioned"),
            notes="Created from feedback email",
        )
        self.session.add(round_)
        self.application.rounds.append(round_)
        self.session.flush()
        self._maybe_create_feedback(round_, data)
        return round_

    def _maybe_create_feedback(self, round_: InterviewRound, data: dict) -> None:
        feedback = data.get("feedback") or {}
        if not feedback.get("has_detailed_feedback") or round_.interview_feedback is not None:
            return
        record = InterviewFeedback(
            interview_round_id=round_.id,
            went_well="\n• ".join(feedback.get("strengths") or []),
            to_improve="\n• ".join(feedback.get("improvements") or []),
            ai_summary=feedback.get("summary"),
            interviewer_notes=feedback.get("full_feedback_text"),
            recommended_action=recommended_action(data),
        )
        self.session.add(record)
        round_.interview_feedback = record
        self.session.flush()
        logger.info("[%s] Created InterviewFeedback %s for round %s", self.name, record.id, round_.id)
