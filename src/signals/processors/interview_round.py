"""Create or update interview rounds from scheduling emails."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil import parser as date_parser
from sqlalchemy import select

from src.persistence.models import InterviewRound, ensure_aware
from src.signals.processors.base import BaseProcessor
from src.tracking.application_service import ApplicationService

logger = logging.getLogger(__name__)

STAGES = {"screening", "technical", "hiring_manager", "culture_fit"}
MATCH_WINDOW = timedelta(hours=1)


def parse_datetime(value) -> Optional[datetime]:
    """Parse an LLM date/time string to an aware UTC datetime (naive values are taken as UTC)."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as e:
        logger.warning("Failed to parse time '%s': %s", value, e)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def map_stage(value: Optional[str]) -> str:
    stage = (value or "").lower()
    return stage if stage in STAGES else "other"


class InterviewRoundProcessor(BaseProcessor):
    """Turns scheduling, invite and reminder emails into InterviewRound rows."""

    PROCESSABLE_TYPES = ("scheduling", "interview_invite", "interview_reminder")
    OPERATION = "interview_extraction"
    MIN_CONFIDENCE_SCORE = 0.5

    def prompt_values(self) -> dict:
        return {}

    def before_extraction(self) -> Optional[dict]:
        existing = self.session.execute(
            select(InterviewRound).where(InterviewRound.source_email_id == self.synced_email.id)
        ).scalars().first()
        if existing:
            return self.skip_result("Already processed", round=existing)
        return None

    def apply(self, data: dict) -> dict:
        interview = data.get("interview") or {}
        scheduled_at = parse_datetime(interview.get("scheduled_at"))

        existing = self._find_existing_round(scheduled_at) if scheduled_at else None
        if existing:
            self._update_round(existing, data)
            logger.info("[%s] Updated round %s from email %s", self.name, existing.id, self.synced_email.id)
            return {"success": True, "round": existing, "action": "updated"}

        round_ = self._create_round(data, scheduled_at)
        logger.info("[%s] Created round %s from email %s", self.name, round_.id, self.synced_email.id)
        return {"success": True, "round": round_, "action": "created"}

    def _find_existing_round(self, scheduled_at: datetime) -> Optional[InterviewRound]:
        for round_ in self.application.rounds:
            when = ensure_aware(round_.scheduled_at)
            if when and abs(when - scheduled_at) <= MATCH_WINDOW:
                return round_
        return None

    def _update_round(self, round_: InterviewRound, data: dict) -> None:
        interview = data.get("interview") or {}
        interviewer = data.get("interviewer") or {}
        logistics = data.get("logistics") or {}

        round_.source_email_id = self.synced_email.id
        if logistics.get("video_link"):
            round_.video_link = logistics["video_link"]
        if data.get("confirmation_source"):
            round_.confirmation_source = data["confirmation_source"]
        if interviewer.get("name") and not round_.interviewer_name:
            round_.interviewer_name = interviewer["name"]
        if interviewer.get("role") and not round_.interviewer_role:
            round_.interviewer_role = interviewer["role"]
        if interview.get("duration_minutes") and not round_.duration_minutes:
            round_.duration_minutes = interview["duration_minutes"]

    def _create_round(self, data: dict, scheduled_at: Optional[datetime]) -> InterviewRound:
        interview = data.get("interview") or {}
        interviewer = data.get("interviewer") or {}
        logistics = data.get("logistics") or {}

        round_ = InterviewRound(
            interview_application_id=self.application.id,
            position=ApplicationService.next_round_position(self.application),
            stage=map_stage(interview.get("stage")),
            stage_name=interview.get("stage_name"),
            scheduled_at=scheduled_at,
            duration_minutes=interview.get("duration_minutes") or 30,
            interviewer_name=interviewer.get("name"),
            interviewer_role=interviewer.get("role"),
            video_link=logistics.get("video_link"),
            confirmation_source=data.get("confirmation_source"),
            source_email_id=self.synced_email.id,
            result="pending",
            notes=self._round_notes(data),
        )
        self.session.add(round_)
        self.application.rounds.append(round_)
        self.session.flush()
        return round_

    @staticmethod
    def _round_notes(data: dict) -> str:
        logistics = data.get("logistics") or {}
        notes = ["Created from email signal"]
        labels = [
            ("location", "Location"),
            ("phone_number", "Phone"),
            ("meeting_id", "Meeting ID"),
            ("passcode", "Passcode"),
        ]
        for key, label in labels:
            if logistics.get(key):
                notes.append(f"{label}: {logistics[key]}")
        if data.get("additional_instructions"):
            notes.append(str(data["additional_instructions"]))
        return "\n".join(notes)
