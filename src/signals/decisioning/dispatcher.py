"""Execute decision plan steps against the database."""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.gmail.opportunity_detector import OpportunityDetector
from src.lifecycle import APPLICATION_STAGE, APPLICATION_STATUS
from src.persistence.models import (
    CompanyFeedback,
    InterviewFeedback,
    InterviewRound,
    Opportunity,
    SyncedEmail,
    utcnow,
)
from src.signals.decisioning.preconditions import PreconditionEvaluator, resolve_round
from src.signals.processors.interview_round import map_stage, parse_datetime
from src.signals.recorder import EmailPipelineRecorder
from src.tracking.application_service import ApplicationService

logger = logging.getLogger(__name__)

STATUS_EVENTS = {
    "rejected": "reject",
    "archived": "archive",
    "accepted": "accept",
    "active": "reactivate",
}

APPLICATION_FREE_ACTIONS = {"create_opportunity"}


class Dispatcher:
    """Runs one plan step at a time: precondition checks, then the action handler."""

    def __init__(
        self,
        session: Session,
        synced_email: SyncedEmail,
        recorder: Optional[EmailPipelineRecorder] = None,
    ):
        self.session = session
        self.synced_email = synced_email
        self.recorder = recorder
        self.handlers = {
            "set_application_status": self.set_application_status,
            "set_pipeline_stage": self.set_pipeline_stage,
            "create_round": self.create_round,
            "set_round_result": self.set_round_result,
            "create_interview_feedback": self.create_interview_feedback,
            "create_company_feedback": self.create_company_feedback,
            "create_opportunity": self.create_opportunity,
        }

    @property
    def application(self):
        return self.synced_email.interview_application

    def dispatch(self, step: dict) -> dict:
        """
        Execute a single step.

        Returns:
            Result dict with step_id, action and status (applied or skipped_*)
        """
        action = step.get("action")
        base = {"step_id": step.get("step_id"), "action": action}

        handler = self.handlers.get(action)
        if handler is None:
            return self._skipped(step, {**base, "status": "skipped_unknown_action"})
        if action not in APPLICATION_FREE_ACTIONS and self.application is None:
            return self._skipped(step, {**base, "status": "skipped_no_application"})

        checks = PreconditionEvaluator.evaluate_all(step.get("preconditions") or [], self.synced_email, step)
        if not checks["ok"]:
            return self._skipped(
                step,
                {
                    **base,
                    "status": "skipped_precondition_failed",
                    "failed": checks["failed"],
                    "unknown": checks["unknown"],
                },
            )

        if self.recorder is None:
            return {**base, **handler(step)}
        with self.recorder.measure(f"execute_{action}", input_payload=step) as measured:
            measured.result = {**base, **handler(step)}
        return measured.result

    def _skipped(self, step: dict, result: dict) -> dict:
        logger.info(
            "Decision step skipped: synced_email_id=%s step=%s status=%s",
            self.synced_email.id,
            step.get("step_id"),
            result["status"],
        )
        if self.recorder is not None:
            self.recorder.event(f"execute_{step.get('action')}", "skipped", input_payload=step, output_payload=result)
        return result

    def _reason(self, step: dict) -> str:
        return f"Decision plan {step.get('step_id')} from email {self.synced_email.id}"

    # ---- application ----

    def set_application_status(self, step: dict) -> dict:
        status = (step.get("params") or {}).get("status")
        event = STATUS_EVENTS.get(status)
        app = self.application
        if event is None or not APPLICATION_STATUS.can_fire(app, event):
            return {"status": "skipped_invalid_transition", "from": app.status, "to": status}
        from_status = app.status
        APPLICATION_STATUS.fire(app, event, session=self.session, reason=self._reason(step))
        self.session.flush()
        return {"status": "applied", "from": from_status, "to": app.status}

    def set_pipeline_stage(self, step: dict) -> dict:
        stage = (step.get("params") or {}).get("stage")
        event = f"move_to_{stage}"
        app = self.application
        if not APPLICATION_STAGE.can_fire(app, event):
            return {"status": "skipped_invalid_transition", "from": app.pipeline_stage, "to": stage}
        from_stage = app.pipeline_stage
        APPLICATION_STAGE.fire(app, event, session=self.session, reason=self._reason(step))
        self.session.flush()
        return {"status": "applied", "from": from_stage, "to": app.pipeline_stage}

    # ---- rounds ----

    def create_round(self, step: dict) -> dict:
        app = self.application
        if app.status != "active":
            return {"status": "skipped_application_inactive"}
        existing = next((r for r in app.rounds if r.source_email_id == self.synced_email.id), None)
        if existing is not None:
            return {"status": "skipped_duplicate", "round_id": existing.id}

        params = step.get("params") or {}
        round_ = InterviewRound(
            interview_application_id=app.id,
            position=ApplicationService.next_round_position(app),
            stage=map_stage(params.get("stage")),
            stage_name=params.get("stage_name"),
            scheduled_at=parse_datetime(params.get("scheduled_at")),
            duration_minutes=params.get("duration_minutes") or 30,
            interviewer_name=params.get("interviewer_name"),
            interviewer_role=params.get("interviewer_role"),
            video_link=params.get("video_link"),
            confirmation_source="email",
            source_email_id=self.synced_email.id,
            result="pending",
        )
        self.session.add(round_)
        app.rounds.append(round_)
        self.session.flush()
        return {"status": "applied", "round_id": round_.id}

    def set_round_result(self, step: dict) -> dict:
        round_ = resolve_round(self.synced_email, step)
        if round_ is None:
            return {"status": "skipped_round_not_found"}
        params = step.get("params") or {}
        result = params.get("result")
        if result not in InterviewRound.RESULTS:
            return {"status": "skipped_invalid_result", "result": result}
        round_.result = result
        if result != "pending" and not round_.completed_at:
            round_.completed_at = parse_datetime(params.get("completed_at")) or utcnow()
        self.session.flush()
        return {"status": "applied", "round_id": round_.id, "result": result}

    def create_interview_feedback(self, step: dict) -> dict:
        round_ = resolve_round(self.synced_email, step)
        if round_ is None:
            return {"status": "skipped_round_not_found"}
        if round_.interview_feedback is not None:
            return {"status": "skipped_duplicate", "interview_feedback_id": round_.interview_feedback.id}
        params = step.get("params") or {}
        record = InterviewFeedback(
            interview_round_id=round_.id,
            went_well=params.get("went_well"),
            to_improve=params.get("to_improve"),
            ai_summary=params.get("ai_summary"),
            interviewer_notes=params.get("interviewer_notes"),
        )
        self.session.add(record)
        round_.interview_feedback = record
        self.session.flush()
        return {"status": "applied", "interview_feedback_id": record.id}

    # ---- feedback / opportunities ----

    def create_company_feedback(self, step: dict) -> dict:
        app = self.application
        params = step.get("params") or {}
        feedback_type = params.get("feedback_type") or "general"
        if feedback_type not in CompanyFeedback.FEEDBACK_TYPES:
            feedback_type = "general"
        text = params.get("feedback_text") or "\n".join(step.get("evidence") or [])
        record = CompanyFeedback(
            interview_application_id=app.id,
            source_email_id=self.synced_email.id,
            feedback_type=feedback_type,
            feedback_text=text,
            rejection_reason=params.get("rejection_reason"),
            next_steps=params.get("next_steps"),
            received_at=self.synced_email.email_date or utcnow(),
        )
        self.session.add(record)
        app.company_feedbacks.append(record)
        self.session.flush()
        return {"status": "applied", "company_feedback_id": record.id}

    def create_opportunity(self, step: dict) -> dict:
        email = self.synced_email
        params = step.get("params") or {}
        fields = {
            "company_name": params.get("company_name"),
            "job_role_title": params.get("job_role_title"),
            "job_url": params.get("job_url"),
            "recruiter_name": params.get("recruiter_name"),
            "recruiter_email": params.get("recruiter_email"),
            "key_details": params.get("key_details"),
        }

        existing = self.session.execute(
            select(Opportunity).where(Opportunity.synced_email_id == email.id).limit(1)
        ).scalar_one_or_none()
        if existing is not None:
            # Fill blanks left by the rule-based detector
            filled = [name for name, value in fields.items() if value and not getattr(existing, name)]
            for name in filled:
                setattr(existing, name, fields[name])
            self.session.flush()
            return {"status": "applied" if filled else "skipped_duplicate", "opportunity_id": existing.id, "filled": filled}

        detector = OpportunityDetector(email, self.session)
        opportunity = Opportunity(
            user_id=email.user_id,
            synced_email_id=email.id,
            status="new",
            source_type=detector.detect_source_type(),
            email_snippet=email.snippet or (email.body_preview or "")[:500],
            ai_confidence_score=params.get("confidence"),
            extracted_data={"evidence": step.get("evidence") or []},
            extracted_links=[],
            **{name: value for name, value in fields.items() if value},
        )
        if not opportunity.recruiter_email:
            opportunity.recruiter_email = email.from_email
        self.session.add(opportunity)
        self.session.flush()
        return {"status": "applied", "opportunity_id": opportunity.id}
