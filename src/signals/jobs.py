"""Background job: extract signals from a synced email and apply them."""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.persistence.models import SyncedEmail
from src.signals.decisioning import ExecutionRunner
from src.signals.extraction_service import SignalExtractionService
from src.signals.processors import (
    ApplicationStatusProcessor,
    CompanyFeedbackProcessor,
    InterviewRoundProcessor,
    RoundFeedbackProcessor,
)
from src.signals.recorder import EmailPipelineRecorder

logger = logging.getLogger(__name__)

PROCESSORS_BY_TYPE = {
    "scheduling": InterviewRoundProcessor,
    "interview_invite": InterviewRoundProcessor,
    "interview_reminder": InterviewRoundProcessor,
    "round_feedback": RoundFeedbackProcessor,
    "rejection": ApplicationStatusProcessor,
    "offer": ApplicationStatusProcessor,
}


def process_signal_extraction(session: Session, synced_email_id: str) -> dict:
    """
    Extract signals for one email, then run processors and decision execution.

    Args:
        session: Database session (committed here)
        synced_email_id: SyncedEmail ID

    Returns:
        Summary dict with success, skipped/reason, processor results
    """
    email = session.get(SyncedEmail, synced_email_id)
    if email is None:
        logger.warning("Signal extraction: synced email %s not found", synced_email_id)
        return {"success": False, "error": "not_found"}
    if email.extraction_status in ("completed", "skipped"):
        return {"success": True, "skipped": True, "reason": f"extraction {email.extraction_status}"}

    recorder = EmailPipelineRecorder.start_for(session, email, trigger="job", mode="extraction")
    summary = {"success": False, "processors": {}}
    try:
        with recorder.measure("signal_extraction") as step:
            extraction = SignalExtractionService(session, email).extract()
            step.result = {k: v for k, v in extraction.items() if k != "data"}

        summary["success"] = extraction.get("success", False)
        if extraction.get("skipped"):
            summary.update(skipped=True, reason=extraction.get("reason"))

        if extraction.get("success") and email.matched:
            processor_class = PROCESSORS_BY_TYPE.get(email.email_type)
            if processor_class is not None:
                summary["processors"][processor_class.__name__] = _run_processor(
                    recorder, processor_class, session, email
                )
            summary["processors"]["CompanyFeedbackProcessor"] = _run_processor(
                recorder, CompanyFeedbackProcessor, session, email
            )
            summary["decision_executed"] = ExecutionRunner(session, email, pipeline_run=recorder.run).call()

        if extraction.get("success") or extraction.get("skipped"):
            recorder.finish_success({"email_type": email.email_type})
        else:
            recorder.finish("failed", error_message=extraction.get("error"))
        session.commit()
    except Exception as e:
        logger.exception("Signal extraction job failed for email %s", synced_email_id)
        session.rollback()
        _record_failure(session, synced_email_id, e)
        return {"success": False, "error": str(e)}

    logger.info(
        "Signal extraction job done: synced_email_id=%s success=%s processors=%s",
        synced_email_id,
        summary["success"],
        list(summary["processors"]),
    )
    return summary


def _run_processor(recorder: EmailPipelineRecorder, processor_class, session: Session, email: SyncedEmail) -> dict:
    event_type = f"processor_{processor_class.__name__}"
    with recorder.measure(event_type) as step:
        result = processor_class(session, email).process()
        step.result = {
            "success": result.get("success"),
            "skipped": result.get("skipped", False),
            "reason": result.get("reason"),
            "action": result.get("action"),
            "error": result.get("error"),
        }
    return step.result


def _record_failure(session: Session, synced_email_id: str, exc: Exception) -> None:
    """Store a failed run after a rollback discarded the started one."""
    email = session.get(SyncedEmail, synced_email_id)
    if email is None:
        return
    recorder = EmailPipelineRecorder.start_for(session, email, trigger="job", mode="extraction")
    recorder.finish_failed(exc)
    email.mark_extraction_failed(str(exc))
    session.commit()


def process_pending_extractions(session: Session, limit: int = 50) -> int:
    """Run signal extraction for emails still awaiting it; returns the count.

    Unmatched emails are included; the extraction service decides what to skip.
    """
    email_ids = session.execute(
        select(SyncedEmail.id)
        .where(
            SyncedEmail.extraction_status == "pending",
            SyncedEmail.status.notin_(("ignored", "auto_ignored")),
        )
        .order_by(SyncedEmail.email_date.asc())
        .limit(limit)
    ).scalars().all()
    for email_id in email_ids:
        process_signal_extraction(session, email_id)
    return len(email_ids)
