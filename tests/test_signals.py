"""Tests for signal extraction, processors, facts and the pipeline recorder."""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from src.persistence.models import (
    Company,
    CompanyFeedback,
    EmailPipelineEvent,
    EmailPipelineRun,
    EmailSender,
    InterviewRound,
    StateTransition,
)
from src.signals import jobs
from src.signals.contracts import DecisionPlan, EmailFacts, contract_errors
from src.signals.extraction_service import (
    SignalExtractionService,
    canonical_url_key,
    email_body,
    filter_action_links,
    normalize_action_links,
)
from src.signals.facts import (
    FACTS_KEY,
    FACTS_META_KEY,
    EmailFactsExtractor,
    canonical_email_event,
    canonicalize_text,
    extract_links,
    persisted_facts,
)
from src.signals.processors import (
    ApplicationStatusProcessor,
    CompanyFeedbackProcessor,
    InterviewRoundProcessor,
    RoundFeedbackProcessor,
)
from src.signals.processors.interview_round import map_stage, parse_datetime
from src.signals.processors.round_feedback import infer_stage_from_text, recommended_action
from src.signals.recorder import EmailPipelineRecorder, resolve_output

VALID_FACTS = {
    "classification": {"kind": "scheduling", "confidence": 0.9, "evidence": ["Tuesday at 3pm"]},
    "scheduling": {"is_scheduling_related": True, "scheduled_at": "2026-02-10T15:00:00Z"},
}


def _ok(parsed, **extra):
    return {"success": True, "provider": "anthropic", "model": "claude", "parsed": parsed, "llm_api_log_id": "log-1", **extra}


FAILED = {"success": False, "error": "All providers failed"}


# =============================================================================
# CONTRACTS
# =============================================================================


class TestContracts:
    """Tests for pydantic contracts."""

    def test_minimal_facts_are_valid(self):
        assert contract_errors(EmailFacts, {"classification": {"kind": "other"}}) == []

    def test_classification_required(self):
        errors = contract_errors(EmailFacts, {})
        assert errors[0]["path"] == "classification"

    def test_unknown_kind_rejected(self):
        errors = contract_errors(EmailFacts, {"classification": {"kind": "party"}})
        assert errors and errors[0]["path"] == "classification.kind"

    def test_evidence_blanks_dropped(self):
        facts = EmailFacts.model_validate(
            {"classification": {"kind": "other", "evidence": ["  quote ", "", 3, None]}}
        )
        assert facts.classification.evidence == ["quote"]

    def test_null_string_status_type(self):
        facts = EmailFacts.model_validate({"classification": {"kind": "other"}, "status_change": {"type": "null"}})
        assert facts.status_change.type is None

    def test_extra_keys_ignored(self):
        assert contract_errors(EmailFacts, {"classification": {"kind": "other"}, "surprise": 1}) == []

    def test_plan_risk_and_confidence(self):
        plan = {"decision": "apply", "confidence": 1.5, "plan": [{"step_id": "s", "action": "a", "risk": "extreme"}]}
        paths = {e["path"] for e in contract_errors(DecisionPlan, plan)}
        assert paths == {"confidence", "plan.0.risk"}

    def test_non_dict_payload(self):
        assert contract_errors(EmailFacts, ["nope"]) == [{"path": "", "message": "payload must be an object"}]


# =============================================================================
# SIGNAL EXTRACTION
# =============================================================================


EXTRACTION = {
    "company": {"name": "Globex", "website": "https://globex.io"},
    "recruiter": {
        "name": "Jane Doe",
        "title": "Senior Technical Recruiter",
        "linkedin_url": "https://linkedin.com/in/jane",
    },
    "job": {"title": "Staff Engineer", "location": "Remote"},
    "action_links": [
        {"url": "https://calendly.com/jane/30min", "action_label": "Schedule interview", "priority": 1},
        {"url": "https://calendly.com/jane/30min/?utm_source=email", "action_label": "Book", "priority": 2},
        {"url": "https://globex.io/unsub", "action_label": "Unsubscribe", "priority": 3},
        {"url": "", "action_label": "Broken"},
    ],
    "suggested_actions": ["schedule_interview", "dance"],
    "key_insights": "Fast process",
    "confidence_score": 0.9,
}


class TestExtractionHelpers:
    """Tests for link normalization and body selection."""

    def test_canonical_url_key(self):
        assert canonical_url_key("https://acme.com/jobs/1/?utm_source=x#top") == "https://acme.com/jobs/1"
        assert canonical_url_key("https://acme.com/jobs?id=2&gclid=z") == "https://acme.com/jobs?id=2"
        assert (
            canonical_url_key("https://www.google.com/url?q=https://acme.com/jobs/1?utm_source%3Dx&sa=D")
            == "https://acme.com/jobs/1"
        )
        assert canonical_url_key("not a url") is None

    def test_normalize_and_filter_links(self):
        links = filter_action_links(normalize_action_links(EXTRACTION["action_links"] + ["junk"]))
        assert links == [
            {"url": "https://calendly.com/jane/30min", "action_label": "Schedule interview", "priority": 1}
        ]

    def test_calendar_links_need_schedule_label(self):
        links = normalize_action_links(
            [
                {"url": "https://calendar.google.com/event?x=1", "action_label": "View event"},
                {"url": "https://calendar.google.com/event?x=2", "action_label": "Join meeting"},
            ]
        )
        assert [link["action_label"] for link in filter_action_links(links)] == ["Join meeting"]

    def test_email_body_prefers_long_preview(self, email_factory):
        short = email_factory(body_preview="short", body_html="<p>From   html</p>")
        assert email_body(short) == "From html"
        long = email_factory(body_preview="word " * 60)
        assert email_body(long).startswith("word word")


class TestSignalExtractionService:
    """Tests for SignalExtractionService with a stubbed runner."""

    def test_extracts_and_saves_directory(self, test_db, email_factory, runner_factory):
        email = email_factory(email_type="interview_invite", from_email="jane@globex.io", from_name=None)
        factory = runner_factory(_ok(EXTRACTION))

        result = SignalExtractionService(test_db, email, runner_factory=factory).extract()

        assert result["success"] is True
        assert result["provider"] == "anthropic"
        assert factory.calls[0]["operation"] == "signal_extraction"
        assert factory.calls[0]["loggable"] is email
        assert email.extraction_status == "completed"
        assert email.extraction_confidence == 0.9
        assert email.signal_company_name == "Globex"
        assert email.signal_job_title == "Staff Engineer"
        assert email.signal_suggested_actions == ["schedule_interview"]
        assert len(email.signal_action_links) == 1
        assert email.extracted_data["raw_extraction"] == EXTRACTION

        company = test_db.execute(select(Company).where(Company.name == "Globex")).scalar_one()
        sender = test_db.execute(select(EmailSender).where(EmailSender.email == "jane@globex.io")).scalar_one()
        assert company.website == "https://globex.io"
        assert sender.name == "Jane Doe"
        assert sender.sender_type == "recruiter"
        assert sender.auto_detected_company_id == company.id
        assert email.email_sender_id == sender.id

    def test_reuses_existing_company(self, test_db, email_factory, runner_factory):
        existing = Company(name="globex")
        test_db.add(existing)
        test_db.commit()
        email = email_factory(email_type="interview_invite")

        SignalExtractionService(test_db, email, runner_factory=runner_factory(_ok(EXTRACTION))).extract()

        assert test_db.execute(select(Company).where(Company.company_key == "globex")).scalars().all() == [existing]
        assert existing.website == "https://globex.io"

    def test_directory_failure_keeps_extraction(self, test_db, email_factory, runner_factory):
        test_db.add(EmailSender(email="jane@globex.io", domain="globex.io"))
        test_db.commit()
        email = email_factory(email_type="interview_invite", from_email="jane@globex.io")

        def _racing_insert(session, address, name=None):
            session.add(EmailSender(email=address, domain="globex.io"))
            session.flush()

        with patch.object(EmailSender, "find_or_create_from_email", side_effect=_racing_insert):
            result = SignalExtractionService(test_db, email, runner_factory=runner_factory(_ok(EXTRACTION))).extract()
        test_db.commit()

        assert result["success"] is True
        assert email.extraction_status == "completed"
        assert email.signal_company_name == "Globex"
        assert test_db.execute(select(Company).where(Company.name == "Globex")).scalar_one_or_none() is None

    def test_skips_unmatched_other(self, test_db, email_factory, runner_factory):
        email = email_factory(email_type="other")
        factory = runner_factory(_ok(EXTRACTION))

        result = SignalExtractionService(test_db, email, runner_factory=factory).extract()

        assert result == {"success": False, "skipped": True, "reason": "Email type not suitable for extraction"}
        assert email.extraction_status == "skipped"
        assert factory.calls == []

    def test_skips_ignored(self, test_db, email_factory, runner_factory):
        email = email_factory(status="ignored", email_type="rejection")
        result = SignalExtractionService(test_db, email, runner_factory=runner_factory(FAILED)).extract()
        assert result["reason"] == "Email type not suitable for extraction"

    def test_skips_without_content(self, test_db, email_factory, runner_factory):
        email = email_factory(subject=None, snippet=None, body_preview=None, email_type="rejection")
        result = SignalExtractionService(test_db, email, runner_factory=runner_factory(FAILED)).extract()
        assert result["reason"] == "No email content available"

    def test_all_providers_failed(self, test_db, email_factory, runner_factory):
        email = email_factory(email_type="scheduling")

        result = SignalExtractionService(test_db, email, runner_factory=runner_factory(FAILED)).extract()

        assert result == {"success": False, "error": "All providers failed"}
        assert email.extraction_status == "failed"
        assert email.meta["extraction_error"] == "All providers failed"

    def test_accept_requires_confidence(self):
        parsed, log_data, accepted = SignalExtractionService._accept(
            {"content": '{"confidence_score": 0.3, "company": {"name": "Globex"}}'}
        )
        assert not accepted
        assert log_data == {"confidence": 0.3, "company_name": "Globex"}

        _, _, accepted = SignalExtractionService._accept({"content": "garbage"})
        assert not accepted

        _, _, accepted = SignalExtractionService._accept({"content": '{"confidence_score": 0.5}'})
        assert accepted


# =============================================================================
# PROCESSORS
# =============================================================================


class TestBaseProcessorSkips:
    """Shared skip reasons."""

    def test_unmatched(self, test_db, email_factory, runner_factory):
        email = email_factory(email_type="scheduling")
        result = InterviewRoundProcessor(test_db, email, runner_factory=runner_factory(FAILED)).process()
        assert result["reason"] == "Email not matched to application"

    def test_wrong_type(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="offer", interview_application_id=application.id)
        result = InterviewRoundProcessor(test_db, email, runner_factory=runner_factory(FAILED)).process()
        assert result["reason"] == "Email type not processable"

    def test_no_content(self, test_db, email_factory, application, runner_factory):
        email = email_factory(
            email_type="scheduling", interview_application_id=application.id, snippet=None, body_preview=None
        )
        result = InterviewRoundProcessor(test_db, email, runner_factory=runner_factory(FAILED)).process()
        assert result["reason"] == "No email content"

    def test_extraction_failure(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="scheduling", interview_application_id=application.id)
        result = InterviewRoundProcessor(test_db, email, runner_factory=runner_factory(FAILED)).process()
        assert result == {"success": False, "error": "Failed to extract interview extraction from email"}

    def test_accept_allows_missing_confidence(self, test_db, email_factory):
        processor = InterviewRoundProcessor(test_db, email_factory())
        assert processor._accept({"content": "{}"})[2] is True
        assert processor._accept({"content": '{"confidence_score": 0.1}'})[2] is False
        assert processor._accept({"content": "nope"}) == (None, {}, False)


class TestInterviewRoundProcessor:
    """Scheduling emails create or update rounds."""

    def test_helpers(self):
        assert parse_datetime("2026-02-03T10:00:00-05:00").hour == 15
        assert parse_datetime("2026-02-03 15:00").tzinfo is not None
        assert parse_datetime("whenever") is None
        assert map_stage("Technical") == "technical"
        assert map_stage("onsite") == "other"

    def test_creates_round(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="scheduling", interview_application_id=application.id)
        data = {
            "interview": {"scheduled_at": "2026-02-10T18:00:00Z", "stage": "technical", "duration_minutes": 60},
            "interviewer": {"name": "Dana", "role": "Staff Engineer"},
            "logistics": {"video_link": "https://zoom.us/j/1", "meeting_id": "123"},
            "confirmation_source": "calendly",
        }
        factory = runner_factory(_ok(data))

        result = InterviewRoundProcessor(test_db, email, runner_factory=factory).process()

        round_ = result["round"]
        assert result["action"] == "created"
        assert result["llm_api_log_id"] == "log-1"
        assert factory.calls[0]["operation"] == "interview_extraction"
        assert round_.stage == "technical"
        assert round_.position == 1
        assert round_.source_email_id == email.id
        assert round_.video_link == "https://zoom.us/j/1"
        assert "Meeting ID: 123" in round_.notes

    def test_updates_round_within_an_hour(self, test_db, email_factory, application, pending_round, runner_factory):
        email = email_factory(email_type="interview_reminder", interview_application_id=application.id)
        data = {
            "interview": {"scheduled_at": "2026-02-03T15:30:00Z"},
            "interviewer": {"name": "Dana"},
            "logistics": {"video_link": "https://meet.google.com/abc"},
        }

        result = InterviewRoundProcessor(test_db, email, runner_factory=runner_factory(_ok(data))).process()

        assert result["action"] == "updated"
        assert result["round"].id == pending_round.id
        assert pending_round.interviewer_name == "Dana"
        assert pending_round.source_email_id == email.id
        assert len(application.rounds) == 1

    def test_already_processed(self, test_db, email_factory, application, pending_round, runner_factory):
        email = email_factory(email_type="scheduling", interview_application_id=application.id)
        pending_round.source_email_id = email.id
        test_db.commit()
        factory = runner_factory(FAILED)

        result = InterviewRoundProcessor(test_db, email, runner_factory=factory).process()

        assert result["reason"] == "Already processed"
        assert factory.calls == []


class TestRoundFeedbackProcessor:
    """Round feedback emails record results."""

    FEEDBACK = {
        "result": "passed",
        "round_context": {"stage_mentioned": "phone screen"},
        "feedback": {
            "has_detailed_feedback": True,
            "summary": "Strong start",
            "strengths": ["Clear communication"],
            "improvements": ["System design depth"],
        },
        "next_steps": {"has_next_round": True, "next_round_type": "technical"},
    }

    def test_helpers(self):
        assert infer_stage_from_text("Phone screen") == "screening"
        assert infer_stage_from_text("system design") == "technical"
        assert infer_stage_from_text(None) is None
        assert recommended_action({"result": "failed"}).startswith("Review feedback")
        assert recommended_action({"result": "pending"}) is None

    def test_updates_matching_round(self, test_db, email_factory, application, pending_round, runner_factory):
        email = email_factory(email_type="round_feedback", interview_application_id=application.id)
        factory = runner_factory(_ok(self.FEEDBACK))

        result = RoundFeedbackProcessor(test_db, email, runner_factory=factory).process()

        assert result["action"] == "updated"
        assert pending_round.result == "passed"
        assert pending_round.completed_at is not None
        feedback = pending_round.interview_feedback
        assert feedback.went_well == "Clear communication"
        assert feedback.recommended_action == "Prepare for technical"
        assert '"stage": "screening"' in factory.calls[0]["prompt"]

    def test_prefers_interviewer_match(self, test_db, email_factory, application, pending_round, runner_factory):
        other = InterviewRound(
            interview_application_id=application.id, position=2, stage="technical", interviewer_name="Dana Smith"
        )
        test_db.add(other)
        test_db.commit()
        email = email_factory(email_type="round_feedback", interview_application_id=application.id)
        data = {"result": "failed", "round_context": {"interviewer_mentioned": "dana", "stage_mentioned": "screen"}}

        RoundFeedbackProcessor(test_db, email, runner_factory=runner_factory(_ok(data))).process()

        assert other.result == "failed"
        assert pending_round.result == "pending"

    def test_creates_round_without_pending(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="round_feedback", interview_application_id=application.id)
        data = {"result": "waitlisted", "round_context": {"stage_mentioned": "culture interview"}}

        result = RoundFeedbackProcessor(test_db, email, runner_factory=runner_factory(_ok(data))).process()

        assert result["action"] == "created"
        assert result["round"].stage == "culture_fit"
        assert result["round"].result == "waitlisted"
        assert result["round"].interview_feedback is None


class TestApplicationStatusProcessor:
    """Rejection and offer emails move the application."""

    def test_rejection(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="rejection", interview_application_id=application.id)
        data = {
            "status_change": {"type": "rejection"},
            "rejection_details": {"reason": "Went with another candidate", "door_open": True},
            "feedback": {"feedback_text": "Great conversation"},
        }
        factory = runner_factory(_ok(data))

        result = ApplicationStatusProcessor(test_db, email, runner_factory=factory).process()

        assert result["action"] == "rejection"
        assert application.status == "rejected"
        assert application.pipeline_stage == "closed"
        assert "CURRENT APPLICATION STATUS: active" in factory.calls[0]["prompt"]
        feedback = application.company_feedback
        assert feedback.feedback_type == "rejection"
        assert feedback.rejection_reason == "Went with another candidate"
        assert feedback.next_steps == "Keep in touch for future opportunities"
        events = [t.event for t in test_db.execute(select(StateTransition)).scalars()]
        assert events == ["reject", "move_to_closed"]

    def test_offer(self, test_db, email_factory, application, runner_factory):
        application.pipeline_stage = "interviewing"
        test_db.commit()
        email = email_factory(email_type="offer", interview_application_id=application.id)
        data = {
            "status_change": {"type": "offer"},
            "offer_details": {"role_title": "Senior Engineer", "response_deadline": "Feb 20"},
        }

        result = ApplicationStatusProcessor(test_db, email, runner_factory=runner_factory(_ok(data))).process()

        assert result["action"] == "offer"
        assert application.pipeline_stage == "offer"
        assert application.status == "active"
        assert application.company_feedback.feedback_text == "Offer received!\nRole: Senior Engineer"
        assert application.company_feedback.next_steps == "Respond by: Feb 20"

    def test_withdrawal_archives(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="rejection", interview_application_id=application.id)
        data = {"status_change": {"type": "withdrawal"}}

        ApplicationStatusProcessor(test_db, email, runner_factory=runner_factory(_ok(data))).process()

        assert application.status == "archived"
        assert application.company_feedback.feedback_text == "Position withdrawn"

    def test_no_change(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="offer", interview_application_id=application.id)
        data = {"status_change": {"type": "no_change"}}

        result = ApplicationStatusProcessor(test_db, email, runner_factory=runner_factory(_ok(data))).process()

        assert result["reason"] == "No status change detected"
        assert application.status == "active"


class TestCompanyFeedbackProcessor:
    """Company feedback from already extracted data."""

    def test_key_insights_feedback(self, test_db, email_factory, application):
        email = email_factory(
            email_type="follow_up",
            interview_application_id=application.id,
            extracted_data={"key_insights": "Team values ownership"},
        )

        result = CompanyFeedbackProcessor(test_db, email).process()
        again = CompanyFeedbackProcessor(test_db, email).process()

        assert result["action"] == "created"
        assert result["feedback"].feedback_type == "general"
        assert result["feedback"].feedback_text == "Key Insights:\nTeam values ownership"
        assert again["reason"] == "Feedback already exists for this email"

    def test_no_feedback_content(self, test_db, email_factory, application):
        email = email_factory(interview_application_id=application.id)
        result = CompanyFeedbackProcessor(test_db, email).process()
        assert result["reason"] == "No feedback content found in email"

    def test_rejection_feedback_once_per_application(self, test_db, email_factory, application):
        test_db.add(CompanyFeedback(interview_application_id=application.id, feedback_type="rejection"))
        test_db.commit()
        email = email_factory(
            email_type="rejection",
            interview_application_id=application.id,
            extracted_data={"feedback": {"feedback_text": "Not this time"}},
        )

        result = CompanyFeedbackProcessor(test_db, email).process()

        assert result == {"success": False, "error": "Failed to create feedback record"}


# =============================================================================
# FACTS
# =============================================================================


class TestFacts:
    """Tests for canonical events and email facts."""

    def test_canonicalize_text(self):
        text = "Hi Sam,\r\n\r\nSee you Tuesday.\r\n> old quote\r\nOn Mon, Riley wrote:\r\nolder"
        assert canonicalize_text(text) == "Hi Sam, See you Tuesday."
        assert canonicalize_text(None) == ""

    def test_extract_links_dedupes(self):
        links = extract_links("Book https://calendly.com/a or https://calendly.com/a and (https://acme.com/j)")
        assert [link["url"] for link in links] == ["https://calendly.com/a", "https://acme.com/j"]

    def test_canonical_event_from_html(self, email_factory):
        email = email_factory(body_preview=None, body_html="<p>Join https://zoom.us/j/9</p>")
        event = canonical_email_event(email)

        assert event["event_type"] == "email"
        assert event["synced_email_id"] == email.id
        assert event["from"] == {"email": "recruiter@acme.com", "name": "Riley Recruiter"}
        assert event["body"]["source"] == "body_html"
        assert event["body"]["normalization"]["html_stripped"] is True
        assert event["links"] == [{"url": "https://zoom.us/j/9", "label_hint": None}]

    def test_persisted_facts(self, email_factory):
        ok = email_factory(extracted_data={FACTS_KEY: VALID_FACTS, FACTS_META_KEY: {"status": "ok"}})
        failed = email_factory(extracted_data={FACTS_KEY: VALID_FACTS, FACTS_META_KEY: {"status": "failed"}})
        invalid = email_factory(extracted_data={FACTS_KEY: {"nope": 1}, FACTS_META_KEY: {"status": "ok"}})

        assert persisted_facts(ok) == VALID_FACTS
        assert persisted_facts(failed) is None
        assert persisted_facts(invalid) is None

    def test_extractor_persists_facts(self, test_db, email_factory, application, runner_factory):
        email = email_factory(email_type="scheduling", interview_application_id=application.id)
        base = {"event": canonical_email_event(email), "application": {"id": application.id}}
        factory = runner_factory(_ok(VALID_FACTS, latency_ms=40))

        result = EmailFactsExtractor(test_db, email, base, runner_factory=factory).call()

        assert result == {"success": True, "facts": VALID_FACTS, "llm_api_log_id": "log-1"}
        assert factory.calls[0]["operation"] == "email_facts_extraction"
        assert f'"id": "{application.id}"' in factory.calls[0]["prompt"]
        meta = email.extracted_data[FACTS_META_KEY]
        assert meta["status"] == "ok"
        assert meta["provider"] == "anthropic"
        assert persisted_facts(email) == VALID_FACTS

    def test_extractor_failure_is_recorded(self, test_db, email_factory, runner_factory):
        email = email_factory()
        base = {"event": canonical_email_event(email), "application": None}

        result = EmailFactsExtractor(test_db, email, base, runner_factory=runner_factory(FAILED)).call()

        assert result["success"] is False
        assert email.extracted_data[FACTS_KEY] is None
        assert email.extracted_data[FACTS_META_KEY]["status"] == "failed"

    def test_extractor_accepts_only_valid_contract(self):
        _, log_data, accepted = EmailFactsExtractor._accept({"content": '{"classification": {"kind": "nope"}}'})
        assert not accepted
        assert log_data["schema_valid"] is False

        _, log_data, accepted = EmailFactsExtractor._accept(
            {"content": '{"classification": {"kind": "other"}, "extraction": {"confidence": 0.7}}'}
        )
        assert accepted
        assert log_data["confidence"] == 0.7


# =============================================================================
# RECORDER
# =============================================================================


class TestEmailPipelineRecorder:
    """Tests for run and event recording."""

    def test_measure_records_success(self, test_db, email_factory):
        email = email_factory()
        recorder = EmailPipelineRecorder.start_for(test_db, email, trigger="manual", mode="reprocess")

        with recorder.measure("email_classification", input_payload={"subject": email.subject}) as step:
            step.result = {"email_type": "rejection"}
            step.metadata["rule"] = "regex"
        recorder.finish_success({"email_type": "rejection"})

        run = test_db.execute(select(EmailPipelineRun)).scalar_one()
        event = test_db.execute(select(EmailPipelineEvent)).scalar_one()
        assert run.status == "success"
        assert run.duration_ms is not None
        assert run.meta == {"email_type": "rejection"}
        assert event.step_order == 1
        assert event.status == "success"
        assert event.output_payload == {"email_type": "rejection"}
        assert event.meta == {"rule": "regex"}

    def test_measure_records_failure_and_reraises(self, test_db, email_factory):
        recorder = EmailPipelineRecorder.start_for(test_db, email_factory(), trigger="job", mode="extraction")

        with pytest.raises(ValueError):
            with recorder.measure("signal_extraction"):
                raise ValueError("bad data")
        recorder.finish_failed(ValueError("bad data"))

        event = test_db.execute(select(EmailPipelineEvent)).scalar_one()
        assert event.status == "failed"
        assert event.error_type == "ValueError"
        assert event.output_payload == {"error": "bad data"}
        assert recorder.run.status == "failed"
        assert recorder.run.error_message == "bad data"

    def test_point_events_increment_order(self, test_db, email_factory):
        recorder = EmailPipelineRecorder.start_for(test_db, email_factory(), trigger="sync", mode="processing")
        first = recorder.event("decision_execution", "skipped")
        second = recorder.event("decision_execution", "success", output_payload={"ok": True})

        assert (first.step_order, second.step_order) == (1, 2)
        assert first.duration_ms == 0

    def test_for_run(self, test_db, email_factory):
        assert EmailPipelineRecorder.for_run(test_db, None) is None
        recorder = EmailPipelineRecorder.start_for(test_db, email_factory(), trigger="sync", mode="processing")
        recorder.event("x", "success")
        resumed = EmailPipelineRecorder.for_run(test_db, recorder.run)
        assert resumed.event("y", "success").step_order == 2

    def test_failed_event_write_keeps_session_usable(self, test_db, email_factory):
        recorder = EmailPipelineRecorder.start_for(test_db, email_factory(), trigger="job", mode="extraction")

        assert recorder.event("timing", "success", output_payload={"when": datetime.now(timezone.utc)}) is None

        test_db.add(Company(name="Initech"))
        test_db.flush()
        recorder.finish_success()
        test_db.commit()

        run = test_db.execute(select(EmailPipelineRun)).scalar_one()
        assert run.status == "success"
        assert run.events == []
        assert test_db.execute(select(Company).where(Company.name == "Initech")).scalar_one()

    def test_unserializable_measure_output_keeps_started_event(self, test_db, email_factory):
        recorder = EmailPipelineRecorder.start_for(test_db, email_factory(), trigger="job", mode="extraction")

        with recorder.measure("email_classification") as step:
            step.result = {"at": datetime.now(timezone.utc)}
        recorder.event("company_detection", "success")
        test_db.commit()

        events = test_db.execute(select(EmailPipelineEvent).order_by(EmailPipelineEvent.step_order)).scalars().all()
        assert [(e.event_type, e.status) for e in events] == [
            ("email_classification", "started"),
            ("company_detection", "success"),
        ]

    def test_resolve_output(self):
        assert resolve_output({"a": 1}, None) == {"a": 1}
        assert resolve_output("text", None) == {"result": "text"}
        assert resolve_output({"a": 1}, {"b": 2}) == {"b": 2}
        assert resolve_output({"a": 1}, lambda result: {"keys": list(result)}) == {"keys": ["a"]}
        assert resolve_output(None, lambda result: None) == {"result": None}


# =============================================================================
# JOBS
# =============================================================================


class StubStatusProcessor:
    def __init__(self, session, synced_email):
        self.synced_email = synced_email

    def process(self):
        return {"success": True, "action": "rejection"}


class TestSignalJobs:
    """Tests for the extraction background job."""

    def test_matched_email_runs_processors(self, test_db, email_factory, application):
        email = email_factory(
            email_type="rejection",
            interview_application_id=application.id,
            extracted_data={"key_insights": "Keep in touch"},
        )
        with patch("src.signals.jobs.SignalExtractionService") as service_cls, patch.dict(
            jobs.PROCESSORS_BY_TYPE, {"rejection": StubStatusProcessor}
        ):
            service_cls.return_value.extract.return_value = {"success": True, "data": {}, "provider": "openai"}
            summary = jobs.process_signal_extraction(test_db, email.id)

        assert summary["success"] is True
        assert summary["processors"]["StubStatusProcessor"]["action"] == "rejection"
        assert summary["processors"]["CompanyFeedbackProcessor"]["action"] == "created"
        assert summary["decision_executed"] is False

        run = test_db.execute(select(EmailPipelineRun)).scalar_one()
        assert run.status == "success"
        assert run.mode == "extraction"
        assert [e.event_type for e in run.events] == [
            "signal_extraction",
            "processor_StubStatusProcessor",
            "processor_CompanyFeedbackProcessor",
        ]

    def test_skipped_extraction_finishes_run(self, test_db, email_factory):
        email = email_factory(email_type="other")
        summary = jobs.process_signal_extraction(test_db, email.id)

        assert summary["skipped"] is True
        assert summary["reason"] == "Email type not suitable for extraction"
        assert test_db.execute(select(EmailPipelineRun)).scalar_one().status == "success"

    def test_exception_records_failed_run(self, test_db, email_factory):
        email = email_factory(email_type="scheduling")
        with patch("src.signals.jobs.SignalExtractionService") as service_cls:
            service_cls.return_value.extract.side_effect = RuntimeError("db exploded")
            result = jobs.process_signal_extraction(test_db, email.id)

        assert result == {"success": False, "error": "db exploded"}
        run = test_db.execute(select(EmailPipelineRun)).scalar_one()
        assert run.status == "failed"
        assert run.error_type == "RuntimeError"
        assert email.extraction_status == "failed"

    def test_missing_and_completed(self, test_db, email_factory):
        assert jobs.process_signal_extraction(test_db, "missing") == {"success": False, "error": "not_found"}
        email = email_factory(extraction_status="completed")
        assert jobs.process_signal_extraction(test_db, email.id)["skipped"] is True

    def test_process_pending_extractions(self, test_db, email_factory):
        matched = email_factory()
        unmatched = email_factory(email_type="recruiter_outreach", status="pending")
        email_factory(status="ignored")
        email_factory(status="auto_ignored")
        email_factory(extraction_status="completed")

        with patch("src.signals.jobs.process_signal_extraction") as process:
            count = jobs.process_pending_extractions(test_db)

        assert count == 2
        assert [c.args for c in process.call_args_list] == [(test_db, matched.id), (test_db, unmatched.id)]

    def test_unmatched_outreach_is_extracted(self, test_db, email_factory):
        email = email_factory(email_type="recruiter_outreach", status="pending")
        with patch("src.signals.jobs.SignalExtractionService") as service_cls:
            service_cls.return_value.extract.return_value = {"success": True, "data": {}, "provider": "openai"}
            assert jobs.process_pending_extractions(test_db) == 1

        service_cls.assert_called_once_with(test_db, email)
        assert test_db.execute(select(EmailPipelineRun)).scalar_one().status == "success"
