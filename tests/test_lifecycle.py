"""Tests for the status machines and transition log."""
import pytest
from sqlalchemy import select

from src.lifecycle import (
    APPLICATION_STAGE,
    APPLICATION_STATUS,
    OPPORTUNITY_STATUS,
    SCRAPING_STATUS,
    Event,
    InvalidTransitionError,
    StateMachine,
    UnknownEventError,
    application_machine_for,
)
from src.persistence.models import (
    InterviewApplication,
    JobListing,
    Opportunity,
    ScrapingAttempt,
    StateTransition,
)


def _attempt(test_db, status="pending"):
    listing = JobListing(url="https://jobs.lever.co/acme/abc")
    test_db.add(listing)
    test_db.flush()
    attempt = ScrapingAttempt(job_listing_id=listing.id, url=listing.url, domain="jobs.lever.co", status=status)
    test_db.add(attempt)
    test_db.flush()
    return attempt


class TestStateMachine:
    """Tests for the generic StateMachine."""

    def test_rejects_unknown_initial_state(self):
        with pytest.raises(ValueError):
            StateMachine("status", ["a", "b"], [], initial="c")

    def test_rejects_event_with_unknown_target(self):
        with pytest.raises(ValueError):
            StateMachine("status", ["a"], [Event("go", ["a"], "z")], initial="a")

    def test_any_state_excludes_target(self):
        event = Event("close", "*", "closed")
        assert event.allowed_from("open")
        assert not event.allowed_from("closed")

    def test_fire_unknown_event_raises(self, test_db, user):
        opportunity = Opportunity(user_id=user.id, status="new")
        with pytest.raises(UnknownEventError):
            OPPORTUNITY_STATUS.fire(opportunity, "teleport")

    def test_fire_without_session_writes_no_transition(self, test_db, user):
        opportunity = Opportunity(user_id=user.id, status="new")
        test_db.add(opportunity)
        test_db.flush()

        OPPORTUNITY_STATUS.fire(opportunity, "start_review")
        test_db.flush()

        assert opportunity.status == "reviewing"
        assert test_db.execute(select(StateTransition)).first() is None

    def test_available_events(self, user):
        opportunity = Opportunity(user_id=user.id, status="archived")
        assert OPPORTUNITY_STATUS.available_events(opportunity) == ["reconsider"]

    def test_missing_state_uses_initial(self, user):
        opportunity = Opportunity(user_id=user.id)
        assert OPPORTUNITY_STATUS.can_fire(opportunity, "start_review")


class TestOpportunityStatus:
    """Opportunity machine: new -> reviewing -> applied / archived."""

    def test_archive_sets_reason_and_timestamp(self, test_db, user):
        opportunity = Opportunity(user_id=user.id, status="reviewing")
        test_db.add(opportunity)
        test_db.flush()

        OPPORTUNITY_STATUS.fire(opportunity, "archive_as_ignored", session=test_db, reason="not a fit")

        assert opportunity.status == "archived"
        assert opportunity.archived_reason == "ignored"
        assert opportunity.archived_at is not None

    def test_reconsider_clears_archive(self, test_db, user):
        opportunity = Opportunity(user_id=user.id, status="new")
        test_db.add(opportunity)
        test_db.flush()
        OPPORTUNITY_STATUS.fire(opportunity, "archive_as_ignored")

        OPPORTUNITY_STATUS.fire(opportunity, "reconsider")

        assert opportunity.status == "new"
        assert opportunity.archived_reason is None
        assert opportunity.archived_at is None

    def test_applied_is_terminal(self, user):
        opportunity = Opportunity(user_id=user.id, status="applied")
        with pytest.raises(InvalidTransitionError) as exc_info:
            OPPORTUNITY_STATUS.fire(opportunity, "start_review")
        assert exc_info.value.from_state == "applied"


class TestApplicationMachines:
    """Application status and pipeline stage machines."""

    def test_reject_logs_transition(self, test_db, application):
        APPLICATION_STATUS.fire(application, "reject", session=test_db, reason="Rejection email")
        test_db.flush()

        transition = test_db.execute(select(StateTransition)).scalar_one()
        assert application.status == "rejected"
        assert transition.record_type == "InterviewApplication"
        assert transition.record_id == application.id
        assert transition.column == "status"
        assert (transition.from_state, transition.to_state) == ("active", "rejected")
        assert transition.reason == "Rejection email"

    def test_reject_requires_active(self, application):
        application.status = "archived"
        assert not APPLICATION_STATUS.can_fire(application, "reject")
        assert APPLICATION_STATUS.can_fire(application, "reactivate")

    def test_stage_progression(self, application):
        APPLICATION_STAGE.fire(application, "move_to_screening")
        APPLICATION_STAGE.fire(application, "move_to_interviewing")
        APPLICATION_STAGE.fire(application, "move_to_offer")
        assert application.pipeline_stage == "offer"

    def test_offer_requires_screening_or_interviewing(self, application):
        assert not APPLICATION_STAGE.can_fire(application, "move_to_offer")

    def test_close_from_any_stage_but_closed(self, application):
        APPLICATION_STAGE.fire(application, "move_to_closed")
        assert application.pipeline_stage == "closed"
        assert not APPLICATION_STAGE.can_fire(application, "move_to_closed")

    def test_machine_lookup_by_event(self):
        assert application_machine_for("reject") is APPLICATION_STATUS
        assert application_machine_for("move_to_offer") is APPLICATION_STAGE


class TestScrapingStatus:
    """Scraping attempt machine including retry and dead letter."""

    def test_happy_path(self, test_db):
        attempt = _attempt(test_db)
        for event in ("start_fetch", "start_extract", "mark_completed"):
            SCRAPING_STATUS.fire(attempt, event, session=test_db)
        test_db.flush()

        assert attempt.status == "completed"
        events = [t.event for t in test_db.execute(select(StateTransition)).scalars()]
        assert events == ["start_fetch", "start_extract", "mark_completed"]

    def test_retry_cycle(self, test_db):
        attempt = _attempt(test_db, status="fetching")
        SCRAPING_STATUS.fire(attempt, "mark_failed")
        SCRAPING_STATUS.fire(attempt, "retry_attempt")
        SCRAPING_STATUS.fire(attempt, "start_fetch")
        assert attempt.status == "fetching"

    def test_pending_can_fail(self, test_db):
        attempt = _attempt(test_db)
        assert SCRAPING_STATUS.can_fire(attempt, "mark_failed")

    def test_dead_letter_only_from_failed(self, test_db):
        attempt = _attempt(test_db, status="retrying")
        assert not SCRAPING_STATUS.can_fire(attempt, "send_to_dlq")
        attempt.status = "failed"
        SCRAPING_STATUS.fire(attempt, "send_to_dlq")
        assert attempt.status == "dead_letter"
        assert attempt.needs_review

    def test_completed_cannot_fail(self, test_db):
        attempt = _attempt(test_db, status="completed")
        with pytest.raises(InvalidTransitionError):
            SCRAPING_STATUS.fire(attempt, "mark_failed")

    def test_manual_from_dead_letter(self, test_db):
        attempt = _attempt(test_db, status="dead_letter")
        SCRAPING_STATUS.fire(attempt, "mark_manual")
        assert attempt.status == "manual"


def test_states_mirror_model_constants():
    assert OPPORTUNITY_STATUS.states == Opportunity.STATUSES
    assert APPLICATION_STATUS.states == InterviewApplication.STATUSES
    assert APPLICATION_STAGE.states == InterviewApplication.PIPELINE_STAGES
    assert SCRAPING_STATUS.states == ScrapingAttempt.STATUSES
