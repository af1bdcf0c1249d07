"""Status machines for opportunities, applications and scraping attempts."""
from src.lifecycle.state_machine import ANY_STATE, Event, StateMachine
from src.persistence.models import InterviewApplication, Opportunity, ScrapingAttempt, utcnow


def _mark_ignored(opportunity: Opportunity) -> None:
    opportunity.archived_reason = "ignored"
    opportunity.archived_at = utcnow()


def _clear_archive(opportunity: Opportunity) -> None:
    opportunity.archived_reason = None
    opportunity.archived_at = None


OPPORTUNITY_STATUS = StateMachine(
    column="status",
    states=Opportunity.STATUSES,
    initial="new",
    events=[
        Event("start_review", ["new"], "reviewing"),
        Event("mark_applied", ["new", "reviewing"], "applied"),
        Event("archive_as_ignored", ["new", "reviewing"], "archived", after=_mark_ignored),
        Event("reconsider", ["archived"], "new", after=_clear_archive),
    ],
)

APPLICATION_STATUS = StateMachine(
    column="status",
    states=InterviewApplication.STATUSES,
    initial="active",
    events=[
        Event("archive", ["active"], "archived"),
        Event("reject", ["active"], "rejected"),
        Event("accept", ["active"], "accepted"),
        Event("reactivate", ["archived", "rejected", "accepted"], "active"),
    ],
)

APPLICATION_STAGE = StateMachine(
    column="pipeline_stage",
    states=InterviewApplication.PIPELINE_STAGES,
    initial="applied",
    events=[
        Event("move_to_screening", ["applied", "interviewing"], "screening"),
        Event("move_to_interviewing", ["applied", "screening", "offer"], "interviewing"),
        Event("move_to_offer", ["screening", "interviewing"], "offer"),
        Event("move_to_closed", ANY_STATE, "closed"),
        Event("move_to_applied", ["screening", "interviewing"], "applied"),
    ],
)

SCRAPING_STATUS = StateMachine(
    column="status",
    states=ScrapingAttempt.STATUSES,
    initial="pending",
    events=[
        Event("start_fetch", ["pending", "retrying"], "fetching"),
        Event("start_extract", ["fetching"], "extracting"),
        Event("mark_completed", ["extracting"], "completed"),
        Event("mark_failed", ["pending", "fetching", "extracting", "retrying"], "failed"),
        Event("retry_attempt", ["failed"], "retrying"),
        Event("send_to_dlq", ["failed"], "dead_letter"),
        Event("mark_manual", ["dead_letter", "failed"], "manual"),
    ],
)


def application_machine_for(event: str) -> StateMachine:
    """Pick the status or stage machine that defines an application event."""
    if event in APPLICATION_STATUS.events:
        return APPLICATION_STATUS
    return APPLICATION_STAGE
