"""Pydantic contracts for email facts, decision inputs and decision plans."""
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

FACT_KINDS = (
    "scheduling",
    "interview_invite",
    "round_feedback",
    "status_update",
    "application_confirmation",
    "recruiter_outreach",
    "interview_assessment",
    "other",
    "unknown",
)
STATUS_CHANGE_TYPES = ("rejection", "offer", "withdrawal", "ghosted", "on_hold", "no_change")


class Contract(BaseModel):
    """Tolerates extra keys from LLM output."""

    model_config = ConfigDict(extra="ignore")


class WithEvidence(Contract):
    """Contract carrying an evidence list of quoted strings."""

    @field_validator("evidence", mode="before", check_fields=False)
    @classmethod
    def filter_empty_evidence(cls, v):
        """Drop blanks and non-strings from evidence lists."""
        if isinstance(v, list):
            return [item.strip() for item in v if isinstance(item, str) and item.strip()]
        return v


# =============================================================================
# EMAIL FACTS
# =============================================================================


class ExtractionInfo(Contract):
    provider: Optional[str] = None
    model: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    warnings: list[str] = Field(default_factory=list)


class Classification(WithEvidence):
    kind: Literal[FACT_KINDS]
    confidence: float = Field(default=0.0, ge=0, le=1)
    evidence: list[str] = Field(default_factory=list)


class CompanyEntity(Contract):
    name: Optional[str] = None
    website: Optional[str] = None


class RecruiterEntity(Contract):
    name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None


class JobEntity(Contract):
    title: Optional[str] = None
    department: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None


class Entities(Contract):
    company: CompanyEntity = Field(default_factory=CompanyEntity)
    recruiter: RecruiterEntity = Field(default_factory=RecruiterEntity)
    job: JobEntity = Field(default_factory=JobEntity)


class ActionLink(Contract):
    url: str = Field(min_length=1)
    action_label: str = Field(min_length=1)
    priority: int = Field(default=5, ge=1)


class Scheduling(WithEvidence):
    is_scheduling_related: bool = False
    scheduled_at: Optional[str] = None
    timezone_hint: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=0, ge=0)
    stage: Optional[str] = None
    round_type: Optional[str] = None
    stage_name: Optional[str] = None
    interviewer_name: Optional[str] = None
    interviewer_role: Optional[str] = None
    video_link: Optional[str] = None
    phone_number: Optional[str] = None
    location: Optional[str] = None
    is_rescheduled: bool = False
    is_cancelled: bool = False
    original_scheduled_at: Optional[str] = None
    evidence: list[str] = Field(default_factory=list)


class RoundFeedbackDetail(Contract):
    has_detailed_feedback: bool = False
    summary: Optional[str] = None
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    full_feedback_text: Optional[str] = None


class NextSteps(Contract):
    has_next_round: bool = False
    next_round_type: Optional[str] = None
    next_round_hint: Optional[str] = None
    timeline_hint: Optional[str] = None


class RoundFeedbackFacts(WithEvidence):
    has_round_feedback: bool = False
    result: Optional[str] = None
    stage_mentioned: Optional[str] = None
    round_type: Optional[str] = None
    interviewer_mentioned: Optional[str] = None
    date_mentioned: Optional[str] = None
    feedback: RoundFeedbackDetail = Field(default_factory=RoundFeedbackDetail)
    next_steps: NextSteps = Field(default_factory=NextSteps)
    evidence: list[str] = Field(default_factory=list)


class StatusChangeFacts(WithEvidence):
    has_status_change: bool = False
    type: Optional[Literal[STATUS_CHANGE_TYPES]] = None
    is_final: Optional[bool] = None
    effective_date: Optional[str] = None
    rejection_details: dict[str, Any] = Field(default_factory=dict)
    offer_details: dict[str, Any] = Field(default_factory=dict)
    feedback: dict[str, Any] = Field(default_factory=dict)
    evidence: list[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def null_string_is_none(cls, v):
        """Models sometimes return the string "null"."""
        return None if v in ("null", "") else v


class EmailFacts(Contract):
    """Workflow facts extracted from one email."""

    extraction: ExtractionInfo = Field(default_factory=ExtractionInfo)
    classification: Classification
    entities: Entities = Field(default_factory=Entities)
    action_links: list[ActionLink] = Field(default_factory=list, max_length=20)
    key_insights: Optional[str] = None
    is_forwarded: bool = False
    scheduling: Scheduling = Field(default_factory=Scheduling)
    round_feedback: RoundFeedbackFacts = Field(default_factory=RoundFeedbackFacts)
    status_change: StatusChangeFacts = Field(default_factory=StatusChangeFacts)


# =============================================================================
# DECISION INPUT / PLAN
# =============================================================================


class EventSender(Contract):
    email: Optional[str] = None
    name: Optional[str] = None


class EventBody(Contract):
    text: str
    source: str


class CanonicalEvent(Contract):
    event_type: Literal["email"]
    synced_email_id: str
    subject: Optional[str] = None
    email_date: Optional[str] = None
    sender: EventSender = Field(alias="from")
    body: EventBody
    links: list[dict] = Field(default_factory=list)


class MatchInfo(Contract):
    matched: bool
    interview_application_id: Optional[str] = None
    confidence: float = Field(ge=0, le=1)


class DecisionInput(Contract):
    version: str
    event: CanonicalEvent
    match: MatchInfo
    application: Optional[dict] = None
    facts: EmailFacts


class PlanStep(Contract):
    step_id: str = Field(min_length=1)
    action: str = Field(min_length=1)
    target: dict = Field(default_factory=dict)
    params: dict = Field(default_factory=dict)
    preconditions: list[str] = Field(default_factory=list)
    evidence: list[str] = Field(default_factory=list)
    risk: Literal["low", "medium", "high"] = "low"


class DecisionPlan(Contract):
    decision: Literal["apply", "noop"]
    confidence: float = Field(ge=0, le=1)
    reasons: list[str] = Field(default_factory=list)
    plan: list[PlanStep] = Field(default_factory=list)


def contract_errors(model: type[BaseModel], payload: Any) -> list[dict]:
    """
    Validate a payload against a contract.

    Returns:
        List of {"path", "message"} dicts; empty when valid
    """
    if not isinstance(payload, dict):
        return [{"path": "", "message": "payload must be an object"}]
    try:
        model.model_validate(payload)
    except ValidationError as e:
        return [
            {"path": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
    return []
