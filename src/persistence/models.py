"""SQLAlchemy models for Interview Signals."""
import re
import uuid
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def normalize_company_key(name: str) -> str:
    """Normalize company name to a canonical key for fast matching.

    Lowercases, strips whitespace, and removes common suffixes like
    Inc, LLC, Corp, Ltd, Co so that "Stripe, Inc." and "Stripe" match.
    """
    if not name:
        return ""
    key = name.lower().strip()
    key = re.sub(r"[.,;:!]+$", "", key)
    for suffix in (" inc", " llc", " corp", " ltd", " co", " company"):
        if key.endswith(suffix):
            key = key[: -len(suffix)].rstrip()
    key = re.sub(r"[.,;:!]+$", "", key)
    return key


def format_duration_ms(duration_ms: Optional[int]) -> Optional[str]:
    """Format a millisecond duration as "850ms", "2.5s" or "1m 5s"."""
    if duration_ms is None:
        return None
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {int(seconds % 60)}s"


from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Session, relationship


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# ACCOUNTS
# =============================================================================


class User(Base):
    """Job seeker account."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, unique=True, nullable=False)
    name = Column(String)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    connected_accounts = relationship(
        "ConnectedAccount", back_populates="user", cascade="all, delete-orphan"
    )
    applications = relationship(
        "InterviewApplication", back_populates="user", cascade="all, delete-orphan"
    )
    target_companies = relationship("Company", secondary="user_target_companies")

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class UserTargetCompany(Base):
    """Companies a user is actively targeting."""

    __tablename__ = "user_target_companies"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    company_id = Column(String, ForeignKey("companies.id"), primary_key=True)


class ConnectedAccount(Base):
    """OAuth-connected mailbox (Gmail)."""

    __tablename__ = "connected_accounts"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    provider = Column(String, nullable=False, default="google_oauth2")
    uid = Column(String, nullable=False)
    email = Column(String)
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(DateTime)
    scopes = Column(String)

    sync_enabled = Column(Boolean, default=True)
    needs_reauth = Column(Boolean, default=False, nullable=False)
    auth_error_at = Column(DateTime)
    auth_error_message = Column(String)
    last_synced_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="connected_accounts")

    __table_args__ = (UniqueConstraint("provider", "uid", name="uq_connected_account_uid"),)

    def mark_needs_reauth(self, message: str) -> None:
        """Flag the account so sync stops until the user reconnects."""
        self.needs_reauth = True
        self.auth_error_at = utcnow()
        self.auth_error_message = message[:255]

    def __repr__(self) -> str:
        return f"<ConnectedAccount {self.provider}:{self.email}>"


# =============================================================================
# COMPANIES, SENDERS, APPLICATIONS
# =============================================================================


class Company(Base):
    """Company shared across users."""

    __tablename__ = "companies"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    company_key = Column(String, index=True)
    website = Column(String)
    created_at = Column(DateTime, default=utcnow)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.name and not self.company_key:
            self.company_key = normalize_company_key(self.name)

    @property
    def domain(self) -> Optional[str]:
        """Bare host of the company website (no scheme, no www)."""
        if not self.website:
            return None
        url = self.website.strip()
        if not url.startswith("http"):
            url = f"https://{url}"
        host = re.sub(r"^https?://", "", url).split("/")[0].split(":")[0].lower()
        return re.sub(r"^www\.", "", host) or None

    def __repr__(self) -> str:
        return f"<Company {self.name}>"


class EmailSender(Base):
    """Directory of people who email the user (recruiters, hiring managers)."""

    __tablename__ = "email_senders"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, unique=True, nullable=False)
    name = Column(String)
    domain = Column(String, nullable=False)
    sender_type = Column(String)  # recruiter, hiring_manager, ats, other
    title = Column(String)
    linkedin_url = Column(String)
    company_id = Column(String, ForeignKey("companies.id"))
    auto_detected_company_id = Column(String, ForeignKey("companies.id"))
    email_count = Column(Integer, default=1, nullable=False)
    verified = Column(Boolean, default=False)
    last_seen_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    company = relationship("Company", foreign_keys=[company_id])
    auto_detected_company = relationship("Company", foreign_keys=[auto_detected_company_id])

    @property
    def effective_company(self) -> Optional[Company]:
        """Manually assigned company, falling back to the detected one."""
        return self.company or self.auto_detected_company

    @classmethod
    def find_or_create_from_email(
        cls, session: Session, email: str, name: Optional[str] = None
    ) -> Optional["EmailSender"]:
        """Find a sender by address or create one, bumping the email count."""
        if not email or "@" not in email:
            return None
        email = email.strip().lower()
        sender = session.execute(select(cls).where(cls.email == email)).scalar_one_or_none()
        if sender:
            sender.email_count = (sender.email_count or 0) + 1
            sender.last_seen_at = utcnow()
            if name and not sender.name:
                sender.name = name
            return sender
        sender = cls(
            email=email,
            name=name,
            domain=email.split("@")[-1],
            last_seen_at=utcnow(),
        )
        session.add(sender)
        session.flush()
        return sender

    def __repr__(self) -> str:
        return f"<EmailSender {self.email}>"


class InterviewApplication(Base):
    """A job application moving through the interview pipeline."""

    __tablename__ = "interview_applications"

    STATUSES = ["active", "archived", "rejected", "accepted"]
    PIPELINE_STAGES = ["applied", "screening", "interviewing", "offer", "closed"]

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False)
    job_listing_id = Column(String, ForeignKey("job_listings.id"))
    job_title = Column(String)

    status = Column(String, nullable=False, default="active")
    pipeline_stage = Column(String, nullable=False, default="applied")

    applied_at = Column(DateTime, default=utcnow)
    job_description_text = Column(Text)
    ai_summary = Column(Text)
    notes = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="applications")
    company = relationship("Company")
    job_listing = relationship("JobListing")
    rounds = relationship(
        "InterviewRound",
        back_populates="application",
        cascade="all, delete-orphan",
        order_by="InterviewRound.position",
    )
    company_feedbacks = relationship(
        "CompanyFeedback", back_populates="application", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_interview_applications_user_status", "user_id", "status"),
        Index("ix_interview_applications_pipeline_stage", "pipeline_stage"),
    )

    @property
    def company_feedback(self) -> Optional["CompanyFeedback"]:
        """Most recent company feedback, if any."""
        return self.company_feedbacks[-1] if self.company_feedbacks else None

    @property
    def pending_rounds(self) -> list["InterviewRound"]:
        return [r for r in self.rounds if r.result == "pending"]

    def __repr__(self) -> str:
        company = self.company.name if self.company else self.company_id
        return f"<InterviewApplication {company} - {self.job_title} ({self.status}/{self.pipeline_stage})>"


class InterviewRound(Base):
    """A single interview round for an application."""

    __tablename__ = "interview_rounds"

    STAGES = ["screening", "technical", "hiring_manager", "culture_fit", "other"]
    RESULTS = ["pending", "passed", "failed", "waitlisted"]

    id = Column(String, primary_key=True, default=generate_uuid)
    interview_application_id = Column(
        String, ForeignKey("interview_applications.id"), nullable=False
    )
    position = Column(Integer, default=1)
    stage = Column(String, nullable=False, default="other")
    stage_name = Column(String)
    scheduled_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_minutes = Column(Integer)
    interviewer_name = Column(String)
    interviewer_role = Column(String)
    video_link = Column(String)
    confirmation_source = Column(String)
    source_email_id = Column(String, ForeignKey("synced_emails.id"))
    result = Column(String, nullable=False, default="pending")
    notes = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    application = relationship("InterviewApplication", back_populates="rounds")
    interview_feedback = relationship(
        "InterviewFeedback", back_populates="round", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def formatted_duration(self) -> Optional[str]:
        """Duration as "45 min", "1h" or "1h 30m"."""
        if not self.duration_minutes:
            return None
        if self.duration_minutes < 60:
            return f"{self.duration_minutes} min"
        hours, minutes = divmod(self.duration_minutes, 60)
        return f"{hours}h" if minutes == 0 else f"{hours}h {minutes}m"

    def __repr__(self) -> str:
        return f"<InterviewRound {self.interview_application_id} #{self.position} {self.stage} ({self.result})>"


class InterviewFeedback(Base):
    """Detailed feedback for a completed round."""

    __tablename__ = "interview_feedbacks"

    id = Column(String, primary_key=True, default=generate_uuid)
    interview_round_id = Column(String, ForeignKey("interview_rounds.id"), nullable=False)
    went_well = Column(Text)
    to_improve = Column(Text)
    ai_summary = Column(Text)
    interviewer_notes = Column(Text)
    recommended_action = Column(String)
    created_at = Column(DateTime, default=utcnow)

    round = relationship("InterviewRound", back_populates="interview_feedback")


class CompanyFeedback(Base):
    """Feedback the company gave about the application as a whole."""

    __tablename__ = "company_feedbacks"

    FEEDBACK_TYPES = ["rejection", "offer", "general"]

    id = Column(String, primary_key=True, default=generate_uuid)
    interview_application_id = Column(
        String, ForeignKey("interview_applications.id"), nullable=False
    )
    feedback_type = Column(String, default="general")
    feedback_text = Column(Text)
    rejection_reason = Column(Text)
    next_steps = Column(Text)
    received_at = Column(DateTime)
    source_email_id = Column(String, ForeignKey("synced_emails.id"))
    created_at = Column(DateTime, default=utcnow)

    application = relationship("InterviewApplication", back_populates="company_feedbacks")


class Opportunity(Base):
    """Inbound recruiter outreach not yet tied to an application."""

    __tablename__ = "opportunities"

    STATUSES = ["new", "reviewing", "applied", "archived"]
    SOURCE_TYPES = ["direct_email", "linkedin_forward", "referral", "other"]

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    synced_email_id = Column(String, ForeignKey("synced_emails.id"))
    interview_application_id = Column(String, ForeignKey("interview_applications.id"))
    job_listing_id = Column(String, ForeignKey("job_listings.id"))

    status = Column(String, nullable=False, default="new")
    source_type = Column(String, default="other")
    company_name = Column(String)
    job_role_title = Column(String)
    job_url = Column(String)
    recruiter_name = Column(String)
    recruiter_email = Column(String)
    recruiter_company = Column(String)
    email_snippet = Column(Text)
    key_details = Column(Text)
    ai_confidence_score = Column(Float)
    extracted_data = Column(JSON, default=dict)
    extracted_links = Column(JSON, default=list)

    archived_at = Column(DateTime)
    archived_reason = Column(String)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    synced_email = relationship("SyncedEmail")
    application = relationship("InterviewApplication")

    def __repr__(self) -> str:
        return f"<Opportunity {self.company_name} ({self.status})>"


# =============================================================================
# EMAIL
# =============================================================================


class SyncedEmail(Base):
    """Email pulled from a connected mailbox."""

    __tablename__ = "synced_emails"

    STATUSES = ["pending", "processed", "ignored", "failed", "auto_ignored"]
    EXTRACTION_STATUSES = ["pending", "processing", "completed", "failed", "skipped"]
    EMAIL_TYPES = [
        "application_confirmation",
        "interview_invite",
        "interview_reminder",
        "round_feedback",
        "rejection",
        "offer",
        "follow_up",
        "thank_you",
        "scheduling",
        "assessment",
        "recruiter_outreach",
        "other",
    ]
    INTERVIEW_TYPES = [
        "interview_invite",
        "interview_reminder",
        "scheduling",
        "round_feedback",
        "assessment",
    ]
    OPPORTUNITY_TYPES = ["recruiter_outreach", "interview_invite", "follow_up"]
    SUGGESTED_ACTIONS = [
        "start_application",
        "schedule_interview",
        "reply",
        "complete_assessment",
        "add_to_calendar",
        "review_offer",
        "archive",
    ]

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    connected_account_id = Column(String, ForeignKey("connected_accounts.id"), nullable=False)
    email_sender_id = Column(String, ForeignKey("email_senders.id"))
    interview_application_id = Column(String, ForeignKey("interview_applications.id"))

    gmail_id = Column(String, nullable=False)
    thread_id = Column(String, index=True)
    subject = Column(String)
    from_email = Column(String, nullable=False)
    from_name = Column(String)
    email_date = Column(DateTime)
    snippet = Column(Text)
    body_preview = Column(Text)
    body_html = Column(Text)
    labels = Column(JSON, default=list)

    email_type = Column(String)
    status = Column(String, nullable=False, default="pending")
    detected_company = Column(String)

    extracted_data = Column(JSON, default=dict, nullable=False)
    extraction_status = Column(String, default="pending")
    extraction_confidence = Column(Float)
    extracted_at = Column(DateTime)
    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")
    connected_account = relationship("ConnectedAccount")
    email_sender = relationship("EmailSender")
    interview_application = relationship("InterviewApplication")

    __table_args__ = (
        UniqueConstraint("user_id", "gmail_id", name="uq_synced_email_user_gmail"),
        Index("ix_synced_emails_status", "status"),
    )

    # ---- address parsing ----

    @staticmethod
    def extract_email(value: Optional[str]) -> str:
        """Address part of "Name <email>" (or the whole value)."""
        if not value:
            return ""
        match = re.search(r"<([^>]+)>", value)
        return (match.group(1) if match else value).strip().lower()

    @staticmethod
    def extract_name(value: Optional[str]) -> Optional[str]:
        """Display-name part of "Name <email>"."""
        if not value or "<" not in value:
            return None
        name = value.split("<")[0].strip().strip('"').strip()
        return name or None

    @classmethod
    def create_from_gmail_message(
        cls,
        session: Session,
        user: User,
        account: ConnectedAccount,
        email_data: dict,
    ) -> tuple["SyncedEmail", bool]:
        """Store a parsed Gmail message once per user.

        Returns:
            (synced_email, created) tuple
        """
        existing = session.execute(
            select(cls).where(cls.user_id == user.id, cls.gmail_id == email_data["gmail_id"])
        ).scalar_one_or_none()
        if existing:
            return existing, False

        from_email = email_data.get("from_email") or cls.extract_email(email_data.get("from"))
        from_name = email_data.get("from_name") or cls.extract_name(email_data.get("from"))
        sender = EmailSender.find_or_create_from_email(session, from_email, from_name)

        synced = cls(
            user_id=user.id,
            connected_account_id=account.id,
            email_sender_id=sender.id if sender else None,
            gmail_id=email_data["gmail_id"],
            thread_id=email_data.get("thread_id"),
            subject=email_data.get("subject"),
            from_email=from_email,
            from_name=from_name,
            email_date=email_data.get("email_date"),
            snippet=email_data.get("snippet"),
            body_preview=email_data.get("body_preview"),
            body_html=email_data.get("body_html"),
            labels=email_data.get("labels") or [],
            status="pending",
            extracted_data={},
            meta={},
        )
        session.add(synced)
        session.flush()
        return synced, True

    # ---- state ----

    @property
    def matched(self) -> bool:
        return self.interview_application_id is not None

    @property
    def is_interview_related(self) -> bool:
        return self.email_type in self.INTERVIEW_TYPES

    @property
    def is_opportunity(self) -> bool:
        return self.email_type in self.OPPORTUNITY_TYPES

    def match_to_application(self, application: InterviewApplication) -> None:
        self.interview_application_id = application.id
        self.interview_application = application

    def mark_processed(self) -> None:
        self.status = "processed"

    def ignore(self) -> None:
        self.status = "ignored"

    def mark_failed(self, reason: str) -> None:
        """Mark as failed, keeping the reason in metadata."""
        self.status = "failed"
        self.meta = {**(self.meta or {}), "failure_reason": reason, "failed_at": utcnow().isoformat()}

    def mark_extraction_processing(self) -> None:
        self.extraction_status = "processing"

    def mark_extraction_skipped(self) -> None:
        self.extraction_status = "skipped"

    def mark_extraction_failed(self, error: Optional[str]) -> None:
        self.extraction_status = "failed"
        self.meta = {**(self.meta or {}), "extraction_error": error}

    def update_extraction(self, data: dict, confidence: Optional[float] = None) -> None:
        """Merge extracted signal fields and mark extraction complete."""
        self.extracted_data = {**(self.extracted_data or {}), **data}
        self.extraction_confidence = confidence
        self.extraction_status = "completed"
        self.extracted_at = utcnow()

    def merge_extracted_data(self, **entries) -> None:
        """Replace top-level keys in extracted_data (new dict so the change is tracked)."""
        self.extracted_data = {**(self.extracted_data or {}), **entries}

    # ---- extracted signals ----

    def _signal(self, key: str):
        return (self.extracted_data or {}).get(key)

    @property
    def signal_company_name(self) -> Optional[str]:
        return self._signal("signal_company_name")

    @property
    def signal_company_website(self) -> Optional[str]:
        return self._signal("signal_company_website")

    @property
    def signal_company_careers_url(self) -> Optional[str]:
        return self._signal("signal_company_careers_url")

    @property
    def signal_company_domain(self) -> Optional[str]:
        return self._signal("signal_company_domain")

    @property
    def signal_recruiter_name(self) -> Optional[str]:
        return self._signal("signal_recruiter_name")

    @property
    def signal_recruiter_email(self) -> Optional[str]:
        return self._signal("signal_recruiter_email")

    @property
    def signal_recruiter_title(self) -> Optional[str]:
        return self._signal("signal_recruiter_title")

    @property
    def signal_recruiter_linkedin(self) -> Optional[str]:
        return self._signal("signal_recruiter_linkedin")

    @property
    def signal_job_title(self) -> Optional[str]:
        return self._signal("signal_job_title")

    @property
    def signal_job_department(self) -> Optional[str]:
        return self._signal("signal_job_department")

    @property
    def signal_job_location(self) -> Optional[str]:
        return self._signal("signal_job_location")

    @property
    def signal_job_url(self) -> Optional[str]:
        return self._signal("signal_job_url")

    @property
    def signal_job_salary_hint(self) -> Optional[str]:
        return self._signal("signal_job_salary_hint")

    @property
    def signal_action_links(self) -> list[dict]:
        return self._signal("signal_action_links") or []

    @property
    def signal_suggested_actions(self) -> list[str]:
        return self._signal("signal_suggested_actions") or []

    @property
    def sorted_action_links(self) -> list[dict]:
        """Action links ordered by priority (1 first, missing priority = 5)."""
        return sorted(self.signal_action_links, key=lambda link: link.get("priority") or 5)

    @property
    def scheduling_links(self) -> list[dict]:
        """Action links that book or reschedule a meeting."""
        return [
            link
            for link in self.sorted_action_links
            if re.search(r"calendly|goodtime|chilipiper", link.get("url", ""), re.I)
            or re.search(r"schedul|book", link.get("action_label", ""), re.I)
        ]

    # ---- subject and thread ----

    @property
    def clean_subject(self) -> str:
        """Subject without leading Re:/Fwd: prefixes."""
        subject = self.subject or ""
        return re.sub(r"^\s*((re|fwd?|fw)\s*:\s*)+", "", subject, flags=re.I).strip()

    def thread_emails(self, session: Session) -> list["SyncedEmail"]:
        """All of this user's emails in the same Gmail thread, oldest first."""
        if not self.thread_id:
            return [self]
        stmt = (
            select(SyncedEmail)
            .where(SyncedEmail.user_id == self.user_id, SyncedEmail.thread_id == self.thread_id)
            .order_by(SyncedEmail.email_date.asc())
        )
        return list(session.execute(stmt).scalars().all())

    def thread_count(self, session: Session) -> int:
        if not self.thread_id:
            return 1
        stmt = select(func.count(SyncedEmail.id)).where(
            SyncedEmail.user_id == self.user_id, SyncedEmail.thread_id == self.thread_id
        )
        return session.execute(stmt).scalar() or 0

    def __repr__(self) -> str:
        return f"<SyncedEmail {self.email_type}: {self.subject}>"


class EmailPipelineRun(Base):
    """One pass of an email through the signals pipeline."""

    __tablename__ = "email_pipeline_runs"

    STATUSES = ["started", "success", "failed"]

    id = Column(String, primary_key=True, default=generate_uuid)
    synced_email_id = Column(String, ForeignKey("synced_emails.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"))
    connected_account_id = Column(String, ForeignKey("connected_accounts.id"))
    status = Column(String, nullable=False, default="started")
    trigger = Column(String)  # sync, job, manual
    mode = Column(String)  # processing, extraction, reprocess
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    error_type = Column(String)
    error_message = Column(Text)
    meta = Column("metadata", JSON, default=dict)

    synced_email = relationship("SyncedEmail")
    events = relationship(
        "EmailPipelineEvent",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="EmailPipelineEvent.step_order",
    )

    def __repr__(self) -> str:
        return f"<EmailPipelineRun {self.id} {self.trigger}/{self.mode} ({self.status})>"


class EmailPipelineEvent(Base):
    """A single measured step of an email pipeline run."""

    __tablename__ = "email_pipeline_events"

    STATUSES = ["started", "success", "failed", "skipped"]

    id = Column(String, primary_key=True, default=generate_uuid)
    run_id = Column(String, ForeignKey("email_pipeline_runs.id"), nullable=False)
    synced_email_id = Column(String, ForeignKey("synced_emails.id"))
    interview_application_id = Column(String, ForeignKey("interview_applications.id"))
    step_order = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="started")
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    input_payload = Column(JSON, default=dict)
    output_payload = Column(JSON, default=dict)
    error_type = Column(String)
    error_message = Column(Text)
    meta = Column("metadata", JSON, default=dict)

    run = relationship("EmailPipelineRun", back_populates="events")

    def __repr__(self) -> str:
        return f"<EmailPipelineEvent #{self.step_order} {self.event_type} ({self.status})>"


# =============================================================================
# JOB LISTINGS AND SCRAPING
# =============================================================================


class JobListing(Base):
    """Job posting page, enriched by scraping."""

    __tablename__ = "job_listings"

    REMOTE_TYPES = ["on_site", "remote", "hybrid", "unknown"]

    id = Column(String, primary_key=True, default=generate_uuid)
    company_id = Column(String, ForeignKey("companies.id"))
    url = Column(String, nullable=False)
    title = Column(String)
    location = Column(String)
    remote_type = Column(String, default="unknown")
    description = Column(Text)
    requirements = Column(Text)
    responsibilities = Column(Text)
    salary_min = Column(Float)
    salary_max = Column(Float)
    salary_currency = Column(String, default="USD")
    job_board_id = Column(String)
    source_id = Column(String)
    scraped_data = Column(JSON, default=dict)
    status = Column(String, default="active")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    company = relationship("Company")
    scraping_attempts = relationship(
        "ScrapingAttempt", back_populates="job_listing", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<JobListing {self.title} {self.url}>"


class ScrapingAttempt(Base):
    """One attempt to extract a job listing, with retry bookkeeping."""

    __tablename__ = "scraping_attempts"

    STATUSES = [
        "pending",
        "fetching",
        "extracting",
        "completed",
        "failed",
        "retrying",
        "dead_letter",
        "manual",
    ]
    FAILED_STEPS = ["html_fetch", "api_extraction", "ai_extraction", "orchestration"]
    REVIEW_RETRY_THRESHOLD = 3

    id = Column(String, primary_key=True, default=generate_uuid)
    job_listing_id = Column(String, ForeignKey("job_listings.id"), nullable=False)
    url = Column(String, nullable=False)
    domain = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    failed_step = Column(String)
    error_message = Column(Text)
    retry_count = Column(Integer, default=0)
    http_status = Column(Integer)
    extraction_method = Column(String)  # api, ai, selectors
    provider = Column(String)
    confidence_score = Column(Float)
    duration_seconds = Column(Float)
    request_metadata = Column(JSON, default=dict)
    response_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    job_listing = relationship("JobListing", back_populates="scraping_attempts")
    events = relationship(
        "ScrapingEvent",
        back_populates="attempt",
        cascade="all, delete-orphan",
        order_by="ScrapingEvent.step_order",
    )

    __table_args__ = (Index("ix_scraping_attempts_status_updated", "status", "updated_at"),)

    @property
    def needs_review(self) -> bool:
        """Dead-lettered, or failed after exhausting retries."""
        if self.status == "dead_letter":
            return True
        return self.status == "failed" and (self.retry_count or 0) >= self.REVIEW_RETRY_THRESHOLD

    @property
    def formatted_duration(self) -> Optional[str]:
        if self.duration_seconds is None:
            return None
        return format_duration_ms(int(round(self.duration_seconds * 1000)))

    @classmethod
    def success_rate_for_domain(cls, session: Session, domain: str) -> float:
        """Percentage of completed attempts for a domain (0.0 with no attempts)."""
        total = session.execute(
            select(func.count(cls.id)).where(cls.domain == domain)
        ).scalar() or 0
        if total == 0:
            return 0.0
        completed = session.execute(
            select(func.count(cls.id)).where(cls.domain == domain, cls.status == "completed")
        ).scalar() or 0
        return round(completed / total * 100, 1)

    def __repr__(self) -> str:
        return f"<ScrapingAttempt {self.domain} ({self.status}, retries={self.retry_count})>"


class ScrapingEvent(Base):
    """Step-level log for a scraping attempt."""

    __tablename__ = "scraping_events"

    EVENT_TYPES = [
        "permission_check",
        "job_board_detection",
        "html_fetch",
        "js_heavy_detected",
        "rendered_html_fetch",
        "html_scrape",
        "selectors_extraction",
        "api_extraction",
        "ai_extraction",
        "data_update",
        "completion",
        "failure",
    ]
    STATUSES = ["started", "success", "failed", "skipped"]
    SUMMARY_KEYS = 5

    id = Column(String, primary_key=True, default=generate_uuid)
    scraping_attempt_id = Column(String, ForeignKey("scraping_attempts.id"), nullable=False)
    job_listing_id = Column(String, ForeignKey("job_listings.id"))
    event_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="started")
    step_order = Column(Integer)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    input_payload = Column(JSON, default=dict)
    output_payload = Column(JSON, default=dict)
    error_type = Column(String)
    error_message = Column(Text)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    attempt = relationship("ScrapingAttempt", back_populates="events")

    @property
    def formatted_duration(self) -> Optional[str]:
        return format_duration_ms(self.duration_ms)

    @classmethod
    def _summarize(cls, payload: Optional[dict]) -> dict:
        summary = {}
        for key in list((payload or {}).keys())[: cls.SUMMARY_KEYS]:
            value = payload[key]
            if isinstance(value, str) and len(value) > 100:
                value = value[:97] + "..."
            summary[key] = value
        return summary

    @property
    def input_summary(self) -> dict:
        return self._summarize(self.input_payload)

    @property
    def output_summary(self) -> dict:
        return self._summarize(self.output_payload)

    @property
    def extracted_fields(self) -> list[str]:
        """Output keys that carry a non-empty value."""
        return [key for key, value in (self.output_payload or {}).items() if value not in (None, "", [], {})]

    def __repr__(self) -> str:
        return f"<ScrapingEvent #{self.step_order} {self.event_type} ({self.status})>"


class CachedPage(Base):
    """Fetched HTML kept for re-extraction and retries."""

    __tablename__ = "cached_pages"

    id = Column(String, primary_key=True, default=generate_uuid)
    url = Column(String, unique=True, nullable=False)
    html = Column(Text, nullable=False)
    http_status = Column(Integer)
    rendered = Column(Boolean, default=False)
    fetched_at = Column(DateTime, default=utcnow)
    valid_until = Column(DateTime, nullable=False)

    @property
    def is_valid(self) -> bool:
        return ensure_aware(self.valid_until) > utcnow()


# =============================================================================
# LLM
# =============================================================================


class LlmProviderConfig(Base):
    """Runtime-configurable LLM provider entry."""

    __tablename__ = "llm_provider_configs"

    PROVIDER_TYPES = ["openai", "anthropic", "ollama", "gemini"]
    MAX_TOKENS_LIMIT = 100_000

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    provider_type = Column(String, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    llm_model = Column(String, nullable=False)
    max_tokens = Column(Integer, default=4096)
    temperature = Column(Float, default=0.0)
    api_endpoint = Column(String)
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<LlmProviderConfig {self.name} {self.provider_type}/{self.llm_model} p={self.priority}>"


class LlmApiLog(Base):
    """Audit row for every LLM call."""

    __tablename__ = "llm_api_logs"

    STATUSES = ["success", "error", "rate_limited", "low_confidence"]

    id = Column(String, primary_key=True, default=generate_uuid)
    operation_type = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    loggable_type = Column(String)
    loggable_id = Column(String)
    status = Column(String, nullable=False, default="success")
    input_tokens = Column(Integer)
    output_tokens = Column(Integer)
    total_tokens = Column(Integer)
    latency_ms = Column(Integer)
    content_size = Column(Integer)
    confidence_score = Column(Float)
    extracted_fields = Column(JSON, default=list)
    request_payload = Column(JSON, default=dict)
    response_payload = Column(JSON, default=dict)
    error_type = Column(String)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_llm_api_logs_loggable", "loggable_type", "loggable_id"),)

    def __repr__(self) -> str:
        return f"<LlmApiLog {self.operation_type} {self.provider}/{self.model} ({self.status})>"


# =============================================================================
# BILLING
# =============================================================================


class WebhookEvent(Base):
    """Raw inbound payment webhook, processed at most once."""

    __tablename__ = "webhook_events"

    STATUSES = ["pending", "processed", "ignored", "failed"]

    id = Column(String, primary_key=True, default=generate_uuid)
    provider = Column(String, nullable=False)
    idempotency_key = Column(String, unique=True, nullable=False)
    event_type = Column(String)
    payload = Column(JSON, default=dict, nullable=False)
    status = Column(String, nullable=False, default="pending")
    received_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime)
    error_message = Column(Text)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider}:{self.event_type} ({self.status})>"


class BillingPlan(Base):
    """Subscription plan offered to users."""

    __tablename__ = "billing_plans"

    id = Column(String, primary_key=True, default=generate_uuid)
    key = Column(String, unique=True, nullable=False)  # free, pro
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class ProviderMapping(Base):
    """Maps a payment provider's variant id to a plan."""

    __tablename__ = "billing_provider_mappings"

    id = Column(String, primary_key=True, default=generate_uuid)
    provider = Column(String, nullable=False)
    external_variant_id = Column(String, nullable=False)
    plan_id = Column(String, ForeignKey("billing_plans.id"), nullable=False)

    plan = relationship("BillingPlan")

    __table_args__ = (
        UniqueConstraint("provider", "external_variant_id", name="uq_provider_variant"),
    )


class Subscription(Base):
    """User subscription mirrored from the payment provider."""

    __tablename__ = "billing_subscriptions"

    STATUSES = ["active", "trialing", "cancelled", "expired", "past_due", "inactive"]

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    plan_id = Column(String, ForeignKey("billing_plans.id"))
    provider = Column(String, nullable=False)
    external_subscription_id = Column(String)
    status = Column(String, nullable=False, default="inactive")
    trial_ends_at = Column(DateTime)
    current_period_starts_at = Column(DateTime)
    current_period_ends_at = Column(DateTime)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")
    plan = relationship("BillingPlan")

    def __repr__(self) -> str:
        return f"<Subscription {self.provider}:{self.external_subscription_id} ({self.status})>"


class BillingCustomer(Base):
    """Provider-side customer id for a user."""

    __tablename__ = "billing_customers"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    provider = Column(String, nullable=False)
    external_customer_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_billing_customer_user"),)


# =============================================================================
# LIFECYCLE
# =============================================================================


class StateTransition(Base):
    """Append-only log of state machine transitions."""

    __tablename__ = "state_transitions"

    id = Column(String, primary_key=True, default=generate_uuid)
    record_type = Column(String, nullable=False)
    record_id = Column(String, nullable=False)
    column = Column(String, nullable=False)
    event = Column(String, nullable=False)
    from_state = Column(String)
    to_state = Column(String, nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_state_transitions_record", "record_type", "record_id"),)

    def __repr__(self) -> str:
        return f"<StateTransition {self.record_type}.{self.column} {self.from_state}->{self.to_state}>"
