"""Detect unsolicited recruiter outreach and turn it into opportunities."""
import logging
import re
from typing import Optional

from sqlalchemy.orm import Session, object_session

from src.persistence.models import Opportunity, SyncedEmail

logger = logging.getLogger(__name__)

# Phrases typical of recruiter outreach
OUTREACH_KEYWORDS = [
    "opportunity",
    "exciting role",
    "perfect fit",
    "great fit",
    "your profile",
    "your background",
    "your experience",
    "reaching out",
    "interested in you",
    "open position",
    "hiring for",
    "would you be interested",
    "great match",
    "ideal candidate",
    "thought of you",
    "came across your",
    "found your profile",
    "saw your resume",
    "impressive background",
    "looking for someone",
    "we have an opening",
    "new opportunity",
    "career opportunity",
]

# Phrases that mean the email is about an existing application
APPLICATION_KEYWORDS = [
    "thank you for applying",
    "your application",
    "application received",
    "application status",
    "interview scheduled",
    "interview confirmed",
    "next steps in the process",
    "move forward with your",
    "following up on your application",
]

# Job platforms that relay recruiter messages
RECRUITER_DOMAINS = [
    "linkedin.com",
    "mail.linkedin.com",
    "hired.com",
    "angel.co",
    "wellfound.com",
    "dice.com",
    "indeed.com",
    "ziprecruiter.com",
    "glassdoor.com",
    "monster.com",
]

RECRUITER_TITLE_PATTERNS = [
    re.compile(r"recruiter", re.I),
    re.compile(r"talent\s*(acquisition|partner|scout)", re.I),
    re.compile(r"sourcer", re.I),
    re.compile(r"headhunter", re.I),
    re.compile(r"staffing", re.I),
    re.compile(r"hr\s*manager", re.I),
    re.compile(r"hiring\s*manager", re.I),
    re.compile(r"people\s*ops", re.I),
]

FORWARDED_PATTERNS = [
    re.compile(r"fwd?:", re.I),
    re.compile(r"forwarded message", re.I),
    re.compile(r"begin forwarded message", re.I),
]

LINKEDIN_PATTERNS = [
    re.compile(r"linkedin\.com", re.I),
    re.compile(r"sent you a message", re.I),
    re.compile(r"wants to connect", re.I),
    re.compile(r"inmail", re.I),
    re.compile(r"via linkedin", re.I),
]

REFERRAL_PATTERNS = [
    re.compile(r"referred by", re.I),
    re.compile(r"recommended you", re.I),
    re.compile(r"suggested i reach out", re.I),
    re.compile(r"your colleague", re.I),
    re.compile(r"mutual connection", re.I),
]

# Signal weights for outreach_score
WEIGHTS = {
    "keywords": 0.4,
    "from_recruiter": 0.3,
    "platform_forward": 0.2,
    "first_contact": 0.1,
}
OUTREACH_THRESHOLD = 0.5


def extract_domain(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[-1].lower()


class OpportunityDetector:
    """Scores a synced email as recruiter outreach versus application traffic."""

    def __init__(self, synced_email: SyncedEmail, session: Optional[Session] = None):
        self.synced_email = synced_email
        self.session = session or object_session(synced_email)

    @property
    def combined_content(self) -> str:
        email = self.synced_email
        parts = [email.subject, email.snippet, email.body_preview]
        return " ".join(p for p in parts if p).lower()

    def has_outreach_keywords(self) -> bool:
        content = self.combined_content
        return any(keyword in content for keyword in OUTREACH_KEYWORDS)

    def application_related(self) -> bool:
        content = self.combined_content
        return any(keyword in content for keyword in APPLICATION_KEYWORDS)

    def from_recruiter(self) -> bool:
        """Sender name carries a recruiter title, or the domain is a job platform."""
        name = self.synced_email.from_name
        if name and any(p.search(name) for p in RECRUITER_TITLE_PATTERNS):
            return True
        return extract_domain(self.synced_email.from_email) in RECRUITER_DOMAINS

    def forwarded(self) -> bool:
        content = self.combined_content
        return any(p.search(content) for p in FORWARDED_PATTERNS)

    def linkedin_forward(self) -> bool:
        if extract_domain(self.synced_email.from_email) in ("linkedin.com", "mail.linkedin.com"):
            return True
        content = self.combined_content
        return any(p.search(content) for p in LINKEDIN_PATTERNS)

    def forwarded_from_job_platform(self) -> bool:
        return self.linkedin_forward() or (self.forwarded() and self.from_recruiter())

    def first_contact(self) -> bool:
        if not self.synced_email.thread_id or self.session is None:
            return True
        return self.synced_email.thread_count(self.session) <= 1

    def has_referral_indicators(self) -> bool:
        content = self.combined_content
        return any(p.search(content) for p in REFERRAL_PATTERNS)

    def outreach_score(self) -> float:
        """Weighted score in [0, 1]."""
        score = 0.0
        if self.has_outreach_keywords():
            score += WEIGHTS["keywords"]
        if self.from_recruiter():
            score += WEIGHTS["from_recruiter"]
        if self.forwarded_from_job_platform():
            score += WEIGHTS["platform_forward"]
        if self.first_contact():
            score += WEIGHTS["first_contact"]
        return round(score / sum(WEIGHTS.values()), 4)

    def is_recruiter_outreach(self) -> bool:
        if self.application_related():
            return False
        return self.outreach_score() >= OUTREACH_THRESHOLD

    def detect_source_type(self) -> str:
        """One of linkedin_forward, referral, direct_email, other."""
        if self.linkedin_forward():
            return "linkedin_forward"
        if self.has_referral_indicators():
            return "referral"
        if self.from_recruiter():
            return "direct_email"
        return "other"

    def detect_original_source(self) -> Optional[str]:
        if self.linkedin_forward():
            return "linkedin"
        if self.forwarded():
            return "forwarded"
        return None

    def create_opportunity(self) -> Opportunity:
        """Create an Opportunity for this email (adds it to the session)."""
        email = self.synced_email
        snippet = email.snippet or (email.body_preview or "")[:500]
        opportunity = Opportunity(
            user_id=email.user_id,
            synced_email_id=email.id,
            status="new",
            source_type=self.detect_source_type(),
            company_name=email.detected_company,
            recruiter_name=email.from_name,
            recruiter_email=email.from_email,
            email_snippet=snippet,
            ai_confidence_score=self.outreach_score(),
            extracted_data={
                "is_forwarded": self.forwarded(),
                "original_source": self.detect_original_source(),
            },
            extracted_links=[],
        )
        if self.session is not None:
            self.session.add(opportunity)
            self.session.flush()
        logger.info("Created opportunity from email %s (%s)", email.id, opportunity.source_type)
        return opportunity
