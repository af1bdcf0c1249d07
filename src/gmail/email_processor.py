"""Classify synced emails, detect the company and match them to applications."""
import logging
import re
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.gmail import classifier
from src.gmail.opportunity_detector import OpportunityDetector, extract_domain
from src.persistence.models import (
    Company,
    EmailPipelineRun,
    InterviewApplication,
    Opportunity,
    SyncedEmail,
    User,
)
from src.signals.recorder import EmailPipelineRecorder

logger = logging.getLogger(__name__)

COMPANY_CONTENT_PATTERNS = [
    re.compile(
        r"(?:at|from|with)\s+([A-Z][A-Za-z0-9\s&]+?)(?:\s+team|\s+inc|\s+llc|\s+corp|,|\.|!|\?|$)",
        re.I,
    ),
    re.compile(r"([A-Z][A-Za-z0-9\s&]+?)\s+(?:team|recruiting|talent|hr)\s+", re.I),
    re.compile(r"application\s+(?:for|to|at)\s+([A-Z][A-Za-z0-9\s&]+)", re.I),
]


class EmailProcessor:
    """Runs classification, company detection and application matching."""

    def __init__(
        self,
        session: Session,
        synced_email: SyncedEmail,
        pipeline_run: Optional[EmailPipelineRun] = None,
    ):
        """
        Args:
            session: Database session
            synced_email: Email to process
            pipeline_run: Optional run; each step is recorded as an event
        """
        self.session = session
        self.synced_email = synced_email
        self.recorder = EmailPipelineRecorder.for_run(session, pipeline_run)
        self._target_domains: Optional[list[str]] = None

    def run(self) -> dict:
        """
        Process the email.

        Returns:
            Result dict with success, email_type, matched_application,
            detected_company (or error)
        """
        email = self.synced_email
        if email.status in ("processed", "ignored"):
            return {
                "success": True,
                "email_type": email.email_type,
                "matched_application": email.interview_application_id,
                "already_processed": True,
            }

        try:
            self._run_steps()
        except Exception as e:
            logger.error("Email processing failed for %s: %s", email.id, e)
            email.mark_failed(str(e))
            return {"success": False, "error": str(e)}

        self._maybe_create_opportunity()

        return {
            "success": True,
            "email_type": email.email_type,
            "matched_application": email.interview_application_id,
            "detected_company": email.detected_company,
        }

    def _run_steps(self) -> None:
        email = self.synced_email
        if self.recorder is None:
            self.classify_email_type()
            self.detect_company()
            self.match_to_application()
            return

        with self.recorder.measure("email_classification") as step:
            self.classify_email_type()
            step.result = {"email_type": email.email_type}
        with self.recorder.measure("company_detection") as step:
            self.detect_company()
            step.result = {"detected_company": email.detected_company}
        with self.recorder.measure("application_match") as step:
            self.match_to_application()
            step.result = {"interview_application_id": email.interview_application_id}

    # ---- classification ----

    def classify_email_type(self) -> str:
        email = self.synced_email
        proxy = classifier.is_proxy_sender(email.from_email)

        # Proxy senders put misleading keywords ("JOB OFFER") in plain outreach
        if proxy and OpportunityDetector(email, self.session).is_recruiter_outreach():
            email.email_type = "recruiter_outreach"
            return email.email_type

        email_type = classifier.classify(
            self.classification_content(),
            self_sent=self.is_self_sent(),
            proxy_sender=proxy,
        )
        if email_type is None:
            email_type = "recruiter_outreach" if self.from_target_company() else "other"
        email.email_type = email_type
        return email_type

    def classification_content(self) -> str:
        email = self.synced_email
        subject = email.subject or ""
        body = classifier.primary_body(email.body_preview or email.snippet)
        if body:
            return f"{subject} {body}".strip()
        return " ".join(p for p in (subject, email.snippet, email.body_preview) if p)

    def is_self_sent(self) -> bool:
        email = self.synced_email
        sender = (email.from_email or "").lower()
        if not sender:
            return False
        account_email = (email.connected_account.email or "").lower() if email.connected_account else ""
        user_email = (email.user.email or "").lower() if email.user else ""
        return sender in (account_email, user_email)

    def target_company_domains(self) -> list[str]:
        if self._target_domains is None:
            user = self.session.get(User, self.synced_email.user_id)
            domains = [c.domain for c in (user.target_companies if user else []) if c.domain]
            self._target_domains = sorted(set(domains))
        return self._target_domains

    def from_target_company(self) -> bool:
        sender_domain = extract_domain(self.synced_email.from_email)
        if not sender_domain or classifier.is_generic_domain(sender_domain):
            return False
        return any(classifier.domains_match(sender_domain, d) for d in self.target_company_domains())

    # ---- company detection ----

    def detect_company(self) -> Optional[str]:
        email = self.synced_email
        sender = email.email_sender

        if sender and sender.effective_company:
            email.detected_company = sender.effective_company.name
            return email.detected_company

        company = self.find_company_by_domain(extract_domain(email.from_email))
        if company:
            email.detected_company = company.name
            if sender:
                sender.auto_detected_company_id = company.id
            return email.detected_company

        extracted = self.extract_company_from_content()
        if extracted:
            email.detected_company = extracted
        return email.detected_company

    def find_company_by_domain(self, domain: str) -> Optional[Company]:
        if not domain or classifier.is_generic_domain(domain):
            return None
        escaped = domain.replace("%", r"\%").replace("_", r"\_")
        company = self.session.execute(
            select(Company).where(Company.website.ilike(f"%{escaped}%", escape="\\")).limit(1)
        ).scalar_one_or_none()
        if company:
            return company
        name_guess = domain.split(".")[0].lower()
        return self.session.execute(
            select(Company).where(func.lower(Company.name) == name_guess).limit(1)
        ).scalar_one_or_none()

    def extract_company_from_content(self) -> Optional[str]:
        email = self.synced_email
        content = f"{email.subject or ''} {email.snippet or ''}"
        for pattern in COMPANY_CONTENT_PATTERNS:
            match = pattern.search(content)
            if match and 2 < len(match.group(1).strip()) < 50:
                return match.group(1).strip()
        return None

    # ---- matching ----

    def match_to_application(self) -> Optional[InterviewApplication]:
        """Link to an application; matched emails become processed, others stay pending."""
        email = self.synced_email
        if email.interview_application_id:
            return email.interview_application

        application = self.find_matching_application()
        if application:
            email.match_to_application(application)
            email.mark_processed()
        else:
            email.status = "pending"
        return application

    def find_matching_application(self) -> Optional[InterviewApplication]:
        """Match strategies, most reliable first.

        1. Same Gmail thread as an already matched email
        2. Same sender as an email matched to an active application
        3. Detected company name
        4. Sender's assigned company
        5. Sender domain against application company websites

        Proxy senders only ever match by thread.
        """
        email = self.synced_email

        if classifier.is_proxy_sender(email.from_email):
            return self._match_proxy_sender_by_thread()

        if email.thread_id:
            existing = self.session.execute(
                select(SyncedEmail)
                .where(
                    SyncedEmail.user_id == email.user_id,
                    SyncedEmail.thread_id == email.thread_id,
                    SyncedEmail.interview_application_id.is_not(None),
                    SyncedEmail.id != email.id,
                )
                .limit(1)
            ).scalar_one_or_none()
            if existing:
                return existing.interview_application

        if email.from_email:
            existing = self.session.execute(
                select(SyncedEmail)
                .join(InterviewApplication, SyncedEmail.interview_application_id == InterviewApplication.id)
                .where(
                    SyncedEmail.user_id == email.user_id,
                    SyncedEmail.from_email == email.from_email,
                    SyncedEmail.id != email.id,
                    InterviewApplication.status == "active",
                )
                .order_by(SyncedEmail.email_date.desc())
                .limit(1)
            ).scalar_one_or_none()
            if existing:
                return existing.interview_application

        if email.detected_company:
            company = self.session.execute(
                select(Company)
                .where(func.lower(Company.name) == email.detected_company.lower())
                .limit(1)
            ).scalar_one_or_none()
            if company:
                application = self._latest_active_application(company.id)
                if application:
                    return application

        sender = email.email_sender
        if sender and sender.effective_company:
            application = self._latest_active_application(sender.effective_company.id)
            if application:
                return application

        return self._match_by_sender_domain()

    def _latest_active_application(self, company_id: str) -> Optional[InterviewApplication]:
        return self.session.execute(
            select(InterviewApplication)
            .where(
                InterviewApplication.user_id == self.synced_email.user_id,
                InterviewApplication.company_id == company_id,
                InterviewApplication.status == "active",
            )
            .order_by(InterviewApplication.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _match_by_sender_domain(self) -> Optional[InterviewApplication]:
        sender_domain = extract_domain(self.synced_email.from_email)
        if not sender_domain or classifier.is_generic_domain(sender_domain):
            return None
        applications = self.session.execute(
            select(InterviewApplication).where(
                InterviewApplication.user_id == self.synced_email.user_id,
                InterviewApplication.status == "active",
            )
        ).scalars()
        for application in applications:
            company_domain = application.company.domain if application.company else None
            if company_domain and classifier.domains_match(sender_domain, company_domain):
                return application
        return None

    def _match_proxy_sender_by_thread(self) -> Optional[InterviewApplication]:
        """Only match when exactly one application already owns the thread."""
        email = self.synced_email
        if not email.thread_id:
            return None
        app_ids = self.session.execute(
            select(SyncedEmail.interview_application_id)
            .where(
                SyncedEmail.user_id == email.user_id,
                SyncedEmail.thread_id == email.thread_id,
                SyncedEmail.interview_application_id.is_not(None),
            )
            .distinct()
        ).scalars().all()
        if len(app_ids) != 1:
            return None
        return self.session.get(InterviewApplication, app_ids[0])

    # ---- opportunities ----

    def _maybe_create_opportunity(self) -> Optional[Opportunity]:
        email = self.synced_email
        if email.email_type != "recruiter_outreach" or email.matched:
            return None
        exists = self.session.execute(
            select(Opportunity.id).where(Opportunity.synced_email_id == email.id).limit(1)
        ).scalar_one_or_none()
        if exists:
            return None
        return OpportunityDetector(email, self.session).create_opportunity()
