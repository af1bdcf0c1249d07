"""Application tracking service."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.lifecycle import application_machine_for
from src.persistence.models import (
    Company,
    InterviewApplication,
    InterviewRound,
    normalize_company_key,
    utcnow,
)

logger = logging.getLogger(__name__)


class ApplicationService:
    """Service for managing job applications and their interview rounds."""

    def __init__(self, session: Session):
        """
        Initialize application service.

        Args:
            session: Database session
        """
        self.session = session

    def find_or_create_company(self, name: str, website: Optional[str] = None) -> Company:
        """Find a company by normalized name, creating it if missing."""
        key = normalize_company_key(name)
        stmt = select(Company).where(Company.company_key == key).limit(1)
        company = self.session.execute(stmt).scalar_one_or_none()
        if company:
            if website and not company.website:
                company.website = website
            return company
        company = Company(name=name.strip(), website=website)
        self.session.add(company)
        self.session.flush()
        return company

    def create_application(
        self,
        user_id: str,
        company: str,
        job_title: Optional[str] = None,
        applied_at: Optional[datetime] = None,
        job_listing_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> InterviewApplication:
        """
        Create a new application.

        Args:
            user_id: Owner of the application
            company: Company name (matched against existing companies)
            job_title: Job position/title
            applied_at: Date of application (defaults to now)
            job_listing_id: Linked scraped job listing, if any
            notes: Additional notes

        Returns:
            Created InterviewApplication
        """
        company_record = self.find_or_create_company(company)
        application = InterviewApplication(
            user_id=user_id,
            company_id=company_record.id,
            job_title=job_title,
            applied_at=applied_at or utcnow(),
            job_listing_id=job_listing_id,
            notes=notes,
            status="active",
            pipeline_stage="applied",
        )

        self.session.add(application)
        self.session.commit()
        self.session.refresh(application)

        logger.info("Created application %s for %s", application.id, company_record.name)
        return application

    def get_application(self, application_id: str) -> Optional[InterviewApplication]:
        """Get an application by ID."""
        return self.session.get(InterviewApplication, application_id)

    def get_all_applications(
        self,
        user_id: str,
        status: Optional[str] = None,
        company: Optional[str] = None,
        limit: int = 100,
    ) -> list[InterviewApplication]:
        """
        Get a user's applications with optional filters.

        Args:
            user_id: Owner
            status: Filter by status
            company: Filter by company name (partial match)
            limit: Maximum results

        Returns:
            List of applications, most recently applied first
        """
        stmt = (
            select(InterviewApplication)
            .where(InterviewApplication.user_id == user_id)
            .order_by(InterviewApplication.applied_at.desc())
        )

        if status:
            stmt = stmt.where(InterviewApplication.status == status)
        if company:
            escaped = self._escape_like(company)
            stmt = stmt.join(Company, InterviewApplication.company_id == Company.id).where(
                Company.name.ilike(f"%{escaped}%", escape="\\")
            )

        stmt = stmt.limit(limit)

        result = self.session.execute(stmt)
        return list(result.scalars().all())

    def fire(
        self,
        application_id: str,
        event: str,
        reason: Optional[str] = None,
    ) -> Optional[InterviewApplication]:
        """
        Fire a status or pipeline-stage event with transition tracking.

        Args:
            application_id: Application ID
            event: Event name (reject, archive, move_to_offer, ...)
            reason: Notes about the change

        Returns:
            Updated application or None if not found

        Raises:
            InvalidTransitionError: Event not allowed from the current state
            UnknownEventError: Event not defined
        """
        application = self.get_application(application_id)
        if not application:
            return None

        machine = application_machine_for(event)
        machine.fire(application, event, session=self.session, reason=reason)

        self.session.commit()
        self.session.refresh(application)
        return application

    def add_round(
        self,
        application_id: str,
        stage: str = "other",
        scheduled_at: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
        interviewer_name: Optional[str] = None,
        interviewer_role: Optional[str] = None,
        video_link: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[InterviewRound]:
        """
        Add an interview round to an application.

        Args:
            application_id: Application ID
            stage: screening, technical, hiring_manager, culture_fit, other
            scheduled_at: Interview date/time
            duration_minutes: Expected duration
            interviewer_name: Interviewer
            interviewer_role: Interviewer's role
            video_link: Meeting link
            notes: Additional notes

        Returns:
            Created InterviewRound or None if the application is missing or inactive
        """
        application = self.get_application(application_id)
        if not application:
            return None

        # Don't add rounds to closed-out applications
        if application.status != "active":
            return None

        if stage not in InterviewRound.STAGES:
            raise ValueError(f"Invalid stage: {stage}. Must be one of {InterviewRound.STAGES}")

        interview_round = InterviewRound(
            interview_application_id=application_id,
            position=self.next_round_position(application),
            stage=stage,
            scheduled_at=scheduled_at,
            duration_minutes=duration_minutes,
            interviewer_name=interviewer_name,
            interviewer_role=interviewer_role,
            video_link=video_link,
            notes=notes,
            result="pending",
            confirmation_source="manual",
        )
        self.session.add(interview_round)

        # Move the pipeline forward on the first screening / interview round
        stage_event = "move_to_screening" if stage == "screening" else "move_to_interviewing"
        machine = application_machine_for(stage_event)
        if application.pipeline_stage == "applied" and machine.can_fire(application, stage_event):
            machine.fire(application, stage_event, session=self.session, reason="Round added")

        self.session.commit()
        self.session.refresh(interview_round)

        return interview_round

    def record_round_result(
        self,
        round_id: str,
        result: str,
        notes: Optional[str] = None,
    ) -> Optional[InterviewRound]:
        """
        Update a round's result.

        Args:
            round_id: InterviewRound ID
            result: passed, failed, waitlisted, pending
            notes: Additional notes (appended)

        Returns:
            Updated InterviewRound or None
        """
        if result not in InterviewRound.RESULTS:
            raise ValueError(f"Invalid result: {result}. Must be one of {InterviewRound.RESULTS}")

        interview_round = self.session.get(InterviewRound, round_id)
        if not interview_round:
            return None

        interview_round.result = result
        if result != "pending" and not interview_round.completed_at:
            interview_round.completed_at = utcnow()
        if notes:
            interview_round.notes = f"{interview_round.notes}\n{notes}" if interview_round.notes else notes

        self.session.commit()
        self.session.refresh(interview_round)

        return interview_round

    def pipeline_counts(self, user_id: str) -> dict[str, int]:
        """Count active applications per pipeline stage."""
        stmt = (
            select(InterviewApplication.pipeline_stage, func.count(InterviewApplication.id))
            .where(
                InterviewApplication.user_id == user_id,
                InterviewApplication.status == "active",
            )
            .group_by(InterviewApplication.pipeline_stage)
        )
        counts = {stage: 0 for stage in InterviewApplication.PIPELINE_STAGES}
        for stage, count in self.session.execute(stmt).all():
            counts[stage] = count
        return counts

    def find_match(self, user_id: str, company_name: Optional[str]) -> Optional[InterviewApplication]:
        """
        Find the user's active application for a company.

        Args:
            user_id: Owner
            company_name: Company name as detected from an email

        Returns:
            Most recent matching active application, or None
        """
        if not company_name:
            return None
        key = normalize_company_key(company_name)
        if not key:
            return None

        stmt = (
            select(InterviewApplication)
            .join(Company, InterviewApplication.company_id == Company.id)
            .where(
                InterviewApplication.user_id == user_id,
                InterviewApplication.status == "active",
                Company.company_key == key,
            )
            .order_by(InterviewApplication.created_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def next_round_position(application: InterviewApplication) -> int:
        return max((r.position or 0 for r in application.rounds), default=0) + 1

    @staticmethod
    def _escape_like(value: str) -> str:
        """Escape special LIKE characters (%, _) in user input."""
        return value.replace("%", r"\%").replace("_", r"\_")
