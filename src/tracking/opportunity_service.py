"""Opportunity (inbound recruiter outreach) service."""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.lifecycle import OPPORTUNITY_STATUS
from src.persistence.models import InterviewApplication, Opportunity
from src.tracking.application_service import ApplicationService

logger = logging.getLogger(__name__)


class OpportunityService:
    """Service for reviewing and converting opportunities."""

    def __init__(self, session: Session):
        self.session = session

    def create_opportunity(self, user_id: str, **fields) -> Opportunity:
        """Create an opportunity in the ``new`` state."""
        source_type = fields.pop("source_type", None) or "other"
        if source_type not in Opportunity.SOURCE_TYPES:
            raise ValueError(f"Invalid source type: {source_type}")
        opportunity = Opportunity(user_id=user_id, status="new", source_type=source_type, **fields)
        self.session.add(opportunity)
        self.session.commit()
        self.session.refresh(opportunity)
        return opportunity

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return self.session.get(Opportunity, opportunity_id)

    def list_opportunities(
        self, user_id: str, status: Optional[str] = None, limit: int = 100
    ) -> list[Opportunity]:
        """A user's opportunities, newest first, optionally filtered by status."""
        stmt = (
            select(Opportunity)
            .where(Opportunity.user_id == user_id)
            .order_by(Opportunity.created_at.desc())
            .limit(limit)
        )
        if status:
            stmt = stmt.where(Opportunity.status == status)
        return list(self.session.execute(stmt).scalars().all())

    def _fire(self, opportunity_id: str, event: str) -> Optional[Opportunity]:
        opportunity = self.get_opportunity(opportunity_id)
        if not opportunity:
            return None
        OPPORTUNITY_STATUS.fire(opportunity, event, session=self.session)
        self.session.commit()
        self.session.refresh(opportunity)
        return opportunity

    def start_review(self, opportunity_id: str) -> Optional[Opportunity]:
        return self._fire(opportunity_id, "start_review")

    def archive_as_ignored(self, opportunity_id: str) -> Optional[Opportunity]:
        return self._fire(opportunity_id, "archive_as_ignored")

    def reconsider(self, opportunity_id: str) -> Optional[Opportunity]:
        return self._fire(opportunity_id, "reconsider")

    def mark_applied(
        self, opportunity_id: str, create_application: bool = True
    ) -> Optional[Opportunity]:
        """
        Mark an opportunity as applied.

        Args:
            opportunity_id: Opportunity ID
            create_application: Also create an InterviewApplication from the
                opportunity's company and role when none is linked

        Returns:
            Updated Opportunity or None if not found

        Raises:
            InvalidTransitionError: Opportunity is archived or already applied
        """
        opportunity = self.get_opportunity(opportunity_id)
        if not opportunity:
            return None

        OPPORTUNITY_STATUS.fire(opportunity, "mark_applied", session=self.session)

        if create_application and not opportunity.interview_application_id and opportunity.company_name:
            application = InterviewApplication(
                user_id=opportunity.user_id,
                company_id=ApplicationService(self.session).find_or_create_company(
                    opportunity.company_name
                ).id,
                job_title=opportunity.job_role_title,
                job_listing_id=opportunity.job_listing_id,
                status="active",
                pipeline_stage="applied",
            )
            self.session.add(application)
            self.session.flush()
            opportunity.interview_application_id = application.id
            logger.info("Created application %s from opportunity %s", application.id, opportunity.id)

        self.session.commit()
        self.session.refresh(opportunity)
        return opportunity
