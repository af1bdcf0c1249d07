"""Application and opportunity tracking services."""
from .application_service import ApplicationService
from .opportunity_service import OpportunityService

__all__ = ["ApplicationService", "OpportunityService"]
