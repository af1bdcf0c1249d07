"""Gmail integration: OAuth, sync, classification and matching."""
from .auth import GmailAuth
from .client import EmailMessage, GmailClient, build_sync_query
from .email_processor import EmailProcessor
from .exceptions import GmailAuthError, GmailError, TokenExpiredError
from .opportunity_detector import OpportunityDetector
from .sync_service import SyncService

__all__ = [
    "GmailAuth",
    "GmailClient",
    "EmailMessage",
    "build_sync_query",
    "EmailProcessor",
    "OpportunityDetector",
    "SyncService",
    "GmailError",
    "GmailAuthError",
    "TokenExpiredError",
]
